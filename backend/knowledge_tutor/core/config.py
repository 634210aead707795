"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

ENV_PREFIX = "KTUT_"
DEFAULT_CONFIG_PATH = Path("~/.config/knowledge-tutor/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("embeddings", "model"): "embedding_model",
    ("embeddings", "dim"): "embedding_dim",
    ("embeddings", "device"): "embedding_device",
    ("ingest", "chunk_size"): "chunk_size",
    ("ingest", "chunk_overlap"): "chunk_overlap",
    ("ingest", "page_char_budget"): "page_char_budget",
    ("ingest", "batch_size"): "embed_batch_size",
    ("ingest", "concurrency"): "worker_concurrency",
    ("retrieval", "top_k"): "top_k",
    ("retrieval", "candidate_pool"): "candidate_pool",
    ("retrieval", "history_turns"): "history_turns",
    ("generation", "base_url"): "llm_base_url",
    ("generation", "api_key"): "llm_api_key",
    ("generation", "model"): "default_model",
    ("generation", "synthesis_model"): "synthesis_model",
    ("generation", "temperature"): "chat_temperature",
    ("generation", "max_tokens"): "chat_max_tokens",
    ("rewards", "ingest"): "ingest_reward",
    ("rewards", "chat"): "chat_reward",
}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".knowledge-tutor" / "kt.db")

    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_dim: int = Field(default=384, gt=0)
    embedding_device: str | None = None

    chunk_size: int = Field(default=500, gt=0)
    chunk_overlap: int = Field(default=100, ge=0)
    page_char_budget: int = Field(default=2000, gt=0)
    embed_batch_size: int = Field(default=10, gt=0)
    worker_concurrency: int = Field(default=2, gt=0)

    top_k: int = Field(default=5, gt=0)
    candidate_pool: int = Field(default=100, gt=0)
    history_turns: int = Field(default=10, ge=0)
    citation_excerpt_chars: int = 200

    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_api_key: str | None = None
    default_model: str = "mistralai/mistral-7b-instruct:free"
    synthesis_model: str = "mistralai/mistral-7b-instruct:free"
    chat_temperature: float = 0.7
    chat_max_tokens: int = 1000
    llm_timeout_seconds: float = 60.0

    persona_excerpt_chars: int = 2000
    summary_excerpt_chars: int = 3000
    key_point_limit: int = 5

    ingest_reward: int = 50
    chat_reward: int = 2

    model_config = {"validate_assignment": True, "extra": "ignore"}

    @field_validator("db_path", mode="before")
    @classmethod
    def _expand_db_path(cls, value: Any) -> Path:
        if not isinstance(value, (str, Path)):
            raise TypeError("db_path must be a path or string")
        return Path(value).expanduser()

    @model_validator(mode="after")
    def _check_windows(self) -> "Settings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if self.candidate_pool < self.top_k:
            raise ValueError("candidate_pool must be at least top_k")
        return self

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Build settings from defaults, then the YAML file, then ``KTUT_*`` variables."""
        values: dict[str, Any] = {}
        source = _config_file(path)
        if source is not None and source.is_file():
            document = yaml.safe_load(source.read_text(encoding="utf-8"))
            values.update(_settings_from_tree(document or {}))
        values.update(_settings_from_env(os.environ))
        return cls(**values)


def _config_file(path: Path | None) -> Path | None:
    explicit = path or os.environ.get(ENV_PREFIX + "CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    fallback = DEFAULT_CONFIG_PATH.expanduser()
    return fallback if fallback.exists() else None


def _settings_from_tree(tree: Mapping[str, Any], section: tuple[str, ...] = ()) -> dict[str, Any]:
    """Translate nested YAML sections into flat field names.

    Keys listed in ``_YAML_KEY_MAP`` are renamed; other leaves are kept
    only when they already match a field.
    """
    found: dict[str, Any] = {}
    for key, value in tree.items():
        location = section + (key,)
        if isinstance(value, Mapping):
            found.update(_settings_from_tree(value, location))
            continue
        field = _YAML_KEY_MAP.get(location, key)
        if field in Settings.model_fields:
            found[field] = value
    return found


def _settings_from_env(environ: Mapping[str, str]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, value in environ.items():
        name = key.removeprefix(ENV_PREFIX).lower()
        if key.startswith(ENV_PREFIX) and name in Settings.model_fields:
            overrides[name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings"]
