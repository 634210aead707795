"""Persona and summary synthesis from extracted document text."""

from __future__ import annotations

import re
from typing import Any, Protocol, Sequence
from urllib.parse import quote

import orjson

from knowledge_tutor.core.errors import GenerationError
from knowledge_tutor.models.entities import Persona

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")

PERSONA_PROMPT = """Analyze this text excerpt and create a fictional AI tutor persona.

Text: {excerpt}

Return ONLY valid JSON with:
{{
  "name": "Creative tutor name",
  "tone": "formal/casual/enthusiastic",
  "behavior_prompt": "Short behavior description"
}}"""

SUMMARY_PROMPT = "Summarize this document in 3-5 key points:\n\n{excerpt}"


class Completer(Protocol):
    def complete(
        self,
        messages: Sequence[dict[str, str]],
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 300,
    ) -> str: ...


def synthesize_persona(client: Completer, text: str, excerpt_chars: int = 2000) -> Persona:
    reply = client.complete(
        [{"role": "user", "content": PERSONA_PROMPT.format(excerpt=text[:excerpt_chars])}],
        temperature=0.8,
        max_tokens=300,
    )
    data = parse_json_reply(reply)
    name = str(data.get("name") or "").strip()
    if not name:
        raise GenerationError("Persona reply has no name")
    behavior = data.get("behavior_prompt") or data.get("personalityPrompt") or ""
    return Persona(
        name=name,
        tone=str(data.get("tone") or "friendly").strip(),
        behavior_prompt=str(behavior).strip(),
        avatar_url=avatar_url(name),
    )


def synthesize_summary(
    client: Completer,
    text: str,
    excerpt_chars: int = 3000,
    key_point_limit: int = 5,
) -> tuple[str, list[str]]:
    summary = client.complete(
        [{"role": "user", "content": SUMMARY_PROMPT.format(excerpt=text[:excerpt_chars])}],
        temperature=0.3,
        max_tokens=300,
    ).strip()
    if not summary:
        raise GenerationError("Summary reply is empty")
    return summary, key_points(summary, key_point_limit)


def key_points(summary: str, limit: int = 5) -> list[str]:
    points = [_BULLET_RE.sub("", line).strip() for line in summary.splitlines()]
    return [point for point in points if point][:limit]


def parse_json_reply(reply: str) -> dict[str, Any]:
    """Parse a JSON object out of a model reply, tolerating code fences."""
    cleaned = _FENCE_RE.sub("", reply).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start : end + 1]
    try:
        data = orjson.loads(cleaned)
    except orjson.JSONDecodeError as exc:
        raise GenerationError(f"Model reply is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise GenerationError("Model reply is not a JSON object")
    return data


def avatar_url(name: str) -> str:
    return f"https://ui-avatars.com/api/?name={quote(name)}&background=00ed64&color=001e2b"


__all__ = [
    "synthesize_persona",
    "synthesize_summary",
    "key_points",
    "parse_json_reply",
    "avatar_url",
]
