"""Embedding engine backed by a lazily loaded sentence-transformers model."""

from __future__ import annotations

import logging
import threading
from array import array
from typing import Any, Callable, Sequence

import numpy as np

from knowledge_tutor.core.errors import DimensionMismatchError, EmbeddingError, ModelUnavailableError

logger = logging.getLogger(__name__)

ModelLoader = Callable[[str, "str | None"], Any]


def _load_sentence_transformer(model_name: str, device: str | None) -> Any:
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name, device=device)


class EmbeddingEngine:
    """Produce L2-normalized fixed-length vectors for text.

    The underlying model is loaded on first use behind a lock, so concurrent
    first callers share one load. Encoding is serialized on the single model
    instance; this bounds throughput, not correctness.
    """

    _instances: dict[str, "EmbeddingEngine"] = {}
    _instances_lock = threading.Lock()

    def __init__(
        self,
        model_name: str,
        dim: int = 384,
        device: str | None = None,
        loader: ModelLoader | None = None,
        batch_size: int = 32,
    ) -> None:
        self.model_name = model_name
        self._dim = dim
        self.device = device
        self.batch_size = batch_size
        self._loader = loader or _load_sentence_transformer
        self._model: Any | None = None
        self._load_lock = threading.Lock()
        self._encode_lock = threading.Lock()

    @classmethod
    def get(cls, model_name: str, dim: int = 384, device: str | None = None) -> "EmbeddingEngine":
        """Return the process-wide engine for ``model_name``."""
        with cls._instances_lock:
            engine = cls._instances.get(model_name)
            if engine is None:
                engine = cls(model_name=model_name, dim=dim, device=device)
                cls._instances[model_name] = engine
        if engine.dim != dim:
            raise DimensionMismatchError(expected=dim, actual=engine.dim)
        return engine

    @property
    def dim(self) -> int:
        return self._dim

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed ``texts``; output order matches input order."""
        if not texts:
            return []
        model = self._ensure_model()
        try:
            with self._encode_lock:
                raw = model.encode(
                    list(texts),
                    batch_size=self.batch_size,
                    normalize_embeddings=True,
                    convert_to_numpy=True,
                    show_progress_bar=False,
                )
        except Exception as exc:
            raise EmbeddingError(f"Embedding model '{self.model_name}' failed: {exc}") from exc

        matrix = np.asarray(raw, dtype=np.float32)
        if matrix.ndim == 1:
            matrix = matrix.reshape(1, -1)
        if matrix.shape[0] != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} vectors, model returned {matrix.shape[0]}")
        if matrix.shape[1] != self._dim:
            raise DimensionMismatchError(expected=self._dim, actual=int(matrix.shape[1]))
        return l2_normalize(matrix).tolist()

    def warm_up(self) -> None:
        self._ensure_model()

    def _ensure_model(self) -> Any:
        model = self._model
        if model is not None:
            return model
        with self._load_lock:
            if self._model is None:
                logger.info("Loading embedding model %s", self.model_name)
                try:
                    self._model = self._loader(self.model_name, self.device)
                except Exception as exc:
                    logger.exception("Embedding model %s could not be loaded", self.model_name)
                    raise ModelUnavailableError(f"Embedding model '{self.model_name}' unavailable: {exc}") from exc
                logger.info("Embedding model %s loaded", self.model_name)
            return self._model


def l2_normalize(matrix: np.ndarray) -> np.ndarray:
    """Scale each row to unit length; all-zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def vector_to_bytes(vector: Sequence[float]) -> bytes:
    return array("f", vector).tobytes()


def vector_from_bytes(payload: bytes) -> list[float]:
    floats = array("f")
    floats.frombytes(payload)
    return list(floats)


__all__ = ["EmbeddingEngine", "ModelLoader", "l2_normalize", "vector_to_bytes", "vector_from_bytes"]
