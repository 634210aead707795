"""Document-scoped similarity search."""

from .vector_store import VectorStore

__all__ = ["VectorStore"]
