"""Exception hierarchy for Knowledge Tutor.

Errors fall in two groups. Job-fatal errors (extraction, embedding, model
availability) move a document to FAILED. Request errors (missing or not
ready documents, conflicting jobs) are raised before any work starts and are
mapped to HTTP status codes by the API layer.
"""

from __future__ import annotations


class TutorError(Exception):
    """Base exception carrying an optional document id."""

    def __init__(self, message: str = "An unexpected error occurred", document_id: str | None = None) -> None:
        self.message = message
        self.document_id = document_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.document_id:
            return f"[{self.document_id}] {self.message}"
        return self.message


class ExtractionError(TutorError):
    """Raw text could not be extracted from the uploaded source."""


class EmbeddingError(TutorError):
    """Computing embeddings failed."""


class ModelUnavailableError(EmbeddingError):
    """The embedding model could not be loaded."""


class DimensionMismatchError(TutorError, ValueError):
    """A vector does not have the deployment's fixed dimensionality."""

    def __init__(self, expected: int, actual: int, document_id: str | None = None) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected {expected}-d vector, got {actual}-d", document_id=document_id)


class DocumentNotFoundError(TutorError):
    """The document does not exist or is not owned by the caller."""


class DocumentNotReadyError(TutorError):
    """The document exists but has not reached INDEXED."""


class InvalidTransitionError(TutorError):
    """A lifecycle status change would move the document backwards."""


class JobConflictError(TutorError):
    """An ingestion job for the document is already queued or running."""


class StaleChunksError(JobConflictError):
    """Partial chunks from an earlier attempt must be purged before retrying."""


class GenerationError(TutorError):
    """The hosted generation API failed."""


class VectorStoreUsageError(TutorError, ValueError):
    """Vector store called with inconsistent arguments."""


__all__ = [
    "TutorError",
    "ExtractionError",
    "EmbeddingError",
    "ModelUnavailableError",
    "DimensionMismatchError",
    "DocumentNotFoundError",
    "DocumentNotReadyError",
    "InvalidTransitionError",
    "JobConflictError",
    "StaleChunksError",
    "GenerationError",
    "VectorStoreUsageError",
]
