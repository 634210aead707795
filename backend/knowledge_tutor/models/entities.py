"""Internal dataclasses representing persisted entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class DocumentStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    VECTORIZING = "VECTORIZING"
    INDEXED = "INDEXED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.INDEXED, DocumentStatus.FAILED)

    def can_advance_to(self, target: "DocumentStatus") -> bool:
        return target in _FORWARD[self]


# Terminal states only return to QUEUED through an explicit new job.
_FORWARD: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.QUEUED: frozenset({DocumentStatus.PROCESSING, DocumentStatus.FAILED}),
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.VECTORIZING, DocumentStatus.FAILED}),
    DocumentStatus.VECTORIZING: frozenset({DocumentStatus.INDEXED, DocumentStatus.FAILED}),
    DocumentStatus.INDEXED: frozenset(),
    DocumentStatus.FAILED: frozenset(),
}


@dataclass(slots=True)
class Persona:
    name: str
    tone: str
    behavior_prompt: str
    avatar_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tone": self.tone,
            "behavior_prompt": self.behavior_prompt,
            "avatar_url": self.avatar_url,
        }


@dataclass(slots=True)
class Document:
    id: str
    owner_id: str
    name: str
    size_bytes: int | None
    mime: str | None
    source_path: str | None
    status: DocumentStatus
    progress: int = 0
    error: str | None = None
    page_count: int | None = None
    word_count: int | None = None
    language: str | None = None
    persona: Persona | None = None
    summary: str | None = None
    key_points: list[str] = field(default_factory=list)
    query_count: int = 0
    last_accessed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def meta(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "size_bytes": self.size_bytes,
            "mime": self.mime,
            "page_count": self.page_count,
            "word_count": self.word_count,
            "language": self.language,
        }


@dataclass(slots=True)
class Chunk:
    id: str
    document_id: str
    chunk_index: int
    text: str
    embedding: list[float]
    start_char: int
    end_char: int
    page: int


@dataclass(slots=True)
class ScoredChunk:
    chunk_id: str
    document_id: str
    chunk_index: int
    text: str
    page: int
    score: float


@dataclass(slots=True)
class Citation:
    chunk_id: str
    page: int | None
    excerpt: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "page": self.page,
            "excerpt": self.excerpt,
            "score": self.score,
        }


@dataclass(slots=True)
class Message:
    role: str
    content: str
    citations: list[Citation] = field(default_factory=list)
    created_at: datetime | None = None


@dataclass(slots=True)
class Conversation:
    id: str
    user_id: str
    document_id: str | None
    title: str
    messages: list[Message] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


__all__ = [
    "DocumentStatus",
    "Persona",
    "Document",
    "Chunk",
    "ScoredChunk",
    "Citation",
    "Message",
    "Conversation",
]
