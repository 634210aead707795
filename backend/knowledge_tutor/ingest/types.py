"""Common ingestion data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from knowledge_tutor.models.entities import DocumentStatus


@dataclass(slots=True)
class ExtractedText:
    """Raw text pulled out of an uploaded source."""

    path: Path
    text: str
    page_count: int
    mime: str
    size_bytes: int
    language: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def word_count(self) -> int:
        return len(self.text.split())


@dataclass(slots=True)
class Segment:
    """Window produced by the segmenter prior to embedding."""

    index: int
    text: str
    start_char: int
    end_char: int
    page: int


@dataclass(slots=True)
class IngestJob:
    """Work item submitted by the uploader once the raw file is stored."""

    document_id: str
    source_path: Path


@dataclass(slots=True)
class IngestOutcome:
    """Result of one ingestion attempt."""

    document_id: str
    status: DocumentStatus
    chunks: int = 0
    persona: bool = False
    summary: bool = False
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "status": self.status.value,
            "chunks": self.chunks,
            "persona": self.persona,
            "summary": self.summary,
            "detail": self.detail,
        }


__all__ = ["ExtractedText", "Segment", "IngestJob", "IngestOutcome"]
