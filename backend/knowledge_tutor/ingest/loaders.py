"""Text extraction for uploaded document formats."""

from __future__ import annotations

import math
from pathlib import Path

import fitz
import langid
import yaml
from docx import Document
from markdown_it import MarkdownIt

from knowledge_tutor.core.errors import ExtractionError
from knowledge_tutor.ingest.segmenter import DEFAULT_PAGE_CHARS
from knowledge_tutor.ingest.types import ExtractedText
from knowledge_tutor.utils.text import normalize

_MD = MarkdownIt()


class BaseLoader:
    """Common loader interface."""

    suffixes: tuple[str, ...] = ()
    mime_type: str = "application/octet-stream"

    def can_load(self, path: Path) -> bool:
        return path.suffix.lower() in self.suffixes

    def load(self, path: Path) -> ExtractedText:  # pragma: no cover - interface
        raise NotImplementedError


class TextLoader(BaseLoader):
    suffixes = (".txt", ".text")
    mime_type = "text/plain"

    def load(self, path: Path) -> ExtractedText:
        raw = path.read_bytes()
        text = normalize(raw.decode("utf-8", errors="ignore"))
        return ExtractedText(
            path=path,
            text=text,
            page_count=_estimated_pages(text),
            mime=self.mime_type,
            size_bytes=len(raw),
            language=_detect_lang(text),
        )


class MarkdownLoader(BaseLoader):
    suffixes = (".md", ".markdown")
    mime_type = "text/markdown"

    def load(self, path: Path) -> ExtractedText:
        raw = path.read_bytes()
        front_matter, body = _split_front_matter(raw.decode("utf-8", errors="ignore"))
        text = _markdown_to_text(body)
        metadata = {"front_matter": front_matter} if front_matter else {}
        return ExtractedText(
            path=path,
            text=text,
            page_count=_estimated_pages(text),
            mime=self.mime_type,
            size_bytes=len(raw),
            language=_detect_lang(text),
            metadata=metadata,
        )


class PDFLoader(BaseLoader):
    suffixes = (".pdf",)
    mime_type = "application/pdf"

    def load(self, path: Path) -> ExtractedText:
        raw = path.read_bytes()
        with fitz.open(stream=raw, filetype="pdf") as doc:
            pages = [page.get_text("text", sort=True) for page in doc]
            title = (doc.metadata or {}).get("title")
        text = normalize("\n\n".join(pages))
        return ExtractedText(
            path=path,
            text=text,
            page_count=len(pages),
            mime=self.mime_type,
            size_bytes=len(raw),
            language=_detect_lang(text),
            metadata={"title": title} if title else {},
        )


class DocxLoader(BaseLoader):
    suffixes = (".docx",)
    mime_type = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

    def load(self, path: Path) -> ExtractedText:
        raw = path.read_bytes()
        document = Document(path)
        paragraphs = [para.text for para in document.paragraphs if para.text.strip()]
        text = normalize("\n".join(paragraphs))
        core = document.core_properties
        return ExtractedText(
            path=path,
            text=text,
            page_count=_estimated_pages(text),
            mime=self.mime_type,
            size_bytes=len(raw),
            language=_detect_lang(text),
            metadata={"title": core.title, "author": core.author},
        )


class LoaderRegistry:
    """Registry that selects an appropriate loader for a path."""

    def __init__(self) -> None:
        self._loaders: list[BaseLoader] = [
            PDFLoader(),
            MarkdownLoader(),
            TextLoader(),
            DocxLoader(),
        ]

    def register(self, loader: BaseLoader) -> None:
        self._loaders.insert(0, loader)

    def for_path(self, path: Path) -> BaseLoader | None:
        for loader in self._loaders:
            if loader.can_load(path):
                return loader
        return None

    def extract(self, path: Path) -> ExtractedText:
        """Extract text from ``path``; every failure surfaces as ExtractionError."""
        loader = self.for_path(path)
        if loader is None:
            raise ExtractionError(f"No loader registered for suffix {path.suffix!r}")
        if not path.is_file():
            raise ExtractionError(f"Source file not found: {path}")
        try:
            return loader.load(path)
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(f"Failed to extract text from {path.name}: {exc}") from exc


def _split_front_matter(text: str) -> tuple[dict[str, object] | None, str]:
    if text.startswith("---"):
        parts = text.split("---", 2)
        if len(parts) >= 3:
            try:
                front_matter = yaml.safe_load(parts[1]) or {}
            except yaml.YAMLError:
                return None, text
            if isinstance(front_matter, dict):
                return front_matter, parts[2]
    return None, text


def _markdown_to_text(text: str) -> str:
    tokens = _MD.parse(text)
    parts = [token.content.strip() for token in tokens if token.content.strip()]
    return normalize("\n".join(parts) if parts else text)


def _detect_lang(text: str) -> str | None:
    if not text.strip():
        return None
    lang, _ = langid.classify(text[:5000])
    return lang


def _estimated_pages(text: str) -> int:
    return max(1, math.ceil(len(text) / DEFAULT_PAGE_CHARS))


__all__ = ["LoaderRegistry", "BaseLoader", "TextLoader", "MarkdownLoader", "PDFLoader", "DocxLoader"]
