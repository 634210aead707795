"""Text processing helpers."""

from __future__ import annotations

import re


WHITESPACE_RE = re.compile(r"\s+")
SCRIPT_RE = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)


def normalize(text: str) -> str:
    """Collapse whitespace and strip."""
    return WHITESPACE_RE.sub(" ", text).strip()


def sanitize_query(text: str) -> str:
    """Strip executable markup from user input."""
    return SCRIPT_RE.sub("", text).strip()


def excerpt(text: str, limit: int = 200) -> str:
    return text[:limit]
