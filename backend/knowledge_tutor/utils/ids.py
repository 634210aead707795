"""Identifier helpers for persisted rows."""

from __future__ import annotations

import uuid


def new_id(prefix: str) -> str:
    """Return ``<prefix>_<uuid4 hex>``, e.g. ``doc_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex}"
