"""Document persistence and lifecycle status transitions."""

from __future__ import annotations

import sqlite3
from typing import Any

import orjson

from knowledge_tutor.core.errors import DocumentNotFoundError, InvalidTransitionError
from knowledge_tutor.db.sqlite import SQLiteDatabase
from knowledge_tutor.models.entities import Document, DocumentStatus, Persona
from knowledge_tutor.utils.ids import new_id
from knowledge_tutor.utils.time import ms_to_datetime, now_ms

_COLUMNS = (
    "id, owner_id, name, size_bytes, mime, source_path, status, progress, error, page_count, "
    "word_count, language, persona_json, summary, key_points_json, query_count, last_accessed_at, "
    "created_at, updated_at"
)


class DocumentRepository:
    """Reads and writes knowledge documents.

    The stored status is authoritative; push events only mirror it.
    """

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    def create(
        self,
        owner_id: str,
        name: str,
        source_path: str | None = None,
        size_bytes: int | None = None,
        mime: str | None = None,
    ) -> Document:
        document_id = new_id("doc")
        now = now_ms()
        self.db.execute(
            f"""
            INSERT INTO documents ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL, NULL, NULL, NULL, NULL, NULL, NULL, 0, NULL, ?, ?)
            """,
            [document_id, owner_id, name, size_bytes, mime, source_path, DocumentStatus.QUEUED.value, now, now],
        )
        self.db.commit()
        return self.require(document_id)

    def get(self, document_id: str) -> Document | None:
        row = self.db.query_one(f"SELECT {_COLUMNS} FROM documents WHERE id = ?", [document_id])
        return _row_to_document(row) if row else None

    def require(self, document_id: str) -> Document:
        document = self.get(document_id)
        if document is None:
            raise DocumentNotFoundError("Document not found", document_id=document_id)
        return document

    def get_owned(self, document_id: str, owner_id: str) -> Document | None:
        row = self.db.query_one(
            f"SELECT {_COLUMNS} FROM documents WHERE id = ? AND owner_id = ?",
            [document_id, owner_id],
        )
        return _row_to_document(row) if row else None

    def list_for_owner(self, owner_id: str) -> list[Document]:
        rows = self.db.query(
            f"SELECT {_COLUMNS} FROM documents WHERE owner_id = ? ORDER BY created_at DESC",
            [owner_id],
        )
        return [_row_to_document(row) for row in rows]

    def transition(
        self,
        document_id: str,
        target: DocumentStatus,
        progress: int | None = None,
        error: str | None = None,
    ) -> Document:
        """Advance the status, refusing backwards moves."""
        current = self.require(document_id)
        if current.status != target and not current.status.can_advance_to(target):
            raise InvalidTransitionError(
                f"Cannot move from {current.status.value} to {target.value}",
                document_id=document_id,
            )
        updates = ["status = ?", "updated_at = ?"]
        params: list[Any] = [target.value, now_ms()]
        if progress is not None:
            updates.append("progress = MAX(progress, ?)")
            params.append(progress)
        if error is not None:
            updates.append("error = ?")
            params.append(error)
        cursor = self.db.execute(
            f"UPDATE documents SET {', '.join(updates)} WHERE id = ? AND status = ?",
            [*params, document_id, current.status.value],
        )
        self.db.commit()
        if cursor.rowcount == 0:
            raise InvalidTransitionError("Status changed concurrently", document_id=document_id)
        return self.require(document_id)

    def reset_for_retry(self, document_id: str, source_path: str | None = None) -> Document:
        """Return a terminal document to QUEUED for an explicit new job."""
        current = self.require(document_id)
        if not current.status.is_terminal:
            raise InvalidTransitionError(
                f"Only INDEXED or FAILED documents can be requeued, not {current.status.value}",
                document_id=document_id,
            )
        self.db.execute(
            """
            UPDATE documents
            SET status = ?, progress = 0, error = NULL, source_path = COALESCE(?, source_path), updated_at = ?
            WHERE id = ?
            """,
            [DocumentStatus.QUEUED.value, source_path, now_ms(), document_id],
        )
        self.db.commit()
        return self.require(document_id)

    def record_progress(self, document_id: str, progress: int) -> None:
        self.db.execute(
            "UPDATE documents SET progress = MAX(progress, ?), updated_at = ? WHERE id = ?",
            [progress, now_ms(), document_id],
        )
        self.db.commit()

    def update_meta(
        self,
        document_id: str,
        page_count: int | None,
        word_count: int | None,
        language: str | None,
        size_bytes: int | None = None,
        mime: str | None = None,
    ) -> None:
        self.db.execute(
            """
            UPDATE documents
            SET page_count = ?, word_count = ?, language = ?,
                size_bytes = COALESCE(size_bytes, ?), mime = COALESCE(mime, ?), updated_at = ?
            WHERE id = ?
            """,
            [page_count, word_count, language, size_bytes, mime, now_ms(), document_id],
        )
        self.db.commit()

    def set_persona(self, document_id: str, persona: Persona) -> None:
        self.db.execute(
            "UPDATE documents SET persona_json = ?, updated_at = ? WHERE id = ?",
            [orjson.dumps(persona.to_dict()).decode("utf-8"), now_ms(), document_id],
        )
        self.db.commit()

    def set_summary(self, document_id: str, summary: str, key_points: list[str]) -> None:
        self.db.execute(
            "UPDATE documents SET summary = ?, key_points_json = ?, updated_at = ? WHERE id = ?",
            [summary, orjson.dumps(key_points).decode("utf-8"), now_ms(), document_id],
        )
        self.db.commit()

    def record_query(self, document_id: str) -> None:
        now = now_ms()
        self.db.execute(
            "UPDATE documents SET query_count = query_count + 1, last_accessed_at = ? WHERE id = ?",
            [now, document_id],
        )
        self.db.commit()

    def delete(self, document_id: str) -> int:
        """Remove the document row, its chunks and its conversations."""
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM chunks WHERE document_id = ?", [document_id])
            cursor.execute("DELETE FROM conversations WHERE document_id = ?", [document_id])
            cursor.execute("DELETE FROM documents WHERE id = ?", [document_id])
            return cursor.rowcount


def _row_to_document(row: sqlite3.Row) -> Document:
    persona = None
    if row["persona_json"]:
        data = orjson.loads(row["persona_json"])
        persona = Persona(
            name=data.get("name", ""),
            tone=data.get("tone", ""),
            behavior_prompt=data.get("behavior_prompt", ""),
            avatar_url=data.get("avatar_url"),
        )
    return Document(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        size_bytes=row["size_bytes"],
        mime=row["mime"],
        source_path=row["source_path"],
        status=DocumentStatus(row["status"]),
        progress=int(row["progress"] or 0),
        error=row["error"],
        page_count=row["page_count"],
        word_count=row["word_count"],
        language=row["language"],
        persona=persona,
        summary=row["summary"],
        key_points=orjson.loads(row["key_points_json"]) if row["key_points_json"] else [],
        query_count=int(row["query_count"] or 0),
        last_accessed_at=ms_to_datetime(row["last_accessed_at"]),
        created_at=ms_to_datetime(row["created_at"]),
        updated_at=ms_to_datetime(row["updated_at"]),
    )


__all__ = ["DocumentRepository"]
