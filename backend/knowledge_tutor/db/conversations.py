"""Conversation transcripts with append-only messages."""

from __future__ import annotations

import sqlite3
from typing import Any, Sequence

import orjson

from knowledge_tutor.db.sqlite import SQLiteDatabase
from knowledge_tutor.models.entities import Citation, Conversation, Message
from knowledge_tutor.utils.ids import new_id
from knowledge_tutor.utils.time import ms_to_datetime, now_ms

TITLE_CHARS = 50


class ConversationRepository:
    """Persist conversations.

    Messages are rows inserted in one transaction per exchange and ordered by
    an autoincrement sequence, so concurrent appends to the same conversation
    never overwrite each other.
    """

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    def create(
        self,
        user_id: str,
        document_id: str | None,
        title: str,
        messages: Sequence[Message] = (),
    ) -> str:
        conversation_id = new_id("conv")
        now = now_ms()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO conversations (id, user_id, document_id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [conversation_id, user_id, document_id, title[:TITLE_CHARS], now, now],
            )
            _insert_messages(cursor, conversation_id, messages, now)
        return conversation_id

    def append(self, conversation_id: str, user_id: str, messages: Sequence[Message]) -> bool:
        """Append messages; returns False when the conversation is not the user's."""
        now = now_ms()
        with self.db.transaction() as cursor:
            cursor.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ? AND user_id = ?",
                [now, conversation_id, user_id],
            )
            if cursor.rowcount == 0:
                return False
            _insert_messages(cursor, conversation_id, messages, now)
        return True

    def exists(self, conversation_id: str, user_id: str) -> bool:
        row = self.db.query_one(
            "SELECT 1 FROM conversations WHERE id = ? AND user_id = ?",
            [conversation_id, user_id],
        )
        return row is not None

    def recent_messages(self, conversation_id: str, user_id: str, limit: int = 10) -> list[Message]:
        if limit <= 0:
            return []
        rows = self.db.query(
            """
            SELECT m.role, m.content, m.citations_json, m.created_at
            FROM messages m
            JOIN conversations c ON c.id = m.conversation_id
            WHERE m.conversation_id = ? AND c.user_id = ?
            ORDER BY m.seq DESC
            LIMIT ?
            """,
            [conversation_id, user_id, limit],
        )
        return [_row_to_message(row) for row in reversed(rows)]

    def get(self, conversation_id: str, user_id: str) -> Conversation | None:
        row = self.db.query_one(
            """
            SELECT id, user_id, document_id, title, created_at, updated_at
            FROM conversations WHERE id = ? AND user_id = ?
            """,
            [conversation_id, user_id],
        )
        if row is None:
            return None
        rows = self.db.query(
            """
            SELECT role, content, citations_json, created_at
            FROM messages WHERE conversation_id = ? ORDER BY seq ASC
            """,
            [conversation_id],
        )
        conversation = _row_to_conversation(row)
        conversation.messages = [_row_to_message(message) for message in rows]
        return conversation

    def list_for_user(
        self,
        user_id: str,
        document_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Conversation]:
        params: list[Any] = [user_id]
        where = "user_id = ?"
        if document_id:
            where += " AND document_id = ?"
            params.append(document_id)
        rows = self.db.query(
            f"""
            SELECT id, user_id, document_id, title, created_at, updated_at
            FROM conversations WHERE {where}
            ORDER BY updated_at DESC, created_at DESC
            LIMIT ? OFFSET ?
            """,
            [*params, limit, offset],
        )
        return [_row_to_conversation(row) for row in rows]

    def delete(self, conversation_id: str, user_id: str) -> bool:
        cursor = self.db.execute(
            "DELETE FROM conversations WHERE id = ? AND user_id = ?",
            [conversation_id, user_id],
        )
        self.db.commit()
        return cursor.rowcount > 0


def _insert_messages(cursor: sqlite3.Cursor, conversation_id: str, messages: Sequence[Message], now: int) -> None:
    cursor.executemany(
        """
        INSERT INTO messages (conversation_id, role, content, citations_json, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        [
            (
                conversation_id,
                message.role,
                message.content,
                orjson.dumps([c.to_dict() for c in message.citations]).decode("utf-8") if message.citations else None,
                now,
            )
            for message in messages
        ],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    citations = []
    if row["citations_json"]:
        citations = [
            Citation(
                chunk_id=item["chunk_id"],
                page=item.get("page"),
                excerpt=item.get("excerpt", ""),
                score=float(item.get("score", 0.0)),
            )
            for item in orjson.loads(row["citations_json"])
        ]
    return Message(
        role=row["role"],
        content=row["content"],
        citations=citations,
        created_at=ms_to_datetime(row["created_at"]),
    )


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        document_id=row["document_id"],
        title=row["title"],
        created_at=ms_to_datetime(row["created_at"]),
        updated_at=ms_to_datetime(row["updated_at"]),
    )


__all__ = ["ConversationRepository", "TITLE_CHARS"]
