"""Chunk and embedding storage with document-scoped similarity search."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from knowledge_tutor.core.errors import DimensionMismatchError, VectorStoreUsageError
from knowledge_tutor.core.metrics import INDEX_SIZE
from knowledge_tutor.db.sqlite import SQLiteDatabase
from knowledge_tutor.ingest.embeddings import l2_normalize, vector_to_bytes
from knowledge_tutor.models.entities import Chunk, ScoredChunk
from knowledge_tutor.utils.time import now_ms


class VectorStore:
    """Cosine search over float32 embeddings persisted in SQLite.

    Every search is hard-filtered to a single document before scoring, so a
    result can never belong to another document.
    """

    def __init__(self, db: SQLiteDatabase, dim: int = 384) -> None:
        self.db = db
        self.dim = dim

    def upsert_chunks(self, chunks: Sequence[Chunk]) -> int:
        if not chunks:
            return 0
        for chunk in chunks:
            if len(chunk.embedding) != self.dim:
                raise DimensionMismatchError(
                    expected=self.dim,
                    actual=len(chunk.embedding),
                    document_id=chunk.document_id,
                )
        now = now_ms()
        self.db.executemany(
            """
            INSERT INTO chunks (id, document_id, chunk_index, text, embedding, dim, start_char, end_char, page, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (document_id, chunk_index) DO UPDATE SET
              text = excluded.text,
              embedding = excluded.embedding,
              dim = excluded.dim,
              start_char = excluded.start_char,
              end_char = excluded.end_char,
              page = excluded.page
            """,
            [
                (
                    chunk.id,
                    chunk.document_id,
                    chunk.chunk_index,
                    chunk.text,
                    vector_to_bytes(chunk.embedding),
                    self.dim,
                    chunk.start_char,
                    chunk.end_char,
                    chunk.page,
                    now,
                )
                for chunk in chunks
            ],
        )
        self.db.commit()
        self._update_index_metric()
        return len(chunks)

    def query_top_k(
        self,
        document_id: str,
        query_vector: Sequence[float],
        k: int,
        candidate_pool_size: int,
    ) -> list[ScoredChunk]:
        """Return up to ``k`` chunks of ``document_id`` by descending cosine similarity."""
        if k <= 0:
            raise VectorStoreUsageError("k must be positive", document_id=document_id)
        if candidate_pool_size < k:
            raise VectorStoreUsageError(
                f"candidate_pool_size ({candidate_pool_size}) must be >= k ({k})",
                document_id=document_id,
            )
        if len(query_vector) != self.dim:
            raise DimensionMismatchError(expected=self.dim, actual=len(query_vector), document_id=document_id)

        rows = self.db.query(
            """
            SELECT id, chunk_index, text, page, embedding, dim
            FROM chunks WHERE document_id = ?
            ORDER BY chunk_index ASC
            """,
            [document_id],
        )
        if not rows:
            return []
        for row in rows:
            if row["dim"] != self.dim:
                raise DimensionMismatchError(expected=self.dim, actual=row["dim"], document_id=document_id)

        matrix = np.vstack([np.frombuffer(row["embedding"], dtype=np.float32) for row in rows])
        scores = l2_normalize(matrix) @ l2_normalize(np.asarray(query_vector, dtype=np.float32).reshape(1, -1))[0]
        pool = min(candidate_pool_size, len(rows))
        ranked = np.argsort(-scores, kind="stable")[:pool][:k]
        return [
            ScoredChunk(
                chunk_id=rows[idx]["id"],
                document_id=document_id,
                chunk_index=rows[idx]["chunk_index"],
                text=rows[idx]["text"],
                page=rows[idx]["page"],
                score=float(scores[idx]),
            )
            for idx in ranked
        ]

    def delete_by_document(self, document_id: str) -> int:
        cursor = self.db.execute("DELETE FROM chunks WHERE document_id = ?", [document_id])
        self.db.commit()
        self._update_index_metric()
        return cursor.rowcount

    def count(self, document_id: str | None = None) -> int:
        if document_id is None:
            row = self.db.query_one("SELECT COUNT(*) AS count FROM chunks")
        else:
            row = self.db.query_one("SELECT COUNT(*) AS count FROM chunks WHERE document_id = ?", [document_id])
        return int(row["count"]) if row else 0

    def indices(self, document_id: str) -> list[int]:
        rows = self.db.query(
            "SELECT chunk_index FROM chunks WHERE document_id = ? ORDER BY chunk_index ASC",
            [document_id],
        )
        return [row["chunk_index"] for row in rows]

    def _update_index_metric(self) -> None:
        INDEX_SIZE.set(self.count())


__all__ = ["VectorStore"]
