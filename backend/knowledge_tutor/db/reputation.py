"""Reputation awards recorded for document owners and chat participants."""

from __future__ import annotations

from knowledge_tutor.core.logging import get_logger, log_context
from knowledge_tutor.db.sqlite import SQLiteDatabase
from knowledge_tutor.events.emitter import EventEmitter
from knowledge_tutor.utils.ids import new_id
from knowledge_tutor.utils.time import now_ms

logger = get_logger(__name__)


class ReputationLedger:
    """Append-only ledger of reputation bonuses.

    Scoring rules live elsewhere; this only records the award and tells the
    user about it.
    """

    def __init__(self, db: SQLiteDatabase, emitter: EventEmitter | None = None) -> None:
        self.db = db
        self.emitter = emitter

    def award(self, user_id: str, amount: int, reason: str) -> int:
        self.db.execute(
            "INSERT INTO reputation_events (id, user_id, amount, reason, created_at) VALUES (?, ?, ?, ?, ?)",
            [new_id("rep"), user_id, amount, reason, now_ms()],
        )
        self.db.commit()
        total = self.total(user_id)
        logger.info("Awarded %s reputation: %s", amount, reason, extra=log_context(user_id=user_id))
        if self.emitter is not None:
            self.emitter.emit(user_id, "xp-gained", {"amount": amount, "reason": reason, "total": total})
        return total

    def total(self, user_id: str) -> int:
        row = self.db.query_one(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM reputation_events WHERE user_id = ?",
            [user_id],
        )
        return int(row["total"]) if row else 0


__all__ = ["ReputationLedger"]
