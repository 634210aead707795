"""Per-user push events for live connections.

Delivery is best-effort: a listener that raises is logged and skipped, and
nothing is buffered for users without a live connection. Clients that miss
events read the authoritative document status instead.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable

from knowledge_tutor.core.logging import get_logger, log_context

logger = get_logger(__name__)

PROCESSING_STARTED = "processing-started"
PROGRESS = "progress"
COMPLETED = "completed"
FAILED = "failed"

Listener = Callable[[str, dict[str, Any]], None]


class EventEmitter:
    """Fan events out to the listeners registered for a user id."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.setdefault(user_id, [])
            if listener not in listeners:
                listeners.append(listener)

    def unsubscribe(self, user_id: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(user_id, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(user_id, None)

    def listener_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(user_id, []))

    def emit(self, user_id: str, event: str, data: dict[str, Any]) -> int:
        """Deliver ``event`` to every listener of ``user_id``; returns deliveries."""
        with self._lock:
            listeners = list(self._listeners.get(user_id, []))
        delivered = 0
        for listener in listeners:
            try:
                listener(event, data)
                delivered += 1
            except Exception:
                logger.warning("Dropped %s event", event, exc_info=True, extra=log_context(user_id=user_id))
        return delivered


class AsyncQueueListener:
    """Bridge events emitted from worker threads onto an asyncio queue."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None, maxsize: int = 256) -> None:
        self.loop = loop or asyncio.get_running_loop()
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)

    def __call__(self, event: str, data: dict[str, Any]) -> None:
        self.loop.call_soon_threadsafe(self._offer, {"event": event, "data": data})

    def _offer(self, frame: dict[str, Any]) -> None:
        if self.queue.full():
            logger.warning("Event queue full; dropping %s", frame["event"])
            return
        self.queue.put_nowait(frame)

    async def get(self) -> dict[str, Any]:
        return await self.queue.get()


__all__ = [
    "EventEmitter",
    "AsyncQueueListener",
    "Listener",
    "PROCESSING_STARTED",
    "PROGRESS",
    "COMPLETED",
    "FAILED",
]
