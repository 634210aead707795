"""WebSocket push channel for per-user ingestion events."""

from __future__ import annotations

import asyncio
import contextlib

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from knowledge_tutor.api.dependencies import get_event_emitter
from knowledge_tutor.core.logging import get_logger, log_context
from knowledge_tutor.events.emitter import AsyncQueueListener, EventEmitter
from knowledge_tutor.models.dto import EventFrame

logger = get_logger(__name__)

router = APIRouter()


@router.websocket("/events/{user_id}")
async def events(websocket: WebSocket, user_id: str, emitter: EventEmitter = Depends(get_event_emitter)) -> None:
    """Forward emitted events until the client disconnects.

    Delivery is best-effort; clients re-read document status after reconnecting.
    """
    await websocket.accept()
    listener = AsyncQueueListener()
    emitter.subscribe(user_id, listener)
    logger.info("Event channel opened", extra=log_context(user_id=user_id))
    sender = asyncio.create_task(_forward(websocket, listener))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Event channel closed", extra=log_context(user_id=user_id))
    finally:
        emitter.unsubscribe(user_id, listener)
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            await sender


async def _forward(websocket: WebSocket, listener: AsyncQueueListener) -> None:
    while True:
        frame = await listener.get()
        await websocket.send_json(EventFrame(**frame).model_dump())


__all__ = ["router"]
