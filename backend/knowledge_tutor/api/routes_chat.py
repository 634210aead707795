"""Streaming chat and conversation routes."""

from __future__ import annotations

from contextlib import aclosing
from typing import AsyncGenerator, AsyncIterator

import orjson
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from knowledge_tutor.api.dependencies import get_chat_orchestrator, get_conversation_repository, get_owner_id
from knowledge_tutor.chat.orchestrator import ChatOrchestrator, ChatRequest, Frame
from knowledge_tutor.db.conversations import ConversationRepository
from knowledge_tutor.models.dto import ChatRequestBody, ConversationResponse, ConversationSummary

router = APIRouter()


@router.post("/chat/stream", summary="Stream a grounded answer as server-sent events")
async def chat_stream(
    body: ChatRequestBody,
    owner_id: str = Depends(get_owner_id),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
) -> StreamingResponse:
    request = ChatRequest(
        query=body.query,
        owner_id=owner_id,
        document_id=body.document_id,
        conversation_id=body.conversation_id,
        model=body.model,
    )
    # Raises not-found / not-ready before any frame is sent.
    frames = orchestrator.start(request)
    return StreamingResponse(
        _sse(frames),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/conversations", response_model=list[ConversationSummary], summary="List conversations")
async def list_conversations(
    document_id: str | None = Query(default=None, alias="documentId"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    owner_id: str = Depends(get_owner_id),
    conversations: ConversationRepository = Depends(get_conversation_repository),
) -> list[ConversationSummary]:
    return [
        ConversationSummary(
            id=conversation.id,
            document_id=conversation.document_id,
            title=conversation.title,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )
        for conversation in conversations.list_for_user(owner_id, document_id, limit=limit, offset=offset)
    ]


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse, summary="Full transcript")
async def get_conversation(
    conversation_id: str,
    owner_id: str = Depends(get_owner_id),
    conversations: ConversationRepository = Depends(get_conversation_repository),
) -> ConversationResponse:
    conversation = conversations.get(conversation_id, owner_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return ConversationResponse.from_entity(conversation)


async def _sse(frames: AsyncGenerator[Frame, None]) -> AsyncIterator[bytes]:
    # Close the frame generator here so a disconnect persists the partial answer right away.
    async with aclosing(frames) as stream:
        async for frame in stream:
            yield b"data: " + orjson.dumps(frame) + b"\n\n"


__all__ = ["router"]
