"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from knowledge_tutor.models.entities import Conversation, Document, DocumentStatus, Message


class DocumentCreateRequest(BaseModel):
    source_path: str = Field(description="Path of the raw file, already durably stored")
    name: str | None = None
    mime: str | None = None


class RetryRequest(BaseModel):
    source_path: str | None = Field(default=None, description="Replacement path for the raw file")


class PersonaResponse(BaseModel):
    name: str
    tone: str
    behavior_prompt: str
    avatar_url: str | None = None


class DocumentStatusResponse(BaseModel):
    id: str
    status: DocumentStatus
    progress: int
    error: str | None = None
    page_count: int | None = None
    chunk_count: int = 0


class DocumentResponse(BaseModel):
    id: str
    name: str
    status: DocumentStatus
    progress: int
    error: str | None = None
    size_bytes: int | None = None
    mime: str | None = None
    page_count: int | None = None
    word_count: int | None = None
    language: str | None = None
    persona: PersonaResponse | None = None
    summary: str | None = None
    key_points: list[str] = Field(default_factory=list)
    query_count: int = 0
    last_accessed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_entity(cls, document: Document) -> "DocumentResponse":
        return cls(
            id=document.id,
            name=document.name,
            status=document.status,
            progress=document.progress,
            error=document.error,
            size_bytes=document.size_bytes,
            mime=document.mime,
            page_count=document.page_count,
            word_count=document.word_count,
            language=document.language,
            persona=PersonaResponse(**document.persona.to_dict()) if document.persona else None,
            summary=document.summary,
            key_points=document.key_points,
            query_count=document.query_count,
            last_accessed_at=document.last_accessed_at,
            created_at=document.created_at,
            updated_at=document.updated_at,
        )


class DeleteResponse(BaseModel):
    status: Literal["ok", "noop"]
    deleted: int


class ChatRequestBody(BaseModel):
    query: str = Field(min_length=1, max_length=4000)
    document_id: str | None = Field(default=None, alias="documentId")
    conversation_id: str | None = Field(default=None, alias="conversationId")
    model: str | None = None

    model_config = {"populate_by_name": True}


class CitationResponse(BaseModel):
    chunk_id: str
    page: int | None = None
    excerpt: str
    score: float


class MessageResponse(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    citations: list[CitationResponse] = Field(default_factory=list)
    created_at: datetime | None = None

    @classmethod
    def from_entity(cls, message: Message) -> "MessageResponse":
        return cls(
            role=message.role,
            content=message.content,
            citations=[CitationResponse(**citation.to_dict()) for citation in message.citations],
            created_at=message.created_at,
        )


class ConversationSummary(BaseModel):
    id: str
    document_id: str | None = None
    title: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ConversationResponse(ConversationSummary):
    messages: list[MessageResponse]

    @classmethod
    def from_entity(cls, conversation: Conversation) -> "ConversationResponse":
        return cls(
            id=conversation.id,
            document_id=conversation.document_id,
            title=conversation.title,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            messages=[MessageResponse.from_entity(message) for message in conversation.messages],
        )


class EventFrame(BaseModel):
    event: str
    data: dict[str, Any]


__all__ = [
    "DocumentCreateRequest",
    "RetryRequest",
    "PersonaResponse",
    "DocumentStatusResponse",
    "DocumentResponse",
    "DeleteResponse",
    "ChatRequestBody",
    "CitationResponse",
    "MessageResponse",
    "ConversationSummary",
    "ConversationResponse",
    "EventFrame",
]
