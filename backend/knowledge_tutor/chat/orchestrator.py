"""Retrieval-augmented chat: retrieve, prompt, stream, persist."""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Protocol, Sequence

from knowledge_tutor.chat.prompts import build_context, build_messages
from knowledge_tutor.core.config import Settings
from knowledge_tutor.core.errors import DocumentNotFoundError, DocumentNotReadyError, GenerationError, TutorError
from knowledge_tutor.core.logging import get_logger, log_context
from knowledge_tutor.core.metrics import CHAT_FIRST_TOKEN, CHAT_STREAMS
from knowledge_tutor.db.conversations import TITLE_CHARS, ConversationRepository
from knowledge_tutor.db.documents import DocumentRepository
from knowledge_tutor.db.reputation import ReputationLedger
from knowledge_tutor.ingest.embeddings import EmbeddingEngine
from knowledge_tutor.models.entities import Citation, Document, DocumentStatus, Message, ScoredChunk
from knowledge_tutor.retrieval.vector_store import VectorStore
from knowledge_tutor.utils.text import excerpt, sanitize_query

logger = get_logger(__name__)

EMBEDDING_FAILED_MESSAGE = "Could not process the question. Please try again."
GENERATION_FAILED_MESSAGE = "The tutor is unavailable right now. Please try again."
PERSIST_FAILED_MESSAGE = "The answer could not be saved."

Frame = dict[str, Any]


class StreamingClient(Protocol):
    def stream(
        self,
        messages: Sequence[dict[str, str]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]: ...


@dataclass(slots=True)
class ChatRequest:
    query: str
    owner_id: str
    document_id: str | None = None
    conversation_id: str | None = None
    model: str | None = None


class ChatOrchestrator:
    """Answer one question as an ordered stream of frames.

    Frames are ``{"content": str}`` fragments followed by exactly one terminal
    frame, either ``{"done": True, "conversationId": ..., "citations": [...]}``
    or ``{"error": str}``.
    """

    def __init__(
        self,
        settings: Settings,
        documents: DocumentRepository,
        conversations: ConversationRepository,
        vector_store: VectorStore,
        engine: EmbeddingEngine,
        generator: StreamingClient,
        reputation: ReputationLedger | None = None,
    ) -> None:
        self.settings = settings
        self.documents = documents
        self.conversations = conversations
        self.vector_store = vector_store
        self.engine = engine
        self.generator = generator
        self.reputation = reputation

    def start(self, request: ChatRequest) -> AsyncGenerator[Frame, None]:
        """Check preconditions, then return the frame stream.

        Missing or unfinished documents raise here, before any frame exists.
        """
        document = self.resolve_document(request)
        return self._frames(request, document)

    def resolve_document(self, request: ChatRequest) -> Document | None:
        if request.document_id is None:
            return None
        document = self.documents.get_owned(request.document_id, request.owner_id)
        if document is None:
            raise DocumentNotFoundError("Document not found", document_id=request.document_id)
        if document.status != DocumentStatus.INDEXED:
            raise DocumentNotReadyError(
                f"Document is {document.status.value}, not ready for chat",
                document_id=request.document_id,
            )
        return document

    async def _frames(self, request: ChatRequest, document: Document | None) -> AsyncGenerator[Frame, None]:
        started = time.perf_counter()
        context = log_context(
            user_id=request.owner_id,
            document_id=request.document_id,
            conversation_id=request.conversation_id,
        )
        query = sanitize_query(request.query)

        try:
            query_vector = await asyncio.to_thread(self.engine.embed, query)
        except TutorError as exc:
            logger.error("Query embedding failed: %s", exc, extra=context)
            CHAT_STREAMS.labels(outcome="embedding_error").inc()
            yield {"error": EMBEDDING_FAILED_MESSAGE}
            return

        hits: list[ScoredChunk] = []
        if document is not None:
            hits = await self._retrieve(document, query_vector)
            await self._record_query(document)
        citations = [
            Citation(
                chunk_id=hit.chunk_id,
                page=hit.page,
                excerpt=excerpt(hit.text, self.settings.citation_excerpt_chars),
                score=hit.score,
            )
            for hit in hits
        ]
        history = await self._history(request)
        messages = build_messages(
            query,
            persona=document.persona if document else None,
            context=build_context(hits),
            history=history,
        )

        parts: list[str] = []
        outcome = "completed"
        try:
            async with aclosing(self.generator.stream(messages, model=request.model)) as fragments:
                async for fragment in fragments:
                    if not parts:
                        CHAT_FIRST_TOKEN.observe(time.perf_counter() - started)
                    parts.append(fragment)
                    yield {"content": fragment}
        except GenerationError as exc:
            if not parts:
                logger.error("Generation failed before the first token: %s", exc, extra=context)
                CHAT_STREAMS.labels(outcome="generation_error").inc()
                yield {"error": GENERATION_FAILED_MESSAGE}
                return
            logger.warning("Stream interrupted after %s fragments: %s", len(parts), exc, extra=context)
            outcome = "truncated"
        except (GeneratorExit, asyncio.CancelledError):
            # Client went away; keep what was produced. No awaiting from here on.
            logger.info("Client disconnected mid-stream", extra=context)
            CHAT_STREAMS.labels(outcome="cancelled").inc()
            try:
                self._persist(request, document, query, "".join(parts), citations)
            except Exception:
                logger.warning("Could not persist partial answer", exc_info=True, extra=context)
            raise

        try:
            conversation_id = await asyncio.to_thread(
                self._persist, request, document, query, "".join(parts), citations
            )
        except Exception:
            logger.exception("Could not persist exchange", extra=context)
            CHAT_STREAMS.labels(outcome="persistence_error").inc()
            yield {"error": PERSIST_FAILED_MESSAGE}
            return

        CHAT_STREAMS.labels(outcome=outcome).inc()
        self._award_later(request.owner_id)
        logger.info(
            "Answered with %s citations",
            len(citations),
            extra={**context, **log_context(conversation_id=conversation_id)},
        )
        yield {
            "done": True,
            "conversationId": conversation_id,
            "citations": [citation.to_dict() for citation in citations],
        }

    async def _retrieve(self, document: Document, query_vector: list[float]) -> list[ScoredChunk]:
        try:
            return await asyncio.to_thread(
                self.vector_store.query_top_k,
                document.id,
                query_vector,
                self.settings.top_k,
                self.settings.candidate_pool,
            )
        except Exception:
            logger.warning("Retrieval failed; answering without context", exc_info=True, extra=log_context(document_id=document.id))
            return []

    async def _record_query(self, document: Document) -> None:
        try:
            await asyncio.to_thread(self.documents.record_query, document.id)
        except Exception:
            logger.warning("Could not record query", exc_info=True, extra=log_context(document_id=document.id))

    async def _history(self, request: ChatRequest) -> list[Message]:
        if not request.conversation_id:
            return []
        try:
            return await asyncio.to_thread(
                self.conversations.recent_messages,
                request.conversation_id,
                request.owner_id,
                self.settings.history_turns,
            )
        except Exception:
            logger.warning(
                "Could not load conversation history",
                exc_info=True,
                extra=log_context(conversation_id=request.conversation_id),
            )
            return []

    def _persist(
        self,
        request: ChatRequest,
        document: Document | None,
        query: str,
        answer: str,
        citations: list[Citation],
    ) -> str:
        exchange = [
            Message(role="user", content=query),
            Message(role="assistant", content=answer, citations=citations),
        ]
        if request.conversation_id and self.conversations.append(request.conversation_id, request.owner_id, exchange):
            return request.conversation_id
        return self.conversations.create(
            request.owner_id,
            document.id if document else None,
            query[:TITLE_CHARS],
            exchange,
        )

    def _award_later(self, user_id: str) -> None:
        if self.reputation is None or self.settings.chat_reward <= 0:
            return
        asyncio.get_running_loop().run_in_executor(None, self._award, user_id)

    def _award(self, user_id: str) -> None:
        try:
            self.reputation.award(user_id, self.settings.chat_reward, "Asked a question")
        except Exception:
            logger.warning("Reputation award failed", exc_info=True, extra=log_context(user_id=user_id))


__all__ = ["ChatOrchestrator", "ChatRequest", "Frame"]
