"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Header, HTTPException

from knowledge_tutor.chat.orchestrator import ChatOrchestrator
from knowledge_tutor.core.config import Settings, get_settings
from knowledge_tutor.db.conversations import ConversationRepository
from knowledge_tutor.db.documents import DocumentRepository
from knowledge_tutor.db.reputation import ReputationLedger
from knowledge_tutor.db.sqlite import SQLiteDatabase
from knowledge_tutor.events.emitter import EventEmitter
from knowledge_tutor.ingest.embeddings import EmbeddingEngine
from knowledge_tutor.ingest.worker import IngestionWorker
from knowledge_tutor.llm.client import GenerationClient
from knowledge_tutor.retrieval.vector_store import VectorStore

_DB: SQLiteDatabase | None = None
_EMITTER: EventEmitter | None = None
_GENERATOR: GenerationClient | None = None
_WORKER: IngestionWorker | None = None
_ORCHESTRATOR: ChatOrchestrator | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


def get_database() -> SQLiteDatabase:
    global _DB
    if _DB is None:
        settings = get_app_settings()
        db = SQLiteDatabase(settings.db_path)
        db.ensure_schema()
        _DB = db
    return _DB


def get_event_emitter() -> EventEmitter:
    global _EMITTER
    if _EMITTER is None:
        _EMITTER = EventEmitter()
    return _EMITTER


def get_embedding_engine() -> EmbeddingEngine:
    settings = get_app_settings()
    return EmbeddingEngine.get(settings.embedding_model, dim=settings.embedding_dim, device=settings.embedding_device)


def get_generation_client() -> GenerationClient:
    global _GENERATOR
    if _GENERATOR is None:
        _GENERATOR = GenerationClient(get_app_settings())
    return _GENERATOR


def get_document_repository() -> DocumentRepository:
    return DocumentRepository(get_database())


def get_conversation_repository() -> ConversationRepository:
    return ConversationRepository(get_database())


def get_vector_store() -> VectorStore:
    return VectorStore(get_database(), dim=get_app_settings().embedding_dim)


def get_reputation_ledger() -> ReputationLedger:
    return ReputationLedger(get_database(), emitter=get_event_emitter())


def get_ingestion_worker() -> IngestionWorker:
    global _WORKER
    if _WORKER is None:
        _WORKER = IngestionWorker(
            settings=get_app_settings(),
            documents=get_document_repository(),
            vector_store=get_vector_store(),
            engine=get_embedding_engine(),
            emitter=get_event_emitter(),
            generator=get_generation_client(),
            reputation=get_reputation_ledger(),
        )
    return _WORKER


def get_chat_orchestrator() -> ChatOrchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        _ORCHESTRATOR = ChatOrchestrator(
            settings=get_app_settings(),
            documents=get_document_repository(),
            conversations=get_conversation_repository(),
            vector_store=get_vector_store(),
            engine=get_embedding_engine(),
            generator=get_generation_client(),
            reputation=get_reputation_ledger(),
        )
    return _ORCHESTRATOR


def get_owner_id(x_user_id: str | None = Header(default=None)) -> str:
    """Owner identity is asserted by the upstream authentication layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def reset_dependencies() -> None:
    """Drop cached singletons so the next request rebuilds them."""
    global _DB, _EMITTER, _GENERATOR, _WORKER, _ORCHESTRATOR
    if _WORKER is not None:
        _WORKER.shutdown(wait=True)
    if _DB is not None:
        _DB.close()
    _DB = _EMITTER = _GENERATOR = _WORKER = _ORCHESTRATOR = None
    get_app_settings.cache_clear()


__all__ = [
    "get_app_settings",
    "get_database",
    "get_event_emitter",
    "get_embedding_engine",
    "get_generation_client",
    "get_document_repository",
    "get_conversation_repository",
    "get_vector_store",
    "get_reputation_ledger",
    "get_ingestion_worker",
    "get_chat_orchestrator",
    "get_owner_id",
    "reset_dependencies",
]
