"""Test fixtures for Knowledge Tutor."""

from __future__ import annotations

import hashlib
import re
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Sequence

import numpy as np
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from knowledge_tutor.core.errors import GenerationError  # noqa: E402

OWNER = "user-1"
DIM = 384
_TOKEN_RE = re.compile(r"\w+")


class FakeEncoder:
    """Bag-of-hashed-tokens encoder standing in for a sentence-transformers model."""

    def __init__(self, dim: int = DIM) -> None:
        self.dim = dim
        self.calls = 0

    def encode(self, texts: Sequence[str], **_: Any) -> np.ndarray:
        self.calls += 1
        matrix = np.zeros((len(texts), self.dim), dtype=np.float32)
        for row, text in enumerate(texts):
            for token in _TOKEN_RE.findall(text.lower()):
                digest = hashlib.md5(token.encode("utf-8")).digest()
                matrix[row, int.from_bytes(digest[:4], "little") % self.dim] += 1.0
        return matrix


class FakeGenerator:
    """Scripted generation client.

    ``fail_at`` raises GenerationError before yielding the fragment at that
    position; ``len(fragments)`` fails after the last fragment.
    """

    def __init__(
        self,
        fragments: Sequence[str] = ("Photosynthesis ", "turns light ", "into sugar."),
        fail_at: int | None = None,
        persona_reply: str = '```json\n{"name": "Professor Leaf", "tone": "enthusiastic", "behavior_prompt": "Explains plants with joy."}\n```',
        summary_reply: str = "- Plants use light\n- Chlorophyll absorbs it\n- Sugar is produced",
        complete_error: Exception | None = None,
    ) -> None:
        self.fragments = list(fragments)
        self.fail_at = fail_at
        self.persona_reply = persona_reply
        self.summary_reply = summary_reply
        self.complete_error = complete_error
        self.stream_calls: list[list[dict[str, str]]] = []
        self.complete_calls: list[list[dict[str, str]]] = []

    def complete(
        self,
        messages: Sequence[dict[str, str]],
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 300,
    ) -> str:
        self.complete_calls.append(list(messages))
        if self.complete_error is not None:
            raise self.complete_error
        if messages[-1]["content"].startswith("Summarize"):
            return self.summary_reply
        return self.persona_reply

    async def stream(
        self,
        messages: Sequence[dict[str, str]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        self.stream_calls.append(list(messages))
        for position, fragment in enumerate(self.fragments):
            if self.fail_at == position:
                raise GenerationError("upstream closed the stream")
            yield fragment
        if self.fail_at is not None and self.fail_at >= len(self.fragments):
            raise GenerationError("upstream closed the stream")


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("KTUT_DB_PATH", str(tmp_path / "kt.db"))
    monkeypatch.delenv("KTUT_CONFIG", raising=False)

    from knowledge_tutor.api import dependencies as deps
    from knowledge_tutor.core.config import get_settings
    from knowledge_tutor.ingest.embeddings import EmbeddingEngine

    EmbeddingEngine._instances.clear()
    get_settings.cache_clear()
    deps.reset_dependencies()
    yield
    deps.reset_dependencies()
    EmbeddingEngine._instances.clear()
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path):
    from knowledge_tutor.core.config import Settings

    return Settings(db_path=tmp_path / "kt.db")


@pytest.fixture
def db(settings):
    from knowledge_tutor.db.sqlite import SQLiteDatabase

    database = SQLiteDatabase(settings.db_path)
    database.ensure_schema()
    yield database
    database.close()


@pytest.fixture
def encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def engine(encoder: FakeEncoder):
    from knowledge_tutor.ingest.embeddings import EmbeddingEngine

    return EmbeddingEngine("fake-minilm", dim=DIM, loader=lambda name, device: encoder)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def emitter():
    from knowledge_tutor.events.emitter import EventEmitter

    return EventEmitter()


@pytest.fixture
def events(emitter) -> list[tuple[str, dict[str, Any]]]:
    """Events delivered to OWNER, in order."""
    received: list[tuple[str, dict[str, Any]]] = []
    emitter.subscribe(OWNER, lambda event, data: received.append((event, data)))
    return received


@pytest.fixture
def documents(db):
    from knowledge_tutor.db.documents import DocumentRepository

    return DocumentRepository(db)


@pytest.fixture
def conversations(db):
    from knowledge_tutor.db.conversations import ConversationRepository

    return ConversationRepository(db)


@pytest.fixture
def vector_store(db):
    from knowledge_tutor.retrieval.vector_store import VectorStore

    return VectorStore(db, dim=DIM)


@pytest.fixture
def reputation(db, emitter):
    from knowledge_tutor.db.reputation import ReputationLedger

    return ReputationLedger(db, emitter=emitter)


@pytest.fixture
def worker(settings, documents, vector_store, engine, emitter, generator, reputation):
    from knowledge_tutor.ingest.worker import IngestionWorker

    ingestion = IngestionWorker(
        settings=settings,
        documents=documents,
        vector_store=vector_store,
        engine=engine,
        emitter=emitter,
        generator=generator,
        reputation=reputation,
    )
    yield ingestion
    ingestion.shutdown(wait=True)


@pytest.fixture
def orchestrator(settings, documents, conversations, vector_store, engine, generator, reputation):
    from knowledge_tutor.chat.orchestrator import ChatOrchestrator

    return ChatOrchestrator(
        settings=settings,
        documents=documents,
        conversations=conversations,
        vector_store=vector_store,
        engine=engine,
        generator=generator,
        reputation=reputation,
    )


@pytest.fixture(scope="session")
def sample_text() -> str:
    return (
        "Photosynthesis is the process plants use to turn light into chemical energy. "
        "Chlorophyll in the chloroplasts absorbs sunlight. "
        "Carbon dioxide and water are converted into glucose and oxygen. "
    ) * 12


@pytest.fixture
def ingest_text(tmp_path: Path, documents, worker):
    """Write ``text`` to disk and run one ingestion job synchronously."""
    from knowledge_tutor.ingest.types import IngestJob

    def _ingest(text: str, name: str = "notes.txt", owner_id: str = OWNER):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        document = documents.create(owner_id=owner_id, name=name, source_path=str(path))
        outcome = worker.run(IngestJob(document_id=document.id, source_path=path))
        return documents.require(document.id), outcome

    return _ingest
