"""Tests for the ingestion worker state machine."""

import sqlite3
import threading
import time
from pathlib import Path

import pytest

from conftest import DIM, OWNER, FakeEncoder
from knowledge_tutor.core.errors import GenerationError, InvalidTransitionError, JobConflictError, StaleChunksError
from knowledge_tutor.ingest.embeddings import EmbeddingEngine
from knowledge_tutor.ingest.loaders import TextLoader
from knowledge_tutor.ingest.segmenter import segment_text
from knowledge_tutor.ingest.worker import FAILED_MESSAGE, PROGRESS_PERSONA, IngestionWorker
from knowledge_tutor.models.entities import Chunk, DocumentStatus
from knowledge_tutor.utils.text import normalize


class FlakyEncoder(FakeEncoder):
    """Fails on the ``fail_on``-th encode call until disarmed."""

    def __init__(self, fail_on: int | None = None) -> None:
        super().__init__()
        self.fail_on = fail_on

    def encode(self, texts, **kwargs):
        if self.fail_on is not None and self.calls + 1 == self.fail_on:
            self.calls += 1
            raise RuntimeError("encoder crashed")
        return super().encode(texts, **kwargs)


class GatedLoader(TextLoader):
    suffixes = (".gated",)

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def load(self, path: Path):
        self.entered.set()
        assert self.release.wait(timeout=5)
        return super().load(path)


def _percents(events) -> list[int]:
    return [data["percent"] for event, data in events if event == "progress"]


def test_happy_path_reaches_indexed(ingest_text, sample_text, vector_store, reputation, worker) -> None:
    document, outcome = ingest_text(sample_text)
    expected = segment_text(normalize(sample_text))

    assert outcome.status == DocumentStatus.INDEXED
    assert document.status == DocumentStatus.INDEXED
    assert document.progress == 100
    assert vector_store.count(document.id) == len(expected) == outcome.chunks
    assert vector_store.indices(document.id) == list(range(len(expected)))
    assert document.persona is not None and document.persona.name == "Professor Leaf"
    assert document.persona.avatar_url
    assert document.key_points == ["Plants use light", "Chlorophyll absorbs it", "Sugar is produced"]
    assert document.word_count and document.page_count == 2
    worker.shutdown()
    assert reputation.total(OWNER) == 50


def test_events_in_order(ingest_text, sample_text, events, worker) -> None:
    document, _ = ingest_text(sample_text)
    worker.shutdown()
    names = [event for event, _ in events]
    assert names[0] == "processing-started"
    assert names.index("completed") > names.index("processing-started")
    percents = _percents(events)
    assert percents == sorted(percents)
    for milestone in (10, 25, 70, 85, 100):
        assert milestone in percents
    completed = dict(events)["completed"]
    assert completed["documentId"] == document.id
    assert completed["persona"]["name"] == "Professor Leaf"
    assert completed["meta"]["name"] == "notes.txt"
    assert "xp-gained" in names


def test_missing_source_fails_job(tmp_path, documents, worker, vector_store, events) -> None:
    from knowledge_tutor.ingest.types import IngestJob

    missing = tmp_path / "gone.txt"
    document = documents.create(owner_id=OWNER, name="gone.txt", source_path=str(missing))
    outcome = worker.run(IngestJob(document_id=document.id, source_path=missing))

    stored = documents.require(document.id)
    assert outcome.status == DocumentStatus.FAILED
    assert stored.status == DocumentStatus.FAILED
    assert "not found" in stored.error
    assert vector_store.count(document.id) == 0
    assert ("failed", {"documentId": document.id, "error": FAILED_MESSAGE}) in events
    assert "completed" not in [event for event, _ in events]


def test_synthesis_failure_is_not_fatal(ingest_text, sample_text, generator) -> None:
    generator.complete_error = GenerationError("rate limited")
    document, outcome = ingest_text(sample_text)
    assert outcome.status == DocumentStatus.INDEXED
    assert document.persona is None
    assert document.summary is None
    assert outcome.chunks > 0


def test_blank_document_indexes_without_chunks(ingest_text, generator, vector_store) -> None:
    document, outcome = ingest_text("   \n\n  ")
    assert document.status == DocumentStatus.INDEXED
    assert vector_store.count(document.id) == 0
    assert generator.complete_calls == []


def test_batch_failure_then_retry(tmp_path, settings, documents, vector_store, emitter, sample_text) -> None:
    encoder = FlakyEncoder(fail_on=2)
    engine = EmbeddingEngine("flaky", dim=DIM, loader=lambda name, device: encoder)
    worker = IngestionWorker(settings, documents, vector_store, engine, emitter)
    path = tmp_path / "long.txt"
    path.write_text(sample_text * 3, encoding="utf-8")
    document = documents.create(owner_id=OWNER, name="long.txt", source_path=str(path))

    try:
        outcome = worker.submit(document.id, path).result(timeout=10)
        assert outcome.status == DocumentStatus.FAILED
        assert vector_store.count(document.id) == settings.embed_batch_size

        with pytest.raises(JobConflictError):
            worker.submit(document.id, path)
        documents.reset_for_retry(document.id)
        with pytest.raises(StaleChunksError):
            worker.submit(document.id, path)

        encoder.fail_on = None
        documents.transition(document.id, DocumentStatus.FAILED, error="abandoned")
        retried = worker.retry(document.id).result(timeout=10)
    finally:
        worker.shutdown()

    expected = len(segment_text(normalize(sample_text * 3)))
    assert retried.status == DocumentStatus.INDEXED
    assert vector_store.indices(document.id) == list(range(expected))
    assert documents.require(document.id).error is None


def test_second_submission_for_same_document_conflicts(tmp_path, documents, worker) -> None:
    gate = GatedLoader()
    worker.loaders.register(gate)
    path = tmp_path / "slow.gated"
    path.write_text("A slow document about mitochondria.", encoding="utf-8")
    document = documents.create(owner_id=OWNER, name="slow.gated", source_path=str(path))

    future = worker.submit(document.id, path)
    assert gate.entered.wait(timeout=5)
    assert worker.is_in_flight(document.id)
    with pytest.raises(JobConflictError):
        worker.submit(document.id, path)
    with pytest.raises(JobConflictError):
        worker.retry(document.id)
    gate.release.set()

    assert future.result(timeout=10).status == DocumentStatus.INDEXED


def test_terminal_documents_do_not_move_backwards(ingest_text, sample_text, documents, worker) -> None:
    document, _ = ingest_text(sample_text)
    with pytest.raises(InvalidTransitionError):
        documents.transition(document.id, DocumentStatus.PROCESSING)
    with pytest.raises(JobConflictError):
        worker.submit(document.id, document.source_path)
    assert documents.require(document.id).status == DocumentStatus.INDEXED


def test_submission_racing_a_finishing_job_is_rejected(tmp_path, documents, worker, events, monkeypatch) -> None:
    gate = GatedLoader()
    worker.loaders.register(gate)
    path = tmp_path / "quick.gated"
    path.write_text("   ", encoding="utf-8")
    document = documents.create(owner_id=OWNER, name="quick.gated", source_path=str(path))
    first = worker.submit(document.id, path)
    assert gate.entered.wait(timeout=5)

    # The rival reads the document, then stalls until the first job has indexed it.
    real_require = documents.require
    rival_read = threading.Event()

    def stalling_require(document_id: str):
        snapshot = real_require(document_id)
        if threading.current_thread().name == "rival":
            rival_read.set()
            deadline = time.monotonic() + 5
            while real_require(document_id).status != DocumentStatus.INDEXED and time.monotonic() < deadline:
                time.sleep(0.01)
        return snapshot

    monkeypatch.setattr(documents, "require", stalling_require)
    conflicts: list[JobConflictError] = []

    def rival() -> None:
        try:
            worker.submit(document.id, path)
        except JobConflictError as exc:
            conflicts.append(exc)

    thread = threading.Thread(target=rival, name="rival")
    thread.start()
    deadline = time.monotonic() + 5
    while not rival_read.is_set() and thread.is_alive() and time.monotonic() < deadline:
        time.sleep(0.01)
    gate.release.set()
    thread.join(timeout=10)

    assert first.result(timeout=10).status == DocumentStatus.INDEXED
    worker.shutdown()
    assert len(conflicts) == 1
    assert real_require(document.id).status == DocumentStatus.INDEXED
    assert "failed" not in [event for event, _ in events]


def test_bookkeeping_error_after_embedding_marks_failed(
    ingest_text, sample_text, documents, worker, vector_store, events, monkeypatch
) -> None:
    real_record = documents.record_progress

    def locked_at_persona_step(document_id: str, progress: int) -> None:
        if progress == PROGRESS_PERSONA:
            raise sqlite3.OperationalError("database is locked")
        real_record(document_id, progress)

    monkeypatch.setattr(documents, "record_progress", locked_at_persona_step)
    document, outcome = ingest_text(sample_text)

    assert outcome.status == DocumentStatus.FAILED
    assert document.status == DocumentStatus.FAILED
    assert "database is locked" in document.error
    assert ("failed", {"documentId": document.id, "error": FAILED_MESSAGE}) in events
    assert "completed" not in [event for event, _ in events]

    monkeypatch.setattr(documents, "record_progress", real_record)
    retried = worker.retry(document.id).result(timeout=10)
    expected = len(segment_text(normalize(sample_text)))
    assert retried.status == DocumentStatus.INDEXED
    assert vector_store.indices(document.id) == list(range(expected))


def test_retry_of_unfinished_document_keeps_its_chunks(documents, vector_store, engine, worker) -> None:
    document = documents.create(owner_id=OWNER, name="half.txt", source_path="half.txt")
    documents.transition(document.id, DocumentStatus.PROCESSING)
    documents.transition(document.id, DocumentStatus.VECTORIZING)
    text = "Cells divide by mitosis."
    vector_store.upsert_chunks(
        [
            Chunk(
                id="chk_half",
                document_id=document.id,
                chunk_index=0,
                text=text,
                embedding=engine.embed(text),
                start_char=0,
                end_char=len(text),
                page=1,
            )
        ]
    )

    with pytest.raises(InvalidTransitionError):
        worker.retry(document.id)
    assert vector_store.count(document.id) == 1
    assert documents.require(document.id).status == DocumentStatus.VECTORIZING


def test_ingest_reward_does_not_hold_up_the_job(ingest_text, sample_text, worker, reputation, monkeypatch) -> None:
    release = threading.Event()
    real_award = reputation.award

    def slow_award(user_id: str, amount: int, reason: str) -> int:
        assert release.wait(timeout=5)
        return real_award(user_id, amount, reason)

    monkeypatch.setattr(reputation, "award", slow_award)
    document, outcome = ingest_text(sample_text)

    assert outcome.status == DocumentStatus.INDEXED
    assert document.status == DocumentStatus.INDEXED
    assert reputation.total(OWNER) == 0
    release.set()
    worker.shutdown()
    assert reputation.total(OWNER) == 50
