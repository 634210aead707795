"""Background ingestion: extraction, segmentation, embedding, persistence."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path

from knowledge_tutor.core.config import Settings
from knowledge_tutor.core.errors import InvalidTransitionError, JobConflictError, StaleChunksError, TutorError
from knowledge_tutor.core.logging import get_logger, log_context
from knowledge_tutor.core.metrics import INGEST_DURATION, INGEST_JOBS
from knowledge_tutor.db.documents import DocumentRepository
from knowledge_tutor.db.reputation import ReputationLedger
from knowledge_tutor.events.emitter import COMPLETED, FAILED, PROCESSING_STARTED, PROGRESS, EventEmitter
from knowledge_tutor.ingest.embeddings import EmbeddingEngine
from knowledge_tutor.ingest.loaders import LoaderRegistry
from knowledge_tutor.ingest.segmenter import iter_batches, segment_text
from knowledge_tutor.ingest.types import ExtractedText, IngestJob, IngestOutcome, Segment
from knowledge_tutor.llm.synthesis import Completer, synthesize_persona, synthesize_summary
from knowledge_tutor.models.entities import Chunk, Document, DocumentStatus, Persona
from knowledge_tutor.retrieval.vector_store import VectorStore
from knowledge_tutor.utils.ids import new_id

logger = get_logger(__name__)

FAILED_MESSAGE = "Processing failed. Please try again."

PROGRESS_EXTRACTED = 10
PROGRESS_SEGMENTED = 25
PROGRESS_EMBEDDED = 70
PROGRESS_PERSONA = 85
PROGRESS_DONE = 100


class IngestionWorker:
    """Run ingestion jobs on a fixed-size thread pool.

    At most one job per document is in flight; a second submission for the
    same id is rejected rather than merged.
    """

    def __init__(
        self,
        settings: Settings,
        documents: DocumentRepository,
        vector_store: VectorStore,
        engine: EmbeddingEngine,
        emitter: EventEmitter,
        generator: Completer | None = None,
        reputation: ReputationLedger | None = None,
        loaders: LoaderRegistry | None = None,
    ) -> None:
        self.settings = settings
        self.documents = documents
        self.vector_store = vector_store
        self.engine = engine
        self.emitter = emitter
        self.generator = generator
        self.reputation = reputation
        self.loaders = loaders or LoaderRegistry()
        self._executor: ThreadPoolExecutor | None = None
        self._award_executor: ThreadPoolExecutor | None = None
        self._in_flight: dict[str, Future[IngestOutcome]] = {}
        self._lock = threading.Lock()

    # Job submission ---------------------------------------------------

    def submit(self, document_id: str, source_path: str | Path) -> Future[IngestOutcome]:
        """Queue a job for a QUEUED document whose raw file is already stored."""
        with self._lock:
            if document_id in self._in_flight:
                raise JobConflictError("An ingestion job is already in flight", document_id=document_id)
            # Read under the lock so a job finishing meanwhile cannot leave a stale QUEUED copy.
            document = self.documents.require(document_id)
            if document.status != DocumentStatus.QUEUED:
                raise JobConflictError(
                    f"Document is {document.status.value}; submit a retry instead",
                    document_id=document_id,
                )
            if self.vector_store.count(document_id):
                raise StaleChunksError("Partial chunks must be purged before retrying", document_id=document_id)
            job = IngestJob(document_id=document_id, source_path=Path(source_path))
            future = self._pool().submit(self._run_tracked, job)
            self._in_flight[document_id] = future
        logger.info("Queued ingestion job", extra=log_context(document_id=document_id, source=str(source_path)))
        return future

    def retry(self, document_id: str, source_path: str | Path | None = None) -> Future[IngestOutcome]:
        """Purge partial chunks, requeue a terminal document and submit a new job."""
        with self._lock:
            if document_id in self._in_flight:
                raise JobConflictError("An ingestion job is already in flight", document_id=document_id)
        current = self.documents.require(document_id)
        if not current.status.is_terminal:
            raise InvalidTransitionError(
                f"Only INDEXED or FAILED documents can be retried, not {current.status.value}",
                document_id=document_id,
            )
        purged = self.vector_store.delete_by_document(document_id)
        document = self.documents.reset_for_retry(document_id, str(source_path) if source_path else None)
        if document.source_path is None:
            raise JobConflictError("No source path recorded for retry", document_id=document_id)
        logger.info("Retrying ingestion after purging %s chunks", purged, extra=log_context(document_id=document_id))
        return self.submit(document_id, document.source_path)

    def is_in_flight(self, document_id: str) -> bool:
        with self._lock:
            return document_id in self._in_flight

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
        # Jobs are drained first so their awards are queued before this pool closes.
        with self._lock:
            awards, self._award_executor = self._award_executor, None
        if awards is not None:
            awards.shutdown(wait=wait)

    # Pipeline ---------------------------------------------------------

    def run(self, job: IngestJob) -> IngestOutcome:
        """Execute one job synchronously; fatal errors end in FAILED."""
        started = time.perf_counter()
        document = self.documents.require(job.document_id)
        owner_id = document.owner_id
        context = log_context(document_id=document.id, user_id=owner_id)
        try:
            self.documents.transition(document.id, DocumentStatus.PROCESSING)
            self.emitter.emit(owner_id, PROCESSING_STARTED, {"documentId": document.id})

            extracted = self.loaders.extract(job.source_path)
            self.documents.update_meta(
                document.id,
                page_count=extracted.page_count,
                word_count=extracted.word_count,
                language=extracted.language,
                size_bytes=extracted.size_bytes,
                mime=extracted.mime,
            )
            self._progress(document, PROGRESS_EXTRACTED)

            segments = segment_text(
                extracted.text,
                window=self.settings.chunk_size,
                overlap=self.settings.chunk_overlap,
                page_char_budget=self.settings.page_char_budget,
            )
            logger.info("Created %s chunks", len(segments), extra=context)
            self.documents.transition(document.id, DocumentStatus.VECTORIZING)
            self._progress(document, PROGRESS_SEGMENTED)

            stored = self._store_segments(document, segments)
            self._progress(document, PROGRESS_EMBEDDED)

            # Synthesis swallows its own failures; anything else here is fatal.
            persona = self._synthesize_persona(document, extracted)
            self._progress(document, PROGRESS_PERSONA)
            summary, key_points = self._synthesize_summary(document, extracted)

            final = self.documents.transition(document.id, DocumentStatus.INDEXED, progress=PROGRESS_DONE)
        except Exception as exc:
            return self._fail(document, exc, started)

        self.emitter.emit(owner_id, PROGRESS, {"documentId": final.id, "percent": PROGRESS_DONE})
        self.emitter.emit(
            owner_id,
            COMPLETED,
            {
                "documentId": final.id,
                "status": final.status.value,
                "persona": persona.to_dict() if persona else None,
                "summary": summary,
                "keyPoints": key_points,
                "meta": final.meta(),
            },
        )
        self._award_later(owner_id, self.settings.ingest_reward, "Uploaded and processed document")
        INGEST_JOBS.labels(status=DocumentStatus.INDEXED.value).inc()
        INGEST_DURATION.labels(mime=extracted.mime).observe(time.perf_counter() - started)
        logger.info("Indexed document with %s chunks", stored, extra=context)
        return IngestOutcome(
            document_id=document.id,
            status=DocumentStatus.INDEXED,
            chunks=stored,
            persona=persona is not None,
            summary=summary is not None,
        )

    def _store_segments(self, document: Document, segments: list[Segment]) -> int:
        stored = 0
        total = len(segments)
        for batch in iter_batches(segments, self.settings.embed_batch_size):
            vectors = self.engine.embed_batch([segment.text for segment in batch])
            chunks = [
                Chunk(
                    id=new_id("chk"),
                    document_id=document.id,
                    chunk_index=segment.index,
                    text=segment.text,
                    embedding=vector,
                    start_char=segment.start_char,
                    end_char=segment.end_char,
                    page=segment.page,
                )
                for segment, vector in zip(batch, vectors)
            ]
            self.vector_store.upsert_chunks(chunks)
            stored += len(chunks)
            self._progress(document, PROGRESS_SEGMENTED + (stored * 40) // total)
        return stored

    # Best-effort steps ------------------------------------------------

    def _synthesize_persona(self, document: Document, extracted: ExtractedText) -> Persona | None:
        if self.generator is None or not extracted.text.strip():
            return None
        try:
            persona = synthesize_persona(self.generator, extracted.text, self.settings.persona_excerpt_chars)
            self.documents.set_persona(document.id, persona)
        except Exception:
            logger.warning("Persona generation failed", exc_info=True, extra=log_context(document_id=document.id))
            return None
        logger.info("Generated persona %s", persona.name, extra=log_context(document_id=document.id))
        return persona

    def _synthesize_summary(self, document: Document, extracted: ExtractedText) -> tuple[str | None, list[str]]:
        if self.generator is None or not extracted.text.strip():
            return None, []
        try:
            summary, key_points = synthesize_summary(
                self.generator,
                extracted.text,
                excerpt_chars=self.settings.summary_excerpt_chars,
                key_point_limit=self.settings.key_point_limit,
            )
            self.documents.set_summary(document.id, summary, key_points)
        except Exception:
            logger.warning("Summary generation failed", exc_info=True, extra=log_context(document_id=document.id))
            return None, []
        return summary, key_points

    def _award_later(self, user_id: str, amount: int, reason: str) -> None:
        """Hand the reputation award to a side thread so the job never waits on it."""
        if self.reputation is None or amount <= 0:
            return
        with self._lock:
            if self._award_executor is None:
                self._award_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ingest-award")
            self._award_executor.submit(self._award, user_id, amount, reason)

    def _award(self, user_id: str, amount: int, reason: str) -> None:
        try:
            self.reputation.award(user_id, amount, reason)
        except Exception:
            logger.warning("Reputation award failed", exc_info=True, extra=log_context(user_id=user_id))

    # Helpers ----------------------------------------------------------

    def _progress(self, document: Document, percent: int) -> None:
        self.documents.record_progress(document.id, percent)
        self.emitter.emit(document.owner_id, PROGRESS, {"documentId": document.id, "percent": percent})

    def _fail(self, document: Document, exc: Exception, started: float) -> IngestOutcome:
        detail = exc.message if isinstance(exc, TutorError) else str(exc) or exc.__class__.__name__
        logger.error(
            "Ingestion failed: %s",
            detail,
            exc_info=exc,
            extra=log_context(document_id=document.id, user_id=document.owner_id),
        )
        try:
            self.documents.transition(document.id, DocumentStatus.FAILED, error=detail)
        except TutorError:
            logger.warning("Could not record failure", exc_info=True, extra=log_context(document_id=document.id))
        self.emitter.emit(document.owner_id, FAILED, {"documentId": document.id, "error": FAILED_MESSAGE})
        INGEST_JOBS.labels(status=DocumentStatus.FAILED.value).inc()
        INGEST_DURATION.labels(mime=document.mime or "unknown").observe(time.perf_counter() - started)
        return IngestOutcome(document_id=document.id, status=DocumentStatus.FAILED, detail=detail)

    def _run_tracked(self, job: IngestJob) -> IngestOutcome:
        try:
            return self.run(job)
        except Exception:
            logger.exception("Ingestion job crashed", extra=log_context(document_id=job.document_id))
            raise
        finally:
            with self._lock:
                self._in_flight.pop(job.document_id, None)

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.worker_concurrency,
                thread_name_prefix="ingest",
            )
        return self._executor


__all__ = ["IngestionWorker", "FAILED_MESSAGE"]
