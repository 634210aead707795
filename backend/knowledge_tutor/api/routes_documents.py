"""Document ingestion and lifecycle routes."""

from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException

from knowledge_tutor.api.dependencies import (
    get_document_repository,
    get_ingestion_worker,
    get_owner_id,
    get_vector_store,
)
from knowledge_tutor.core.logging import get_logger, log_context
from knowledge_tutor.db.documents import DocumentRepository
from knowledge_tutor.ingest.worker import IngestionWorker
from knowledge_tutor.models.dto import (
    DeleteResponse,
    DocumentCreateRequest,
    DocumentResponse,
    DocumentStatusResponse,
    RetryRequest,
)
from knowledge_tutor.models.entities import Document
from knowledge_tutor.retrieval.vector_store import VectorStore

logger = get_logger(__name__)

router = APIRouter()


@router.post("", response_model=DocumentResponse, status_code=202, summary="Register a stored file and queue ingestion")
async def create_document(
    request: DocumentCreateRequest,
    owner_id: str = Depends(get_owner_id),
    documents: DocumentRepository = Depends(get_document_repository),
    worker: IngestionWorker = Depends(get_ingestion_worker),
) -> DocumentResponse:
    path = Path(request.source_path).expanduser()
    size = path.stat().st_size if path.is_file() else None
    document = documents.create(
        owner_id=owner_id,
        name=request.name or path.name,
        source_path=str(path),
        size_bytes=size,
        mime=request.mime,
    )
    worker.submit(document.id, path)
    logger.info("Accepted upload %s", document.name, extra=log_context(document_id=document.id, user_id=owner_id))
    return DocumentResponse.from_entity(documents.require(document.id))


@router.get("", response_model=list[DocumentResponse], summary="List the caller's documents")
async def list_documents(
    owner_id: str = Depends(get_owner_id),
    documents: DocumentRepository = Depends(get_document_repository),
) -> list[DocumentResponse]:
    return [DocumentResponse.from_entity(document) for document in documents.list_for_owner(owner_id)]


@router.get("/{document_id}/status", response_model=DocumentStatusResponse, summary="Authoritative processing status")
async def document_status(
    document_id: str,
    owner_id: str = Depends(get_owner_id),
    documents: DocumentRepository = Depends(get_document_repository),
    vector_store: VectorStore = Depends(get_vector_store),
) -> DocumentStatusResponse:
    document = _owned(documents, document_id, owner_id)
    return DocumentStatusResponse(
        id=document.id,
        status=document.status,
        progress=document.progress,
        error=document.error,
        page_count=document.page_count,
        chunk_count=vector_store.count(document.id),
    )


@router.get("/{document_id}", response_model=DocumentResponse, summary="Document with persona and summary")
async def get_document(
    document_id: str,
    owner_id: str = Depends(get_owner_id),
    documents: DocumentRepository = Depends(get_document_repository),
) -> DocumentResponse:
    return DocumentResponse.from_entity(_owned(documents, document_id, owner_id))


@router.delete("/{document_id}", response_model=DeleteResponse, summary="Remove a document, its chunks and conversations")
async def delete_document(
    document_id: str,
    owner_id: str = Depends(get_owner_id),
    documents: DocumentRepository = Depends(get_document_repository),
    worker: IngestionWorker = Depends(get_ingestion_worker),
) -> DeleteResponse:
    document = _owned(documents, document_id, owner_id)
    if worker.is_in_flight(document.id):
        raise HTTPException(status_code=409, detail="Document is still being processed")
    deleted = documents.delete(document.id)
    logger.info("Deleted document", extra=log_context(document_id=document.id, user_id=owner_id))
    return DeleteResponse(status="ok" if deleted else "noop", deleted=deleted)


@router.post("/{document_id}/retry", response_model=DocumentResponse, status_code=202, summary="Requeue a finished document")
async def retry_document(
    document_id: str,
    request: RetryRequest | None = None,
    owner_id: str = Depends(get_owner_id),
    documents: DocumentRepository = Depends(get_document_repository),
    worker: IngestionWorker = Depends(get_ingestion_worker),
) -> DocumentResponse:
    document = _owned(documents, document_id, owner_id)
    source_path = request.source_path if request else None
    worker.retry(document.id, Path(source_path).expanduser() if source_path else None)
    return DocumentResponse.from_entity(documents.require(document.id))


def _owned(documents: DocumentRepository, document_id: str, owner_id: str) -> Document:
    document = documents.get_owned(document_id, owner_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return document


__all__ = ["router"]
