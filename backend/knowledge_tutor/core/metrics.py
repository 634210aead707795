"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

REQUEST_COUNT = Counter(
    "ktut_requests_total",
    "Total HTTP requests",
    labelnames=("endpoint", "method", "status"),
    registry=REGISTRY,
)

INGEST_JOBS = Counter(
    "ktut_ingest_jobs_total",
    "Ingestion jobs by terminal status",
    labelnames=("status",),
    registry=REGISTRY,
)

INGEST_DURATION = Histogram(
    "ktut_ingest_duration_seconds",
    "Ingestion job duration",
    labelnames=("mime",),
    registry=REGISTRY,
)

INDEX_SIZE = Gauge(
    "ktut_index_chunks",
    "Number of chunks stored in the vector store",
    registry=REGISTRY,
)

CHAT_STREAMS = Counter(
    "ktut_chat_streams_total",
    "Chat exchanges by outcome",
    labelnames=("outcome",),
    registry=REGISTRY,
)

CHAT_FIRST_TOKEN = Histogram(
    "ktut_chat_first_token_seconds",
    "Time from request to first streamed token",
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "REQUEST_COUNT",
    "INGEST_JOBS",
    "INGEST_DURATION",
    "INDEX_SIZE",
    "CHAT_STREAMS",
    "CHAT_FIRST_TOKEN",
    "metrics_response",
]
