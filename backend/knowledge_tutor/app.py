"""FastAPI application setup for Knowledge Tutor."""

from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from knowledge_tutor.api.dependencies import (
    get_app_settings,
    get_chat_orchestrator,
    get_database,
    get_ingestion_worker,
    reset_dependencies,
)
from knowledge_tutor.api.routes_admin import router as admin_router
from knowledge_tutor.api.routes_chat import router as chat_router
from knowledge_tutor.api.routes_documents import router as documents_router
from knowledge_tutor.api.routes_events import router as events_router
from knowledge_tutor.core.errors import (
    DocumentNotFoundError,
    DocumentNotReadyError,
    InvalidTransitionError,
    JobConflictError,
    TutorError,
    VectorStoreUsageError,
)
from knowledge_tutor.core.logging import configure_logging, get_logger
from knowledge_tutor.core.metrics import REQUEST_COUNT

configure_logging()
logger = get_logger(__name__)

_STATUS_CODES: list[tuple[type[TutorError], int]] = [
    (DocumentNotFoundError, 404),
    (DocumentNotReadyError, 409),
    (JobConflictError, 409),
    (InvalidTransitionError, 409),
    (VectorStoreUsageError, 400),
]

app = FastAPI(
    title="Knowledge Tutor",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(documents_router, prefix="/documents", tags=["documents"])
app.include_router(chat_router, prefix="", tags=["chat"])
app.include_router(events_router, prefix="", tags=["events"])
app.include_router(admin_router, prefix="", tags=["admin"])


@app.middleware("http")
async def count_requests(request: Request, call_next):
    response = await call_next(request)
    route = request.scope.get("route")
    REQUEST_COUNT.labels(
        endpoint=getattr(route, "path", request.url.path),
        method=request.method,
        status=str(response.status_code),
    ).inc()
    return response


@app.exception_handler(TutorError)
async def tutor_error_handler(request: Request, exc: TutorError) -> JSONResponse:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status_code, content={"detail": exc.message})
    logger.error("Unhandled %s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": exc.message})


@app.on_event("startup")
async def startup() -> None:
    """Build core singletons on startup; the embedding model still loads lazily."""
    started = time.perf_counter()
    get_app_settings()
    get_database()
    get_ingestion_worker()
    get_chat_orchestrator()
    logger.info("Startup finished in %.2fs", time.perf_counter() - started)


@app.on_event("shutdown")
async def shutdown() -> None:
    reset_dependencies()


@app.get("/health", tags=["admin"])
def health() -> dict[str, bool]:
    """Simple liveness check."""
    return {"ok": True}
