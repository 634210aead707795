"""API integration tests."""

from __future__ import annotations

import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import DIM, OWNER
from knowledge_tutor.api import dependencies as deps
from knowledge_tutor.app import app
from knowledge_tutor.cli.main import iter_sse_frames
from knowledge_tutor.ingest.embeddings import EmbeddingEngine

HEADERS = {"X-User-Id": OWNER}


@pytest.fixture
def client(encoder, generator) -> TestClient:
    settings = deps.get_app_settings()
    EmbeddingEngine._instances[settings.embedding_model] = EmbeddingEngine(
        settings.embedding_model, dim=DIM, loader=lambda name, device: encoder
    )
    deps._GENERATOR = generator
    with TestClient(app) as test_client:
        yield test_client


def _upload(client: TestClient, tmp_path: Path, text: str, name: str = "biology.txt") -> str:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    resp = client.post("/documents", json={"source_path": str(path)}, headers=HEADERS)
    assert resp.status_code == 202
    return resp.json()["id"]


def _wait_until_settled(client: TestClient, document_id: str, timeout: float = 10.0) -> dict:
    worker = deps.get_ingestion_worker()
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        payload = client.get(f"/documents/{document_id}/status", headers=HEADERS).json()
        if payload["status"] in ("INDEXED", "FAILED") and not worker.is_in_flight(document_id):
            return payload
        time.sleep(0.05)
    raise AssertionError(f"document {document_id} never settled")


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_owner_header_required(client: TestClient) -> None:
    assert client.get("/documents").status_code == 401


def test_upload_index_and_chat_flow(tmp_path: Path, client: TestClient, sample_text: str) -> None:
    document_id = _upload(client, tmp_path, sample_text)
    status = _wait_until_settled(client, document_id)
    assert status["status"] == "INDEXED"
    assert status["progress"] == 100
    assert status["chunk_count"] > 0

    document = client.get(f"/documents/{document_id}", headers=HEADERS).json()
    assert document["persona"]["name"] == "Professor Leaf"
    assert document["key_points"]

    resp = client.post(
        "/chat/stream",
        json={"query": "What does chlorophyll absorb?", "documentId": document_id},
        headers=HEADERS,
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    frames = iter_sse_frames(resp.text.splitlines())
    assert [f["content"] for f in frames if "content" in f]
    done = frames[-1]
    assert done["done"] is True and done["citations"]

    listing = client.get("/conversations", params={"documentId": document_id}, headers=HEADERS).json()
    assert [c["id"] for c in listing] == [done["conversationId"]]
    transcript = client.get(f"/conversations/{done['conversationId']}", headers=HEADERS).json()
    assert [m["role"] for m in transcript["messages"]] == ["user", "assistant"]

    # Rewards land off the request path; give them a moment.
    deadline = time.monotonic() + 5
    total = 0
    while time.monotonic() < deadline:
        total = client.get("/reputation", headers=HEADERS).json()["total"]
        if total >= 52:
            break
        time.sleep(0.05)
    assert total == 52


def test_chat_rejects_missing_and_unready_documents(client: TestClient) -> None:
    resp = client.post("/chat/stream", json={"query": "hi", "documentId": "doc_nope"}, headers=HEADERS)
    assert resp.status_code == 404
    pending = deps.get_document_repository().create(owner_id=OWNER, name="pending.txt")
    resp = client.post("/chat/stream", json={"query": "hi", "documentId": pending.id}, headers=HEADERS)
    assert resp.status_code == 409


def test_failed_upload_then_retry(tmp_path: Path, client: TestClient, sample_text: str) -> None:
    missing = tmp_path / "later.txt"
    resp = client.post("/documents", json={"source_path": str(missing)}, headers=HEADERS)
    document_id = resp.json()["id"]
    status = _wait_until_settled(client, document_id)
    assert status["status"] == "FAILED"
    assert "not found" in status["error"]

    missing.write_text(sample_text, encoding="utf-8")
    assert client.post(f"/documents/{document_id}/retry", headers=HEADERS).status_code == 202
    assert _wait_until_settled(client, document_id)["status"] == "INDEXED"


def test_delete_document(tmp_path: Path, client: TestClient, sample_text: str) -> None:
    document_id = _upload(client, tmp_path, sample_text)
    _wait_until_settled(client, document_id)
    resp = client.delete(f"/documents/{document_id}", headers=HEADERS)
    assert resp.json() == {"status": "ok", "deleted": 1}
    assert client.get(f"/documents/{document_id}/status", headers=HEADERS).status_code == 404
    assert deps.get_vector_store().count(document_id) == 0


def test_documents_are_private(tmp_path: Path, client: TestClient, sample_text: str) -> None:
    document_id = _upload(client, tmp_path, sample_text)
    _wait_until_settled(client, document_id)
    other = {"X-User-Id": "user-2"}
    assert client.get(f"/documents/{document_id}", headers=other).status_code == 404
    assert client.get("/documents", headers=other).json() == []


def test_events_pushed_over_websocket(tmp_path: Path, client: TestClient, sample_text: str) -> None:
    emitter = deps.get_event_emitter()
    with client.websocket_connect(f"/events/{OWNER}") as websocket:
        deadline = time.monotonic() + 5
        while emitter.listener_count(OWNER) == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        document_id = _upload(client, tmp_path, sample_text)
        received = []
        for _ in range(50):
            frame = websocket.receive_json()
            received.append(frame)
            if frame["event"] == "completed":
                break
    names = [frame["event"] for frame in received]
    assert names[0] == "processing-started"
    assert names[-1] == "completed"
    assert received[-1]["data"]["documentId"] == document_id
    percents = [frame["data"]["percent"] for frame in received if frame["event"] == "progress"]
    assert percents == sorted(percents) and percents[-1] == 100


def test_metrics_endpoint(client: TestClient) -> None:
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "ktut_requests_total" in resp.text
