"""CLI entrypoint for Knowledge Tutor."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

import requests
import typer

app = typer.Typer(name="ktut", help="Knowledge Tutor command-line interface")
docs_app = typer.Typer(name="docs")
app.add_typer(docs_app, name="docs")

DEFAULT_HOST = "http://127.0.0.1:8000"


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip('/')
    env_host = os.environ.get("KTUT_HOST")
    if env_host:
        return env_host.rstrip('/')
    return DEFAULT_HOST


def _resolve_user(override: Optional[str]) -> str:
    user = override or os.environ.get("KTUT_USER")
    if not user:
        typer.echo("No user id: pass --user or set KTUT_USER", err=True)
        raise typer.Exit(code=2)
    return user


def _request(method: str, path: str, host: Optional[str] = None, user: Optional[str] = None, **kwargs) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}{path}"
    headers = kwargs.pop("headers", {})
    headers["X-User-Id"] = _resolve_user(user)
    resp = requests.request(method, url, timeout=kwargs.pop("timeout", 60), headers=headers, **kwargs)
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def iter_sse_frames(lines) -> list[dict]:
    """Decode ``data: <json>`` lines from a server-sent event stream."""
    frames = []
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        if not line or not line.startswith("data:"):
            continue
        frames.append(json.loads(line[len("data:") :].strip()))
    return frames


@app.command()
def ingest(
    path: Path = typer.Argument(..., help="Stored file to ingest"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
    user: Optional[str] = typer.Option(None, "--user", help="Owner id"),
) -> None:
    """Register a stored file and queue it for ingestion."""
    body = {"source_path": str(path.expanduser().resolve()), "name": name}
    resp = _request("POST", "/documents", host=host, user=user, json=body)
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def status(
    document_id: str = typer.Argument(..., help="Document identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
    user: Optional[str] = typer.Option(None, "--user", help="Owner id"),
) -> None:
    """Show processing status for a document."""
    resp = _request("GET", f"/documents/{document_id}/status", host=host, user=user)
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def chat(
    query: str = typer.Argument(..., help="Question to ask"),
    document_id: Optional[str] = typer.Option(None, "--doc", help="Ground the answer in this document"),
    conversation_id: Optional[str] = typer.Option(None, "--conversation", help="Continue a conversation"),
    model: Optional[str] = typer.Option(None, "--model", help="Override the generation model"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
    user: Optional[str] = typer.Option(None, "--user", help="Owner id"),
) -> None:
    """Ask a question and print the answer as it streams."""
    payload = {
        "query": query,
        "documentId": document_id,
        "conversationId": conversation_id,
        "model": model,
    }
    resp = _request("POST", "/chat/stream", host=host, user=user, json=payload, stream=True, timeout=300)
    with resp:
        for line in resp.iter_lines():
            for frame in iter_sse_frames([line]):
                if "content" in frame:
                    typer.echo(frame["content"], nl=False)
                elif frame.get("done"):
                    typer.echo("")
                    for citation in frame.get("citations", []):
                        typer.echo(f"  [p.{citation.get('page')}] {citation.get('excerpt', '')[:80]}")
                    typer.echo(f"conversation: {frame.get('conversationId')}")
                elif "error" in frame:
                    typer.echo("")
                    typer.echo(f"Error: {frame['error']}", err=True)
                    raise typer.Exit(code=1)


@docs_app.command("list")
def list_documents(
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
    user: Optional[str] = typer.Option(None, "--user", help="Owner id"),
) -> None:
    """List the caller's documents."""
    resp = _request("GET", "/documents", host=host, user=user)
    typer.echo(json.dumps(resp.json(), indent=2))


@docs_app.command("retry")
def retry_document(
    document_id: str = typer.Argument(..., help="Document identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
    user: Optional[str] = typer.Option(None, "--user", help="Owner id"),
) -> None:
    """Requeue a finished or failed document."""
    resp = _request("POST", f"/documents/{document_id}/retry", host=host, user=user)
    typer.echo(json.dumps(resp.json(), indent=2))


@docs_app.command("remove")
def remove_document(
    document_id: str = typer.Argument(..., help="Document identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
    user: Optional[str] = typer.Option(None, "--user", help="Owner id"),
) -> None:
    """Delete a document with its chunks and conversations."""
    resp = _request("DELETE", f"/documents/{document_id}", host=host, user=user)
    typer.echo(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    app()
