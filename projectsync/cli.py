from __future__ import annotations

import json
import logging
from typing import Optional

import httpx
import typer
import uvicorn

from projectsync.config.settings import load_client_settings, load_settings
from projectsync.logging_config import init_logging

app = typer.Typer(add_completion=False, help="ProjectSync relay utilities.")
logger = logging.getLogger(__name__)


def _relay_url(url: Optional[str]) -> str:
    return (url or load_client_settings().relay_url).rstrip("/")


def _get(url: str, path: str) -> dict:
    with httpx.Client(timeout=5.0) as client:
        response = client.get(f"{url}{path}")
        response.raise_for_status()
        return response.json()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (default from config)."),
    port: Optional[int] = typer.Option(None, help="Bind port (default from config)."),
    reload: bool = typer.Option(False, help="Reload on source changes."),
) -> None:
    """Run the relay under uvicorn."""
    settings = load_settings()
    uvicorn.run(
        "projectsync.server.app:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
        reload=reload,
    )


@app.command()
def broadcast(
    msg_type: str = typer.Argument(..., metavar="TYPE", help="Envelope type, e.g. TASK_UPDATE."),
    project_id: str = typer.Argument(..., help="Target project room."),
    payload: str = typer.Option("null", help="JSON payload."),
    operation_id: Optional[str] = typer.Option(None, help="Operation id to attach."),
    url: Optional[str] = typer.Option(None, help="Relay base URL."),
) -> None:
    """Post one envelope to the relay's ingestion endpoint."""
    init_logging(filename="cli.log")
    try:
        body_payload = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"payload is not valid JSON: {exc}") from exc
    body = {"type": msg_type, "projectId": project_id, "payload": body_payload}
    if operation_id:
        body["operationId"] = operation_id
    target = _relay_url(url)
    logger.info("Broadcasting %s to %s via %s", msg_type, project_id, target)
    with httpx.Client(timeout=5.0) as client:
        response = client.post(f"{target}/broadcast", json=body)
    print(json.dumps(response.json(), indent=2))
    raise SystemExit(0 if response.is_success else 1)


@app.command()
def stats(url: Optional[str] = typer.Option(None, help="Relay base URL.")) -> None:
    """Print room and connection counts."""
    print(json.dumps(_get(_relay_url(url), "/stats"), indent=2))


@app.command()
def health(url: Optional[str] = typer.Option(None, help="Relay base URL.")) -> None:
    """Query the relay health probe."""
    init_logging(filename="cli.log")
    target = _relay_url(url)
    try:
        status = _get(target, "/health")
    except httpx.HTTPError as exc:
        logger.warning("Relay health check against %s failed: %s", target, exc)
        print(json.dumps({"status": "unreachable", "error": str(exc)}, indent=2))
        raise SystemExit(1)
    print(json.dumps(status, indent=2))
    raise SystemExit(0 if status.get("status") == "healthy" else 1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
