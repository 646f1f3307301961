from __future__ import annotations

"""
JSON logging for the relay and its tools.

Every line carries the context it was emitted in: ``request_id`` for HTTP
requests, ``client_id`` and ``project_id`` inside a websocket session. The
middleware and the websocket handler bind those fields with
:func:`log_context` / :func:`bind_context`; one :class:`ContextFilter` on each
handler copies them onto the record.
"""

import contextlib
import json
import logging
import os
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

DEFAULT_LOG_FILE = "relay.log"
CONTEXT_FIELDS = ("request_id", "client_id", "project_id")

_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
    name: ContextVar(f"projectsync_{name}", default=None) for name in CONTEXT_FIELDS
}
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "taskName",
    *CONTEXT_FIELDS,
}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
    """Set context fields for the current task; pass the result to :func:`unbind_context`."""
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"unknown log context fields: {sorted(unknown)}")
    return {name: _CONTEXT[name].set(value) for name, value in fields.items()}


def unbind_context(tokens: Dict[str, Token]) -> None:
    for name, token in tokens.items():
        # Tokens from another context (or already used) cannot be reset.
        with contextlib.suppress(RuntimeError, ValueError):
            _CONTEXT[name].reset(token)


@contextlib.contextmanager
def log_context(**fields: Optional[str]) -> Iterator[None]:
    tokens = bind_context(**fields)
    try:
        yield
    finally:
        unbind_context(tokens)


def current_context() -> Dict[str, str]:
    context = {}
    for name, var in _CONTEXT.items():
        value = var.get()
        if value:
            context[name] = value
    return context


class ContextFilter(logging.Filter):
    """Copy the bound context onto records that do not set the fields themselves."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in current_context().items():
            if getattr(record, name, None) is None:
                setattr(record, name, value)
        return True


class StructuredJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                payload[name] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        extra = {
            key: _json_safe(value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
        }
        if extra:
            payload["extra"] = extra
        return json.dumps(payload, ensure_ascii=True)


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)
    return value


def default_log_dir() -> Path:
    override = os.getenv("PROJECTSYNC_LOG_DIR") or os.getenv("LOG_DIR")
    return Path(override or "logs").expanduser().resolve()


def init_logging(
    log_dir: str | os.PathLike[str] | None = None,
    *,
    level: str = "INFO",
    filename: str = DEFAULT_LOG_FILE,
) -> Path:
    """Send root logging to ``<log_dir>/<filename>`` and stderr as JSON lines."""
    base = Path(log_dir).expanduser().resolve() if log_dir else default_log_dir()
    base.mkdir(parents=True, exist_ok=True)
    log_path = base / filename

    root = logging.getLogger()
    resolved = logging.getLevelName(str(level).upper())
    root.setLevel(resolved if isinstance(resolved, int) else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = StructuredJsonFormatter()
    context_filter = ContextFilter()
    handlers = (
        RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"),
        logging.StreamHandler(),
    )
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root.addHandler(handler)
    return log_path


__all__ = [
    "CONTEXT_FIELDS",
    "ContextFilter",
    "StructuredJsonFormatter",
    "bind_context",
    "current_context",
    "init_logging",
    "log_context",
    "unbind_context",
]
