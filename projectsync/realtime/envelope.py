from __future__ import annotations

"""
Wire schema shared by the relay, its HTTP ingestion path and clients.

Envelopes travel as compact JSON objects with camelCase keys::

    {"type": "TASK_UPDATE", "payload": {...}, "projectId": "p1",
     "operationId": "1718000000000-k3j2h1g0f", "timestamp": 1718000000000,
     "userId": "user_42"}

``projectId`` and ``userId`` are optional and omitted when unset.
"""

import json
import secrets
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

_ALPHABET = string.ascii_lowercase + string.digits


class MessageType(str, Enum):
    SET_USER = "SET_USER"
    JOIN_PROJECT = "JOIN_PROJECT"
    LEAVE_PROJECT = "LEAVE_PROJECT"
    TASK_CREATE = "TASK_CREATE"
    TASK_UPDATE = "TASK_UPDATE"
    TASK_DELETE = "TASK_DELETE"
    COMMENT_CREATE = "COMMENT_CREATE"
    COMMENT_UPDATE = "COMMENT_UPDATE"
    COMMENT_DELETE = "COMMENT_DELETE"
    PROJECT_UPDATE = "PROJECT_UPDATE"
    PROJECT_DELETE = "PROJECT_DELETE"
    USER_PRESENCE = "USER_PRESENCE"
    CONNECTION_ESTABLISHED = "CONNECTION_ESTABLISHED"
    ERROR = "ERROR"
    PING = "PING"
    PONG = "PONG"

    @classmethod
    def resolve(cls, value: Any) -> Optional["MessageType"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None


class EntityKind(str, Enum):
    PROJECT = "project"
    TASK = "task"
    COMMENT = "comment"


# Entity mutations relayed between peers; everything else is control traffic.
ENTITY_MESSAGE_TYPES: frozenset[MessageType] = frozenset(
    {
        MessageType.TASK_CREATE,
        MessageType.TASK_UPDATE,
        MessageType.TASK_DELETE,
        MessageType.COMMENT_CREATE,
        MessageType.COMMENT_UPDATE,
        MessageType.COMMENT_DELETE,
        MessageType.PROJECT_UPDATE,
        MessageType.PROJECT_DELETE,
    }
)

_ENTITY_TYPES: Dict[tuple[EntityKind, str], MessageType] = {
    (EntityKind.TASK, "create"): MessageType.TASK_CREATE,
    (EntityKind.TASK, "update"): MessageType.TASK_UPDATE,
    (EntityKind.TASK, "delete"): MessageType.TASK_DELETE,
    (EntityKind.COMMENT, "create"): MessageType.COMMENT_CREATE,
    (EntityKind.COMMENT, "update"): MessageType.COMMENT_UPDATE,
    (EntityKind.COMMENT, "delete"): MessageType.COMMENT_DELETE,
    (EntityKind.PROJECT, "update"): MessageType.PROJECT_UPDATE,
    (EntityKind.PROJECT, "delete"): MessageType.PROJECT_DELETE,
}


def entity_message_type(kind: EntityKind, action: str) -> MessageType:
    """Map ``(kind, action)`` to its broadcast type, e.g. task/update."""
    try:
        return _ENTITY_TYPES[(EntityKind(kind), action.lower())]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"no message type for {kind}/{action}") from exc


class EnvelopeError(ValueError):
    """Raised when an inbound frame cannot be decoded into an envelope."""

    def __init__(self, code: str, detail: str) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail


def now_ms() -> int:
    return int(time.time() * 1000)


def new_operation_id(prefix: Optional[str] = None) -> str:
    token = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    value = f"{now_ms()}-{token}"
    return f"{prefix}-{value}" if prefix else value


@dataclass
class Envelope:
    type: str
    payload: Any = None
    project_id: Optional[str] = None
    operation_id: str = field(default_factory=new_operation_id)
    timestamp: int = field(default_factory=now_ms)
    user_id: Optional[str] = None

    @property
    def message_type(self) -> Optional[MessageType]:
        return MessageType.resolve(self.type)

    def payload_dict(self) -> Dict[str, Any]:
        return self.payload if isinstance(self.payload, dict) else {}

    def as_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "type": self.type,
            "payload": self.payload,
            "operationId": self.operation_id,
            "timestamp": self.timestamp,
        }
        if self.project_id is not None:
            body["projectId"] = self.project_id
        if self.user_id is not None:
            body["userId"] = self.user_id
        return body

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), separators=(",", ":"), ensure_ascii=False)


def make_envelope(
    msg_type: Union[MessageType, str],
    payload: Any = None,
    *,
    project_id: Optional[str] = None,
    operation_id: Optional[str] = None,
    timestamp: Optional[int] = None,
    user_id: Optional[str] = None,
) -> Envelope:
    type_name = msg_type.value if isinstance(msg_type, MessageType) else str(msg_type)
    return Envelope(
        type=type_name,
        payload=payload,
        project_id=project_id,
        operation_id=operation_id or new_operation_id(type_name.lower()),
        timestamp=timestamp if timestamp is not None else now_ms(),
        user_id=user_id,
    )


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def envelope_from_mapping(body: Mapping[str, Any]) -> Envelope:
    msg_type = body.get("type")
    if not isinstance(msg_type, str) or not msg_type.strip():
        raise EnvelopeError("missing_type", "envelope has no message type")
    raw_ts = body.get("timestamp")
    try:
        timestamp = int(raw_ts) if raw_ts is not None else now_ms()
    except (TypeError, ValueError):
        timestamp = now_ms()
    return Envelope(
        type=msg_type.strip(),
        payload=body.get("payload"),
        project_id=_optional_str(body.get("projectId")),
        operation_id=_optional_str(body.get("operationId")) or new_operation_id(),
        timestamp=timestamp,
        user_id=_optional_str(body.get("userId")),
    )


def parse_envelope(raw: Union[str, bytes, Mapping[str, Any]]) -> Envelope:
    """Decode one frame; raises :class:`EnvelopeError` on malformed input."""
    if isinstance(raw, Mapping):
        return envelope_from_mapping(raw)
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EnvelopeError("invalid_json", "frame is not valid UTF-8") from exc
    try:
        body = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise EnvelopeError("invalid_json", f"frame is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise EnvelopeError("invalid_envelope", "envelope must be a JSON object")
    return envelope_from_mapping(body)


def error_envelope(
    code: str,
    detail: str,
    *,
    message: str = "Invalid message format",
    project_id: Optional[str] = None,
) -> Envelope:
    return make_envelope(
        MessageType.ERROR,
        {"error": message, "code": code, "detail": detail},
        project_id=project_id,
    )


__all__ = [
    "ENTITY_MESSAGE_TYPES",
    "EntityKind",
    "Envelope",
    "EnvelopeError",
    "MessageType",
    "entity_message_type",
    "envelope_from_mapping",
    "error_envelope",
    "make_envelope",
    "new_operation_id",
    "now_ms",
    "parse_envelope",
]
