"""
Real-time primitives for ProjectSync.

The envelope schema, connection registry, broadcast router and liveness
monitor live here so the relay server and the client library share one set
of wire contracts.
"""

from __future__ import annotations

from .envelope import (
    EntityKind,
    Envelope,
    EnvelopeError,
    MessageType,
    make_envelope,
    parse_envelope,
)
from .liveness import LivenessMonitor, SweepReport
from .registry import Connection, ConnectionRegistry, Presence
from .router import BroadcastRouter, IngestResult

__all__ = [
    "BroadcastRouter",
    "Connection",
    "ConnectionRegistry",
    "EntityKind",
    "Envelope",
    "EnvelopeError",
    "IngestResult",
    "LivenessMonitor",
    "MessageType",
    "Presence",
    "SweepReport",
    "make_envelope",
    "parse_envelope",
]
