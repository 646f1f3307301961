from __future__ import annotations

"""
HTTP surface of the relay.

``POST /broadcast`` is the ingestion path used by the process that persists
mutations: it turns one successful write into a room broadcast without that
process holding a socket. ``/health`` and ``/stats`` are diagnostics probes.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, field_validator

from projectsync.realtime import MessageType, make_envelope
from projectsync.server.core.relay import RelayRuntime, get_runtime

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["Relay"])


class BroadcastRequest(BaseModel):
    type: str = Field(..., min_length=1, max_length=64)
    payload: Any = None
    projectId: str = Field(..., min_length=1, max_length=256)
    operationId: str | None = Field(default=None, max_length=256)
    timestamp: int | None = Field(default=None, ge=0)
    userId: str | None = Field(default=None, max_length=256)
    excludeClientId: str | None = Field(default=None, max_length=256)

    model_config = ConfigDict(extra="forbid")

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        resolved = MessageType.resolve(value.strip())
        if resolved is None:
            raise ValueError(f"unknown message type {value!r}")
        return resolved.value

    @field_validator("projectId")
    @classmethod
    def _strip_project(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("projectId must not be blank")
        return value


@router.post("/broadcast")
async def ingest_broadcast(
    request: BroadcastRequest, runtime: RelayRuntime = Depends(get_runtime)
) -> Dict[str, Any]:
    envelope = make_envelope(
        request.type,
        request.payload,
        project_id=request.projectId,
        operation_id=request.operationId or None,
        timestamp=request.timestamp,
        user_id=request.userId,
    )
    result = await runtime.router.ingest(
        envelope, exclude_client_id=request.excludeClientId
    )
    return {"success": True, "message": "Broadcast sent", **result.as_dict()}


@router.get("/health")
async def relay_health(runtime: RelayRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    return runtime.health()


@router.get("/stats")
async def relay_stats(runtime: RelayRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    return runtime.registry.stats()


__all__ = ["BroadcastRequest", "router"]
