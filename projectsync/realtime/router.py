from __future__ import annotations

"""
Room fan-out for the relay.

``BroadcastRouter`` layers delivery on top of :class:`ConnectionRegistry`:
presence snapshots after membership changes, relaying peer mutations to a
project room, the out-of-band ingestion entry point, and the per-frame
dispatch used by the websocket handler.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .envelope import (
    ENTITY_MESSAGE_TYPES,
    Envelope,
    EnvelopeError,
    MessageType,
    error_envelope,
    make_envelope,
    new_operation_id,
    parse_envelope,
)
from .registry import ConnectionRegistry

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    project_id: str
    delivered: int
    room_size: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "projectId": self.project_id,
            "delivered": self.delivered,
            "clientCount": self.room_size,
        }


def _summary(payload: Any, limit: int = 100) -> str:
    if payload is None:
        return "none"
    text = str(payload)
    return text if len(text) <= limit else text[:limit] + "..."


class BroadcastRouter:
    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    # Delivery -----------------------------------------------------------------
    async def send(self, client_id: str, envelope: Envelope) -> bool:
        conn = self.registry.get(client_id)
        if conn is None or not conn.writable:
            return False
        try:
            await conn.transport.send_text(envelope.to_json())
        except Exception as exc:
            LOGGER.warning("Send to %s failed: %s", client_id, exc)
            self.registry.mark_stale(client_id)
            return False
        return True

    async def broadcast(
        self,
        project_id: str,
        envelope: Envelope,
        exclude_client_id: Optional[str] = None,
    ) -> int:
        members = self.registry.members(project_id)
        if not members:
            LOGGER.debug("No clients in project room %s", project_id)
            return 0
        message = envelope.to_json()
        delivered = 0
        for conn in members:
            if exclude_client_id and conn.client_id == exclude_client_id:
                continue
            if not conn.writable:
                LOGGER.debug("Skipping client %s (not writable)", conn.client_id)
                continue
            try:
                await conn.transport.send_text(message)
            except Exception as exc:
                # Evicted by the next liveness sweep, not here.
                LOGGER.warning("Broadcast to %s failed: %s", conn.client_id, exc)
                self.registry.mark_stale(conn.client_id)
                continue
            delivered += 1
        LOGGER.debug(
            "Broadcast %s to project %s: %s/%s delivered",
            envelope.type,
            project_id,
            delivered,
            len(members),
        )
        return delivered

    async def broadcast_presence(self, project_id: str) -> int:
        presence = self.registry.presence(project_id)
        if not presence.active_users:
            return 0
        envelope = make_envelope(
            MessageType.USER_PRESENCE,
            presence.as_dict(),
            project_id=project_id,
            operation_id=new_operation_id("presence"),
        )
        return await self.broadcast(project_id, envelope)

    # Membership ---------------------------------------------------------------
    async def identify(self, client_id: str, user_id: Optional[str]) -> None:
        project_id = self.registry.identify(client_id, user_id)
        if project_id is not None:
            await self.broadcast_presence(project_id)

    async def join(
        self, client_id: str, project_id: str, *, refresh: bool = False
    ) -> None:
        affected = self.registry.join(client_id, project_id)
        if not affected and refresh:
            affected = [project_id]
        for room in affected:
            await self.broadcast_presence(room)

    async def leave(self, client_id: str, project_id: str) -> None:
        if self.registry.leave(client_id, project_id):
            await self.broadcast_presence(project_id)

    async def unregister(self, client_id: str) -> None:
        project_id = self.registry.unregister(client_id)
        if project_id is not None:
            await self.broadcast_presence(project_id)

    # Out-of-band ingestion ----------------------------------------------------
    async def ingest(
        self, envelope: Envelope, *, exclude_client_id: Optional[str] = None
    ) -> IngestResult:
        project_id = envelope.project_id
        if not project_id:
            raise EnvelopeError("missing_project", "ingested envelope has no projectId")
        LOGGER.info(
            "Ingested %s for project %s (op=%s, payload=%s)",
            envelope.type,
            project_id,
            envelope.operation_id,
            _summary(envelope.payload),
        )
        delivered = await self.broadcast(
            project_id, envelope, exclude_client_id=exclude_client_id
        )
        return IngestResult(
            project_id=project_id,
            delivered=delivered,
            room_size=self.registry.room_size(project_id),
        )

    # Inbound dispatch ---------------------------------------------------------
    async def handle_message(
        self, client_id: str, raw: Union[str, bytes, Dict[str, Any]]
    ) -> None:
        conn = self.registry.get(client_id)
        if conn is None:
            return
        self.registry.touch(client_id)
        try:
            envelope = parse_envelope(raw)
        except EnvelopeError as exc:
            LOGGER.warning("Malformed frame from %s: %s", client_id, exc.detail)
            await self.send(client_id, error_envelope(exc.code, exc.detail))
            return

        msg_type = envelope.message_type
        LOGGER.debug(
            "Received %s from %s (project=%s, payload=%s)",
            envelope.type,
            client_id,
            envelope.project_id,
            _summary(envelope.payload),
        )
        payload = envelope.payload_dict()

        if msg_type is MessageType.SET_USER:
            user_id = payload.get("userId") or envelope.user_id
            await self.identify(client_id, str(user_id) if user_id else None)
        elif msg_type is MessageType.JOIN_PROJECT:
            project_id = envelope.project_id or payload.get("projectId")
            user_changed = bool(envelope.user_id) and envelope.user_id != conn.user_id
            if not project_id:
                if user_changed:
                    await self.identify(client_id, envelope.user_id)
                await self.send(
                    client_id,
                    error_envelope(
                        "missing_project",
                        "JOIN_PROJECT requires projectId",
                        message="Missing projectId",
                    ),
                )
                return
            if user_changed:
                self.registry.identify(client_id, envelope.user_id)
            await self.join(client_id, str(project_id), refresh=user_changed)
        elif msg_type is MessageType.LEAVE_PROJECT:
            project_id = envelope.project_id or payload.get("projectId") or conn.project_id
            if project_id:
                await self.leave(client_id, str(project_id))
        elif msg_type is MessageType.PING:
            await self.send(
                client_id,
                make_envelope(MessageType.PONG, {"clientId": client_id}),
            )
        elif msg_type is MessageType.PONG:
            pass
        elif msg_type in ENTITY_MESSAGE_TYPES:
            await self._relay(client_id, envelope)
        elif msg_type in (
            MessageType.USER_PRESENCE,
            MessageType.CONNECTION_ESTABLISHED,
            MessageType.ERROR,
        ):
            LOGGER.debug("Ignoring relay-originated %s from %s", envelope.type, client_id)
        else:
            LOGGER.info("Unknown message type %s from %s", envelope.type, client_id)

    async def _relay(self, client_id: str, envelope: Envelope) -> None:
        conn = self.registry.get(client_id)
        project_id = envelope.project_id or (conn.project_id if conn else None)
        if not project_id:
            await self.send(
                client_id,
                error_envelope(
                    "missing_project",
                    f"{envelope.type} requires projectId or a joined project",
                    message="Missing projectId",
                ),
            )
            return
        outbound = make_envelope(
            envelope.type,
            envelope.payload,
            project_id=project_id,
            operation_id=envelope.operation_id,
            user_id=envelope.user_id or (conn.user_id if conn else None),
        )
        await self.broadcast(project_id, outbound, exclude_client_id=client_id)


__all__ = ["BroadcastRouter", "IngestResult"]
