from __future__ import annotations

"""
Connection bookkeeping for the relay.

The registry owns every live connection together with the project room
index. It performs no I/O: mutators are synchronous so each one completes
within a single event-loop tick, and the router layers delivery on top.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

LOGGER = logging.getLogger(__name__)

_ALPHABET = string.ascii_lowercase + string.digits


class Transport(Protocol):
    @property
    def writable(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


def _client_id(now: float) -> str:
    token = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"client_{int(now * 1000)}_{token}"


def _initials(user_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return None
    return user_id[-2:].upper()


@dataclass
class Connection:
    client_id: str
    transport: Any
    user_id: Optional[str] = None
    project_id: Optional[str] = None
    connected_at: float = 0.0
    joined_at: Optional[float] = None
    last_heartbeat_at: float = 0.0
    stale: bool = False

    @property
    def writable(self) -> bool:
        if self.stale:
            return False
        return bool(getattr(self.transport, "writable", True))

    def presence_payload(self) -> Dict[str, Any]:
        joined = self.joined_at if self.joined_at is not None else self.connected_at
        return {
            "userId": self.user_id,
            "clientId": self.client_id,
            "joinedAt": int(joined * 1000),
            "initials": _initials(self.user_id),
        }


@dataclass
class Presence:
    project_id: str
    active_users: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def user_count(self) -> int:
        return len(self.active_users)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "projectId": self.project_id,
            "activeUsers": list(self.active_users),
            "userCount": self.user_count,
        }


class ConnectionRegistry:
    """
    Live connections and the ``project_id -> connections`` room index.

    A connection belongs to at most one room. Rooms are created on first
    join and dropped once empty.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        id_factory: Optional[Callable[[float], str]] = None,
    ) -> None:
        self._clock = clock
        self._id_factory = id_factory or _client_id
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Dict[str, Connection]] = {}

    # Lifecycle ----------------------------------------------------------------
    def register(self, transport: Any) -> str:
        now = self._clock()
        client_id = self._id_factory(now)
        while client_id in self._connections:
            client_id = self._id_factory(now)
        self._connections[client_id] = Connection(
            client_id=client_id,
            transport=transport,
            connected_at=now,
            last_heartbeat_at=now,
        )
        LOGGER.info(
            "Connection registered %s (total=%s)", client_id, len(self._connections)
        )
        return client_id

    def unregister(self, client_id: str) -> Optional[str]:
        """Drop the connection; returns the room it was removed from."""
        conn = self._connections.get(client_id)
        if conn is None:
            return None
        project_id = conn.project_id
        if project_id is not None:
            self._remove_from_room(conn)
        self._connections.pop(client_id, None)
        LOGGER.info(
            "Connection unregistered %s (room=%s, total=%s)",
            client_id,
            project_id,
            len(self._connections),
        )
        return project_id

    def identify(self, client_id: str, user_id: Optional[str]) -> Optional[str]:
        conn = self._connections.get(client_id)
        if conn is None:
            LOGGER.warning("Cannot identify unknown client %s", client_id)
            return None
        if conn.user_id and conn.user_id != user_id:
            LOGGER.debug(
                "Client %s re-identified %s -> %s", client_id, conn.user_id, user_id
            )
        conn.user_id = user_id or None
        return conn.project_id

    # Rooms --------------------------------------------------------------------
    def join(self, client_id: str, project_id: str) -> List[str]:
        """
        Move the connection into ``project_id``.

        Returns the rooms whose presence changed: the previous room (when the
        connection moved) and the new one. Empty when nothing changed.
        """
        conn = self._connections.get(client_id)
        if conn is None:
            LOGGER.warning("Cannot join project %s: client %s not found", project_id, client_id)
            return []
        if conn.project_id == project_id:
            return []
        affected: List[str] = []
        if conn.project_id is not None:
            affected.append(conn.project_id)
            self._remove_from_room(conn)
        room = self._rooms.get(project_id)
        if room is None:
            room = self._rooms[project_id] = {}
            LOGGER.debug("Created project room %s", project_id)
        room[client_id] = conn
        conn.project_id = project_id
        conn.joined_at = self._clock()
        affected.append(project_id)
        LOGGER.info(
            "Client %s (user=%s) joined project %s (size=%s)",
            client_id,
            conn.user_id or "unknown",
            project_id,
            len(room),
        )
        return affected

    def leave(self, client_id: str, project_id: str) -> bool:
        conn = self._connections.get(client_id)
        if conn is None or conn.project_id != project_id:
            return False
        self._remove_from_room(conn)
        LOGGER.info(
            "Client %s (user=%s) left project %s",
            client_id,
            conn.user_id or "unknown",
            project_id,
        )
        return True

    def _remove_from_room(self, conn: Connection) -> None:
        project_id = conn.project_id
        conn.project_id = None
        conn.joined_at = None
        if project_id is None:
            return
        room = self._rooms.get(project_id)
        if room is None:
            return
        room.pop(conn.client_id, None)
        if not room:
            self._rooms.pop(project_id, None)
            LOGGER.debug("Deleted empty project room %s", project_id)

    # Liveness -----------------------------------------------------------------
    def touch(self, client_id: str) -> None:
        conn = self._connections.get(client_id)
        if conn:
            conn.last_heartbeat_at = self._clock()

    def mark_stale(self, client_id: str) -> None:
        conn = self._connections.get(client_id)
        if conn and not conn.stale:
            conn.stale = True
            LOGGER.debug("Client %s marked stale", client_id)

    # Read path ----------------------------------------------------------------
    def get(self, client_id: str) -> Optional[Connection]:
        return self._connections.get(client_id)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def members(self, project_id: str) -> List[Connection]:
        return list(self._rooms.get(project_id, {}).values())

    def room_size(self, project_id: str) -> int:
        return len(self._rooms.get(project_id, {}))

    def room_ids(self) -> List[str]:
        return list(self._rooms)

    def presence(self, project_id: str) -> Presence:
        return Presence(
            project_id=project_id,
            active_users=[conn.presence_payload() for conn in self.members(project_id)],
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "totalClients": len(self._connections),
            "totalProjects": len(self._rooms),
            "projectStats": {
                project_id: {
                    "clientCount": len(room),
                    "clients": list(room),
                    "users": [conn.user_id for conn in room.values()],
                }
                for project_id, room in self._rooms.items()
            },
        }


__all__ = ["Connection", "ConnectionRegistry", "Presence", "Transport"]
