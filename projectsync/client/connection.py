from __future__ import annotations

"""Reconnecting websocket client for the ProjectSync relay."""

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import websockets

from projectsync.config.settings import ClientSettings
from projectsync.realtime.envelope import (
    Envelope,
    EnvelopeError,
    MessageType,
    make_envelope,
    parse_envelope,
)

LOGGER = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]
StatusListener = Callable[["ConnectionState"], None]
MessageListener = Callable[[Envelope], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    IDENTIFIED = "identified"
    ROOM_JOINED = "room_joined"
    RECONNECT_SCHEDULED = "reconnect_scheduled"


_CONNECTED_STATES = frozenset(
    {ConnectionState.OPEN, ConnectionState.IDENTIFIED, ConnectionState.ROOM_JOINED}
)


def build_ws_url(base: str, path: str = "/ws") -> str:
    """Turn an ``http(s)://`` base into the relay's ``ws(s)://`` endpoint."""
    if base.startswith(("ws://", "wss://")):
        return base
    if base.startswith("https://"):
        scheme, rest = "wss://", base[len("https://") :]
    elif base.startswith("http://"):
        scheme, rest = "ws://", base[len("http://") :]
    else:
        scheme, rest = "ws://", base
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{scheme}{rest.rstrip('/')}{path}"


def _default_connector(timeout: float) -> Connector:
    async def _connect(url: str) -> Any:
        # Liveness is handled with PING/PONG envelopes, not protocol pings.
        return await websockets.connect(url, ping_interval=None, open_timeout=timeout)

    return _connect


class ConnectionManager:
    """Keeps one relay session alive and identified, bound to one project."""

    def __init__(
        self,
        url: str,
        *,
        user_id: Optional[str] = None,
        user_info: Optional[Dict[str, Any]] = None,
        reconnect_interval: float = 3.0,
        max_reconnect_attempts: int = 5,
        connect_timeout: float = 10.0,
        connector: Optional[Connector] = None,
        reconciler: Any = None,
    ) -> None:
        self.url = build_ws_url(url)
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.connect_timeout = connect_timeout
        self.reconciler = reconciler
        self._connector = connector or _default_connector(connect_timeout)
        self._user_id = user_id
        self._user_info = user_info
        self._project_id: Optional[str] = None
        self._state = ConnectionState.DISCONNECTED
        self._socket: Any = None
        self._identified = False
        self._joined = False
        self._stopping = True
        self._reader: Optional[asyncio.Task] = None
        self._connecting: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._background: Set[asyncio.Task] = set()
        self._status_listeners: List[StatusListener] = []
        self._message_listeners: List[MessageListener] = []
        self.attempts = 0
        self.exhausted = False
        self.client_id: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: ClientSettings, **kwargs: Any) -> "ConnectionManager":
        return cls(
            settings.ws_url,
            reconnect_interval=settings.reconnect_interval,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            connect_timeout=settings.connect_timeout,
            **kwargs,
        )

    # ------------------------------------------------------------------ state
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state in _CONNECTED_STATES and self._socket is not None

    @property
    def project_id(self) -> Optional[str]:
        return self._project_id

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        with contextlib.suppress(ValueError):
            self._status_listeners.remove(listener)

    def add_message_listener(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        LOGGER.debug("Relay connection state -> %s", state.value)
        for listener in list(self._status_listeners):
            try:
                listener(state)
            except Exception:
                LOGGER.exception("Status listener failed")

    # ------------------------------------------------------------------ lifecycle
    async def start(self) -> None:
        """Open the first session; failures fall through to the retry path."""
        if not self._stopping:
            return
        self._stopping = False
        self.attempts = 0
        self.exhausted = False
        await self._connect()

    async def stop(self) -> None:
        self._stopping = True
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        socket, self._socket = self._socket, None
        current = asyncio.current_task()
        for task in (self._connecting, self._reader, *self._background):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._connecting = None
        self._reader = None
        if socket is not None:
            try:
                await socket.close(code=1000, reason="Client disconnect")
            except Exception as exc:
                LOGGER.debug("Socket close failed: %s", exc)
        self._identified = False
        self._joined = False
        self._set_state(ConnectionState.DISCONNECTED)

    async def __aenter__(self) -> "ConnectionManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def _connect(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        try:
            socket = await asyncio.wait_for(self._connector(self.url), self.connect_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Relay connect to %s failed: %s", self.url, exc)
            self._schedule_reconnect()
            return
        if self._stopping:
            with contextlib.suppress(Exception):
                await socket.close(code=1000, reason="Client disconnect")
            return
        self._socket = socket
        self._identified = False
        self._joined = False
        self.attempts = 0
        self.exhausted = False
        LOGGER.info("Relay connected (%s)", self.url)
        self._set_state(ConnectionState.OPEN)
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(socket))
        await self._identify()
        if self._project_id is not None:
            await self._send_join(self._project_id)

    def _schedule_reconnect(self) -> None:
        if self._stopping:
            return
        if self.attempts >= self.max_reconnect_attempts:
            self.exhausted = True
            # Terminal until the next start().
            self._stopping = True
            LOGGER.error(
                "Relay reconnect gave up after %d attempts", self.attempts
            )
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self.attempts += 1
        LOGGER.info(
            "Relay reconnect %d/%d in %.1fs",
            self.attempts,
            self.max_reconnect_attempts,
            self.reconnect_interval,
        )
        self._set_state(ConnectionState.RECONNECT_SCHEDULED)
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.reconnect_interval, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._stopping:
            return
        self._connecting = asyncio.get_running_loop().create_task(self._connect())

    async def _read_loop(self, socket: Any) -> None:
        try:
            async for raw in socket:
                self._handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.info("Relay session ended: %s", exc)
        finally:
            if self._socket is socket:
                self._socket = None
                self._identified = False
                self._joined = False
                with contextlib.suppress(Exception):
                    await socket.close(code=1000, reason="Client disconnect")
                if not self._stopping:
                    self._set_state(ConnectionState.DISCONNECTED)
                    self._schedule_reconnect()

    def _handle_frame(self, raw: Union[str, bytes]) -> None:
        try:
            envelope = parse_envelope(raw)
        except EnvelopeError as exc:
            LOGGER.warning("Dropping malformed relay frame: %s", exc.detail)
            return
        msg_type = envelope.message_type
        if msg_type is MessageType.PING:
            task = asyncio.get_running_loop().create_task(
                self.send(make_envelope(MessageType.PONG, {"clientId": self.client_id}))
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return
        if msg_type is MessageType.PONG:
            return
        if msg_type is MessageType.CONNECTION_ESTABLISHED:
            client_id = envelope.payload_dict().get("clientId")
            self.client_id = str(client_id) if client_id else None
        if self.reconciler is not None:
            try:
                self.reconciler.apply(envelope)
            except Exception:
                LOGGER.exception("Reconciling %s failed", envelope.type)
        for listener in list(self._message_listeners):
            try:
                listener(envelope)
            except Exception:
                LOGGER.exception("Message listener failed for %s", envelope.type)

    # ------------------------------------------------------------------ protocol
    async def send(self, envelope: Envelope) -> bool:
        socket = self._socket
        if socket is None or not self.connected:
            LOGGER.warning("Relay not connected; %s not sent", envelope.type)
            return False
        try:
            await socket.send(envelope.to_json())
        except Exception as exc:
            LOGGER.warning("Relay send of %s failed: %s", envelope.type, exc)
            return False
        return True

    async def _identify(self) -> None:
        if self._identified or not self._user_id:
            return
        sent = await self.send(
            make_envelope(
                MessageType.SET_USER,
                {"userId": self._user_id, "userInfo": self._user_info},
                user_id=self._user_id,
            )
        )
        if sent:
            self._identified = True
            if self._state is ConnectionState.OPEN:
                self._set_state(ConnectionState.IDENTIFIED)

    async def set_user(
        self, user_id: str, user_info: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record the identity; it is sent at most once per socket session."""
        self._user_id = user_id
        self._user_info = user_info
        if self.connected:
            await self._identify()

    async def _send_join(self, project_id: str) -> bool:
        payload = {"userId": self._user_id} if self._user_id else {}
        sent = await self.send(
            make_envelope(
                MessageType.JOIN_PROJECT,
                payload,
                project_id=project_id,
                user_id=self._user_id,
            )
        )
        if sent:
            self._joined = True
            self._set_state(ConnectionState.ROOM_JOINED)
        return sent

    async def join_project(self, project_id: str) -> bool:
        """Bind to ``project_id``; a no-op when already joined to it."""
        if project_id == self._project_id and self._joined:
            return False
        previous = self._project_id
        if previous is not None and previous != project_id and self._joined:
            await self.send(
                make_envelope(MessageType.LEAVE_PROJECT, None, project_id=previous)
            )
            self._joined = False
        self._project_id = project_id
        if not self.connected:
            return False
        return await self._send_join(project_id)

    async def leave_project(self) -> bool:
        project_id, self._project_id = self._project_id, None
        if project_id is None:
            return False
        if not self.connected:
            return False
        sent = await self.send(
            make_envelope(MessageType.LEAVE_PROJECT, None, project_id=project_id)
        )
        self._joined = False
        self._set_state(
            ConnectionState.IDENTIFIED if self._identified else ConnectionState.OPEN
        )
        return sent

    async def publish(
        self,
        msg_type: Union[MessageType, str],
        payload: Any,
        *,
        operation_id: Optional[str] = None,
    ) -> bool:
        """Send an entity mutation to the bound project's room."""
        if self._project_id is None:
            LOGGER.warning("No project joined; %s not published", msg_type)
            return False
        return await self.send(
            make_envelope(
                msg_type,
                payload,
                project_id=self._project_id,
                operation_id=operation_id,
                user_id=self._user_id,
            )
        )


__all__ = ["ConnectionManager", "ConnectionState", "build_ws_url"]
