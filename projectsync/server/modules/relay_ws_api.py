from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from projectsync.logging_config import bind_context, log_context, unbind_context
from projectsync.realtime import MessageType, make_envelope
from projectsync.server.core.relay import get_ws_runtime

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["Relay"])


class WebSocketTransport:
    """Adapts a Starlette websocket to the registry's transport protocol."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    @property
    def writable(self) -> bool:
        return (
            self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self._websocket.send_text(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._websocket.application_state == WebSocketState.DISCONNECTED:
            return
        await self._websocket.close(code=code, reason=reason or None)


@router.websocket("/ws")
async def relay_ws(websocket: WebSocket) -> None:
    runtime = get_ws_runtime(websocket)
    await websocket.accept()
    client_id = runtime.registry.register(WebSocketTransport(websocket))
    tokens = bind_context(client_id=client_id)
    try:
        await runtime.router.send(
            client_id,
            make_envelope(
                MessageType.CONNECTION_ESTABLISHED,
                {"clientId": client_id},
            ),
        )
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            conn = runtime.registry.get(client_id)
            with log_context(project_id=conn.project_id if conn else None):
                await runtime.router.handle_message(client_id, raw)
    except WebSocketDisconnect:
        LOGGER.info("Relay websocket disconnected (%s)", client_id)
    except Exception as exc:  # pragma: no cover - network path
        LOGGER.warning("Relay websocket error (%s): %s", client_id, exc, exc_info=True)
    finally:
        await runtime.router.unregister(client_id)
        unbind_context(tokens)


__all__ = ["router", "WebSocketTransport"]
