from __future__ import annotations

"""
HTTP client for the relay's ``POST /broadcast`` ingestion endpoint.

Used by whatever process persists mutations: after a successful write it
announces the change to the project room without holding a socket.
Failures are logged and reported as ``None`` so they never abort the write
that triggered them.
"""

import logging
from typing import Any, Dict, Optional, Union

import httpx

from projectsync.config.settings import ClientSettings
from projectsync.realtime.envelope import MessageType

LOGGER = logging.getLogger(__name__)


class RelayBroadcaster:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: ClientSettings, **kwargs: Any) -> "RelayBroadcaster":
        return cls(settings.relay_url, **kwargs)

    # Lifecycle ----------------------------------------------------------------
    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self.client

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def __aenter__(self) -> "RelayBroadcaster":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Core ---------------------------------------------------------------------
    async def broadcast(
        self,
        msg_type: Union[MessageType, str],
        project_id: str,
        payload: Any = None,
        *,
        operation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        exclude_client_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Post one envelope; returns the relay's response body or ``None``."""
        body: Dict[str, Any] = {
            "type": msg_type.value if isinstance(msg_type, MessageType) else str(msg_type),
            "payload": payload,
            "projectId": project_id,
        }
        if operation_id:
            body["operationId"] = operation_id
        if user_id:
            body["userId"] = user_id
        if exclude_client_id:
            body["excludeClientId"] = exclude_client_id

        client = await self._get_client()
        try:
            response = await client.post("/broadcast", json=body)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as exc:
            LOGGER.warning(
                "Relay rejected %s for project %s: HTTP %s",
                body["type"],
                project_id,
                exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("Relay broadcast of %s failed: %s", body["type"], exc)
            return None
        LOGGER.debug(
            "Relay broadcast %s -> %s client(s)",
            body["type"],
            result.get("delivered") if isinstance(result, dict) else "?",
        )
        return result

    # Named helpers ------------------------------------------------------------
    async def task_created(self, project_id: str, task: Dict[str, Any], **kwargs: Any):
        return await self.broadcast(MessageType.TASK_CREATE, project_id, task, **kwargs)

    async def task_updated(
        self, project_id: str, task_id: str, changes: Dict[str, Any], **kwargs: Any
    ):
        return await self.broadcast(
            MessageType.TASK_UPDATE,
            project_id,
            {"id": task_id, "changes": changes},
            **kwargs,
        )

    async def task_deleted(self, project_id: str, task_id: str, **kwargs: Any):
        return await self.broadcast(
            MessageType.TASK_DELETE, project_id, {"taskId": task_id}, **kwargs
        )

    async def comment_created(
        self, project_id: str, comment: Dict[str, Any], **kwargs: Any
    ):
        return await self.broadcast(
            MessageType.COMMENT_CREATE, project_id, comment, **kwargs
        )

    async def comment_updated(
        self,
        project_id: str,
        comment_id: str,
        changes: Dict[str, Any],
        *,
        task_id: Optional[str] = None,
        **kwargs: Any,
    ):
        payload: Dict[str, Any] = {"id": comment_id, "changes": changes}
        if task_id:
            payload["taskId"] = task_id
        return await self.broadcast(
            MessageType.COMMENT_UPDATE, project_id, payload, **kwargs
        )

    async def comment_deleted(
        self,
        project_id: str,
        comment_id: str,
        *,
        task_id: Optional[str] = None,
        **kwargs: Any,
    ):
        payload: Dict[str, Any] = {"id": comment_id}
        if task_id:
            payload["taskId"] = task_id
        return await self.broadcast(
            MessageType.COMMENT_DELETE, project_id, payload, **kwargs
        )

    async def project_updated(
        self, project_id: str, changes: Dict[str, Any], **kwargs: Any
    ):
        return await self.broadcast(
            MessageType.PROJECT_UPDATE,
            project_id,
            {"id": project_id, "changes": changes},
            **kwargs,
        )

    async def project_deleted(self, project_id: str, **kwargs: Any):
        return await self.broadcast(
            MessageType.PROJECT_DELETE, project_id, {"projectId": project_id}, **kwargs
        )


__all__ = ["RelayBroadcaster"]
