from __future__ import annotations

import asyncio
import json

import httpx

from projectsync.client.broadcaster import RelayBroadcaster
from projectsync.config.settings import ClientSettings, RelaySettings
from projectsync.server.app import create_app


def _recording_transport(requests, status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append((request.url.path, body))
        return httpx.Response(
            status,
            json={
                "success": status == 200,
                "message": "Broadcast sent",
                "projectId": body.get("projectId"),
                "delivered": 2,
                "clientCount": 3,
            },
        )

    return httpx.MockTransport(handler)


def test_named_helpers_build_expected_bodies() -> None:
    requests = []

    async def scenario():
        async with RelayBroadcaster(
            "http://relay.test/", transport=_recording_transport(requests)
        ) as broadcaster:
            result = await broadcaster.task_updated(
                "p1", "t1", {"status": "DONE"}, operation_id="op-1", exclude_client_id="client_a"
            )
            await broadcaster.task_deleted("p1", "t1")
            await broadcaster.comment_deleted("p1", "c1", task_id="t1")
            await broadcaster.project_deleted("p1")
            return result

    result = asyncio.run(scenario())

    assert result["delivered"] == 2
    paths = {path for path, _ in requests}
    assert paths == {"/broadcast"}
    bodies = [body for _, body in requests]
    assert bodies[0] == {
        "type": "TASK_UPDATE",
        "projectId": "p1",
        "payload": {"id": "t1", "changes": {"status": "DONE"}},
        "operationId": "op-1",
        "excludeClientId": "client_a",
    }
    assert bodies[1]["payload"] == {"taskId": "t1"}
    assert bodies[2]["payload"] == {"id": "c1", "taskId": "t1"}
    assert bodies[3] == {
        "type": "PROJECT_DELETE",
        "projectId": "p1",
        "payload": {"projectId": "p1"},
    }


def test_http_errors_are_reported_as_none() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        rejected = RelayBroadcaster("http://relay.test", transport=_recording_transport([], 500))
        offline = RelayBroadcaster("http://relay.test", transport=httpx.MockTransport(refuse))
        try:
            return (
                await rejected.task_created("p1", {"id": "t1"}),
                await offline.project_updated("p1", {"name": "x"}),
            )
        finally:
            await rejected.close()
            await offline.close()

    assert asyncio.run(scenario()) == (None, None)


def test_broadcast_against_relay_app() -> None:
    app = create_app(RelaySettings(), configure_logging=False)

    async def scenario():
        async with RelayBroadcaster(
            "http://relay.test", transport=httpx.ASGITransport(app=app)
        ) as broadcaster:
            accepted = await broadcaster.comment_created("p9", {"id": "c1", "taskId": "t1"})
            rejected = await broadcaster.broadcast("NOT_A_TYPE", "p9", {})
            return accepted, rejected

    accepted, rejected = asyncio.run(scenario())

    assert accepted == {
        "success": True,
        "message": "Broadcast sent",
        "projectId": "p9",
        "delivered": 0,
        "clientCount": 0,
    }
    assert rejected is None


def test_from_settings_uses_relay_url() -> None:
    requests = []
    settings = ClientSettings(relay_url="http://relay.internal:3001/")

    async def scenario():
        async with RelayBroadcaster.from_settings(
            settings, timeout=1.0, transport=_recording_transport(requests)
        ) as broadcaster:
            await broadcaster.project_updated("p1", {"name": "Renamed"})
            return broadcaster.base_url, broadcaster.timeout

    base_url, timeout = asyncio.run(scenario())

    assert (base_url, timeout) == ("http://relay.internal:3001", 1.0)
    ((path, body),) = requests
    assert path == "/broadcast"
    assert body == {
        "type": "PROJECT_UPDATE",
        "projectId": "p1",
        "payload": {"id": "p1", "changes": {"name": "Renamed"}},
    }
