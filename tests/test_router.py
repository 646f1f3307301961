from __future__ import annotations

import asyncio
import json

import pytest

from projectsync.realtime.envelope import EnvelopeError, make_envelope
from projectsync.realtime.registry import ConnectionRegistry
from projectsync.realtime.router import BroadcastRouter


def _setup(make_transport, clock, count: int = 2):
    registry = ConnectionRegistry(clock=clock)
    router = BroadcastRouter(registry)
    transports = [make_transport() for _ in range(count)]
    ids = [registry.register(t) for t in transports]
    return registry, router, ids, transports


def _frame(**body) -> str:
    return json.dumps(body)


def test_join_broadcasts_presence_to_room(make_transport, clock) -> None:
    registry, router, (a, b), (ta, tb) = _setup(make_transport, clock)

    async def scenario() -> None:
        await router.handle_message(a, _frame(type="SET_USER", payload={"userId": "user_a"}))
        await router.handle_message(a, _frame(type="JOIN_PROJECT", projectId="p1"))
        await router.handle_message(
            b, _frame(type="JOIN_PROJECT", projectId="p1", userId="user_b")
        )

    asyncio.run(scenario())

    latest = ta.of_type("USER_PRESENCE")[-1]["payload"]
    assert latest["projectId"] == "p1"
    assert latest["userCount"] == 2
    assert [u["userId"] for u in latest["activeUsers"]] == ["user_a", "user_b"]
    assert tb.of_type("USER_PRESENCE")[-1]["payload"] == latest


def test_entity_mutation_relayed_to_peers_only(make_transport, clock) -> None:
    registry, router, ids, transports = _setup(make_transport, clock, count=3)
    a, b, c = ids
    ta, tb, tc = transports
    registry.join(a, "p1")
    registry.join(b, "p1")
    registry.join(c, "p2")
    registry.identify(a, "user_a")

    frame = _frame(
        type="TASK_UPDATE",
        payload={"id": "t1", "changes": {"title": "New"}},
        operationId="op-42",
    )
    asyncio.run(router.handle_message(a, frame))

    assert ta.of_type("TASK_UPDATE") == []
    assert tc.of_type("TASK_UPDATE") == []
    (relayed,) = tb.of_type("TASK_UPDATE")
    assert relayed["projectId"] == "p1"
    assert relayed["operationId"] == "op-42"
    assert relayed["userId"] == "user_a"
    assert relayed["payload"]["changes"] == {"title": "New"}


def test_malformed_frame_gets_error_and_peers_see_nothing(make_transport, clock) -> None:
    registry, router, (a, b), (ta, tb) = _setup(make_transport, clock)
    registry.join(a, "p1")
    registry.join(b, "p1")

    asyncio.run(router.handle_message(a, "{not json"))

    (error,) = ta.messages()
    assert error["type"] == "ERROR"
    assert error["payload"]["code"] == "invalid_json"
    assert tb.sent == []
    assert a in registry


def test_mutation_without_room_is_rejected(make_transport, clock) -> None:
    registry, router, (a, b), (ta, tb) = _setup(make_transport, clock)
    registry.join(b, "p1")

    asyncio.run(router.handle_message(a, _frame(type="TASK_DELETE", payload={"taskId": "t1"})))

    (error,) = ta.of_type("ERROR")
    assert error["payload"]["code"] == "missing_project"
    assert tb.sent == []


def test_ping_answered_with_pong_and_refreshes_heartbeat(make_transport, clock) -> None:
    registry, router, (a, _), (ta, _) = _setup(make_transport, clock)
    clock.advance(45)

    asyncio.run(router.handle_message(a, _frame(type="PING")))

    (pong,) = ta.of_type("PONG")
    assert pong["payload"] == {"clientId": a}
    assert registry.get(a).last_heartbeat_at == clock.now


def test_unknown_type_is_ignored(make_transport, clock) -> None:
    registry, router, (a, b), (ta, tb) = _setup(make_transport, clock)
    registry.join(a, "p1")
    registry.join(b, "p1")

    asyncio.run(router.handle_message(a, _frame(type="CURSOR_MOVE", projectId="p1")))

    assert ta.sent == []
    assert tb.sent == []


def test_failed_send_marks_connection_stale(make_transport, clock) -> None:
    registry = ConnectionRegistry(clock=clock)
    router = BroadcastRouter(registry)
    good, bad = make_transport(), make_transport(fail=True)
    a = registry.register(good)
    b = registry.register(bad)
    registry.join(a, "p1")
    registry.join(b, "p1")

    delivered = asyncio.run(router.broadcast("p1", make_envelope("TASK_CREATE", {"id": "t1"})))

    assert delivered == 1
    assert registry.get(b).stale is True
    assert b in registry


def test_ingest_excludes_client_and_reports_counts(make_transport, clock) -> None:
    registry, router, (a, b), (ta, tb) = _setup(make_transport, clock)
    registry.join(a, "p1")
    registry.join(b, "p1")

    env = make_envelope("COMMENT_CREATE", {"id": "c1", "taskId": "t1"}, project_id="p1")
    result = asyncio.run(router.ingest(env, exclude_client_id=a))

    assert result.as_dict() == {"projectId": "p1", "delivered": 1, "clientCount": 2}
    assert ta.of_type("COMMENT_CREATE") == []
    assert len(tb.of_type("COMMENT_CREATE")) == 1

    with pytest.raises(EnvelopeError):
        asyncio.run(router.ingest(make_envelope("TASK_CREATE", {})))


def test_unregister_announces_departure(make_transport, clock) -> None:
    registry, router, (a, b), (ta, tb) = _setup(make_transport, clock)
    registry.join(a, "p1")
    registry.join(b, "p1")

    asyncio.run(router.unregister(a))

    latest = tb.of_type("USER_PRESENCE")[-1]["payload"]
    assert latest["userCount"] == 1
    assert latest["activeUsers"][0]["clientId"] == b


def test_broadcast_skips_unwritable_member(make_transport, clock) -> None:
    registry, router, ids, transports = _setup(make_transport, clock, count=3)
    a, b, c = ids
    ta, tb, tc = transports
    for client_id in ids:
        registry.join(client_id, "p1")
    tb.writable = False

    delivered = asyncio.run(router.broadcast("p1", make_envelope("TASK_CREATE", {"id": "t1"})))

    assert delivered == 2
    assert tb.sent == []
    assert registry.get(b).stale is False
    assert len(ta.of_type("TASK_CREATE")) == 1
    assert len(tc.of_type("TASK_CREATE")) == 1


def test_rejoin_same_room_with_new_user_refreshes_presence(make_transport, clock) -> None:
    registry, router, (a, b), (ta, tb) = _setup(make_transport, clock)

    async def scenario() -> None:
        await router.handle_message(a, _frame(type="JOIN_PROJECT", projectId="p1", userId="old"))
        await router.handle_message(b, _frame(type="JOIN_PROJECT", projectId="p1"))
        await router.handle_message(a, _frame(type="JOIN_PROJECT", projectId="p1", userId="new"))

    asyncio.run(scenario())

    latest = tb.of_type("USER_PRESENCE")[-1]["payload"]
    assert [u["userId"] for u in latest["activeUsers"]] == ["new", None]
    assert registry.get(a).user_id == "new"
    assert registry.room_size("p1") == 2


def test_rejoin_same_room_same_user_sends_nothing(make_transport, clock) -> None:
    registry, router, (a, _), (ta, _) = _setup(make_transport, clock)

    async def scenario() -> None:
        await router.handle_message(a, _frame(type="JOIN_PROJECT", projectId="p1", userId="u1"))
        before = len(ta.sent)
        await router.handle_message(a, _frame(type="JOIN_PROJECT", projectId="p1", userId="u1"))
        return before

    before = asyncio.run(scenario())

    assert len(ta.sent) == before
