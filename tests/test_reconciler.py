from __future__ import annotations

from projectsync.client.ledger import OptimisticLedger
from projectsync.client.reconciler import Reconciler
from projectsync.client.state import LocalState
from projectsync.realtime.envelope import EntityKind, MessageType, make_envelope


def _state() -> LocalState:
    return LocalState(
        projects=[{"id": "p1", "name": "Launch"}, {"id": "p2", "name": "Other"}],
        tasks=[{"id": "t1", "title": "Draft", "status": "TODO"}],
        comments={"t1": [{"id": "c1", "taskId": "t1", "content": "first"}]},
        current_project_id="p1",
        active_users=[{"userId": "u0"}],
    )


def test_create_inserts_once() -> None:
    state = _state()
    reconciler = Reconciler(state)
    env = make_envelope(MessageType.TASK_CREATE, {"id": "t2", "title": "New"}, project_id="p1")

    assert reconciler.apply(env) is True
    assert reconciler.apply(env) is False
    assert [task["id"] for task in state.tasks] == ["t2", "t1"]


def test_create_echo_confirms_pending_operation() -> None:
    state = _state()
    ledger = OptimisticLedger(state)
    reconciler = Reconciler(state, ledger)
    op_id = ledger.create_optimistic(EntityKind.COMMENT, {"taskId": "t1", "content": "mine"})

    echo = make_envelope(
        MessageType.COMMENT_CREATE,
        {"id": "c9", "taskId": "t1", "content": "mine"},
        project_id="p1",
        operation_id=op_id,
    )
    assert reconciler.apply(echo) is True

    assert [c["id"] for c in state.comments["t1"]] == ["c9", "c1"]
    assert op_id not in ledger


def test_update_merges_changes() -> None:
    state = _state()
    reconciler = Reconciler(state)
    reconciler.apply(
        make_envelope(MessageType.TASK_UPDATE, {"id": "t1", "changes": {"status": "DONE"}})
    )
    assert state.tasks[0] == {"id": "t1", "title": "Draft", "status": "DONE"}

    reconciler.apply(
        make_envelope(
            MessageType.COMMENT_UPDATE,
            {"id": "c1", "taskId": "t1", "changes": {"content": "edited"}},
        )
    )
    assert state.comments["t1"][0]["content"] == "edited"

    assert reconciler.apply(
        make_envelope(MessageType.TASK_UPDATE, {"id": "missing", "changes": {"x": 1}})
    ) is False


def test_project_update_accepts_bare_field_map() -> None:
    state = _state()
    reconciler = Reconciler(state)
    reconciler.apply(make_envelope(MessageType.PROJECT_UPDATE, {"id": "p2", "name": "Renamed"}))
    reconciler.apply(
        make_envelope(
            MessageType.PROJECT_UPDATE,
            {"id": "p1", "changes": {"name": "Launch v2"}},
            project_id="p1",
        )
    )
    assert [p["name"] for p in state.projects] == ["Launch v2", "Renamed"]


def test_task_delete_drops_comment_thread() -> None:
    state = _state()
    reconciler = Reconciler(state)
    assert reconciler.apply(make_envelope(MessageType.TASK_DELETE, {"taskId": "t1"})) is True
    assert state.tasks == []
    assert state.comments == {}


def test_comment_delete_by_id() -> None:
    state = _state()
    reconciler = Reconciler(state)
    reconciler.apply(make_envelope(MessageType.COMMENT_DELETE, {"id": "c1"}))
    assert state.comments["t1"] == []


def test_deleting_current_project_resets_view() -> None:
    state = _state()
    reconciler = Reconciler(state)

    reconciler.apply(make_envelope(MessageType.PROJECT_DELETE, {"projectId": "p2"}))
    assert state.current_project_id == "p1"
    assert state.tasks

    reconciler.apply(make_envelope(MessageType.PROJECT_DELETE, {"projectId": "p1"}))
    assert state.projects == []
    assert state.current_project_id is None
    assert state.tasks == []
    assert state.comments == {}
    assert state.active_users == []


def test_presence_replaces_list_for_current_project_only() -> None:
    state = _state()
    reconciler = Reconciler(state)
    users = [{"userId": "u1", "clientId": "c-1"}, {"userId": None, "clientId": "c-2"}]

    assert reconciler.apply(
        make_envelope(
            MessageType.USER_PRESENCE,
            {"projectId": "p2", "activeUsers": [], "userCount": 0},
        )
    ) is False
    assert state.active_users == [{"userId": "u0"}]

    reconciler.apply(
        make_envelope(
            MessageType.USER_PRESENCE,
            {"projectId": "p1", "activeUsers": users, "userCount": 2},
        )
    )
    assert state.active_users == users


def test_control_envelopes_and_unknown_types() -> None:
    state = _state()
    reconciler = Reconciler(state)
    reconciler.apply(make_envelope(MessageType.CONNECTION_ESTABLISHED, {"clientId": "client_1"}))
    reconciler.apply(make_envelope(MessageType.ERROR, {"error": "bad", "code": "invalid_json"}))
    assert state.client_id == "client_1"
    assert state.last_error["code"] == "invalid_json"

    before = state.snapshot()
    assert reconciler.apply(make_envelope("CURSOR_MOVE", {"x": 1})) is False
    assert state.snapshot() == before


def test_comment_with_unusable_task_id_is_ignored() -> None:
    state = _state()
    before = state.snapshot()
    reconciler = Reconciler(state)

    created = reconciler.apply(
        make_envelope(MessageType.COMMENT_CREATE, {"id": "c9", "taskId": {"bad": 1}})
    )

    assert created is False
    assert state.snapshot() == before
