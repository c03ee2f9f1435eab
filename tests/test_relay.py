"""
Tests for the presence/broadcast relay, driven through in-memory sockets.
"""
import asyncio

import pytest

import models
from conftest import FakeSocket
from relay import CANCELLED_MESSAGE, RelayRegistry


async def connected(relay, token=None):
    socket = FakeSocket()
    connection_id = relay.connect(socket)
    if token:
        await relay.dispatch(connection_id, "authenticate", {"token": token})
    return connection_id, socket


async def in_room(relay, token, project_id="1"):
    connection_id, socket = await connected(relay, token)
    await relay.dispatch(connection_id, "join_project", {"project_id": project_id})
    return connection_id, socket


# -- registry ---------------------------------------------------------------

def test_registry_tracks_rooms_both_ways():
    registry = RelayRegistry()
    registry.add_connection("a", object())
    registry.set_user("a", {"id": "u1", "username": "ann"})

    assert registry.join("a", "p1") is True
    assert registry.join("a", "p1") is False
    assert registry.join("a", "p2") is True
    assert registry.get("a").rooms == {"p1", "p2"}
    assert registry.room_users("p1") == [{"id": "u1", "username": "ann"}]

    assert registry.leave("a", "p1") is True
    assert registry.leave("a", "p1") is False
    assert registry.room_members("p1") == []

    state = registry.remove_connection("a")
    assert state.rooms == {"p2"}
    assert registry.room_members("p2") == []
    assert registry.get("a") is None


# -- authenticate -----------------------------------------------------------

@pytest.mark.asyncio
async def test_authenticate_creates_online_session(relay, tokens, fresh_session):
    connection_id, socket = await connected(relay, tokens["designer"])

    assert socket.events("authenticated")[0]["user"]["username"] == "designer"
    session = fresh_session().query(models.UserSession).filter_by(id=connection_id).one()
    assert session.is_online is True
    assert session.user_id == "2"


@pytest.mark.asyncio
async def test_bad_token_leaves_connection_anonymous(relay):
    connection_id, socket = await connected(relay, "not-a-jwt")

    assert socket.names() == ["auth_error"]
    assert relay.registry.user_for(connection_id) is None
    assert relay.registry.get(connection_id) is not None


@pytest.mark.asyncio
async def test_switching_identity_leaves_rooms_of_previous_user(relay, tokens):
    admin_id, _ = await in_room(relay, tokens["admin"])
    _, watcher = await in_room(relay, tokens["designer"])

    await relay.dispatch(admin_id, "authenticate", {"token": tokens["outsider"]})
    await relay.dispatch(admin_id, "document_edit", {"project_id": "1", "changes": {"title": "hijack"}})

    assert relay.registry.user_for(admin_id)["username"] == "outsider"
    assert admin_id not in relay.registry.room_members("1")
    left = watcher.events("user_left")
    assert [e["user"]["username"] for e in left] == ["admin"]
    assert watcher.events("document_updated") == []


@pytest.mark.asyncio
async def test_reauthenticating_as_same_user_keeps_rooms(relay, tokens):
    admin_id, _ = await in_room(relay, tokens["admin"])
    _, watcher = await in_room(relay, tokens["designer"])

    await relay.dispatch(admin_id, "authenticate", {"token": tokens["admin"]})

    assert relay.registry.is_member(admin_id, "1")
    assert watcher.events("user_left") == []


@pytest.mark.asyncio
async def test_send_to_user_reaches_every_connection_of_that_user(relay, tokens, users):
    _, first = await connected(relay, tokens["admin"])
    _, second = await connected(relay, tokens["admin"])
    _, other = await connected(relay, tokens["designer"])

    await relay.send_to_user(users["admin"].id, "notification", {"message": "hello"})

    assert first.events("notification") == [{"message": "hello"}]
    assert second.events("notification") == [{"message": "hello"}]
    assert other.events("notification") == []


# -- join / leave -----------------------------------------------------------

@pytest.mark.asyncio
async def test_join_requires_authentication(relay):
    connection_id, socket = await connected(relay)
    await relay.dispatch(connection_id, "join_project", {"project_id": "1"})

    assert socket.events("error")[0]["message"] == "Not authenticated"
    assert relay.registry.room_members("1") == []


@pytest.mark.asyncio
async def test_join_denied_for_non_member(relay, tokens):
    _, watcher = await in_room(relay, tokens["admin"])
    connection_id, socket = await connected(relay, tokens["outsider"])

    await relay.dispatch(connection_id, "join_project", {"project_id": "1"})

    assert socket.events("error")[0]["message"] == "Access denied to this project"
    assert connection_id not in relay.registry.room_members("1")
    assert watcher.events("user_joined") == []


@pytest.mark.asyncio
async def test_join_notifies_each_other_member_once(relay, tokens):
    _, admin = await in_room(relay, tokens["admin"])
    _, designer = await in_room(relay, tokens["designer"])
    dev_id, developer = await in_room(relay, tokens["developer"])
    # joining again is not a second arrival
    await relay.dispatch(dev_id, "join_project", {"project_id": "1"})

    for socket in (admin, designer):
        joined = [e["user"]["username"] for e in socket.events("user_joined")]
        assert joined.count("developer") == 1
    assert [e["user"]["username"] for e in developer.events("user_joined")] == []

    users = developer.events("project_users")[-1]["users"]
    assert {u["username"] for u in users} == {"admin", "designer", "developer"}


@pytest.mark.asyncio
async def test_leave_is_idempotent(relay, tokens):
    _, admin = await in_room(relay, tokens["admin"])
    designer_id, _ = await in_room(relay, tokens["designer"])

    await relay.dispatch(designer_id, "leave_project", {"project_id": "1"})
    await relay.dispatch(designer_id, "leave_project", {"project_id": "1"})

    assert len(admin.events("user_left")) == 1
    assert designer_id not in relay.registry.room_members("1")


@pytest.mark.asyncio
async def test_departed_connection_misses_later_edits(relay, tokens):
    admin_id, _ = await in_room(relay, tokens["admin"])
    designer_id, designer = await in_room(relay, tokens["designer"])

    await relay.dispatch(designer_id, "leave_project", {"project_id": "1"})
    await relay.dispatch(admin_id, "document_edit", {"project_id": "1", "changes": {"title": "v2"}})

    assert designer.events("document_updated") == []


# -- edits, cursors, typing -------------------------------------------------

@pytest.mark.asyncio
async def test_cursor_update_reaches_others_only(relay, tokens):
    a_id, a = await in_room(relay, tokens["admin"])
    _, b = await in_room(relay, tokens["designer"])

    await relay.dispatch(a_id, "cursor_update", {"project_id": "1", "position": {"x": 10, "y": 20}})

    moved = b.events("cursor_moved")
    assert len(moved) == 1
    assert moved[0]["user"]["username"] == "admin"
    assert moved[0]["position"] == {"x": 10, "y": 20}
    assert "timestamp" in moved[0]
    assert a.events("cursor_moved") == []


@pytest.mark.asyncio
async def test_document_edit_requires_room_membership(relay, tokens):
    _, member = await in_room(relay, tokens["admin"])
    stranger_id, stranger = await connected(relay, tokens["designer"])

    await relay.dispatch(stranger_id, "document_edit", {"project_id": "1", "changes": {}})

    assert stranger.events("error")
    assert member.events("document_updated") == []


@pytest.mark.asyncio
async def test_typing_indicator(relay, tokens):
    a_id, _ = await in_room(relay, tokens["admin"])
    _, b = await in_room(relay, tokens["designer"])

    await relay.dispatch(a_id, "typing_start", {"project_id": "1"})
    await relay.dispatch(a_id, "typing_stop", {"project_id": "1"})

    assert [e["is_typing"] for e in b.events("user_typing")] == [True, False]


@pytest.mark.asyncio
async def test_dead_socket_does_not_break_broadcast(relay, tokens):
    a_id, _ = await in_room(relay, tokens["admin"])
    _, dead = await in_room(relay, tokens["designer"])
    _, alive = await in_room(relay, tokens["developer"])
    dead.closed = True

    await relay.dispatch(a_id, "document_edit", {"project_id": "1", "changes": {"x": 1}})

    assert len(alive.events("document_updated")) == 1


@pytest.mark.asyncio
async def test_unknown_event(relay, tokens):
    connection_id, socket = await connected(relay, tokens["admin"])
    await relay.dispatch(connection_id, "teleport", {})
    assert socket.events("error")[0]["message"] == "Unknown event: teleport"


# -- task updates -----------------------------------------------------------

@pytest.mark.asyncio
async def test_task_update_persists_logs_and_broadcasts_to_all(relay, tokens, fresh_session):
    a_id, a = await in_room(relay, tokens["admin"])
    _, b = await in_room(relay, tokens["designer"])

    await relay.dispatch(a_id, "task_update", {
        "project_id": "1",
        "task_id": "1",
        "updates": {"status": "done", "priority": "low"},
    })

    for socket in (a, b):
        update = socket.events("task_updated")[0]
        assert update["updates"] == {"status": "done", "priority": "low"}
        assert update["updated_by"]["username"] == "admin"

    db = fresh_session()
    task = db.query(models.Task).filter_by(id="1").one()
    assert (task.status, task.priority) == ("done", "low")
    logs = db.query(models.ActivityLog).filter_by(action="task_updated").all()
    assert len(logs) == 1
    assert logs[0].details["task_id"] == "1"


@pytest.mark.asyncio
async def test_task_update_rejects_unlisted_fields(relay, tokens, fresh_session):
    a_id, a = await in_room(relay, tokens["admin"])
    _, b = await in_room(relay, tokens["designer"])

    await relay.dispatch(a_id, "task_update", {
        "project_id": "1",
        "task_id": "1",
        "updates": {"project_id": "2", "status": "done"},
    })

    assert a.events("error")
    assert b.events("error") == []
    assert b.events("task_updated") == []
    db = fresh_session()
    assert db.query(models.Task).filter_by(id="1").one().status == "in_progress"
    assert db.query(models.ActivityLog).count() == 0


@pytest.mark.asyncio
async def test_task_update_unknown_task(relay, tokens):
    a_id, a = await in_room(relay, tokens["admin"])
    await relay.dispatch(a_id, "task_update", {"project_id": "1", "task_id": "nope", "updates": {"status": "x"}})
    assert a.events("error")[0]["message"] == "Task not found"


# -- ai requests ------------------------------------------------------------

@pytest.mark.asyncio
async def test_ai_request_replies_privately_and_summarises_to_room(relay, tokens, users, fresh_session):
    a_id, a = await in_room(relay, tokens["admin"])
    _, b = await in_room(relay, tokens["designer"])

    execution_id = await relay.ai_request(a_id, {
        "project_id": "1", "agent_id": "1", "task": "suggest a color scheme", "context": {},
    })
    pending = fresh_session().query(models.Execution).filter_by(id=execution_id).one()
    assert pending.status == "pending"

    await relay.scheduled_completion(execution_id)

    response = a.events("ai_response")[0]
    assert response["execution_id"] == execution_id
    assert response["result"].startswith("Here's a color scheme")
    assert b.events("ai_response") == []
    activity = b.events("ai_activity")[0]
    assert activity["execution_id"] == execution_id
    assert activity["task"] == "suggest a color scheme"
    assert a.events("ai_activity")[0]["agent"]["name"] == "Design Assistant"

    row = fresh_session().query(models.Execution).filter_by(id=execution_id).one()
    assert row.status == "completed"
    assert row.completed_at is not None


@pytest.mark.asyncio
async def test_ai_request_unknown_agent(relay, tokens, fresh_session):
    a_id, a = await in_room(relay, tokens["admin"])
    await relay.dispatch(a_id, "ai_request", {"project_id": "1", "agent_id": "99", "task": "hi"})

    assert a.events("ai_error")[0]["message"] == "Agent not found"
    assert fresh_session().query(models.Execution).count() == 0


@pytest.mark.asyncio
async def test_ai_request_store_failure_marks_execution_failed(relay, tokens, fresh_session, monkeypatch):
    a_id, a = await in_room(relay, tokens["admin"])

    def locked(execution_id):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(relay.responder, "finish", locked)

    execution_id = await relay.ai_request(a_id, {"project_id": "1", "agent_id": "1", "task": "color schemes"})
    scheduled = relay.scheduled_completion(execution_id)
    await scheduled

    assert scheduled.exception() is None
    error = a.events("ai_error")[0]
    assert error["execution_id"] == execution_id
    assert a.events("ai_response") == []
    row = fresh_session().query(models.Execution).filter_by(id=execution_id).one()
    assert row.status == "failed"
    assert row.result == "database is locked"
    assert row.completed_at is not None
    assert relay.pending_executions(a_id) == set()


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_ai_request(relay, tokens, fresh_session):
    relay.ai_delay_seconds = 30
    a_id, a = await in_room(relay, tokens["admin"])

    execution_id = await relay.ai_request(a_id, {"project_id": "1", "agent_id": "2", "task": "styling"})
    await asyncio.sleep(0)
    await relay.disconnect(a_id)

    row = fresh_session().query(models.Execution).filter_by(id=execution_id).one()
    assert row.status == "failed"
    assert row.result == CANCELLED_MESSAGE
    assert row.completed_at is not None
    assert a.events("ai_response") == []
    assert relay.pending_executions(a_id) == set()


# -- disconnect -------------------------------------------------------------

@pytest.mark.asyncio
async def test_disconnect_leaves_every_room(relay, tokens, users, fresh_session):
    db = fresh_session()
    db.add(models.Project(id="2", name="Second", owner_id=users["admin"].id))
    db.add(models.ProjectCollaborator(project_id="2", user_id=users["designer"].id))
    db.commit()

    a_id, _ = await in_room(relay, tokens["admin"], "1")
    await relay.dispatch(a_id, "join_project", {"project_id": "2"})
    watcher_id, watcher = await in_room(relay, tokens["designer"], "1")
    await relay.dispatch(watcher_id, "join_project", {"project_id": "2"})

    await relay.disconnect(a_id)

    left = watcher.events("user_left")
    assert sorted(e["project_id"] for e in left) == ["1", "2"]
    assert all(e["user"]["username"] == "admin" for e in left)
    assert a_id not in relay.registry.room_members("1")
    assert a_id not in relay.registry.room_members("2")

    session = fresh_session().query(models.UserSession).filter_by(id=a_id).one()
    assert session.is_online is False


@pytest.mark.asyncio
async def test_anonymous_disconnect_is_quiet(relay, tokens):
    _, member = await in_room(relay, tokens["admin"])
    connection_id, _ = await connected(relay)
    await relay.disconnect(connection_id)
    await relay.disconnect(connection_id)
    assert member.events("user_left") == []
