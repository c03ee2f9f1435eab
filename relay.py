"""
Presence and broadcast relay.

Each live connection is Anonymous until ``authenticate`` succeeds, then may join
any number of project rooms. Events from a connection are re-broadcast to the
other members of the room; errors go back to the originating connection only.

Handles only need an ``async send_json(dict)`` method, so the relay can be
driven by a FastAPI WebSocket or by a test double.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import pydantic

import crud
import models
from agent_responder import AgentResponder
from auth import require_project_access, resolve_user
from database import SessionLocal
from errors import AppError, AuthError, ValidationError
from schemas import TaskUpdate
from settings import AI_RESPONSE_DELAY_SECONDS

logger = logging.getLogger("CollabBackend.relay")

CANCELLED_MESSAGE = "Request cancelled: connection closed"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ConnectionState:
    connection_id: str
    handle: Any
    user: Optional[dict] = None
    rooms: Set[str] = field(default_factory=set)


class RelayRegistry:
    """Owns the connection -> state and room -> connection-set indexes."""

    def __init__(self):
        self._connections: Dict[str, ConnectionState] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def add_connection(self, connection_id: str, handle) -> ConnectionState:
        state = ConnectionState(connection_id=connection_id, handle=handle)
        self._connections[connection_id] = state
        return state

    def get(self, connection_id: str) -> Optional[ConnectionState]:
        return self._connections.get(connection_id)

    def user_for(self, connection_id: str) -> Optional[dict]:
        state = self._connections.get(connection_id)
        return state.user if state else None

    def set_user(self, connection_id: str, user: dict):
        self._connections[connection_id].user = user

    def join(self, connection_id: str, project_id: str) -> bool:
        """Add the connection to the room. Returns False if it was already there."""
        members = self._rooms.setdefault(project_id, set())
        if connection_id in members:
            return False
        members.add(connection_id)
        self._connections[connection_id].rooms.add(project_id)
        return True

    def leave(self, connection_id: str, project_id: str) -> bool:
        members = self._rooms.get(project_id)
        if not members or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self._rooms[project_id]
        state = self._connections.get(connection_id)
        if state:
            state.rooms.discard(project_id)
        return True

    def remove_connection(self, connection_id: str) -> Optional[ConnectionState]:
        """Drop the connection from every room and forget it. Returns its last state."""
        state = self._connections.get(connection_id)
        if state is None:
            return None
        for project_id in state.rooms:
            members = self._rooms.get(project_id)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[project_id]
        del self._connections[connection_id]
        return state

    def is_member(self, connection_id: str, project_id: str) -> bool:
        return connection_id in self._rooms.get(project_id, ())

    def room_members(self, project_id: str) -> List[str]:
        return list(self._rooms.get(project_id, ()))

    def room_users(self, project_id: str) -> List[dict]:
        users = []
        seen = set()
        for connection_id in self.room_members(project_id):
            user = self.user_for(connection_id)
            if user and user["id"] not in seen:
                seen.add(user["id"])
                users.append(user)
        return users

    def connections_for_user(self, user_id: str) -> List[str]:
        return [cid for cid, state in self._connections.items() if state.user and state.user["id"] == user_id]

    def connection_count(self) -> int:
        return len(self._connections)


def _require(data: dict, key: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise ValidationError(f"{key} is required")
    return value


class CollaborationRelay:
    def __init__(self, registry: RelayRegistry, responder: AgentResponder,
                 session_factory=SessionLocal, ai_delay_seconds: float = AI_RESPONSE_DELAY_SECONDS):
        self.registry = registry
        self.responder = responder
        self.session_factory = session_factory
        self.ai_delay_seconds = ai_delay_seconds
        # execution id -> scheduled completion, per owning connection
        self._pending: Dict[str, asyncio.Task] = {}
        self._pending_by_connection: Dict[str, Set[str]] = {}

        self.handlers = {
            "authenticate": self.authenticate,
            "join_project": self.join_project,
            "leave_project": self.leave_project,
            "document_edit": self.document_edit,
            "cursor_update": self.cursor_update,
            "task_update": self.task_update,
            "ai_request": self.ai_request,
            "typing_start": self.typing_start,
            "typing_stop": self.typing_stop,
        }
        self.error_events = {"authenticate": "auth_error", "ai_request": "ai_error"}

    # -- transport ---------------------------------------------------------

    def connect(self, handle) -> str:
        connection_id = uuid.uuid4().hex
        self.registry.add_connection(connection_id, handle)
        logger.info(f"New connection: {connection_id}. Total: {self.registry.connection_count()}")
        return connection_id

    async def dispatch(self, connection_id: str, event: str, data: Optional[dict]):
        handler = self.handlers.get(event)
        if handler is None:
            await self.send(connection_id, "error", {"message": f"Unknown event: {event}"})
            return
        try:
            await handler(connection_id, data or {})
        except AppError as e:
            logger.warning(f"{event} from {connection_id} rejected: {e.message}")
            await self.send(connection_id, self.error_events.get(event, "error"), {"message": e.message, "event": event})
        except Exception as e:
            logger.exception(f"{event} from {connection_id} failed: {e}")
            await self.send(connection_id, self.error_events.get(event, "error"), {"message": "Internal server error", "event": event})

    async def send(self, connection_id: str, event: str, data: dict) -> bool:
        state = self.registry.get(connection_id)
        if state is None:
            logger.debug(f"Dropping {event} for closed connection {connection_id}")
            return False
        try:
            await state.handle.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            logger.warning(f"Error sending {event} to {connection_id}: {e}")
            return False

    async def emit_to_room(self, project_id: str, event: str, data: dict, exclude: Optional[str] = None):
        for connection_id in self.registry.room_members(project_id):
            if connection_id != exclude:
                await self.send(connection_id, event, data)

    async def broadcast_to_project(self, project_id: str, event: str, data: dict):
        await self.emit_to_room(project_id, event, data)

    async def send_to_user(self, user_id: str, event: str, data: dict):
        for connection_id in self.registry.connections_for_user(user_id):
            await self.send(connection_id, event, data)

    def project_users(self, project_id: str) -> List[dict]:
        return self.registry.room_users(project_id)

    # -- helpers -----------------------------------------------------------

    def _require_user(self, connection_id: str) -> dict:
        user = self.registry.user_for(connection_id)
        if user is None:
            raise AuthError("Not authenticated")
        return user

    def _require_room(self, connection_id: str, data: dict):
        user = self._require_user(connection_id)
        project_id = str(_require(data, "project_id"))
        if not self.registry.is_member(connection_id, project_id):
            raise ValidationError("Join the project before sending to it")
        return user, project_id

    def _load_user(self, db, user: dict) -> models.User:
        row = db.query(models.User).filter(models.User.id == user["id"], models.User.is_active.is_(True)).first()
        if row is None:
            raise AuthError("User not found or inactive")
        return row

    # -- events ------------------------------------------------------------

    async def authenticate(self, connection_id: str, data: dict):
        token = data.get("token")
        with self.session_factory() as db:
            user = resolve_user(db, token)
            public = user.public()
            session = db.query(models.UserSession).filter(models.UserSession.id == connection_id).first()
            if session is None:
                session = models.UserSession(id=connection_id, socket_id=connection_id, user_id=user.id)
                db.add(session)
            session.user_id = user.id
            session.is_online = True
            session.last_seen = models.utcnow()
            db.commit()

        previous = self.registry.user_for(connection_id)
        if previous is not None and previous["id"] != public["id"]:
            # rooms were granted to the old identity
            await self._leave_all_rooms(connection_id, previous)
        self.registry.set_user(connection_id, public)
        await self.send(connection_id, "authenticated", {"user": public})
        logger.info(f"User authenticated: {public['username']} ({connection_id})")

    async def join_project(self, connection_id: str, data: dict):
        user = self._require_user(connection_id)
        project_id = str(_require(data, "project_id"))
        with self.session_factory() as db:
            require_project_access(db, project_id, self._load_user(db, user))

        if self.registry.join(connection_id, project_id):
            await self.emit_to_room(
                project_id,
                "user_joined",
                {"user": user, "project_id": project_id, "timestamp": now_iso()},
                exclude=connection_id,
            )
            logger.info(f"User {user['username']} joined project {project_id}")
        await self.send(connection_id, "project_users", {"project_id": project_id, "users": self.registry.room_users(project_id)})

    async def leave_project(self, connection_id: str, data: dict):
        project_id = str(_require(data, "project_id"))
        if not self.registry.leave(connection_id, project_id):
            return
        await self.emit_to_room(
            project_id,
            "user_left",
            {"user": self.registry.user_for(connection_id), "project_id": project_id, "timestamp": now_iso()},
        )

    async def _leave_all_rooms(self, connection_id: str, user: dict):
        state = self.registry.get(connection_id)
        for project_id in sorted(state.rooms):
            if self.registry.leave(connection_id, project_id):
                await self.emit_to_room(
                    project_id,
                    "user_left",
                    {"user": user, "project_id": project_id, "timestamp": now_iso()},
                )
        logger.info(f"Connection {connection_id} re-authenticated; left rooms held by {user['username']}")

    async def document_edit(self, connection_id: str, data: dict):
        user, project_id = self._require_room(connection_id, data)
        await self.emit_to_room(
            project_id,
            "document_updated",
            {"user": user, "project_id": project_id, "changes": data.get("changes"), "timestamp": now_iso()},
            exclude=connection_id,
        )

    async def cursor_update(self, connection_id: str, data: dict):
        user, project_id = self._require_room(connection_id, data)
        await self.emit_to_room(
            project_id,
            "cursor_moved",
            {"user": user, "project_id": project_id, "position": data.get("position"), "timestamp": now_iso()},
            exclude=connection_id,
        )

    async def typing_start(self, connection_id: str, data: dict):
        await self._typing(connection_id, data, True)

    async def typing_stop(self, connection_id: str, data: dict):
        await self._typing(connection_id, data, False)

    async def _typing(self, connection_id: str, data: dict, is_typing: bool):
        user, project_id = self._require_room(connection_id, data)
        await self.emit_to_room(
            project_id,
            "user_typing",
            {"user": user, "project_id": project_id, "is_typing": is_typing, "timestamp": now_iso()},
            exclude=connection_id,
        )

    async def task_update(self, connection_id: str, data: dict):
        user = self._require_user(connection_id)
        project_id = str(_require(data, "project_id"))
        task_id = str(_require(data, "task_id"))
        try:
            updates = TaskUpdate.model_validate(data.get("updates") or {})
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid task update: {e.errors()[0].get('msg')}")

        with self.session_factory() as db:
            task = crud.update_task(db, project_id, task_id, updates, self._load_user(db, user))

        await self.broadcast_to_project(
            project_id,
            "task_updated",
            {
                "task_id": task_id,
                "project_id": project_id,
                "updates": updates.model_dump(mode="json", exclude_unset=True),
                "task": task,
                "updated_by": user,
                "timestamp": now_iso(),
            },
        )

    async def ai_request(self, connection_id: str, data: dict):
        user = self._require_user(connection_id)
        agent_id = str(_require(data, "agent_id"))
        task = str(_require(data, "task"))
        project_id = data.get("project_id")
        project_id = str(project_id) if project_id else None
        if project_id:
            with self.session_factory() as db:
                require_project_access(db, project_id, self._load_user(db, user))

        execution_id = self.responder.start(agent_id, task, data.get("context") or {}, user["id"], project_id)
        scheduled = asyncio.create_task(self._complete_ai_request(connection_id, execution_id, user, project_id, task))
        self._pending[execution_id] = scheduled
        self._pending_by_connection.setdefault(connection_id, set()).add(execution_id)
        return execution_id

    async def _complete_ai_request(self, connection_id: str, execution_id: str, user: dict,
                                   project_id: Optional[str], task: str):
        try:
            await asyncio.sleep(self.ai_delay_seconds)
            outcome = self.responder.finish(execution_id)
        except asyncio.CancelledError:
            self.responder.fail(execution_id, CANCELLED_MESSAGE)
            raise
        except AppError as e:
            await self.send(connection_id, "ai_error", {"message": e.message, "execution_id": execution_id})
            return
        except Exception as e:
            logger.exception(f"Execution {execution_id} could not be completed: {e}")
            self.responder.fail(execution_id, str(e))
            await self.send(connection_id, "ai_error", {"message": "Internal server error", "execution_id": execution_id})
            return
        finally:
            self._pending.pop(execution_id, None)
            pending = self._pending_by_connection.get(connection_id)
            if pending is not None:
                pending.discard(execution_id)
                if not pending:
                    del self._pending_by_connection[connection_id]

        await self.send(connection_id, "ai_response", outcome.to_dict())
        if project_id:
            await self.emit_to_room(
                project_id,
                "ai_activity",
                {
                    "user": user,
                    "agent": outcome.agent,
                    "execution_id": execution_id,
                    "task": task,
                    "result": outcome.result,
                    "timestamp": now_iso(),
                },
            )

    def pending_executions(self, connection_id: str) -> Set[str]:
        return set(self._pending_by_connection.get(connection_id, ()))

    def scheduled_completion(self, execution_id: str) -> Optional[asyncio.Task]:
        return self._pending.get(execution_id)

    async def disconnect(self, connection_id: str):
        execution_ids = self.pending_executions(connection_id)
        scheduled = [self._pending[eid] for eid in execution_ids if eid in self._pending]
        for task in scheduled:
            task.cancel()
        if scheduled:
            await asyncio.gather(*scheduled, return_exceptions=True)
        # a task cancelled before its first step never reaches its own handler
        for execution_id in execution_ids:
            self._pending.pop(execution_id, None)
            self.responder.fail(execution_id, CANCELLED_MESSAGE)
        self._pending_by_connection.pop(connection_id, None)

        state = self.registry.remove_connection(connection_id)
        if state is None:
            return
        if state.user is not None:
            with self.session_factory() as db:
                session = db.query(models.UserSession).filter(models.UserSession.id == connection_id).first()
                if session is not None:
                    session.is_online = False
                    session.last_seen = models.utcnow()
                    db.commit()
            for project_id in state.rooms:
                await self.emit_to_room(
                    project_id,
                    "user_left",
                    {"user": state.user, "project_id": project_id, "timestamp": now_iso()},
                )
            logger.info(f"User disconnected: {state.user['username']} ({connection_id})")
        logger.info(f"Connection closed: {connection_id}. Total: {self.registry.connection_count()}")
