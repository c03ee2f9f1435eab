"""
Pytest configuration and fixtures.

Settings are read at import time, so the test database, upload directory and
relay delay are pinned in the environment before any project module loads.
"""
import os
import tempfile

_TEST_ROOT = tempfile.mkdtemp(prefix="collab-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_ROOT, 'test.db')}"
os.environ["UPLOAD_DIR"] = os.path.join(_TEST_ROOT, "uploads")
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["AI_RESPONSE_DELAY_SECONDS"] = "0"

import pytest

import auth
import crud
import models
from agent_responder import AgentResponder
from database import Base, SessionLocal, engine
from init_db import init_db
from relay import CollaborationRelay, RelayRegistry
from schemas import UserCreate


class FakeSocket:
    """Stands in for a WebSocket: records everything the relay sends."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send_json(self, message):
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    def events(self, name):
        return [m["data"] for m in self.sent if m["event"] == name]

    def names(self):
        return [m["event"] for m in self.sent]


@pytest.fixture(scope="function")
def test_db():
    """Fresh schema plus seed data for each test"""
    Base.metadata.drop_all(bind=engine)
    init_db()
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def users(test_db):
    """Seeded owner/members plus a user with no project access"""
    outsider = crud.create_user(test_db, UserCreate(username="outsider", email="out@example.com", password="secret"))
    by_name = {u.username: u for u in test_db.query(models.User).all()}
    by_name["outsider"] = outsider
    return by_name


@pytest.fixture
def tokens(users):
    return {name: auth.token_for_user(user) for name, user in users.items()}


@pytest.fixture
def responder(test_db):
    return AgentResponder(SessionLocal)


@pytest.fixture
def relay(responder):
    return CollaborationRelay(RelayRegistry(), responder, SessionLocal, ai_delay_seconds=0)


@pytest.fixture
def fresh_session():
    sessions = []

    def _open():
        session = SessionLocal()
        sessions.append(session)
        return session

    yield _open
    for session in sessions:
        session.close()
