import json

import pytest
from simple_websocket import ConnectionClosed

from examsecure import create_app
from examsecure.channel import SessionChannel
from examsecure.identity import TokenIdentity
from examsecure.registry import ConnectionRegistry
from examsecure.storage import Storage

SECRET = "test-secret"


class FakeSocket:
    """Stands in for a simple_websocket.Server."""

    def __init__(self, inbound=()):
        self.inbound = list(inbound)
        self.sent = []
        self.closed = False

    def send(self, data):
        if self.closed:
            raise ConnectionClosed()
        self.sent.append(json.loads(data))

    def receive(self, timeout=None):
        if not self.inbound:
            raise ConnectionClosed()
        item = self.inbound.pop(0)
        return item if isinstance(item, str) else json.dumps(item)

    def types(self):
        return [m["type"] for m in self.sent]

    def last(self):
        return self.sent[-1]


@pytest.fixture
def storage(tmp_path):
    store = Storage(tmp_path / "test.db")
    store.init_db()
    return store


@pytest.fixture
def identity(storage):
    return TokenIdentity(storage, SECRET)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def channel(registry, storage, identity):
    return SessionChannel(registry, storage, identity)


@pytest.fixture
def users(storage):
    storage.create_user("s1", role="student", full_name="Student One")
    storage.create_user("s2", role="student", full_name="Student Two")
    storage.create_user("p1", role="proctor", full_name="Proctor")
    storage.create_user("i1", role="instructor", full_name="Instructor")
    storage.create_user("a1", role="admin", full_name="Admin")
    return storage


@pytest.fixture
def exam_session(users):
    return users.create_session("exam-1", "s1", 3600, session_id="sess-1")


@pytest.fixture
def connect(channel, identity):
    """Open a fake connection authenticated as ``user_id``."""
    def _connect(user_id, session_id=None):
        ws = FakeSocket()
        channel.handle_raw(ws, json.dumps({"type": "authenticate", "token": identity.make_token(user_id)}))
        if session_id is not None:
            channel.handle_raw(ws, json.dumps({"type": "join_session", "sessionId": session_id}))
        ws.sent.clear()
        return ws
    return _connect


@pytest.fixture
def app(tmp_path):
    app = create_app({"DB_PATH": str(tmp_path / "app.db"), "JWT_SECRET": SECRET, "TESTING": True})
    return app


@pytest.fixture
def client(app):
    return app.test_client()
