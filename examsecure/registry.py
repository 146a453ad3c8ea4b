import json
import time
import logging
import threading

from simple_websocket import ConnectionClosed

from examsecure.protocol import Role

logger = logging.getLogger(__name__)


class Connection:
    """One authenticated WebSocket client."""

    def __init__(self, handle, user_id, role, client_id=None):
        self.handle = handle
        self.user_id = user_id
        self.role = role
        self.session_id = None
        self.client_id = client_id or f"{user_id}-{int(time.time() * 1000)}"
        self._send_lock = threading.Lock()

    def send(self, message):
        """Serialize and send; returns False if the transport is already gone."""
        data = json.dumps(message)
        with self._send_lock:
            try:
                self.handle.send(data)
            except (ConnectionClosed, ConnectionError, OSError) as e:
                logger.debug("Dropped %s for %s: %s", message.get("type"), self.client_id, e)
                return False
        return True

    def __repr__(self):
        return f"<Connection {self.client_id} role={self.role.value} session={self.session_id}>"


class ConnectionRegistry:
    """Live connections for one server instance, keyed by transport handle."""

    def __init__(self):
        self._connections = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._connections)

    def register(self, handle, user_id, role):
        role = Role.parse(role, Role.STUDENT)
        connection = Connection(handle, user_id, role)
        with self._lock:
            # re-authenticating on the same transport replaces the old entry
            self._connections[id(handle)] = connection
        return connection

    def find(self, handle):
        with self._lock:
            connection = self._connections.get(id(handle))
        if connection is not None and connection.handle is handle:
            return connection
        return None

    def attach_session(self, handle, session_id):
        connection = self.find(handle)
        if connection is None:
            return False
        connection.session_id = session_id
        return True

    def remove(self, handle):
        with self._lock:
            connection = self._connections.get(id(handle))
            if connection is None or connection.handle is not handle:
                return None
            del self._connections[id(handle)]
        return connection

    def all(self):
        with self._lock:
            return list(self._connections.values())

    def find_by_role(self, roles):
        roles = {Role(r) for r in roles}
        return [c for c in self.all() if c.role in roles]

    def find_by_session(self, session_id, role=None):
        return [c for c in self.all()
                if c.session_id == session_id and (role is None or c.role == role)]
