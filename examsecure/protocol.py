"""JSON-over-WebSocket message catalog for the session control channel."""
import json
from enum import Enum

from examsecure.errors import MalformedMessage


class MessageType(str, Enum):
    AUTHENTICATE = "authenticate"
    JOIN_SESSION = "join_session"
    STUDENT_ACTIVITY = "student_activity"
    PROCTOR_ACTION = "proctor_action"
    TIME_UPDATE = "time_update"


class Role(str, Enum):
    STUDENT = "student"
    PROCTOR = "proctor"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value, default=None):
        try:
            return cls(value)
        except ValueError:
            return default


STAFF_ROLES = frozenset({Role.PROCTOR, Role.INSTRUCTOR})


class ProctorAction(str, Enum):
    PAUSE_SESSION = "pause_session"
    RESUME_SESSION = "resume_session"
    TERMINATE_SESSION = "terminate_session"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    TERMINATED = "terminated"

    @property
    def is_terminal(self):
        return self in (SessionStatus.COMPLETED, SessionStatus.TERMINATED)


# status a proctor action moves a session into
ACTION_STATUS = {
    ProctorAction.PAUSE_SESSION: SessionStatus.PAUSED,
    ProctorAction.RESUME_SESSION: SessionStatus.ACTIVE,
    ProctorAction.TERMINATE_SESSION: SessionStatus.TERMINATED,
}

STATUS_NOTIFICATIONS = {
    SessionStatus.PAUSED: ("session_paused", "Your exam has been paused by the proctor"),
    SessionStatus.ACTIVE: ("session_resumed", "Your exam has been resumed"),
    SessionStatus.TERMINATED: ("session_terminated", "Your exam has been terminated"),
}


def parse_message(raw):
    """Decode one inbound frame.

    Returns ``(MessageType, payload)``; the type is ``None`` when the frame is
    well formed but names a type outside the catalog. Raises MalformedMessage
    for anything that is not a JSON object with a string ``type``.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedMessage()
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        raise MalformedMessage()
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise MalformedMessage()

    payload = dict(message)
    type_name = payload.pop("type")
    try:
        return MessageType(type_name), payload
    except ValueError:
        return None, payload


# ----------------- SERVER -> CLIENT -----------------
def authenticated(client_id, user_id, role):
    return {"type": "authenticated", "clientId": client_id, "user": {"id": user_id, "role": role}}


def auth_error(message):
    return {"type": "auth_error", "message": message}


def session_joined(session_id):
    return {"type": "session_joined", "sessionId": session_id}


def error(message):
    return {"type": "error", "message": message}


def student_activity(session_id, student_id, activity):
    return {
        "type": "student_activity",
        "sessionId": session_id,
        "studentId": student_id,
        "activity": activity,
    }


def status_notification(status):
    """Message sent to the student when their session moves to ``status``."""
    message_type, text = STATUS_NOTIFICATIONS[SessionStatus(status)]
    return {"type": message_type, "message": text}
