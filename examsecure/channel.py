"""Session control channel.

Routes JSON messages from proctoring clients: students report activity and
countdown syncs, proctors pause, resume or terminate a student's session.
Every inbound message is handled inside its own failure boundary, and errors
go back to the sender as ``error`` / ``auth_error`` messages. The server never
closes a connection because of a bad message.
"""
import json
import logging
import math
from numbers import Number

from simple_websocket import ConnectionClosed

from examsecure import protocol
from examsecure.errors import (
    ChannelError,
    MalformedMessage,
    AuthenticationFailure,
    UnknownMessageType,
    UnauthorizedAction,
    SessionNotFound,
    InvalidTransition,
)
from examsecure.protocol import MessageType, Role, ProctorAction, STAFF_ROLES, ACTION_STATUS
from examsecure.storage import utc_now

logger = logging.getLogger(__name__)


def _send_raw(handle, message):
    try:
        handle.send(json.dumps(message))
    except (ConnectionClosed, ConnectionError, OSError) as e:
        logger.debug("Could not reply on closed transport: %s", e)
        return False
    return True


class SessionChannel:

    def __init__(self, registry, storage, identity):
        self.registry = registry
        self.storage = storage
        self.identity = identity
        self._handlers = {
            MessageType.AUTHENTICATE: self.on_authenticate,
            MessageType.JOIN_SESSION: self.on_join_session,
            MessageType.STUDENT_ACTIVITY: self.on_student_activity,
            MessageType.PROCTOR_ACTION: self.on_proctor_action,
            MessageType.TIME_UPDATE: self.on_time_update,
        }

    # ----------------- TRANSPORT -----------------
    def serve(self, ws):
        """Receive loop for one connection.

        Messages from a single connection are handled one at a time, in the
        order they arrive.
        """
        logger.info("WebSocket connection established")
        try:
            while True:
                raw = ws.receive()
                if raw is None:
                    break
                self.handle_raw(ws, raw)
        except ConnectionClosed:
            pass
        finally:
            self.disconnect(ws)

    def disconnect(self, handle):
        connection = self.registry.remove(handle)
        if connection is not None:
            logger.info("WebSocket connection closed: %s", connection.client_id)
        else:
            logger.info("WebSocket connection closed (unauthenticated)")
        return connection

    def reply(self, handle, message):
        connection = self.registry.find(handle)
        if connection is not None:
            return connection.send(message)
        return _send_raw(handle, message)

    # ----------------- ROUTING -----------------
    def handle_raw(self, handle, raw):
        try:
            message_type, payload = protocol.parse_message(raw)
            self.dispatch(handle, message_type, payload)
        except UnauthorizedAction as e:
            logger.debug("Ignored message: %s", e.message)
        except ChannelError as e:
            self.reply(handle, {"type": e.reply_type, "message": e.message})
        except Exception:
            logger.exception("WebSocket message error")
            self.reply(handle, protocol.error("Invalid message format"))

    def dispatch(self, handle, message_type, payload):
        handler = self._handlers.get(message_type)
        if handler is None:
            raise UnknownMessageType()
        handler(handle, payload)

    def _require_role(self, handle, roles):
        connection = self.registry.find(handle)
        if connection is None or connection.role not in roles:
            raise UnauthorizedAction("role not allowed")
        return connection

    # ----------------- HANDLERS -----------------
    def on_authenticate(self, handle, payload):
        try:
            user = self.identity.resolve(payload.get("token"))
        except AuthenticationFailure:
            raise
        except Exception:
            logger.exception("Authentication error")
            raise AuthenticationFailure("Authentication failed")

        connection = self.registry.register(handle, user["id"], user.get("role"))
        logger.info("Authenticated %s as %s", connection.client_id, connection.role.value)
        connection.send(protocol.authenticated(connection.client_id, connection.user_id,
                                               connection.role.value))

    def on_join_session(self, handle, payload):
        session_id = payload.get("sessionId")
        if session_id is None:
            raise MalformedMessage()
        # no check that the session exists or belongs to the caller
        if not self.registry.attach_session(handle, session_id):
            raise ChannelError("Not authenticated")
        self.reply(handle, protocol.session_joined(session_id))

    def on_student_activity(self, handle, payload):
        connection = self._require_role(handle, {Role.STUDENT})
        session_id = payload.get("sessionId")
        activity = payload.get("activity")
        if not isinstance(activity, dict) or not activity.get("type"):
            raise MalformedMessage()

        if session_id:
            logged = self.storage.add_flagged_activity(session_id, {
                "type": activity["type"],
                "data": activity.get("data"),
                "timestamp": utc_now(),
                "studentId": connection.user_id,
            })
            if not logged:
                logger.warning("Activity for unknown session %s not logged", session_id)

        delivered = self.broadcast_to_proctors(
            protocol.student_activity(session_id, connection.user_id, activity))
        logger.debug("Relayed %s from %s to %d proctor(s)", activity["type"],
                     connection.user_id, delivered)

    def on_proctor_action(self, handle, payload):
        connection = self._require_role(handle, STAFF_ROLES)
        try:
            action = ProctorAction(payload.get("action"))
        except ValueError:
            raise ChannelError("Unknown proctor action")
        target = payload.get("targetSessionId")
        if target is None:
            raise MalformedMessage()

        status = ACTION_STATUS[action]
        try:
            self.storage.update_session_status(target, status)
        except SessionNotFound:
            raise ChannelError("Session not found")
        except InvalidTransition as e:
            raise ChannelError(str(e))

        logger.info("%s %s applied %s to session %s", connection.role.value,
                    connection.user_id, action.value, target)
        self.notify_session_status(target, status)

    def on_time_update(self, handle, payload):
        self._require_role(handle, {Role.STUDENT})
        session_id = payload.get("sessionId")
        seconds = payload.get("timeRemaining")
        if session_id is None or not isinstance(seconds, Number) or isinstance(seconds, bool):
            raise MalformedMessage()
        if not math.isfinite(seconds):
            raise MalformedMessage()
        self.storage.update_session_time(session_id, seconds)

    # ----------------- DELIVERY -----------------
    # Delivery is best effort: nothing is queued for absent recipients, and
    # each primitive returns how many connections actually got the message.
    def broadcast_to_proctors(self, message):
        return sum(1 for c in self.registry.find_by_role(STAFF_ROLES) if c.send(message))

    def send_to_student(self, session_id, message):
        return sum(1 for c in self.registry.find_by_session(session_id, Role.STUDENT) if c.send(message))

    def notify_session_status(self, session_id, status):
        delivered = self.send_to_student(session_id, protocol.status_notification(status))
        if not delivered:
            logger.info("No live student connection for session %s", session_id)
        return delivered
