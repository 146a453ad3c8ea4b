"""Errors raised while handling channel messages and session updates.

Channel errors never escape a single message: the router turns them into a
typed reply on the connection that sent the message.
"""


class ChannelError(Exception):
    reply_type = "error"

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class MalformedMessage(ChannelError):
    def __init__(self, message="Invalid message format"):
        super().__init__(message)


class AuthenticationFailure(ChannelError):
    reply_type = "auth_error"


class UnknownMessageType(ChannelError):
    def __init__(self, message="Unknown message type"):
        super().__init__(message)


class UnauthorizedAction(ChannelError):
    """Role mismatch. Dropped without a reply."""


class SessionNotFound(LookupError):
    def __init__(self, session_id):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class InvalidTransition(ValueError):
    def __init__(self, session_id, current):
        super().__init__(f"Session {session_id} is already {current}")
        self.session_id = session_id
        self.current = current
