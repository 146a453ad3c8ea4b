import logging
from datetime import datetime, timedelta, timezone

import jwt

from examsecure.errors import AuthenticationFailure

logger = logging.getLogger(__name__)

SUBJECT_CLAIMS = ("userId", "sub", "user_id")


class TokenIdentity:
    """Resolves bearer tokens to user records held in storage."""

    def __init__(self, storage, secret, algorithm="HS256", exp_days=7, verify_signature=True):
        self.storage = storage
        self.secret = secret
        self.algorithm = algorithm
        self.exp_days = exp_days
        self.verify_signature = verify_signature

    def make_token(self, user_id, **claims):
        payload = dict(claims)
        payload["sub"] = user_id
        payload["exp"] = datetime.now(timezone.utc) + timedelta(days=self.exp_days)
        token = jwt.encode(payload, self.secret, algorithm=self.algorithm)
        # PyJWT may return bytes in older versions; ensure str
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        return token

    def decode(self, token):
        if self.verify_signature:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        return jwt.decode(token, options={"verify_signature": False})

    def user_id_from_token(self, token):
        if not token or not isinstance(token, str):
            raise AuthenticationFailure("Invalid token")
        try:
            payload = self.decode(token)
        except jwt.ExpiredSignatureError:
            raise AuthenticationFailure("Token expired")
        except jwt.InvalidTokenError as e:
            logger.debug("Rejected token: %s", e)
            raise AuthenticationFailure("Invalid token")

        for claim in SUBJECT_CLAIMS:
            if payload.get(claim):
                return str(payload[claim])
        raise AuthenticationFailure("Invalid token")

    def resolve(self, token):
        """Return the user record for ``token`` or raise AuthenticationFailure."""
        user_id = self.user_id_from_token(token)
        user = self.storage.get_user(user_id)
        if not user:
            raise AuthenticationFailure("User not found")
        return user

    def user_id_from_auth_header(self, headers):
        """Returns (user_id, error) for a request's Authorization header."""
        auth = headers.get("Authorization", "") or headers.get("authorization", "")
        if not auth or not auth.startswith("Bearer "):
            return None, "Missing or invalid Authorization header"
        token = auth.split(" ", 1)[1].strip()
        try:
            return self.user_id_from_token(token), None
        except AuthenticationFailure as e:
            return None, e.message
