import os
import logging
import secrets
from pathlib import Path

from examsecure.questions import MAX_ATTEMPTS

logger = logging.getLogger(__name__)

# ----------------- CONFIG -----------------
BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULTS = {
    "DB_PATH": str(BASE_DIR / "examsecure.db"),
    "JWT_ALGORITHM": "HS256",
    "JWT_EXP_DAYS": 7,
    "JWT_VERIFY_SIGNATURE": True,
    "LOG_LEVEL": "INFO",
    "HOST": "127.0.0.1",
    "PORT": 5000,
    "QUESTION_MAX_ATTEMPTS": MAX_ATTEMPTS,
}


def _env_bool(value):
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def load_config(overrides=None):
    """Build the app config from the environment, then apply overrides."""
    config = dict(DEFAULTS)
    env = os.environ

    if env.get("DB_PATH"):
        config["DB_PATH"] = env["DB_PATH"]
    if env.get("JWT_EXP_DAYS"):
        config["JWT_EXP_DAYS"] = int(env["JWT_EXP_DAYS"])
    if env.get("JWT_VERIFY_SIGNATURE"):
        config["JWT_VERIFY_SIGNATURE"] = _env_bool(env["JWT_VERIFY_SIGNATURE"])
    if env.get("LOG_LEVEL"):
        config["LOG_LEVEL"] = env["LOG_LEVEL"].upper()
    if env.get("HOST"):
        config["HOST"] = env["HOST"]
    if env.get("PORT"):
        config["PORT"] = int(env["PORT"])
    if env.get("QUESTION_MAX_ATTEMPTS"):
        config["QUESTION_MAX_ATTEMPTS"] = int(env["QUESTION_MAX_ATTEMPTS"])
    config["JWT_SECRET"] = env.get("JWT_SECRET")

    if overrides:
        config.update(overrides)

    if not config.get("JWT_SECRET"):
        # tokens will be invalid after restart
        config["JWT_SECRET"] = secrets.token_hex(32)
        logger.warning("JWT_SECRET not set in environment. Using a generated ephemeral secret.")
    return config
