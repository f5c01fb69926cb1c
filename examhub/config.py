import os
from pathlib import Path

from sqlalchemy.engine import URL


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    default_db_path = Path(__file__).resolve().parent.parent / "instance" / "examhub.db"
    default_db_uri = URL.create(
        drivername="sqlite",
        database=str(default_db_path),
    )
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", str(default_db_uri))
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    TOKEN_TTL_MINUTES = int(os.environ.get("TOKEN_TTL_MINUTES", "120"))
    REFRESH_TOKEN_TTL_MINUTES = int(os.environ.get("REFRESH_TOKEN_TTL_MINUTES", str(7 * 24 * 60)))
    LOGIN_ATTEMPT_LIMIT = int(os.environ.get("LOGIN_ATTEMPT_LIMIT", "5"))
    LOGIN_WINDOW_MINUTES = int(os.environ.get("LOGIN_WINDOW_MINUTES", "15"))
    SUBMIT_RATE_LIMIT = int(os.environ.get("SUBMIT_RATE_LIMIT", "10"))
    SUBMIT_WINDOW_MINUTES = int(os.environ.get("SUBMIT_WINDOW_MINUTES", "1"))

    # Session guard store. An empty URL leaves the guard without a backend;
    # submissions then rely on the attempt's own expiry check.
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    SESSION_GUARD_SOCKET_TIMEOUT = float(os.environ.get("SESSION_GUARD_SOCKET_TIMEOUT", "0.5"))

    # Bootstrap administrator created at startup when both values are set.
    ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "")
    ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "")

    DEFAULT_PAGE_SIZE = 10
    MAX_PAGE_SIZE = 100


class TestConfig(Config):
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    TESTING = True
    SECRET_KEY = "test-secret-key-with-enough-length-for-hs256"
    REDIS_URL = ""
    ADMIN_EMAIL = ""
    LOG_LEVEL = "DEBUG"
