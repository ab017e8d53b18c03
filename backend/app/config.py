# backend/app/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the backend by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///vista.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Must be exactly 32 bytes (AES-256)
    ENCRYPTION_KEY = os.environ.get("ENCRYPTION_KEY", "32-byte-long-key-for-aes256!!!!!")

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "MXN")
    DEFAULT_MARKETPLACE = os.environ.get("DEFAULT_MARKETPLACE", "www.amazon.com.mx")

    # Password hashing cost (tests lower this)
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))

    # Session tokens
    SESSION_ABSOLUTE_TIMEOUT_HOURS = int(os.environ.get("SESSION_ABSOLUTE_TIMEOUT_HOURS", "24"))
    SESSION_IDLE_TIMEOUT_HOURS = int(os.environ.get("SESSION_IDLE_TIMEOUT_HOURS", "2"))

    # Cart automation
    AUTOMATION_ENABLED = _env_bool("AUTOMATION_ENABLED", True)
    AUTOMATION_HEADLESS = _env_bool("AUTOMATION_HEADLESS", True)
    AUTOMATION_TIMEOUT_SECONDS = float(os.environ.get("AUTOMATION_TIMEOUT_SECONDS", "30"))
    AUTOMATION_PAGE_SETTLE_MS = int(os.environ.get("AUTOMATION_PAGE_SETTLE_MS", "2000"))
    AUTOMATION_CART_SETTLE_MS = int(os.environ.get("AUTOMATION_CART_SETTLE_MS", "3000"))
    CART_CONFIRMATION_MODE = os.environ.get("CART_CONFIRMATION_MODE", "optimistic")  # optimistic | strict
    AUTOMATION_WORKER_MODE = os.environ.get("AUTOMATION_WORKER_MODE", "thread")  # thread | inline
    AUTOMATION_RESULT_TIMEOUT_SECONDS = float(os.environ.get("AUTOMATION_RESULT_TIMEOUT_SECONDS", "180"))

    # Browser front-ends allowed to call the API (comma separated)
    CORS_ORIGINS = tuple(
        origin.strip()
        for origin in os.environ.get("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
        if origin.strip()
    )

    API_VERSION = "1.0.0"
