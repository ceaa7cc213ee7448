from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

from .common.feature_flags import load_feature_flags


BASE_DIR = Path(__file__).resolve().parents[2]


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    cleaned = raw.strip()
    return cleaned or default


def env_origins() -> list[str]:
    raw_origins = os.getenv("FRONTEND_ORIGINS")
    if raw_origins:
        origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
        if origins:
            return origins
    return ["http://localhost:5173", "http://127.0.0.1:5173"]


class Config:
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", f"sqlite:///{BASE_DIR / 'filevault.db'}")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-jwt-secret-key-change-me-at-least-32-bytes")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(minutes=env_int("ACCESS_TOKEN_EXPIRES_MINUTES", 15))
    JWT_REFRESH_TOKEN_EXPIRES = timedelta(days=env_int("REFRESH_TOKEN_EXPIRES_DAYS", 7))

    FRONTEND_ORIGINS = env_origins()
    LOG_LEVEL = env_str("LOG_LEVEL", "INFO").upper()

    STORAGE_ROOT = os.getenv("STORAGE_ROOT", str(BASE_DIR / "storage"))
    STORAGE_CAPACITY_BYTES = env_int("STORAGE_CAPACITY_BYTES", 10 * 1024 * 1024 * 1024)
    MAX_CONTENT_LENGTH = env_int("MAX_CONTENT_LENGTH", 1024 * 1024 * 1024)

    # "skip" drops a corrupt nested archive, "store" keeps it as an opaque file.
    ARCHIVE_NESTED_FAILURE = env_str("ARCHIVE_NESTED_FAILURE", "skip").lower()
    ARCHIVE_MAX_DEPTH = max(1, env_int("ARCHIVE_MAX_DEPTH", 8))
    EXPORT_CHUNK_SIZE = max(1024, env_int("EXPORT_CHUNK_SIZE", 64 * 1024))

    SUPERADMIN_USERNAME = env_str("SUPERADMIN_USERNAME", "superadmin")
    SUPERADMIN_PASSWORD = os.getenv("SUPERADMIN_PASSWORD", "")

    LOGIN_RATE_LIMIT_WINDOW_SECONDS = env_int("LOGIN_RATE_LIMIT_WINDOW_SECONDS", 300)
    LOGIN_RATE_LIMIT_MAX_ATTEMPTS = env_int("LOGIN_RATE_LIMIT_MAX_ATTEMPTS", 5)

    FEATURE_FLAGS_FILE = os.getenv("FEATURE_FLAGS_FILE")
    FEATURE_FLAGS = load_feature_flags(FEATURE_FLAGS_FILE)
