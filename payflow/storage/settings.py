from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


DEFAULT_SESSION_ID = "payflow-cli"


def _sanitize_session_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-").replace(":", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    redis_enabled: bool
    redis_key_prefix: str
    redis_ttl_seconds: int
    firestore_enabled: bool
    firestore_project_id: str | None
    firestore_sessions_collection: str
    session_id: str

    @classmethod
    def from_env(cls) -> "StorageSettings":
        session_id = _sanitize_session_id(os.getenv("PAYFLOW_SESSION_ID", DEFAULT_SESSION_ID), DEFAULT_SESSION_ID)
        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            redis_enabled=to_bool(os.getenv("REDIS_ENABLED"), True),
            redis_key_prefix=(os.getenv("REDIS_KEY_PREFIX", "payflow:session").strip(":") or "payflow:session"),
            redis_ttl_seconds=max(60, to_int(os.getenv("REDIS_TTL_SECONDS"), 86400)),
            firestore_enabled=to_bool(os.getenv("FIRESTORE_ENABLED"), False),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            firestore_sessions_collection=(
                os.getenv("FIRESTORE_SESSIONS_COLLECTION", "payment_sessions").strip("/") or "payment_sessions"
            ),
            session_id=session_id,
        )
