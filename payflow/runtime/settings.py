from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def normalize_log_level(value: str | None) -> int:
    level = logging.getLevelName((value or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


@dataclass(slots=True)
class AppSettings:
    supabase_url: str
    supabase_anon_key: str
    supabase_access_token: str
    request_timeout_seconds: float
    verification_deadline_seconds: float
    verify_max_attempts: int
    verify_base_delay_seconds: float
    status_update_max_attempts: int
    status_update_base_delay_seconds: float
    backoff_max_delay_seconds: float
    recovery_window_seconds: int
    recovery_pattern_min_fragment: int
    recovery_query_limit: int
    stuck_order_age_minutes: int
    stuck_order_limit: int
    log_level: int

    @classmethod
    def from_env(cls) -> "AppSettings":
        anon_key = os.getenv("SUPABASE_ANON_KEY", "").strip()
        return cls(
            supabase_url=os.getenv("SUPABASE_URL", "").strip().rstrip("/"),
            supabase_anon_key=anon_key,
            supabase_access_token=os.getenv("SUPABASE_ACCESS_TOKEN", "").strip() or anon_key,
            request_timeout_seconds=max(1.0, to_float(os.getenv("REQUEST_TIMEOUT_SECONDS"), 15.0)),
            verification_deadline_seconds=max(
                1.0,
                to_float(os.getenv("VERIFICATION_DEADLINE_SECONDS"), 30.0),
            ),
            verify_max_attempts=max(1, to_int(os.getenv("VERIFY_MAX_ATTEMPTS"), 2)),
            verify_base_delay_seconds=max(0.0, to_float(os.getenv("VERIFY_BASE_DELAY_SECONDS"), 1.0)),
            status_update_max_attempts=max(1, to_int(os.getenv("STATUS_UPDATE_MAX_ATTEMPTS"), 3)),
            status_update_base_delay_seconds=max(
                0.0,
                to_float(os.getenv("STATUS_UPDATE_BASE_DELAY_SECONDS"), 1.0),
            ),
            backoff_max_delay_seconds=max(0.1, to_float(os.getenv("BACKOFF_MAX_DELAY_SECONDS"), 30.0)),
            recovery_window_seconds=max(1, to_int(os.getenv("RECOVERY_WINDOW_SECONDS"), 300)),
            recovery_pattern_min_fragment=max(
                3,
                to_int(os.getenv("RECOVERY_PATTERN_MIN_FRAGMENT"), 6),
            ),
            recovery_query_limit=max(1, to_int(os.getenv("RECOVERY_QUERY_LIMIT"), 20)),
            stuck_order_age_minutes=max(1, to_int(os.getenv("STUCK_ORDER_AGE_MINUTES"), 5)),
            stuck_order_limit=max(1, to_int(os.getenv("STUCK_ORDER_LIMIT"), 50)),
            log_level=normalize_log_level(os.getenv("LOG_LEVEL")),
        )
