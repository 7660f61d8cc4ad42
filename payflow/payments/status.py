from __future__ import annotations

import asyncio
import logging
from typing import Any

from payflow.common import log_event

from .backoff import SleepFunc, with_backoff
from .client import SupabaseGateway
from .errors import (
    ERROR_AUTHENTICATION,
    ERROR_CONFLICT,
    ERROR_NETWORK,
    ERROR_NOT_FOUND,
    ERROR_RATE_LIMIT,
    ERROR_SERVER,
    ERROR_TIMEOUT,
    ERROR_VALIDATION,
    RemoteCallError,
    classify,
    error_text,
)
from .types import BulletproofResult, EmailQueued, to_optional_str

BULLETPROOF_RPC = "admin_update_order_status_bulletproof"

FAILURE_RATE_LIMITED = "rate_limited"
FAILURE_LOCK_CONFLICT = "lock_conflict"
FAILURE_DUPLICATE_KEY = "duplicate_key"
FAILURE_AUTH_FAILED = "auth_failed"
FAILURE_VALIDATION_FAILED = "validation_failed"
FAILURE_NETWORK = "network"
FAILURE_SERVICE_UNAVAILABLE = "service_unavailable"
FAILURE_UNKNOWN = "unknown"

RETRYABLE_FAILURES = frozenset(
    {
        FAILURE_RATE_LIMITED,
        FAILURE_LOCK_CONFLICT,
        FAILURE_DUPLICATE_KEY,
        FAILURE_NETWORK,
        FAILURE_SERVICE_UNAVAILABLE,
    }
)

_FAILURE_BY_ERROR_TYPE = {
    ERROR_RATE_LIMIT: FAILURE_RATE_LIMITED,
    ERROR_CONFLICT: FAILURE_LOCK_CONFLICT,
    ERROR_AUTHENTICATION: FAILURE_AUTH_FAILED,
    ERROR_VALIDATION: FAILURE_VALIDATION_FAILED,
    ERROR_NOT_FOUND: FAILURE_VALIDATION_FAILED,
    ERROR_NETWORK: FAILURE_NETWORK,
    ERROR_TIMEOUT: FAILURE_NETWORK,
    ERROR_SERVER: FAILURE_SERVICE_UNAVAILABLE,
}

UNCHANGED_MESSAGE = "status unchanged"


class StatusUpdateRejected(RemoteCallError):
    """The procedure answered, but with ``success: false``."""


def failure_type(error: Any) -> str:
    classification = classify(error)
    failure = _FAILURE_BY_ERROR_TYPE.get(classification.type, FAILURE_UNKNOWN)
    if failure == FAILURE_LOCK_CONFLICT:
        text = f"{error_text(error)} {getattr(error, 'code', '') or ''}".lower()
        if "duplicate" in text or "23505" in text:
            return FAILURE_DUPLICATE_KEY
    return failure


def is_retryable_failure(error: BaseException) -> bool:
    return failure_type(error) in RETRYABLE_FAILURES


def _first_payload(data: Any) -> dict[str, Any]:
    if isinstance(data, list):
        data = data[0] if data else None
    return data if isinstance(data, dict) else {}


def _retry_after(payload: dict[str, Any]) -> float | None:
    raw = payload.get("retry_after_seconds")
    if raw is None:
        rate_limit = payload.get("rate_limit")
        if isinstance(rate_limit, dict):
            raw = rate_limit.get("retry_after_seconds")
    try:
        seconds = float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None
    return seconds if seconds is not None and seconds > 0 else None


def _recovery_actions(payload: dict[str, Any]) -> tuple[str, ...]:
    raw = payload.get("recovery_actions")
    if not isinstance(raw, list):
        return ()
    return tuple(str(item) for item in raw if item not in (None, ""))


def _email_queued(payload: dict[str, Any]) -> EmailQueued | None:
    raw = payload.get("email_queued")
    message = str(payload.get("message") or "").strip().lower()
    if isinstance(raw, dict):
        detail = str(raw.get("message") or raw.get("reason") or "").lower()
        deduplicated = bool(raw.get("deduplicated")) or "duplicate" in detail or "already" in detail
        return EmailQueued(success=bool(raw.get("success", True)), deduplicated=deduplicated)
    if message == UNCHANGED_MESSAGE:
        # Already in the target status: nothing new is enqueued.
        return EmailQueued(success=True, deduplicated=True)
    return None


class BulletproofStatusMutator:
    """Order status transitions through the atomic remote procedure.

    Locking, validation, the update itself and the notification enqueue all
    happen inside the procedure. This class only classifies its answer and
    retries the retryable outcomes with backoff.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        client: SupabaseGateway,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float | None = 30.0,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._client = client
        self._max_attempts = max(1, int(max_attempts))
        self._base_delay = max(0.0, float(base_delay))
        self._max_delay = max_delay
        self._sleep = sleep

    async def update_status(
        self,
        order_id: str,
        new_status: str,
        admin_id: str | None = None,
    ) -> BulletproofResult:
        normalized_order_id = to_optional_str(order_id)
        normalized_status = (to_optional_str(new_status) or "").lower()
        if normalized_order_id is None or normalized_status in {"", "null", "undefined"}:
            return BulletproofResult(
                success=False,
                order_id=normalized_order_id or "",
                new_status=normalized_status,
                error="Order id and a non-empty status are required",
                error_type=FAILURE_VALIDATION_FAILED,
                attempts=0,
            )

        attempts = 0

        async def call_procedure() -> dict[str, Any]:
            nonlocal attempts
            attempts += 1
            data = await self._client.rpc(
                BULLETPROOF_RPC,
                {
                    "p_order_id": normalized_order_id,
                    "p_new_status": normalized_status,
                    "p_admin_id": admin_id,
                },
            )
            payload = _first_payload(data)
            if payload.get("success") is True:
                return payload
            raise StatusUpdateRejected(
                error_text(payload) or "Status update was not applied",
                code=to_optional_str(payload.get("code") or payload.get("sqlstate")),
                retry_after_seconds=_retry_after(payload),
                payload=payload,
            )

        try:
            payload = await with_backoff(
                call_procedure,
                logger=self._logger,
                operation_name=BULLETPROOF_RPC,
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                max_delay=self._max_delay,
                should_retry=is_retryable_failure,
                sleep=self._sleep,
                order_id=normalized_order_id,
                new_status=normalized_status,
            )
        except asyncio.CancelledError:
            raise
        except Exception as error:
            failure = failure_type(error)
            rejected_payload = error.payload if isinstance(error, RemoteCallError) else None
            rejected = _first_payload(rejected_payload)
            log_event(
                self._logger,
                level="error" if failure not in RETRYABLE_FAILURES else "warning",
                event="order_status_update_failed",
                message="Order status update failed",
                order_id=normalized_order_id,
                new_status=normalized_status,
                error=str(error),
                error_type=failure,
                attempts=attempts,
            )
            return BulletproofResult(
                success=False,
                order_id=normalized_order_id,
                new_status=normalized_status,
                message=classify(error).user_message,
                error=str(error),
                error_type=failure,
                retry_after_seconds=getattr(error, "retry_after_seconds", None),
                recovery_actions=_recovery_actions(rejected),
                attempts=attempts,
            )

        order = payload.get("order") if isinstance(payload.get("order"), dict) else None
        result = BulletproofResult(
            success=True,
            order_id=normalized_order_id,
            new_status=normalized_status,
            order=order,
            message=to_optional_str(payload.get("message")),
            recovery_actions=_recovery_actions(payload),
            email_queued=_email_queued(payload),
            attempts=attempts,
        )
        log_event(
            self._logger,
            level="info",
            event="order_status_updated",
            message="Order status update applied",
            order_id=normalized_order_id,
            new_status=normalized_status,
            attempts=attempts,
            unchanged=(result.message or "").lower() == UNCHANGED_MESSAGE,
            email_queued=result.email_queued.to_dict() if result.email_queued else None,
        )
        return result
