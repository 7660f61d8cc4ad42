from __future__ import annotations

import asyncio
import re
from dataclasses import asdict, dataclass
from typing import Any

import aiohttp

ERROR_NETWORK = "network"
ERROR_TIMEOUT = "timeout"
ERROR_AUTHENTICATION = "authentication"
ERROR_VALIDATION = "validation"
ERROR_RATE_LIMIT = "rate_limit"
ERROR_CONFLICT = "conflict"
ERROR_NOT_FOUND = "not_found"
ERROR_SERVER = "server"
ERROR_UNKNOWN = "unknown"

RETRYABLE_ERROR_TYPES = frozenset(
    {ERROR_NETWORK, ERROR_TIMEOUT, ERROR_RATE_LIMIT, ERROR_CONFLICT, ERROR_SERVER}
)


class RemoteCallError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        code: str | None = None,
        retry_after_seconds: float | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.retry_after_seconds = retry_after_seconds
        self.payload = payload


class VerificationTimeoutError(RuntimeError):
    def __init__(self, message: str, *, deadline_seconds: float) -> None:
        super().__init__(message)
        self.deadline_seconds = deadline_seconds


@dataclass(slots=True, frozen=True)
class ErrorClassification:
    type: str
    severity: str
    user_message: str
    should_retry: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_USER_MESSAGES = {
    ERROR_NETWORK: "Connection problem. Please check your internet connection and try again.",
    ERROR_TIMEOUT: "The payment service is taking longer than expected. Please try again in a moment.",
    ERROR_AUTHENTICATION: "Your session has expired. Please sign in again.",
    ERROR_VALIDATION: "Some of the submitted details are invalid. Please review them and try again.",
    ERROR_RATE_LIMIT: "Too many requests. Please wait a moment before trying again.",
    ERROR_CONFLICT: "This order is being updated elsewhere. Please try again shortly.",
    ERROR_NOT_FOUND: "We could not find a matching payment. Please contact support with your reference.",
    ERROR_SERVER: "The payment service is temporarily unavailable. Please try again shortly.",
    ERROR_UNKNOWN: "Something went wrong. Please try again or contact support.",
}

_SEVERITIES = {
    ERROR_NETWORK: "medium",
    ERROR_TIMEOUT: "medium",
    ERROR_AUTHENTICATION: "high",
    ERROR_VALIDATION: "low",
    ERROR_RATE_LIMIT: "medium",
    ERROR_CONFLICT: "low",
    ERROR_NOT_FOUND: "high",
    ERROR_SERVER: "high",
    ERROR_UNKNOWN: "medium",
}

# Checked in order; the first matching group wins.
_MESSAGE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (ERROR_TIMEOUT, re.compile(r"time[d\s-]*out|deadline exceeded|etimedout", re.IGNORECASE)),
    (ERROR_RATE_LIMIT, re.compile(r"\b429\b|rate.?limit|too many requests", re.IGNORECASE)),
    (
        ERROR_AUTHENTICATION,
        re.compile(
            r"\b40[13]\b|unauthori[sz]ed|forbidden|jwt|invalid token|not authenticated|"
            r"permission denied|authentication",
            re.IGNORECASE,
        ),
    ),
    (
        ERROR_CONFLICT,
        re.compile(
            r"\b409\b|conflict|duplicate key|23505|lock_not_available|being modified by another|"
            r"concurrent|could not obtain lock",
            re.IGNORECASE,
        ),
    ),
    (
        ERROR_NETWORK,
        re.compile(
            r"network|failed to fetch|connection (?:refused|reset|closed|error)|cannot connect|"
            r"econnrefused|econnreset|dns|name resolution|socket",
            re.IGNORECASE,
        ),
    ),
    (ERROR_NOT_FOUND, re.compile(r"\b404\b|not found", re.IGNORECASE)),
    (
        ERROR_VALIDATION,
        re.compile(
            r"\b4(?:00|22)\b|invalid|validation|required|cannot be null|must be|malformed",
            re.IGNORECASE,
        ),
    ),
    (
        ERROR_SERVER,
        re.compile(
            r"\b50[0-4]\b|bad gateway|service unavailable|internal server error|server error|"
            r"database error|temporar",
            re.IGNORECASE,
        ),
    ),
)


def _type_from_status(status: int | None) -> str | None:
    if status is None:
        return None
    if status == 429:
        return ERROR_RATE_LIMIT
    if status in {401, 403}:
        return ERROR_AUTHENTICATION
    if status == 404:
        return ERROR_NOT_FOUND
    if status == 408:
        return ERROR_TIMEOUT
    if status == 409:
        return ERROR_CONFLICT
    if status in {400, 422}:
        return ERROR_VALIDATION
    if status >= 500:
        return ERROR_SERVER
    return None


def error_text(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        parts = [
            str(error.get(key))
            for key in ("message", "error", "details", "code", "error_code")
            if error.get(key) not in (None, "")
        ]
        return " ".join(parts)
    return str(error) or type(error).__name__


def _build(error_type: str) -> ErrorClassification:
    return ErrorClassification(
        type=error_type,
        severity=_SEVERITIES[error_type],
        user_message=_USER_MESSAGES[error_type],
        should_retry=error_type in RETRYABLE_ERROR_TYPES,
    )


def classify(error: Any) -> ErrorClassification:
    """Map a raw error (exception, response dict or text) onto the retry taxonomy."""
    if isinstance(error, (VerificationTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return _build(ERROR_TIMEOUT)
    if isinstance(error, aiohttp.ClientConnectionError):
        return _build(ERROR_NETWORK)

    status: int | None = None
    if isinstance(error, RemoteCallError):
        status = error.status
    elif isinstance(error, aiohttp.ClientResponseError):
        status = error.status
    elif isinstance(error, dict):
        raw_status = error.get("status")
        if isinstance(raw_status, int) and not isinstance(raw_status, bool):
            status = raw_status

    text = error_text(error)
    if isinstance(error, RemoteCallError) and error.code:
        text = f"{text} {error.code}"

    for error_type, pattern in _MESSAGE_PATTERNS:
        if error_type in {ERROR_TIMEOUT, ERROR_RATE_LIMIT} and pattern.search(text):
            return _build(error_type)

    from_status = _type_from_status(status)
    if from_status is not None:
        return _build(from_status)

    for error_type, pattern in _MESSAGE_PATTERNS:
        if pattern.search(text):
            return _build(error_type)

    if isinstance(error, aiohttp.ClientError):
        return _build(ERROR_NETWORK)
    return _build(ERROR_UNKNOWN)


def is_retryable(error: Any) -> bool:
    return classify(error).should_retry
