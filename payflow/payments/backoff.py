from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from payflow.common import log_event

from .errors import classify

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]
SleepFunc = Callable[[float], Awaitable[Any]]


def default_should_retry(error: BaseException) -> bool:
    return classify(error).should_retry


def compute_backoff_delay(
    *,
    attempt: int,
    base_delay: float,
    max_delay: float | None = None,
    jitter_ratio: float = 0.1,
) -> float:
    exponential = max(0.0, base_delay) * (2 ** max(0, attempt - 1))
    if max_delay is not None:
        exponential = min(exponential, max(0.0, max_delay))
    jitter = random.uniform(0.0, exponential * max(0.0, jitter_ratio)) if exponential > 0 else 0.0
    return exponential + jitter


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    logger: logging.Logger,
    operation_name: str,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float | None = None,
    should_retry: RetryPredicate | None = None,
    sleep: SleepFunc = asyncio.sleep,
    **fields: Any,
) -> T:
    """Run ``operation`` with bounded exponential backoff.

    The wait before attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)`` plus a
    non-negative jitter, raised to the error's ``retry_after_seconds`` when the
    remote side asked for a longer pause. Failures the predicate rejects are
    re-raised at once; the last failure is re-raised once attempts run out.
    """
    predicate = should_retry or default_should_retry
    attempts_allowed = max(1, int(max_attempts))

    for attempt in range(1, attempts_allowed + 1):
        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as error:
            retryable = predicate(error)
            classification = classify(error)
            if not retryable or attempt >= attempts_allowed:
                log_event(
                    logger,
                    level="warning" if retryable else "error",
                    event="backoff_gave_up" if retryable else "backoff_terminal_error",
                    message=(
                        f"{operation_name} failed after {attempt} attempt(s)"
                        if retryable
                        else f"{operation_name} failed with a non-retryable error"
                    ),
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=attempts_allowed,
                    error=str(error),
                    error_type=classification.type,
                    **fields,
                )
                raise

            delay_seconds = compute_backoff_delay(
                attempt=attempt,
                base_delay=base_delay,
                max_delay=max_delay,
            )
            retry_after = getattr(error, "retry_after_seconds", None)
            if isinstance(retry_after, (int, float)) and retry_after > delay_seconds:
                delay_seconds = float(retry_after)

            log_event(
                logger,
                level="warning",
                event="backoff_retry",
                message=f"{operation_name} failed; retrying",
                operation=operation_name,
                attempt=attempt,
                max_attempts=attempts_allowed,
                delay_seconds=round(delay_seconds, 3),
                error=str(error),
                error_type=classification.type,
                **fields,
            )
            await sleep(delay_seconds)
            continue

        log_event(
            logger,
            level="info" if attempt > 1 else "debug",
            event="backoff_succeeded",
            message=f"{operation_name} succeeded",
            operation=operation_name,
            attempt=attempt,
            max_attempts=attempts_allowed,
            **fields,
        )
        return result

    raise RuntimeError(f"{operation_name} exhausted its retry budget without a result.")
