from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from payflow.common import log_event

from . import reference as reference_codec
from .backoff import SleepFunc, with_backoff
from .client import SupabaseGateway
from .context import ReconciliationContext
from .errors import (
    ERROR_AUTHENTICATION,
    ERROR_VALIDATION,
    ErrorClassification,
    VerificationTimeoutError,
    classify,
)
from .normalizers import AdaptedResponse, adapt_primary_response, adapt_secondary_response
from .recovery import RecoveryEngine
from .types import (
    CHANNEL_STORED,
    ERROR_CODE_AMOUNT_MISMATCH,
    ERROR_CODE_AUTH_FAILED,
    ERROR_CODE_INVALID_REFERENCE,
    ERROR_CODE_NOT_FOUND,
    ERROR_CODE_PAYMENT_FAILED,
    ERROR_CODE_TIMEOUT,
    ERROR_CODE_VALIDATION_FAILED,
    STATUS_FAILED,
    VerificationResult,
)

PRIMARY_FUNCTION = "verify-payment"
SECONDARY_FUNCTION = "paystack-secure"

_TERMINAL_ERROR_CODES = {
    ERROR_AUTHENTICATION: ERROR_CODE_AUTH_FAILED,
    ERROR_VALIDATION: ERROR_CODE_VALIDATION_FAILED,
}


@dataclass(slots=True)
class _RemoteOutcome:
    result: VerificationResult | None = None
    terminal: ErrorClassification | None = None
    terminal_message: str | None = None
    amount_mismatch: AdaptedResponse | None = None
    declined: AdaptedResponse | None = None


class VerificationOrchestrator:
    """Primary function, then secondary function, then the recovery engine.

    Steps run strictly one after another. The primary and secondary calls
    share one deadline; running past it abandons them and moves on to
    recovery, and an unrecovered reference is then reported as a retryable
    timeout instead of ``not_found``. A step that reports the payment as
    failed or abandoned ends verification as ``payment_failed`` once no
    later step confirms it, without consulting recovery.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        client: SupabaseGateway,
        recovery: RecoveryEngine,
        context: ReconciliationContext,
        deadline_seconds: float = 30.0,
        max_attempts: int = 2,
        base_delay: float = 1.0,
        max_delay: float | None = 30.0,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._client = client
        self._recovery = recovery
        self.context = context
        self._deadline_seconds = max(0.01, float(deadline_seconds))
        self._max_attempts = max(1, int(max_attempts))
        self._base_delay = max(0.0, float(base_delay))
        self._max_delay = max_delay
        self._sleep = sleep

    async def verify_payment(self, reference: str) -> VerificationResult:
        if not isinstance(reference, str) or not reference.strip():
            result = VerificationResult.failure(
                reference=reference if isinstance(reference, str) else None,
                error_code=ERROR_CODE_INVALID_REFERENCE,
                message="A payment reference is required to verify a payment.",
            )
            self.context.record_result(result, source="input")
            return result

        value = reference.strip()
        if not reference_codec.is_valid(value):
            log_event(
                self._logger,
                level="warning",
                event="verification_reference_unrecognized",
                message="Reference does not match a known format; verifying anyway",
                reference=value,
            )

        timed_out = False
        try:
            outcome = await asyncio.wait_for(self._verify_remote(value), timeout=self._deadline_seconds)
        except asyncio.TimeoutError:
            timed_out = True
            outcome = _RemoteOutcome()
            timeout_error = VerificationTimeoutError(
                f"Verification exceeded {self._deadline_seconds:g}s",
                deadline_seconds=self._deadline_seconds,
            )
            log_event(
                self._logger,
                level="warning",
                event="verification_deadline_exceeded",
                message="Verification deadline exceeded; falling back to recovery",
                reference=value,
                error=str(timeout_error),
                retryable=classify(timeout_error).should_retry,
            )

        if outcome.result is not None:
            self.context.record_result(outcome.result, source="remote")
            return outcome.result

        if outcome.terminal is not None:
            result = VerificationResult.failure(
                reference=value,
                error_code=_TERMINAL_ERROR_CODES[outcome.terminal.type],
                message=outcome.terminal.user_message,
            )
            log_event(
                self._logger,
                level="error",
                event="verification_terminal_error",
                message="Verification stopped on a non-retryable error",
                reference=value,
                error_type=outcome.terminal.type,
                error=outcome.terminal_message,
            )
            self.context.record_result(result, source="remote")
            return result

        if outcome.amount_mismatch is not None:
            result = VerificationResult.failure(
                reference=value,
                error_code=ERROR_CODE_AMOUNT_MISMATCH,
                message=outcome.amount_mismatch.message,
            )
            self.context.record_result(result, source="remote")
            return result

        # A processor that answered with a definitive failure outranks any local record.
        if outcome.declined is not None:
            result = VerificationResult.failure(
                reference=value,
                error_code=ERROR_CODE_PAYMENT_FAILED,
                message=outcome.declined.message or "The payment was declined or abandoned.",
            )
            log_event(
                self._logger,
                level="warning",
                event="verification_declined",
                message="Payment reported as failed; skipping recovery",
                reference=value,
                source=outcome.declined.source,
                detail=outcome.declined.message,
            )
            self.context.record_result(result, source="remote")
            return result

        recovered = await self._recovery.attempt_recovery(value, channel=CHANNEL_STORED)
        if recovered.success:
            self.context.record_result(recovered, source="recovery")
            return recovered

        result = VerificationResult.failure(
            reference=value,
            error_code=ERROR_CODE_TIMEOUT if timed_out else ERROR_CODE_NOT_FOUND,
        )
        self.context.record_result(result, source="recovery")
        return result

    async def _verify_remote(self, reference: str) -> _RemoteOutcome:
        steps: tuple[tuple[str, Callable[[], Awaitable[Any]], Callable[[Any], AdaptedResponse]], ...] = (
            (
                PRIMARY_FUNCTION,
                lambda: self._client.invoke_function(PRIMARY_FUNCTION, {"reference": reference}),
                adapt_primary_response,
            ),
            (
                SECONDARY_FUNCTION,
                lambda: self._client.invoke_function(
                    SECONDARY_FUNCTION,
                    {"action": "verify", "reference": reference},
                ),
                adapt_secondary_response,
            ),
        )

        declined: AdaptedResponse | None = None
        for function_name, call, adapt in steps:
            try:
                payload = await with_backoff(
                    call,
                    logger=self._logger,
                    operation_name=function_name,
                    max_attempts=self._max_attempts,
                    base_delay=self._base_delay,
                    max_delay=self._max_delay,
                    sleep=self._sleep,
                    reference=reference,
                )
            except asyncio.CancelledError:
                raise
            except Exception as error:
                classification = classify(error)
                if classification.type in _TERMINAL_ERROR_CODES:
                    return _RemoteOutcome(terminal=classification, terminal_message=str(error))
                log_event(
                    self._logger,
                    level="warning",
                    event="verification_step_failed",
                    message=f"{function_name} failed; moving to the next step",
                    reference=reference,
                    function=function_name,
                    error=str(error),
                    error_type=classification.type,
                )
                continue

            adapted = adapt(payload)
            if adapted.confirmed and adapted.data is not None:
                log_event(
                    self._logger,
                    level="info",
                    event="verification_confirmed",
                    message="Payment verified",
                    reference=reference,
                    function=function_name,
                    status=adapted.data.status,
                    order_id=adapted.data.order_id,
                )
                return _RemoteOutcome(
                    result=VerificationResult.confirmed(
                        adapted.data,
                        reference=reference,
                        message=adapted.message,
                    )
                )

            if adapted.amount_mismatch:
                log_event(
                    self._logger,
                    level="error",
                    event="verification_amount_mismatch",
                    message="Paid amount does not match the order total",
                    reference=reference,
                    function=function_name,
                    detail=adapted.message,
                )
                return _RemoteOutcome(amount_mismatch=adapted)

            log_event(
                self._logger,
                level="warning",
                event="verification_not_confirmed",
                message=f"{function_name} did not confirm the payment",
                reference=reference,
                function=function_name,
                status=adapted.data.status if adapted.data is not None else None,
                detail=adapted.message,
            )
            if declined is None and adapted.data is not None and adapted.data.status == STATUS_FAILED:
                declined = adapted

        return _RemoteOutcome(declined=declined)
