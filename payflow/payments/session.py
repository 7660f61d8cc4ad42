from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping

from payflow.common import log_event

from . import reference as reference_codec
from .orchestrator import VerificationOrchestrator
from .types import (
    ERROR_CODE_INVALID_REFERENCE,
    StoredPaymentRecord,
    VerificationResult,
    now_epoch_ms,
    to_amount,
    to_optional_str,
)

if TYPE_CHECKING:
    from payflow.storage import FallbackStore

CALLBACK_REFERENCE_KEYS = ("reference", "trxref")


@dataclass(slots=True, frozen=True)
class CheckoutStart:
    reference: str
    order_id: str
    amount: float
    stored_in: str | None
    created: bool


class PaymentSession:
    """Checkout and callback handling for one browser-equivalent session."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        store: "FallbackStore",
        orchestrator: VerificationOrchestrator,
    ) -> None:
        self._logger = logger
        self._store = store
        self._orchestrator = orchestrator

    async def begin_checkout(
        self,
        order_id: str,
        amount: Any,
        customer_email: str | None = None,
    ) -> CheckoutStart:
        normalized_order_id = to_optional_str(order_id)
        if normalized_order_id is None:
            raise ValueError("order_id is required to start a checkout.")
        normalized_amount = to_amount(amount, -1.0)
        if normalized_amount <= 0:
            raise ValueError("Checkout amount must be a positive number.")

        existing = await self._store.load_checkout()
        if existing is not None and existing.order_id == normalized_order_id:
            log_event(
                self._logger,
                level="info",
                event="checkout_resumed",
                message="Checkout already in flight for this order; reusing its reference",
                order_id=normalized_order_id,
                reference=existing.reference,
            )
            return CheckoutStart(
                reference=existing.reference,
                order_id=normalized_order_id,
                amount=existing.amount,
                stored_in=None,
                created=False,
            )

        created_at_ms = now_epoch_ms()
        record = StoredPaymentRecord(
            reference=reference_codec.generate(now_ms=created_at_ms),
            order_id=normalized_order_id,
            amount=normalized_amount,
            customer_email=to_optional_str(customer_email),
            timestamp=created_at_ms,
        )
        stored_in = await self._store.save_checkout(record)
        log_event(
            self._logger,
            level="info",
            event="checkout_started",
            message="Checkout reference generated and stored",
            order_id=normalized_order_id,
            reference=record.reference,
            amount=normalized_amount,
            customer_email=record.customer_email,
            tier=stored_in,
        )
        return CheckoutStart(
            reference=record.reference,
            order_id=normalized_order_id,
            amount=normalized_amount,
            stored_in=stored_in,
            created=True,
        )

    async def resolve_reference(self, params: Mapping[str, Any] | None = None) -> str | None:
        for key in CALLBACK_REFERENCE_KEYS:
            value = to_optional_str((params or {}).get(key))
            if value:
                return value
        return await self._store.stored_reference()

    async def handle_callback(self, params: Mapping[str, Any] | None = None) -> VerificationResult:
        candidate = await self.resolve_reference(params)
        report = reference_codec.validate_reference(candidate)
        if not report.is_valid:
            log_event(
                self._logger,
                level="warning",
                event="callback_reference_rejected",
                message="Callback reference failed validation",
                reference=report.reference,
                errors=list(report.errors),
            )
            return VerificationResult.failure(
                reference=report.reference or None,
                error_code=ERROR_CODE_INVALID_REFERENCE,
                message="; ".join(report.errors),
            )
        for warning in report.warnings:
            log_event(
                self._logger,
                level="info",
                event="callback_reference_warning",
                message=warning,
                reference=report.reference,
            )

        result = await self._orchestrator.verify_payment(report.reference)
        if not result.success or result.data is None:
            log_event(
                self._logger,
                level="warning",
                event="callback_unconfirmed",
                message="Payment not confirmed; checkout state kept for retry",
                reference=report.reference,
                error_code=result.error_code,
            )
            return result

        await self._store.record_success(
            report.reference,
            {
                "status": result.data.status,
                "amount": result.data.amount,
                "order_id": result.data.order_id,
                "order_number": result.data.order_number,
                "paid_at": result.data.paid_at,
                "channel": result.data.channel,
            },
        )
        await self._store.clear_in_flight()
        log_event(
            self._logger,
            level="info",
            event="callback_confirmed",
            message="Payment confirmed and checkout state cleared",
            reference=report.reference,
            order_id=result.data.order_id,
            channel=result.data.channel,
        )
        return result

    async def abandon(self) -> None:
        reference = await self._store.stored_reference()
        await self._store.clear_all()
        log_event(
            self._logger,
            level="info",
            event="checkout_abandoned",
            message="Checkout abandoned; stored payment state cleared",
            reference=reference,
        )
