from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Mapping

from .backoff import SleepFunc
from .client import SupabaseGateway
from .context import ReconciliationContext
from .orchestrator import VerificationOrchestrator
from .recovery import RecoveryEngine
from .session import CheckoutStart, PaymentSession
from .status import BulletproofStatusMutator
from .sweeper import ReconciliationSweeper, StuckOrder, SweepReport
from .types import CHANNEL_RECOVERED, BulletproofResult, VerificationResult

if TYPE_CHECKING:
    from payflow.storage import FallbackStore


class ReconciliationEngine:
    """Wires the payment components for one session and exposes their entry points."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        client: SupabaseGateway,
        store: "FallbackStore",
        context: ReconciliationContext,
        deadline_seconds: float = 30.0,
        verify_max_attempts: int = 2,
        verify_base_delay: float = 1.0,
        status_max_attempts: int = 3,
        status_base_delay: float = 1.0,
        max_delay: float | None = 30.0,
        recovery_window_seconds: int = 300,
        pattern_min_fragment: int = 6,
        query_limit: int = 20,
        stuck_age_minutes: int = 5,
        stuck_limit: int = 50,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.context = context
        self.recovery = RecoveryEngine(
            logger=logger,
            client=client,
            store=store,
            context=context,
            window_seconds=recovery_window_seconds,
            min_fragment_length=pattern_min_fragment,
            query_limit=query_limit,
        )
        self.orchestrator = VerificationOrchestrator(
            logger=logger,
            client=client,
            recovery=self.recovery,
            context=context,
            deadline_seconds=deadline_seconds,
            max_attempts=verify_max_attempts,
            base_delay=verify_base_delay,
            max_delay=max_delay,
            sleep=sleep,
        )
        self.mutator = BulletproofStatusMutator(
            logger=logger,
            client=client,
            max_attempts=status_max_attempts,
            base_delay=status_base_delay,
            max_delay=max_delay,
            sleep=sleep,
        )
        self.session = PaymentSession(logger=logger, store=store, orchestrator=self.orchestrator)
        self.sweeper = ReconciliationSweeper(
            logger=logger,
            client=client,
            mutator=self.mutator,
            age_minutes=stuck_age_minutes,
            limit=stuck_limit,
        )

    async def verify_payment(self, reference: str) -> VerificationResult:
        return await self.orchestrator.verify_payment(reference)

    async def attempt_recovery(self, reference: str) -> VerificationResult:
        result = await self.recovery.attempt_recovery(reference, channel=CHANNEL_RECOVERED)
        self.context.record_result(result, source="manual_recovery")
        return result

    async def bulletproof_order_status_update(
        self,
        order_id: str,
        new_status: str,
        admin_id: str | None = None,
    ) -> BulletproofResult:
        return await self.mutator.update_status(order_id, new_status, admin_id)

    async def begin_checkout(
        self,
        order_id: str,
        amount: Any,
        customer_email: str | None = None,
    ) -> CheckoutStart:
        return await self.session.begin_checkout(order_id, amount, customer_email)

    async def handle_callback(self, params: Mapping[str, Any] | None = None) -> VerificationResult:
        return await self.session.handle_callback(params)

    async def abandon_checkout(self) -> None:
        await self.session.abandon()

    async def scan_stuck_orders(self) -> list[StuckOrder]:
        return await self.sweeper.scan_stuck_orders()

    async def recover_stuck_orders(self, *, admin_id: str | None = None) -> SweepReport:
        return await self.sweeper.recover_stuck_orders(admin_id=admin_id)

    def summary(self) -> dict[str, Any]:
        return self.context.summary()
