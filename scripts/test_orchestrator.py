from __future__ import annotations

import asyncio
import logging
import unittest
from typing import Any
from unittest.mock import AsyncMock

from payflow.payments import ReconciliationContext, RemoteCallError, VerificationOrchestrator
from payflow.payments.types import SUCCESSFUL_STATUSES, VerificationData, VerificationResult

REFERENCE = "txn_1700000000000_abcd1234"


class ScriptedFunctions:
    """Edge-function stub that replays one scripted outcome per call."""

    def __init__(self, **script: list[Any]) -> None:
        self.script = {name.replace("_", "-"): list(outcomes) for name, outcomes in script.items()}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def invoke_function(self, name: str, payload: dict[str, Any]) -> Any:
        self.calls.append((name, payload))
        outcomes = self.script.get(name) or []
        if not outcomes:
            raise AssertionError(f"unexpected call to {name}")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome()
        return outcome

    async def rpc(self, name: str, params: dict[str, Any]) -> Any:
        raise AssertionError("verification must not call procedures")

    async def select(self, table: str, **_: Any) -> list[dict[str, Any]]:
        raise AssertionError("verification must not query tables directly")

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class VerificationOrchestratorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("test.orchestrator")
        self.context = ReconciliationContext(session_id="session-test")
        self.recovery = AsyncMock()
        self.recovery.attempt_recovery.return_value = VerificationResult.failure(
            reference=REFERENCE,
            error_code="not_found",
        )
        self.sleep = AsyncMock()

    def _orchestrator(self, client: ScriptedFunctions, *, deadline_seconds: float = 30.0) -> VerificationOrchestrator:
        return VerificationOrchestrator(
            logger=self.logger,
            client=client,
            recovery=self.recovery,
            context=self.context,
            deadline_seconds=deadline_seconds,
            max_attempts=2,
            base_delay=0.01,
            sleep=self.sleep,
        )

    def assertConfirmed(self, result: VerificationResult) -> VerificationData:
        self.assertTrue(result.success)
        assert result.data is not None
        self.assertIn(result.data.status, SUCCESSFUL_STATUSES)
        return result.data

    async def test_primary_success_returns_without_fallback(self) -> None:
        client = ScriptedFunctions(
            verify_payment=[{"success": True, "payment_status": "completed", "amount": 2500, "order_id": "ord-1"}]
        )

        result = await self._orchestrator(client).verify_payment(REFERENCE)

        data = self.assertConfirmed(result)
        self.assertEqual(data.order_id, "ord-1")
        self.assertEqual(client.calls, [("verify-payment", {"reference": REFERENCE})])
        self.recovery.attempt_recovery.assert_not_awaited()
        self.assertEqual(self.context.history[-1].source, "remote")

    async def test_unconfirmed_primary_falls_back_to_secondary(self) -> None:
        client = ScriptedFunctions(
            verify_payment=[{"success": False, "error": "Transaction not yet settled"}],
            paystack_secure=[{"status": True, "data": {"status": "success", "amount": 250000}}],
        )

        result = await self._orchestrator(client).verify_payment(REFERENCE)

        data = self.assertConfirmed(result)
        self.assertEqual(data.amount, 2500.0)
        self.assertEqual(
            client.calls[-1],
            ("paystack-secure", {"action": "verify", "reference": REFERENCE}),
        )
        self.recovery.attempt_recovery.assert_not_awaited()

    async def test_retryable_failures_exhaust_both_functions_then_recover(self) -> None:
        client = ScriptedFunctions(
            verify_payment=[RemoteCallError("502 Bad Gateway", status=502)],
            paystack_secure=[RemoteCallError("503 Service Unavailable", status=503)],
        )
        recovered = VerificationResult.confirmed(
            VerificationData(status="success", amount=2500, channel="stored"),
            reference=REFERENCE,
        )
        self.recovery.attempt_recovery.return_value = recovered

        result = await self._orchestrator(client).verify_payment(REFERENCE)

        self.assertIs(result, recovered)
        self.assertEqual(client.names(), ["verify-payment", "verify-payment", "paystack-secure", "paystack-secure"])
        self.assertEqual(self.sleep.await_count, 2)
        self.recovery.attempt_recovery.assert_awaited_once_with(REFERENCE, channel="stored")

    async def test_unrecovered_reference_is_not_found(self) -> None:
        client = ScriptedFunctions(
            verify_payment=[{"success": False}],
            paystack_secure=[{"status": False, "message": "Transaction reference not found"}],
        )

        result = await self._orchestrator(client).verify_payment(REFERENCE)

        self.assertFalse(result.success)
        self.assertIsNone(result.data)
        self.assertEqual(result.error_code, "not_found")
        self.assertTrue(result.message)

    async def test_authentication_error_stops_the_chain(self) -> None:
        client = ScriptedFunctions(verify_payment=[RemoteCallError("Unauthorized", status=401)])

        result = await self._orchestrator(client).verify_payment(REFERENCE)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "auth_failed")
        self.assertEqual(client.names(), ["verify-payment"])
        self.sleep.assert_not_awaited()
        self.recovery.attempt_recovery.assert_not_awaited()

    async def test_amount_mismatch_is_reported_without_fallback(self) -> None:
        client = ScriptedFunctions(
            verify_payment=[{"success": True, "status": "success", "amount": 100, "order_total": 2500}]
        )

        result = await self._orchestrator(client).verify_payment(REFERENCE)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "amount_mismatch")
        self.assertEqual(client.names(), ["verify-payment"])
        self.recovery.attempt_recovery.assert_not_awaited()

    async def test_declined_payment_is_reported_without_recovery(self) -> None:
        client = ScriptedFunctions(
            verify_payment=[{"success": True, "payment_status": "failed"}],
            paystack_secure=[{"status": True, "data": {"status": "abandoned"}}],
        )
        self.recovery.attempt_recovery.return_value = VerificationResult.confirmed(
            VerificationData(status="success", amount=2500, channel="stored"),
            reference=REFERENCE,
        )

        result = await self._orchestrator(client).verify_payment(REFERENCE)

        self.assertFalse(result.success)
        self.assertIsNone(result.data)
        self.assertEqual(result.error_code, "payment_failed")
        self.assertEqual(client.names(), ["verify-payment", "paystack-secure"])
        self.recovery.attempt_recovery.assert_not_awaited()
        self.assertEqual(self.context.history[-1].source, "remote")

    async def test_decline_is_overturned_by_a_later_confirmation(self) -> None:
        client = ScriptedFunctions(
            verify_payment=[{"success": False, "payment_status": "failed"}],
            paystack_secure=[{"status": True, "data": {"status": "success", "amount": 250000}}],
        )

        result = await self._orchestrator(client).verify_payment(REFERENCE)

        self.assertConfirmed(result)
        self.recovery.attempt_recovery.assert_not_awaited()

    async def test_deadline_moves_to_recovery_and_reports_timeout(self) -> None:
        async def hang() -> dict[str, Any]:
            await asyncio.sleep(5)
            return {"success": True, "status": "success"}

        client = ScriptedFunctions(verify_payment=[hang])

        result = await self._orchestrator(client, deadline_seconds=0.05).verify_payment(REFERENCE)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "timeout")
        self.recovery.attempt_recovery.assert_awaited_once_with(REFERENCE, channel="stored")

    async def test_blank_reference_is_rejected_before_any_call(self) -> None:
        client = ScriptedFunctions()

        result = await self._orchestrator(client).verify_payment("   ")

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "invalid_reference")
        self.assertEqual(client.calls, [])

    async def test_unknown_prefix_is_still_verified(self) -> None:
        client = ScriptedFunctions(verify_payment=[{"success": True, "status": "paid", "amount": 10}])

        result = await self._orchestrator(client).verify_payment("T993817263")

        self.assertConfirmed(result)
        self.assertEqual(client.names(), ["verify-payment"])


if __name__ == "__main__":
    unittest.main()
