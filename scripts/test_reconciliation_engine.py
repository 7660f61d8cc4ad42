from __future__ import annotations

import logging
import os
import unittest
from typing import Any
from unittest.mock import AsyncMock, patch

from payflow.payments import ReconciliationContext
from payflow.runtime import AppSettings, build_engine, run_command
from payflow.storage import FallbackStore, MemoryProvider


class StorefrontBackend:
    """Edge functions, the status procedure and table reads for one storefront."""

    def __init__(self) -> None:
        self.paid_references: set[str] = set()
        self.declined_references: set[str] = set()
        self.order_statuses: dict[str, str] = {"ord-1": "pending"}
        self.function_calls: list[str] = []

    async def invoke_function(self, name: str, payload: dict[str, Any]) -> Any:
        self.function_calls.append(name)
        reference = payload["reference"]
        if name == "verify-payment":
            if reference in self.paid_references:
                return {
                    "success": True,
                    "payment_status": "completed",
                    "order_id": "ord-1",
                    "order_number": "ORD-0001",
                    "amount": 2500,
                    "reference": reference,
                    "channel": "card",
                }
            if reference in self.declined_references:
                return {"success": True, "payment_status": "failed"}
            return {"success": False, "error": "Payment not completed"}
        if reference in self.declined_references:
            return {"status": True, "data": {"status": "abandoned", "reference": reference}}
        return {"status": False, "message": "Transaction reference not found"}

    async def rpc(self, name: str, params: dict[str, Any]) -> Any:
        order_id = params["p_order_id"]
        if self.order_statuses.get(order_id) == params["p_new_status"]:
            return {"success": True, "message": "Status unchanged", "order": {"id": order_id}}
        self.order_statuses[order_id] = params["p_new_status"]
        return {
            "success": True,
            "message": "Order status updated successfully",
            "order": {"id": order_id, "status": params["p_new_status"]},
            "email_queued": {"success": True, "deduplicated": False},
        }

    async def select(self, table: str, **_: Any) -> list[dict[str, Any]]:
        return []


def _settings() -> AppSettings:
    with patch.dict(os.environ, {"SUPABASE_URL": "https://project.supabase.co/", "SUPABASE_ANON_KEY": "anon"}, clear=True):
        return AppSettings.from_env()


class ReconciliationEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("test.engine")
        self.backend = StorefrontBackend()
        self.store = FallbackStore([MemoryProvider()], self.logger)
        self.context = ReconciliationContext(session_id="session-test")
        self.engine = build_engine(
            logger=self.logger,
            app_settings=_settings(),
            client=self.backend,
            store=self.store,
            context=self.context,
        )
        self.engine.orchestrator._sleep = AsyncMock()  # type: ignore[attr-defined]
        self.engine.mutator._sleep = AsyncMock()  # type: ignore[attr-defined]

    async def test_checkout_then_callback_confirms_payment(self) -> None:
        started = await run_command(self.engine, "checkout", {"order_id": "ord-1", "amount": 2500.0})
        self.backend.paid_references.add(started["reference"])

        result = await run_command(self.engine, "callback", {"reference": None, "trxref": None})

        self.assertTrue(result["success"])
        self.assertEqual(result["data"]["order_number"], "ORD-0001")
        self.assertEqual(result["reference"], started["reference"])
        self.assertIsNone(await self.store.stored_reference())

    async def test_abandoned_payment_is_not_confirmed_from_the_checkout_snapshot(self) -> None:
        started = await run_command(self.engine, "checkout", {"order_id": "ord-1", "amount": 2500.0})
        self.backend.declined_references.add(started["reference"])

        result = await run_command(self.engine, "callback", {"reference": None, "trxref": None})

        self.assertFalse(result["success"])
        self.assertEqual(result["error_code"], "payment_failed")
        self.assertIsNone(result["data"])
        self.assertEqual(self.backend.function_calls, ["verify-payment", "paystack-secure"])
        self.assertEqual(await self.store.load_success_snapshots(), [])
        self.assertEqual(await self.store.stored_reference(), started["reference"])
        self.assertEqual(self.engine.summary()["recovery_attempts"], 0)

    async def test_manual_recovery_without_local_state_reports_not_found(self) -> None:
        result = await run_command(self.engine, "recover", {"reference": "txn_1700000000000_abcd1234"})

        self.assertFalse(result["success"])
        self.assertEqual(result["error_code"], "not_found")
        summary = self.engine.summary()
        self.assertEqual(summary["recovery_attempts"], 5)
        self.assertEqual(summary["verifications"], 1)

    async def test_update_status_twice_is_deduplicated(self) -> None:
        options = {"order_id": "ord-1", "status": "confirmed", "admin_id": "admin-1"}

        first = await run_command(self.engine, "update-status", options)
        second = await run_command(self.engine, "update-status", options)

        self.assertTrue(first["success"])
        self.assertFalse(first["email_queued"]["deduplicated"])
        self.assertTrue(second["email_queued"]["deduplicated"])

    async def test_abandon_and_sweep_commands(self) -> None:
        await run_command(self.engine, "checkout", {"order_id": "ord-1", "amount": 2500.0})

        self.assertEqual(await run_command(self.engine, "abandon", {}), {"abandoned": True})
        self.assertIsNone(await self.store.stored_reference())
        self.assertEqual(await run_command(self.engine, "scan-stuck", {}), {"stuck_orders": []})
        report = await run_command(self.engine, "recover-stuck", {})
        self.assertEqual(report["scanned"], 0)

    async def test_unknown_command_raises(self) -> None:
        with self.assertRaises(ValueError):
            await run_command(self.engine, "refund", {})


class AppSettingsTests(unittest.TestCase):
    def test_defaults_and_access_token_fallback(self) -> None:
        settings = _settings()

        self.assertEqual(settings.supabase_url, "https://project.supabase.co")
        self.assertEqual(settings.supabase_access_token, "anon")
        self.assertEqual(settings.verification_deadline_seconds, 30.0)
        self.assertEqual(settings.recovery_window_seconds, 300)
        self.assertEqual(settings.log_level, logging.INFO)

    def test_invalid_numbers_fall_back_to_defaults(self) -> None:
        with patch.dict(os.environ, {"VERIFY_MAX_ATTEMPTS": "many", "LOG_LEVEL": "debug"}, clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.verify_max_attempts, 2)
        self.assertEqual(settings.log_level, logging.DEBUG)


if __name__ == "__main__":
    unittest.main()
