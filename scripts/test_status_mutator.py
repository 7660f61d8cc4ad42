from __future__ import annotations

import logging
import unittest
from typing import Any
from unittest.mock import AsyncMock

from payflow.payments import BulletproofStatusMutator, RemoteCallError


class OrderStatusProcedure:
    """In-memory stand-in for the bulletproof status procedure."""

    def __init__(self, statuses: dict[str, str]) -> None:
        self.statuses = dict(statuses)
        self.calls: list[dict[str, Any]] = []
        self.queued_emails: list[tuple[str, str]] = []
        self.scripted: list[Any] = []

    async def invoke_function(self, name: str, payload: dict[str, Any]) -> Any:
        raise AssertionError("status updates must not call edge functions")

    async def select(self, table: str, **_: Any) -> list[dict[str, Any]]:
        raise AssertionError("status updates must not query tables")

    async def rpc(self, name: str, params: dict[str, Any]) -> Any:
        assert name == "admin_update_order_status_bulletproof"
        self.calls.append(params)
        if self.scripted:
            outcome = self.scripted.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome

        order_id = params["p_order_id"]
        new_status = params["p_new_status"]
        if order_id not in self.statuses:
            return {"success": False, "error": "Order not found"}
        order = {"id": order_id, "status": new_status}
        if self.statuses[order_id] == new_status:
            return {"success": True, "message": "Status unchanged", "order": order}
        self.statuses[order_id] = new_status
        self.queued_emails.append((order_id, new_status))
        return {
            "success": True,
            "message": "Order status updated successfully",
            "order": order,
            "email_queued": {"success": True, "deduplicated": False},
        }


class BulletproofStatusMutatorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("test.status_mutator")
        self.sleep = AsyncMock()

    def _mutator(self, client: OrderStatusProcedure, *, max_attempts: int = 3) -> BulletproofStatusMutator:
        return BulletproofStatusMutator(
            logger=self.logger,
            client=client,
            max_attempts=max_attempts,
            base_delay=0.01,
            sleep=self.sleep,
        )

    async def test_repeated_update_is_idempotent_and_deduplicated(self) -> None:
        client = OrderStatusProcedure({"ord-1": "pending"})
        mutator = self._mutator(client)

        first = await mutator.update_status("ord-1", "confirmed", "admin-1")
        second = await mutator.update_status("ord-1", "confirmed", "admin-1")

        self.assertTrue(first.success)
        assert first.email_queued is not None
        self.assertTrue(first.email_queued.success)
        self.assertFalse(first.deduplicated)

        self.assertTrue(second.success)
        self.assertTrue(second.deduplicated)
        self.assertEqual(client.statuses["ord-1"], "confirmed")
        self.assertEqual(client.queued_emails, [("ord-1", "confirmed")])
        self.assertEqual(
            client.calls[0],
            {"p_order_id": "ord-1", "p_new_status": "confirmed", "p_admin_id": "admin-1"},
        )

    async def test_status_is_lowercased(self) -> None:
        client = OrderStatusProcedure({"ord-1": "pending"})

        result = await self._mutator(client).update_status("ord-1", "  Preparing ")

        self.assertTrue(result.success)
        self.assertEqual(client.calls[0]["p_new_status"], "preparing")
        self.assertIsNone(client.calls[0]["p_admin_id"])

    async def test_lock_conflict_is_retried_then_applied(self) -> None:
        client = OrderStatusProcedure({"ord-1": "pending"})
        client.scripted.append(
            {
                "success": False,
                "error": "Order is currently being modified by another admin. Please try again.",
                "retry_after_seconds": 2,
            }
        )

        result = await self._mutator(client).update_status("ord-1", "confirmed")

        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 2)
        self.assertEqual(self.sleep.await_count, 1)
        self.assertGreaterEqual(self.sleep.await_args.args[0], 2)

    async def test_rate_limit_exhaustion_reports_retry_hint(self) -> None:
        client = OrderStatusProcedure({"ord-1": "pending"})
        rejection = {"success": False, "error": "Rate limit exceeded. Please wait before making more updates."}
        client.scripted.extend([rejection, rejection])

        result = await self._mutator(client, max_attempts=2).update_status("ord-1", "confirmed")

        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "rate_limited")
        self.assertEqual(result.attempts, 2)
        self.assertEqual(client.statuses["ord-1"], "pending")

    async def test_authentication_failure_is_terminal(self) -> None:
        client = OrderStatusProcedure({"ord-1": "pending"})
        client.scripted.append(RemoteCallError("JWT expired", status=401))

        result = await self._mutator(client).update_status("ord-1", "confirmed")

        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "auth_failed")
        self.assertEqual(result.attempts, 1)
        self.sleep.assert_not_awaited()

    async def test_unknown_order_is_a_validation_failure(self) -> None:
        client = OrderStatusProcedure({})

        result = await self._mutator(client).update_status("ord-404", "confirmed")

        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "validation_failed")
        self.assertEqual(result.attempts, 1)

    async def test_database_error_carries_recovery_actions(self) -> None:
        client = OrderStatusProcedure({"ord-1": "pending"})
        client.scripted.append(
            {
                "success": False,
                "error": "Database error: invalid input value for enum",
                "recovery_actions": ["Check order status value", "Retry the update"],
            }
        )

        result = await self._mutator(client).update_status("ord-1", "confirmed")

        self.assertFalse(result.success)
        self.assertEqual(result.recovery_actions, ("Check order status value", "Retry the update"))

    async def test_blank_input_is_rejected_without_remote_call(self) -> None:
        client = OrderStatusProcedure({"ord-1": "pending"})
        mutator = self._mutator(client)

        for order_id, status in (("ord-1", ""), ("ord-1", "null"), ("", "confirmed"), ("ord-1", "undefined")):
            result = await mutator.update_status(order_id, status)
            self.assertFalse(result.success)
            self.assertEqual(result.error_type, "validation_failed")
            self.assertEqual(result.attempts, 0)

        self.assertEqual(client.calls, [])


if __name__ == "__main__":
    unittest.main()
