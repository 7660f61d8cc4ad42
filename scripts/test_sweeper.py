from __future__ import annotations

import logging
import unittest
from typing import Any
from unittest.mock import AsyncMock

from payflow.payments import BulletproofResult, ReconciliationSweeper


class PendingOrders:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self.rows = rows
        self.queries: list[dict[str, Any]] = []

    async def select(self, table: str, **kwargs: Any) -> list[dict[str, Any]]:
        self.queries.append({"table": table, **kwargs})
        return list(self.rows)


class ReconciliationSweeperTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("test.sweeper")
        self.client = PendingOrders(
            [
                {
                    "id": "ord-1",
                    "order_number": "ORD-0001",
                    "total_amount": 2500,
                    "created_at": "2023-11-14T22:00:00+00:00",
                    "payment_transactions": [
                        {"provider_reference": "txn_1", "status": "pending"},
                        {"provider_reference": "txn_2", "status": "success"},
                    ],
                },
                {
                    "id": "ord-2",
                    "order_number": "ORD-0002",
                    "payment_transactions": [{"provider_reference": "txn_3", "status": "failed"}],
                },
                {"id": "ord-3", "payment_transactions": {"provider_reference": "txn_4", "status": "paid"}},
                {"order_number": "missing-id"},
            ]
        )
        self.mutator = AsyncMock()

    def _sweeper(self) -> ReconciliationSweeper:
        return ReconciliationSweeper(logger=self.logger, client=self.client, mutator=self.mutator)

    async def test_scan_queries_pending_orders_older_than_cutoff(self) -> None:
        stuck = await self._sweeper().scan_stuck_orders()

        self.assertEqual([order.order_id for order in stuck], ["ord-1", "ord-2", "ord-3"])
        self.assertEqual(stuck[0].paid_reference, "txn_2")
        self.assertFalse(stuck[1].has_paid_transaction)
        self.assertTrue(stuck[2].has_paid_transaction)

        query = self.client.queries[0]
        self.assertEqual(query["table"], "orders")
        self.assertEqual(query["limit"], 50)
        filters = dict(query["filters"])
        self.assertEqual(filters["status"], "eq.pending")
        self.assertEqual(filters["payment_status"], "eq.pending")
        self.assertTrue(filters["created_at"].startswith("lt."))

    async def test_recover_confirms_only_paid_orders_through_the_mutator(self) -> None:
        self.mutator.update_status.side_effect = [
            BulletproofResult(success=True, order_id="ord-1", new_status="confirmed"),
            BulletproofResult(
                success=False,
                order_id="ord-3",
                new_status="confirmed",
                error="Rate limit exceeded",
                error_type="rate_limited",
            ),
        ]

        report = await self._sweeper().recover_stuck_orders(admin_id="admin-1")

        self.assertEqual(report.scanned, 3)
        self.assertEqual(report.eligible, 2)
        self.assertEqual(report.recovered, ["ord-1"])
        self.assertEqual(report.failed[0]["order_id"], "ord-3")
        self.assertEqual(report.failed[0]["error_type"], "rate_limited")
        self.assertEqual(
            [call.args for call in self.mutator.update_status.await_args_list],
            [("ord-1", "confirmed", "admin-1"), ("ord-3", "confirmed", "admin-1")],
        )
        self.assertEqual(report.to_dict()["recovered_count"], 1)


if __name__ == "__main__":
    unittest.main()
