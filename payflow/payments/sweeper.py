from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from payflow.common import log_event

from .client import SupabaseGateway
from .status import BulletproofStatusMutator
from .types import SUCCESSFUL_STATUSES, BulletproofResult, canonical_status, to_amount, to_optional_str

STUCK_ORDER_COLUMNS = (
    "id,order_number,customer_email,total_amount,created_at,payment_reference,"
    "payment_transactions(provider_reference,status,paid_at)"
)
CONFIRMED_ORDER_STATUS = "confirmed"


@dataclass(slots=True, frozen=True)
class StuckOrder:
    order_id: str
    order_number: str | None
    total_amount: float
    created_at: str | None
    payment_reference: str | None
    paid_reference: str | None

    @property
    def has_paid_transaction(self) -> bool:
        return self.paid_reference is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "total_amount": self.total_amount,
            "created_at": self.created_at,
            "payment_reference": self.payment_reference,
            "paid_reference": self.paid_reference,
        }


@dataclass(slots=True)
class SweepReport:
    scanned: int = 0
    eligible: int = 0
    recovered: list[str] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "eligible": self.eligible,
            "recovered_count": len(self.recovered),
            "recovered": list(self.recovered),
            "failed": list(self.failed),
        }


def _paid_reference(row: dict[str, Any]) -> str | None:
    transactions = row.get("payment_transactions")
    if isinstance(transactions, dict):
        transactions = [transactions]
    if not isinstance(transactions, list):
        return None
    for transaction in transactions:
        if not isinstance(transaction, dict):
            continue
        if canonical_status(transaction.get("status")) in SUCCESSFUL_STATUSES:
            return to_optional_str(transaction.get("provider_reference")) or ""
    return None


class ReconciliationSweeper:
    """Finds orders left ``pending`` after checkout and confirms the paid ones.

    Confirmation goes through the status mutator one order at a time so the
    remote procedure stays the only writer.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        client: SupabaseGateway,
        mutator: BulletproofStatusMutator,
        age_minutes: int = 5,
        limit: int = 50,
    ) -> None:
        self._logger = logger
        self._client = client
        self._mutator = mutator
        self._age_minutes = max(1, int(age_minutes))
        self._limit = max(1, int(limit))

    async def scan_stuck_orders(self) -> list[StuckOrder]:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self._age_minutes)
        rows = await self._client.select(
            "orders",
            columns=STUCK_ORDER_COLUMNS,
            filters=[
                ("status", "eq.pending"),
                ("payment_status", "eq.pending"),
                ("created_at", f"lt.{cutoff.isoformat()}"),
            ],
            order="created_at.asc",
            limit=self._limit,
        )

        stuck: list[StuckOrder] = []
        for row in rows:
            order_id = to_optional_str(row.get("id"))
            if order_id is None:
                continue
            stuck.append(
                StuckOrder(
                    order_id=order_id,
                    order_number=to_optional_str(row.get("order_number")),
                    total_amount=to_amount(row.get("total_amount")),
                    created_at=to_optional_str(row.get("created_at")),
                    payment_reference=to_optional_str(row.get("payment_reference")),
                    paid_reference=_paid_reference(row),
                )
            )

        log_event(
            self._logger,
            level="info",
            event="stuck_orders_scanned",
            message="Scanned for orders stuck in pending",
            found=len(stuck),
            with_paid_transaction=sum(1 for order in stuck if order.has_paid_transaction),
            age_minutes=self._age_minutes,
        )
        return stuck

    async def recover_stuck_orders(self, *, admin_id: str | None = None) -> SweepReport:
        report = SweepReport()
        stuck = await self.scan_stuck_orders()
        report.scanned = len(stuck)

        for order in stuck:
            if not order.has_paid_transaction:
                continue
            report.eligible += 1
            result: BulletproofResult = await self._mutator.update_status(
                order.order_id,
                CONFIRMED_ORDER_STATUS,
                admin_id,
            )
            if result.success:
                report.recovered.append(order.order_id)
                continue
            report.failed.append(
                {
                    "order_id": order.order_id,
                    "order_number": order.order_number,
                    "error": result.error,
                    "error_type": result.error_type,
                }
            )

        log_event(
            self._logger,
            level="warning" if report.failed else "info",
            event="stuck_orders_recovered",
            message="Stuck order recovery finished",
            scanned=report.scanned,
            eligible=report.eligible,
            recovered=len(report.recovered),
            failed=len(report.failed),
        )
        return report
