from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from payflow.common import log_event, mask_email

from . import reference as reference_codec
from .client import SupabaseGateway
from .context import ReconciliationContext
from .types import (
    CHANNEL_RECOVERED,
    ERROR_CODE_INVALID_REFERENCE,
    ERROR_CODE_NOT_FOUND,
    METHOD_DATABASE_DIRECT,
    METHOD_LOCAL_SNAPSHOT,
    METHOD_ORDER_LOOKUP,
    METHOD_PATTERN_MATCH,
    METHOD_TIMESTAMP_MATCH,
    STATUS_SUCCESS,
    SUCCESSFUL_STATUSES,
    VerificationData,
    VerificationResult,
    canonical_status,
    to_amount,
    to_optional_str,
)

if TYPE_CHECKING:
    from payflow.storage import FallbackStore

TRANSACTIONS_TABLE = "payment_transactions"
ORDERS_TABLE = "orders"

TRANSACTION_COLUMNS = (
    "id,order_id,provider_reference,status,amount,customer_email,channel,paid_at,created_at,"
    "orders(id,order_number,status,payment_status,total_amount,customer_email)"
)
ORDER_COLUMNS = (
    "id,order_number,status,payment_status,total_amount,customer_email,"
    "payment_reference,paystack_reference,paid_at,created_at"
)

MAX_PATTERN_FRAGMENTS = 4

RecoveryMethod = Callable[[str, str], Awaitable[VerificationData | None]]


def _parse_created_at_ms(value: Any) -> int | None:
    text = to_optional_str(value)
    if text is None:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(round(parsed.timestamp() * 1000))


def _iso_from_ms(value_ms: int) -> str:
    return datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc).isoformat(timespec="milliseconds")


def _is_paid(row: dict[str, Any], *keys: str) -> bool:
    return any(canonical_status(row.get(key)) in SUCCESSFUL_STATUSES for key in keys)


def _joined_order(row: dict[str, Any]) -> dict[str, Any]:
    joined = row.get("orders")
    if isinstance(joined, list):
        joined = joined[0] if joined else None
    return joined if isinstance(joined, dict) else {}


def _reference_relation(candidate: str | None, reference: str) -> bool:
    if not candidate:
        return False
    return candidate in reference or reference in candidate


class RecoveryEngine:
    """Re-derive a payment outcome after orchestrated verification failed.

    Methods run in a fixed order and stop at the first success. Every method
    is read-only and each one appends a RecoveryAttempt to the context. A
    method that finds nothing, or only unpaid rows, is a miss; the engine
    never turns a miss into success.

    The pattern-match method is approximate. It fetches paid transactions
    whose reference contains a fragment of the input, plus those whose
    reference equals a separator-aligned run of the input; a stored reference
    that sits inside the input but across segment boundaries is not found.
    Among the candidates it prefers one whose reference contains, or is
    contained by, the input and otherwise takes the first row returned.
    Coincidental fragment collisions can therefore pick the wrong
    transaction; its results are tagged with the method for audit.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        client: SupabaseGateway,
        store: "FallbackStore",
        context: ReconciliationContext,
        window_seconds: int = 300,
        min_fragment_length: int = 6,
        query_limit: int = 20,
    ) -> None:
        self._logger = logger
        self._client = client
        self._store = store
        self.context = context
        self._window_ms = max(1, int(window_seconds)) * 1000
        self._min_fragment_length = max(1, int(min_fragment_length))
        self._query_limit = max(1, int(query_limit))
        self._methods: tuple[tuple[str, RecoveryMethod], ...] = (
            (METHOD_LOCAL_SNAPSHOT, self._from_local_snapshot),
            (METHOD_DATABASE_DIRECT, self._from_transaction_lookup),
            (METHOD_ORDER_LOOKUP, self._from_order_lookup),
            (METHOD_PATTERN_MATCH, self._from_pattern_match),
            (METHOD_TIMESTAMP_MATCH, self._from_timestamp_window),
        )

    async def attempt_recovery(
        self,
        reference: str,
        *,
        channel: str = CHANNEL_RECOVERED,
    ) -> VerificationResult:
        value = (reference or "").strip()
        if not value:
            return VerificationResult.failure(
                reference=reference,
                error_code=ERROR_CODE_INVALID_REFERENCE,
                message="A payment reference is required to recover a payment.",
            )

        for method_name, method in self._methods:
            try:
                data = await method(value, channel)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                self.context.record_attempt(
                    reference=value,
                    method=method_name,
                    success=False,
                    error=str(error),
                )
                log_event(
                    self._logger,
                    level="warning",
                    event="recovery_attempt",
                    message="Recovery method raised",
                    reference=value,
                    method=method_name,
                    success=False,
                    error=str(error),
                    error_type=type(error).__name__,
                )
                continue

            self.context.record_attempt(
                reference=value,
                method=method_name,
                success=data is not None,
                error=None if data is not None else "no match",
            )
            log_event(
                self._logger,
                level="info" if data is not None else "debug",
                event="recovery_attempt",
                message="Recovery method matched" if data is not None else "Recovery method found no match",
                reference=value,
                method=method_name,
                success=data is not None,
            )
            if data is not None:
                return VerificationResult.confirmed(
                    data,
                    reference=value,
                    message=f"Payment recovered via {method_name}",
                )

        log_event(
            self._logger,
            level="warning",
            event="recovery_exhausted",
            message="All recovery methods failed; payment left unconfirmed",
            reference=value,
            methods=[name for name, _ in self._methods],
        )
        return VerificationResult.failure(reference=value, error_code=ERROR_CODE_NOT_FOUND)

    def _from_transaction_row(
        self,
        row: dict[str, Any],
        *,
        method: str,
        order: dict[str, Any] | None = None,
        extra_metadata: dict[str, Any] | None = None,
    ) -> VerificationData:
        order = order or _joined_order(row)
        status = canonical_status(row.get("status")) or canonical_status(order.get("payment_status"))
        metadata: dict[str, Any] = {
            "recovery_method": method,
            "transaction_id": row.get("id"),
            "provider_reference": row.get("provider_reference"),
        }
        if row.get("channel"):
            metadata["original_channel"] = row.get("channel")
        if extra_metadata:
            metadata.update(extra_metadata)

        email = to_optional_str(row.get("customer_email")) or to_optional_str(order.get("customer_email"))
        return VerificationData(
            status=status or STATUS_SUCCESS,
            amount=to_amount(row.get("amount"), to_amount(order.get("total_amount"))),
            customer={"email": email} if email else {},
            metadata=metadata,
            paid_at=to_optional_str(row.get("paid_at")) or to_optional_str(row.get("created_at")),
            channel=CHANNEL_RECOVERED,
            order_id=to_optional_str(row.get("order_id")) or to_optional_str(order.get("id")),
            order_number=to_optional_str(order.get("order_number")),
            order_updated=None,
        )

    async def _from_local_snapshot(self, reference: str, channel: str) -> VerificationData | None:
        accepted = {reference}
        counterpart = reference_codec.counterpart(reference)
        if counterpart:
            accepted.add(counterpart)

        for key, snapshot in await self._store.load_success_snapshots():
            if snapshot.get("reference") not in accepted:
                continue
            status = canonical_status(snapshot.get("status")) or STATUS_SUCCESS
            if status not in SUCCESSFUL_STATUSES:
                continue
            return VerificationData(
                status=status,
                amount=to_amount(snapshot.get("amount")),
                customer=snapshot.get("customer") if isinstance(snapshot.get("customer"), dict) else {},
                metadata={"recovery_method": METHOD_LOCAL_SNAPSHOT, "snapshot_key": key},
                paid_at=to_optional_str(snapshot.get("paid_at")),
                channel=channel,
                order_id=to_optional_str(snapshot.get("order_id")),
                order_number=to_optional_str(snapshot.get("order_number")),
            )

        record = await self._store.load_checkout()
        if record is None or record.reference not in accepted:
            return None

        log_event(
            self._logger,
            level="info",
            event="recovery_local_snapshot_matched",
            message="Reference matches the stored checkout snapshot",
            reference=reference,
            order_id=record.order_id,
            customer_email=mask_email(record.customer_email or ""),
        )
        return VerificationData(
            status=STATUS_SUCCESS,
            amount=record.amount,
            customer={"email": record.customer_email} if record.customer_email else {},
            metadata={
                "recovery_method": METHOD_LOCAL_SNAPSHOT,
                "snapshot_key": "checkout",
                "snapshot_timestamp": record.timestamp,
            },
            paid_at=None,
            channel=channel,
            order_id=record.order_id,
        )

    async def _from_transaction_lookup(self, reference: str, _channel: str) -> VerificationData | None:
        rows = await self._client.select(
            TRANSACTIONS_TABLE,
            columns=TRANSACTION_COLUMNS,
            filters=[("provider_reference", f"eq.{reference}")],
            order="created_at.desc",
            limit=self._query_limit,
        )
        for row in rows:
            if _is_paid(row, "status"):
                return self._from_transaction_row(row, method=METHOD_DATABASE_DIRECT)
        return None

    async def _from_order_lookup(self, reference: str, _channel: str) -> VerificationData | None:
        candidates = [reference]
        counterpart = reference_codec.counterpart(reference)
        if counterpart:
            candidates.append(counterpart)
        clauses = ",".join(
            f"{column}.eq.{candidate}"
            for candidate in candidates
            for column in ("payment_reference", "paystack_reference")
        )

        orders = await self._client.select(
            ORDERS_TABLE,
            columns=ORDER_COLUMNS,
            filters=[("or", f"({clauses})")],
            order="created_at.desc",
            limit=self._query_limit,
        )
        for order in orders:
            order_id = to_optional_str(order.get("id"))
            if order_id is None:
                continue

            transactions = await self._client.select(
                TRANSACTIONS_TABLE,
                columns=TRANSACTION_COLUMNS,
                filters=[("order_id", f"eq.{order_id}")],
                order="created_at.desc",
                limit=self._query_limit,
            )
            for row in transactions:
                if _is_paid(row, "status"):
                    return self._from_transaction_row(row, method=METHOD_ORDER_LOOKUP, order=order)

            if _is_paid(order, "payment_status"):
                email = to_optional_str(order.get("customer_email"))
                return VerificationData(
                    status=canonical_status(order.get("payment_status")) or STATUS_SUCCESS,
                    amount=to_amount(order.get("total_amount")),
                    customer={"email": email} if email else {},
                    metadata={"recovery_method": METHOD_ORDER_LOOKUP, "order_status": order.get("status")},
                    paid_at=to_optional_str(order.get("paid_at")),
                    channel=CHANNEL_RECOVERED,
                    order_id=order_id,
                    order_number=to_optional_str(order.get("order_number")),
                )
        return None

    async def _from_pattern_match(self, reference: str, _channel: str) -> VerificationData | None:
        fragments = reference_codec.extract_fragments(reference, min_length=self._min_fragment_length)
        filters = [("provider_reference", f"ilike.*{fragment}*") for fragment in fragments[:MAX_PATTERN_FRAGMENTS]]
        contained = reference_codec.contained_references(reference, min_length=self._min_fragment_length)
        if contained:
            quoted = ",".join(f'"{candidate}"' for candidate in contained)
            filters.append(("provider_reference", f"in.({quoted})"))
        if not filters:
            return None

        matches: list[dict[str, Any]] = []
        seen: set[Any] = set()
        for item in filters:
            rows = await self._client.select(
                TRANSACTIONS_TABLE,
                columns=TRANSACTION_COLUMNS,
                filters=[item],
                order="created_at.desc",
                limit=self._query_limit,
            )
            for row in rows:
                row_key = row.get("id") or row.get("provider_reference")
                if row_key in seen or not _is_paid(row, "status"):
                    continue
                seen.add(row_key)
                matches.append(row)

        if not matches:
            return None

        best = next(
            (row for row in matches if _reference_relation(to_optional_str(row.get("provider_reference")), reference)),
            matches[0],
        )
        log_event(
            self._logger,
            level="warning",
            event="recovery_pattern_match_selected",
            message="Pattern match picked a transaction; verify manually if references differ",
            reference=reference,
            matched_reference=best.get("provider_reference"),
            candidates=len(matches),
        )
        return self._from_transaction_row(best, method=METHOD_PATTERN_MATCH)

    async def _from_timestamp_window(self, reference: str, _channel: str) -> VerificationData | None:
        created_ms = reference_codec.parse_timestamp_ms(reference)
        if created_ms is None:
            return None

        rows = await self._client.select(
            TRANSACTIONS_TABLE,
            columns=TRANSACTION_COLUMNS,
            filters=[
                ("created_at", f"gte.{_iso_from_ms(created_ms - self._window_ms)}"),
                ("created_at", f"lte.{_iso_from_ms(created_ms + self._window_ms)}"),
            ],
            order="created_at.asc",
            limit=self._query_limit,
        )

        fragments = reference_codec.extract_fragments(reference, min_length=self._min_fragment_length)
        scored: list[tuple[int, int, dict[str, Any]]] = []
        for row in rows:
            if not _is_paid(row, "status"):
                continue
            row_ms = _parse_created_at_ms(row.get("created_at"))
            if row_ms is None or abs(row_ms - created_ms) > self._window_ms:
                continue
            stored_reference = to_optional_str(row.get("provider_reference")) or ""
            similarity = sum(1 for fragment in fragments if fragment in stored_reference)
            scored.append((-similarity, abs(row_ms - created_ms), row))

        if not scored:
            return None

        scored.sort(key=lambda item: (item[0], item[1]))
        _, distance_ms, best = scored[0]
        return self._from_transaction_row(
            best,
            method=METHOD_TIMESTAMP_MATCH,
            extra_metadata={"time_distance_ms": distance_ms},
        )
