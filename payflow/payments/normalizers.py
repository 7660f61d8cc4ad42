from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .types import (
    STATUS_SUCCESS,
    SUCCESSFUL_STATUSES,
    VerificationData,
    canonical_status,
    to_amount,
    to_optional_str,
)

SOURCE_PRIMARY = "primary"
SOURCE_SECONDARY = "secondary"

# One kobo; anything wider is a real mismatch rather than float noise.
AMOUNT_TOLERANCE = 0.01

_PRIMARY_METADATA_KEYS = (
    "order_status",
    "payment_status",
    "transaction_id",
    "request_id",
    "cached",
    "verified_at",
)


@dataclass(slots=True, frozen=True)
class AdaptedResponse:
    """A remote verification response reduced to one canonical shape."""

    source: str
    confirmed: bool
    data: VerificationData | None
    message: str | None = None
    reference: str | None = None
    amount_mismatch: bool = False


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str) and value.strip().startswith("{"):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _first(mapping: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def _customer(value: Any, fallback_email: Any = None) -> dict[str, Any]:
    customer = _as_dict(value)
    if not customer and isinstance(value, str) and "@" in value:
        customer = {"email": value.strip()}
    email = to_optional_str(fallback_email)
    if email and not customer.get("email"):
        customer["email"] = email
    return customer


def _optional_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in {"1", "true", "yes"}:
        return True
    if text in {"0", "false", "no"}:
        return False
    return None


def _failure_message(payload: dict[str, Any], default: str) -> str:
    for key in ("message", "error", "details", "gateway_response"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict):
            nested = value.get("message")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return default


def amounts_match(paid: float, expected: float, *, tolerance: float = AMOUNT_TOLERANCE) -> bool:
    return abs(paid - expected) <= tolerance + 1e-9


def adapt_primary_response(payload: Any) -> AdaptedResponse:
    """Decode a ``verify-payment`` response, flat or ``data``-nested.

    Amounts from this function are already in major units. A missing status
    on an explicit success is read as ``success``; a response that names both
    the paid amount and the order total must agree within one kobo.
    """
    body = _as_dict(payload)
    if not body:
        return AdaptedResponse(
            source=SOURCE_PRIMARY,
            confirmed=False,
            data=None,
            message="Empty or malformed verification response",
        )

    nested = _as_dict(body.get("data"))
    fields = {**body, **nested}
    success_flag = _optional_bool(body.get("success"))

    status = canonical_status(_first(fields, "status", "payment_status"))
    if status is None and success_flag:
        status = STATUS_SUCCESS

    metadata = _as_dict(fields.get("metadata"))
    for key in _PRIMARY_METADATA_KEYS:
        if key in fields and key not in metadata and not isinstance(fields[key], (dict, list)):
            metadata[key] = fields[key]

    amount = to_amount(_first(fields, "amount", "paid_amount"))
    order_id = to_optional_str(_first(fields, "order_id", "orderId")) or to_optional_str(
        metadata.get("order_id")
    )
    reference = to_optional_str(_first(fields, "reference", "payment_reference"))

    data = VerificationData(
        status=status or "unknown",
        amount=amount,
        customer=_customer(fields.get("customer"), fields.get("customer_email")),
        metadata=metadata,
        paid_at=to_optional_str(_first(fields, "paid_at", "paidAt", "verified_at")),
        channel=to_optional_str(fields.get("channel")) or "",
        order_id=order_id,
        order_number=to_optional_str(_first(fields, "order_number", "orderNumber"))
        or to_optional_str(metadata.get("order_number")),
        order_updated=_optional_bool(fields.get("order_updated")),
    )

    if success_flag is False:
        return AdaptedResponse(
            source=SOURCE_PRIMARY,
            confirmed=False,
            data=data,
            message=_failure_message(body, "Primary verification reported failure"),
            reference=reference,
        )
    if status not in SUCCESSFUL_STATUSES:
        return AdaptedResponse(
            source=SOURCE_PRIMARY,
            confirmed=False,
            data=data,
            message=_failure_message(body, f"Payment status is {data.status!r}"),
            reference=reference,
        )

    expected_raw = _first(fields, "order_total", "total_amount", "expected_amount")
    if expected_raw is not None and _first(fields, "amount", "paid_amount") is not None:
        expected = to_amount(expected_raw)
        if not amounts_match(amount, expected):
            return AdaptedResponse(
                source=SOURCE_PRIMARY,
                confirmed=False,
                data=data,
                message=f"Payment amount mismatch: paid {amount:.2f}, expected {expected:.2f}",
                reference=reference,
                amount_mismatch=True,
            )

    return AdaptedResponse(
        source=SOURCE_PRIMARY,
        confirmed=True,
        data=data,
        message=to_optional_str(body.get("message")),
        reference=reference,
    )


def adapt_secondary_response(payload: Any) -> AdaptedResponse:
    """Decode a ``paystack-secure`` verify response.

    The envelope flag may be ``status`` or ``success``, the transaction may sit
    under ``data`` or at the top level, and amounts arrive in kobo.
    """
    body = _as_dict(payload)
    if not body:
        return AdaptedResponse(
            source=SOURCE_SECONDARY,
            confirmed=False,
            data=None,
            message="Empty or malformed verification response",
        )

    envelope_ok = _optional_bool(body.get("success"))
    if envelope_ok is None and isinstance(body.get("status"), bool):
        envelope_ok = body["status"]

    transaction = _as_dict(body.get("data")) or {
        key: value for key, value in body.items() if key not in {"success", "message"}
    }
    if isinstance(body.get("status"), bool) and transaction.get("status") is body.get("status"):
        transaction.pop("status", None)

    status = canonical_status(_first(transaction, "status", "payment_status"))
    metadata = _as_dict(transaction.get("metadata"))
    for key in ("gateway_response", "id", "domain", "currency"):
        if key in transaction and key not in metadata and not isinstance(transaction[key], (dict, list)):
            metadata[key] = transaction[key]

    amount = to_amount(transaction.get("amount")) / 100.0
    reference = to_optional_str(transaction.get("reference"))

    data = VerificationData(
        status=status or "unknown",
        amount=amount,
        customer=_customer(transaction.get("customer"), transaction.get("customer_email")),
        metadata=metadata,
        paid_at=to_optional_str(_first(transaction, "paid_at", "paidAt", "transaction_date")),
        channel=to_optional_str(transaction.get("channel")) or "",
        order_id=to_optional_str(_first(transaction, "order_id")) or to_optional_str(metadata.get("order_id")),
        order_number=to_optional_str(_first(transaction, "order_number"))
        or to_optional_str(metadata.get("order_number")),
        order_updated=_optional_bool(transaction.get("order_updated")),
    )

    if envelope_ok is False or status not in SUCCESSFUL_STATUSES:
        return AdaptedResponse(
            source=SOURCE_SECONDARY,
            confirmed=False,
            data=data,
            message=_failure_message(
                {**transaction, **body},
                f"Payment status is {data.status!r}",
            ),
            reference=reference,
        )

    return AdaptedResponse(
        source=SOURCE_SECONDARY,
        confirmed=True,
        data=data,
        message=to_optional_str(body.get("message")),
        reference=reference,
    )
