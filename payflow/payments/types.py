from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

STATUS_SUCCESS = "success"
STATUS_PAID = "paid"
STATUS_FAILED = "failed"

KNOWN_STATUSES = frozenset({STATUS_SUCCESS, STATUS_PAID, STATUS_FAILED})
SUCCESSFUL_STATUSES = frozenset({STATUS_SUCCESS, STATUS_PAID})

# Raw values seen across the verification functions, the transaction table and Paystack.
_STATUS_ALIASES = {
    "success": STATUS_SUCCESS,
    "successful": STATUS_SUCCESS,
    "succeeded": STATUS_SUCCESS,
    "paid": STATUS_PAID,
    "completed": STATUS_PAID,
    "confirmed": STATUS_PAID,
    "authorized": STATUS_PAID,
    "failed": STATUS_FAILED,
    "abandoned": STATUS_FAILED,
    "timeout": STATUS_FAILED,
    "reversed": STATUS_FAILED,
    "cancelled": STATUS_FAILED,
    "canceled": STATUS_FAILED,
}

CHANNEL_STORED = "stored"
CHANNEL_RECOVERED = "recovered"

METHOD_LOCAL_SNAPSHOT = "local_snapshot"
METHOD_DATABASE_DIRECT = "database_direct"
METHOD_ORDER_LOOKUP = "order_lookup"
METHOD_PATTERN_MATCH = "pattern_match"
METHOD_TIMESTAMP_MATCH = "timestamp_match"

RECOVERY_METHODS = (
    METHOD_LOCAL_SNAPSHOT,
    METHOD_DATABASE_DIRECT,
    METHOD_ORDER_LOOKUP,
    METHOD_PATTERN_MATCH,
    METHOD_TIMESTAMP_MATCH,
)

ERROR_CODE_NOT_FOUND = "not_found"
ERROR_CODE_TIMEOUT = "timeout"
ERROR_CODE_AUTH_FAILED = "auth_failed"
ERROR_CODE_VALIDATION_FAILED = "validation_failed"
ERROR_CODE_INVALID_REFERENCE = "invalid_reference"
ERROR_CODE_AMOUNT_MISMATCH = "amount_mismatch"
ERROR_CODE_PAYMENT_FAILED = "payment_failed"

PENDING_CONFIRMATION_MESSAGE = (
    "We could not confirm this payment yet. If you were charged, the payment may still be "
    "settling; your order has been kept and you can retry verification or contact support "
    "with your payment reference."
)


def now_epoch_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def canonical_status(raw: Any) -> str | None:
    if raw is None:
        return None
    if isinstance(raw, bool):
        return STATUS_SUCCESS if raw else None
    return _STATUS_ALIASES.get(str(raw).strip().lower())


def to_amount(value: Any, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        amount = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    if math.isnan(amount) or math.isinf(amount):
        return default
    return amount


def to_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(slots=True, frozen=True)
class VerificationData:
    status: str
    amount: float = 0.0
    customer: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    paid_at: str | None = None
    channel: str = ""
    order_id: str | None = None
    order_number: str | None = None
    order_updated: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class VerificationResult:
    """Outcome of one verification or recovery flow.

    ``success`` means the payment is confirmed, so a successful result always
    carries ``data`` whose status is one of ``SUCCESSFUL_STATUSES``.
    """

    success: bool
    data: VerificationData | None = None
    message: str | None = None
    error_code: str | None = None
    reference: str | None = None

    def __post_init__(self) -> None:
        if not self.success:
            return
        if self.data is None:
            raise ValueError("A successful verification result requires data.")
        if self.data.status not in SUCCESSFUL_STATUSES:
            raise ValueError(f"Unexpected status for a successful verification: {self.data.status!r}")

    @classmethod
    def confirmed(
        cls,
        data: VerificationData,
        *,
        reference: str,
        message: str | None = None,
    ) -> "VerificationResult":
        return cls(success=True, data=data, message=message, reference=reference)

    @classmethod
    def failure(
        cls,
        *,
        reference: str | None,
        error_code: str,
        message: str | None = None,
    ) -> "VerificationResult":
        return cls(
            success=False,
            data=None,
            message=message or PENDING_CONFIRMATION_MESSAGE,
            error_code=error_code,
            reference=reference,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data.to_dict() if self.data is not None else None,
            "message": self.message,
            "error_code": self.error_code,
            "reference": self.reference,
        }


@dataclass(slots=True, frozen=True)
class RecoveryAttempt:
    reference: str
    method: str
    success: bool
    timestamp: int
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class StoredPaymentRecord:
    reference: str
    order_id: str | None
    amount: float
    customer_email: str | None
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Any) -> "StoredPaymentRecord | None":
        if not isinstance(payload, dict):
            return None
        reference = to_optional_str(payload.get("reference"))
        if reference is None:
            return None
        try:
            timestamp = int(float(payload.get("timestamp") or 0))
        except (TypeError, ValueError):
            timestamp = 0
        return cls(
            reference=reference,
            order_id=to_optional_str(payload.get("order_id") or payload.get("orderId")),
            amount=to_amount(payload.get("amount")),
            customer_email=to_optional_str(payload.get("customer_email") or payload.get("email")),
            timestamp=timestamp,
        )


@dataclass(slots=True, frozen=True)
class EmailQueued:
    success: bool
    deduplicated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class BulletproofResult:
    success: bool
    order_id: str
    new_status: str
    order: dict[str, Any] | None = None
    message: str | None = None
    error: str | None = None
    error_type: str | None = None
    retry_after_seconds: float | None = None
    recovery_actions: tuple[str, ...] = ()
    email_queued: EmailQueued | None = None
    attempts: int = 1

    @property
    def deduplicated(self) -> bool:
        return bool(self.email_queued and self.email_queued.deduplicated)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["recovery_actions"] = list(self.recovery_actions)
        return payload
