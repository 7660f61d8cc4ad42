from .backoff import with_backoff
from .client import SupabaseClient, SupabaseGateway
from .context import ReconciliationContext
from .engine import ReconciliationEngine
from .errors import ErrorClassification, RemoteCallError, VerificationTimeoutError, classify, is_retryable
from .normalizers import adapt_primary_response, adapt_secondary_response
from .orchestrator import VerificationOrchestrator
from .recovery import RecoveryEngine
from .reference import generate as generate_reference
from .reference import is_valid as is_valid_reference
from .reference import validate_reference
from .session import CheckoutStart, PaymentSession
from .status import BulletproofStatusMutator
from .sweeper import ReconciliationSweeper, StuckOrder, SweepReport
from .types import (
    BulletproofResult,
    EmailQueued,
    RecoveryAttempt,
    StoredPaymentRecord,
    VerificationData,
    VerificationResult,
)

__all__ = [
    "BulletproofResult",
    "BulletproofStatusMutator",
    "CheckoutStart",
    "EmailQueued",
    "ErrorClassification",
    "PaymentSession",
    "ReconciliationContext",
    "ReconciliationEngine",
    "ReconciliationSweeper",
    "RecoveryAttempt",
    "RecoveryEngine",
    "RemoteCallError",
    "StoredPaymentRecord",
    "StuckOrder",
    "SupabaseClient",
    "SupabaseGateway",
    "SweepReport",
    "VerificationData",
    "VerificationOrchestrator",
    "VerificationResult",
    "VerificationTimeoutError",
    "adapt_primary_response",
    "adapt_secondary_response",
    "classify",
    "generate_reference",
    "is_retryable",
    "is_valid_reference",
    "validate_reference",
    "with_backoff",
]
