from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from .types import RecoveryAttempt, VerificationResult, now_epoch_ms


@dataclass(slots=True)
class VerificationRecord:
    reference: str
    success: bool
    source: str
    error_code: str | None
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "success": self.success,
            "source": self.source,
            "error_code": self.error_code,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class ReconciliationContext:
    """Per-session audit state shared by the orchestrator and recovery engine.

    Both logs are append-only and only read for reporting; no control decision
    is taken from them.
    """

    session_id: str
    attempts: list[RecoveryAttempt] = field(default_factory=list)
    history: list[VerificationRecord] = field(default_factory=list)

    def record_attempt(
        self,
        *,
        reference: str,
        method: str,
        success: bool,
        error: str | None = None,
    ) -> RecoveryAttempt:
        timestamp = now_epoch_ms()
        if self.attempts and timestamp < self.attempts[-1].timestamp:
            timestamp = self.attempts[-1].timestamp
        attempt = RecoveryAttempt(
            reference=reference,
            method=method,
            success=success,
            timestamp=timestamp,
            error=error,
        )
        self.attempts.append(attempt)
        return attempt

    def record_result(self, result: VerificationResult, *, source: str) -> None:
        self.history.append(
            VerificationRecord(
                reference=result.reference or "",
                success=result.success,
                source=source,
                error_code=result.error_code,
                timestamp=now_epoch_ms(),
            )
        )

    def attempts_for(self, reference: str) -> list[RecoveryAttempt]:
        return [attempt for attempt in self.attempts if attempt.reference == reference]

    def history_for(self, reference: str) -> list[VerificationRecord]:
        return [record for record in self.history if record.reference == reference]

    def summary(self) -> dict[str, Any]:
        by_method: Counter[str] = Counter()
        successes_by_method: Counter[str] = Counter()
        for attempt in self.attempts:
            by_method[attempt.method] += 1
            if attempt.success:
                successes_by_method[attempt.method] += 1

        return {
            "session_id": self.session_id,
            "verifications": len(self.history),
            "verified": sum(1 for record in self.history if record.success),
            "recovery_attempts": len(self.attempts),
            "recovery_successes": sum(1 for attempt in self.attempts if attempt.success),
            "attempts_by_method": dict(by_method),
            "successes_by_method": dict(successes_by_method),
            "references": sorted({record.reference for record in self.history if record.reference}),
        }
