from __future__ import annotations

import re
import uuid
from dataclasses import dataclass

from .types import now_epoch_ms

REFERENCE_PREFIX = "txn_"
LEGACY_PREFIXES = ("pay_",)
ACCEPTED_PREFIXES = (REFERENCE_PREFIX, *LEGACY_PREFIXES)

MIN_REFERENCE_LENGTH = 8
MAX_REFERENCE_LENGTH = 100

_REFERENCE_CHARS_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_TIMESTAMP_REFERENCE_RE = re.compile(r"^txn_(\d{12,14})_")
_UUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
_LONG_DIGITS_RE = re.compile(r"\d{10,}")


def generate(*, now_ms: int | None = None) -> str:
    """Return a new ``txn_<epoch-ms>_<uuid4>`` reference."""
    created_at_ms = now_epoch_ms() if now_ms is None else int(now_ms)
    return f"{REFERENCE_PREFIX}{created_at_ms}_{uuid.uuid4()}"


def is_valid(candidate: object) -> bool:
    # Advisory only: legacy prefixes are still accepted while old orders settle.
    if not isinstance(candidate, str):
        return False
    value = candidate.strip()
    return value.startswith(ACCEPTED_PREFIXES) and len(value) >= MIN_REFERENCE_LENGTH


def parse_timestamp_ms(reference: str) -> int | None:
    match = _TIMESTAMP_REFERENCE_RE.match((reference or "").strip())
    if match is None:
        return None
    return int(match.group(1))


def counterpart(reference: str) -> str | None:
    """The same reference under the other accepted prefix (``txn_`` <-> ``pay_``)."""
    value = (reference or "").strip()
    if value.startswith(REFERENCE_PREFIX):
        return f"pay_{value[len(REFERENCE_PREFIX):]}"
    for prefix in LEGACY_PREFIXES:
        if value.startswith(prefix):
            return f"{REFERENCE_PREFIX}{value[len(prefix):]}"
    return None


def extract_fragments(reference: str, *, min_length: int = 6) -> list[str]:
    value = (reference or "").strip()
    if not value:
        return []

    candidates: list[str] = []
    candidates.extend(match.group(0) for match in _UUID_RE.finditer(value))
    candidates.extend(match.group(0) for match in _LONG_DIGITS_RE.finditer(value))
    candidates.extend(part for part in re.split(r"[_-]", value) if part)

    fragments: list[str] = []
    for candidate in candidates:
        if len(candidate) < min_length or candidate.lower() in {"txn", "pay"}:
            continue
        if candidate not in fragments:
            fragments.append(candidate)
    return fragments


def contained_references(reference: str, *, min_length: int = 6) -> list[str]:
    """Separator-aligned runs of ``reference`` that a stored reference could equal.

    ``txn_1700000000000_ab_cd12`` yields ``ab_cd12`` among others; the whole
    reference itself is left out.
    """
    value = (reference or "").strip()
    parts = re.split(r"([_-])", value)
    segments = parts[0::2]
    separators = parts[1::2]

    runs: list[str] = []
    for start in range(len(segments)):
        run = segments[start]
        for end in range(start + 1, len(segments) + 1):
            if end > start + 1:
                run = f"{run}{separators[end - 2]}{segments[end - 1]}"
            if run == value or len(run) < min_length or run.lower() in {"txn", "pay"}:
                continue
            if run not in runs:
                runs.append(run)
    return runs


@dataclass(slots=True, frozen=True)
class ReferenceReport:
    reference: str
    is_valid: bool
    errors: tuple[str, ...]
    warnings: tuple[str, ...]
    prefix: str | None
    timestamp_ms: int | None


def validate_reference(candidate: object) -> ReferenceReport:
    if not isinstance(candidate, str) or not candidate.strip():
        return ReferenceReport(
            reference="",
            is_valid=False,
            errors=("Payment reference is required and must be a non-empty string",),
            warnings=(),
            prefix=None,
            timestamp_ms=None,
        )

    value = candidate.strip()
    errors: list[str] = []
    warnings: list[str] = []

    if len(value) < MIN_REFERENCE_LENGTH:
        errors.append(f"Payment reference too short (minimum {MIN_REFERENCE_LENGTH} characters)")
    if len(value) > MAX_REFERENCE_LENGTH:
        errors.append(f"Payment reference too long (maximum {MAX_REFERENCE_LENGTH} characters)")
    if not _REFERENCE_CHARS_RE.match(value):
        errors.append("Payment reference may only contain letters, numbers, hyphens and underscores")

    prefix = next((item for item in ACCEPTED_PREFIXES if value.startswith(item)), None)
    if prefix is None:
        warnings.append("Reference does not use a known prefix")
    elif prefix != REFERENCE_PREFIX:
        warnings.append(f"Legacy reference prefix {prefix!r}")

    timestamp_ms = parse_timestamp_ms(value)
    if prefix == REFERENCE_PREFIX and timestamp_ms is None:
        warnings.append("Reference has no embedded creation timestamp")

    return ReferenceReport(
        reference=value,
        is_valid=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
        prefix=prefix,
        timestamp_ms=timestamp_ms,
    )
