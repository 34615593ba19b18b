from __future__ import annotations

import dataclasses
import re
from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from pocket_budget.modules.ingestion.domain import CanonicalCandidate

_TIMESTAMP_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ](\d{2}):(\d{2})")


class PersistedExpense(Protocol):
    id: Any
    transaction_datetime: str | datetime
    amount: Any


def split_timestamp(value: str | datetime) -> tuple[date, str | None]:
    """
    Read the wall-clock date and ``HH:MM`` from a persisted timestamp.

    No timezone conversion is applied: ``2026-03-05T12:30:00+08:00`` is
    12:30 on March 5th. Midnight means the record has no time of day.
    """
    if isinstance(value, datetime):
        hhmm = f"{value.hour:02d}:{value.minute:02d}"
        return value.date(), (None if hhmm == "00:00" else hhmm)

    m = _TIMESTAMP_RE.match(value.strip())
    if m:
        day, hours, minutes = m.groups()
        hhmm = f"{hours}:{minutes}"
        return date.fromisoformat(day), (None if hhmm == "00:00" else hhmm)

    parsed = datetime.fromisoformat(value.strip())
    return split_timestamp(parsed)


def _as_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def is_duplicate(candidate: CanonicalCandidate, existing: Sequence[PersistedExpense]) -> bool:
    amount = _as_decimal(candidate.amount)
    if amount is None:
        return False

    for record in existing:
        record_amount = _as_decimal(record.amount)
        if record_amount is None or record_amount != amount:
            continue
        record_date, record_time = split_timestamp(record.transaction_datetime)
        if record_date != candidate.date:
            continue
        if candidate.time is None:
            # A time-less candidate only matches a time-less record.
            if record_time is None:
                return True
            continue
        if record_time == candidate.time:
            return True
    return False


def mark_duplicates(
    candidates: Sequence[CanonicalCandidate], existing: Sequence[PersistedExpense]
) -> list[CanonicalCandidate]:
    out: list[CanonicalCandidate] = []
    for candidate in candidates:
        duplicated = is_duplicate(candidate, existing) if existing else False
        out.append(dataclasses.replace(candidate, is_duplicated=duplicated, selected=not duplicated))
    return out


def mark_all_new(candidates: Sequence[CanonicalCandidate]) -> list[CanonicalCandidate]:
    return [dataclasses.replace(c, is_duplicated=False, selected=True) for c in candidates]
