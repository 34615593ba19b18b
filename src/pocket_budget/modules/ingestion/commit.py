from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass

from pocket_budget.core.logging import get_logger, log_event, log_exception, monotonic_ms
from pocket_budget.modules.ingestion.domain import CanonicalCandidate
from pocket_budget.modules.ingestion.errors import CommitError, NothingSelected
from pocket_budget.modules.ingestion.orchestrator import ExpenseStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommitReport:
    persisted_ids: tuple[str, ...]


def _error_message(error: Exception) -> str:
    detail = getattr(error, "detail", None)
    if isinstance(detail, str) and detail:
        return detail
    return str(error) or "Failed to save, please try again"


async def commit_candidates(
    store: ExpenseStore, candidates: Sequence[CanonicalCandidate]
) -> CommitReport:
    """
    Persist every selected candidate, one store call each.

    There is no transaction across candidates. On the first failure the
    rows already written stay written and CommitError carries their ids so
    the caller can offer the remainder for another attempt.
    """
    selected = [c for c in candidates if c.selected]
    if not selected:
        raise NothingSelected("Please select at least one record")

    start = time.monotonic()
    persisted: list[str] = []
    for candidate in selected:
        try:
            await store.create_expense(
                date=candidate.date,
                time=candidate.time,
                amount=candidate.amount,
                category_id=candidate.category_id,
                note=candidate.description or "",
                is_essential=candidate.is_essential,
            )
        except Exception as e:  # noqa: BLE001
            log_exception(
                logger,
                "ingestion.commit.failure",
                candidate_id=candidate.id,
                persisted_count=len(persisted),
                remaining_count=len(selected) - len(persisted),
            )
            raise CommitError(_error_message(e), persisted_ids=tuple(persisted)) from e
        persisted.append(candidate.id)

    log_event(
        logger,
        "ingestion.commit.finish",
        persisted_count=len(persisted),
        duration_ms=monotonic_ms(start),
    )
    return CommitReport(persisted_ids=tuple(persisted))
