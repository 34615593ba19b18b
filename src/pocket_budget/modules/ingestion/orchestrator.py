from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

from pocket_budget.core.logging import get_logger, log_event, log_exception, monotonic_ms
from pocket_budget.modules.ingestion.dedupe import PersistedExpense, mark_all_new, mark_duplicates
from pocket_budget.modules.ingestion.domain import CanonicalCandidate, CategoryRef, ImageItem
from pocket_budget.modules.ingestion.errors import ExtractionError, ImageRejected

logger = get_logger(__name__)


class ExpenseStore(Protocol):
    async def list_expenses(self, year: int, month: int) -> Sequence[PersistedExpense]: ...

    async def create_expense(
        self,
        *,
        date: date,
        time: str | None,
        amount: Decimal,
        category_id: str | None,
        note: str,
        is_essential: bool,
    ) -> Any: ...


class Extractor(Protocol):
    async def extract(
        self,
        image: ImageItem,
        categories: Sequence[CategoryRef],
        today: date,
        *,
        source_image_index: int = 0,
    ) -> list[CanonicalCandidate]: ...


@dataclass(frozen=True)
class ImageFailure:
    index: int
    message: str


@dataclass(frozen=True)
class AllFailed:
    total: int

    @property
    def message(self) -> str:
        return f"All {self.total} images failed to analyze, please try again"


@dataclass(frozen=True)
class NoneRecognized:
    message: str = "Unable to recognize expenses, please try uploading clearer images"


@dataclass(frozen=True)
class PartialSuccess:
    candidates: tuple[CanonicalCandidate, ...]
    failures: tuple[ImageFailure, ...]
    succeeded: int

    @property
    def message(self) -> str:
        return (
            f"{len(self.failures)} image(s) failed to analyze, "
            f"showing results from the remaining {self.succeeded} image(s)"
        )


@dataclass(frozen=True)
class FullSuccess:
    candidates: tuple[CanonicalCandidate, ...]
    failures: tuple[ImageFailure, ...] = field(default=())


@dataclass(frozen=True)
class Cancelled:
    pass


BatchOutcome = AllFailed | NoneRecognized | PartialSuccess | FullSuccess | Cancelled


def classify_outcome(
    *, total: int, failures: Sequence[ImageFailure], candidates: Sequence[CanonicalCandidate]
) -> AllFailed | NoneRecognized | PartialSuccess | FullSuccess:
    succeeded = total - len(failures)
    if succeeded <= 0:
        return AllFailed(total=total)
    if not candidates:
        return NoneRecognized()
    if failures:
        return PartialSuccess(
            candidates=tuple(candidates), failures=tuple(failures), succeeded=succeeded
        )
    return FullSuccess(candidates=tuple(candidates))


class BatchOrchestrator:
    """
    Run extraction over a batch of images, one at a time.

    Images are never analyzed concurrently: the extraction service rate
    limits per caller.
    """

    def __init__(self, *, extractor: Extractor, store: ExpenseStore):
        self._extractor = extractor
        self._store = store

    async def run(
        self,
        images: Sequence[ImageItem],
        categories: Sequence[CategoryRef],
        *,
        year: int,
        month: int,
        today: date,
        on_progress: Callable[[int, int], None] | None = None,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> BatchOutcome:
        total = len(images)
        start = time.monotonic()
        log_event(logger, "ingestion.analysis.start", image_count=total, year=year, month=month)

        collected: list[CanonicalCandidate] = []
        failures: list[ImageFailure] = []

        for idx, image in enumerate(images):
            if is_cancelled and is_cancelled():
                log_event(logger, "ingestion.analysis.cancelled", image_index=idx)
                return Cancelled()
            if on_progress:
                on_progress(idx + 1, total)
            try:
                found = await self._extractor.extract(
                    image, categories, today, source_image_index=idx
                )
            except (ExtractionError, ImageRejected) as e:
                log_event(
                    logger,
                    "ingestion.analysis.image_failed",
                    level=logging.WARNING,
                    image_index=idx,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                failures.append(ImageFailure(index=idx, message=str(e) or "AI analysis failed"))
                continue
            for candidate in found:
                candidate.source_image_index = idx
            collected.extend(found)

        if is_cancelled and is_cancelled():
            return Cancelled()

        outcome = classify_outcome(total=total, failures=failures, candidates=collected)
        if isinstance(outcome, (PartialSuccess, FullSuccess)):
            marked = await self._apply_dedupe(outcome.candidates, year=year, month=month)
            if isinstance(outcome, PartialSuccess):
                outcome = PartialSuccess(
                    candidates=tuple(marked),
                    failures=outcome.failures,
                    succeeded=outcome.succeeded,
                )
            else:
                outcome = FullSuccess(candidates=tuple(marked))

        log_event(
            logger,
            "ingestion.analysis.finish",
            outcome=type(outcome).__name__,
            image_count=total,
            failed_count=len(failures),
            candidate_count=len(collected),
            duration_ms=monotonic_ms(start),
        )
        return outcome

    async def _apply_dedupe(
        self, candidates: Sequence[CanonicalCandidate], *, year: int, month: int
    ) -> list[CanonicalCandidate]:
        try:
            existing = await self._store.list_expenses(year, month)
        except Exception:  # noqa: BLE001
            # Results are kept even when the month cannot be loaded.
            log_exception(logger, "ingestion.dedupe.skipped", year=year, month=month)
            return mark_all_new(candidates)
        marked = mark_duplicates(candidates, list(existing or []))
        log_event(
            logger,
            "ingestion.dedupe.finish",
            existing_count=len(existing or []),
            duplicate_count=sum(1 for c in marked if c.is_duplicated),
        )
        return marked
