from __future__ import annotations

import asyncio
import dataclasses
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from pocket_budget.core.db import SessionLocal
from pocket_budget.core.storage import get_storage
from pocket_budget.modules.expenses.service import SqlExpenseStore, create_expense, list_expenses
from pocket_budget.modules.ingestion.domain import CanonicalCandidate
from pocket_budget.modules.ingestion.errors import NetworkError, NothingSelected
from pocket_budget.modules.ingestion.service import SessionRegistry, UploadedImage, open_session
from pocket_budget.modules.ingestion.state import IngestionState

TODAY = date(2026, 3, 5)


class ScriptedExtractor:
    def __init__(self, script, *, on_call=None):
        self.script = list(script)
        self.on_call = on_call
        self.calls = 0

    async def extract(self, image, categories, today, *, source_image_index=0):
        self.calls += 1
        if self.on_call:
            self.on_call()
        result = self.script[source_image_index]
        if isinstance(result, Exception):
            raise result
        dining = next(c for c in categories if c.name == "Dining")
        return [dataclasses.replace(c, id="", category_id=dining.id) for c in result]


class FlakyStore(SqlExpenseStore):
    def __init__(self, *, fail_on_call: int):
        super().__init__()
        self.fail_on_call = fail_on_call
        self.create_calls = 0

    async def create_expense(self, **kwargs):
        self.create_calls += 1
        if self.create_calls == self.fail_on_call:
            raise RuntimeError("database is locked")
        return await super().create_expense(**kwargs)


def _png(name: str) -> UploadedImage:
    return UploadedImage(filename=name, content_type="image/png", body=b"\x89PNG " + name.encode())


def _candidate(time: str | None, amount: str = "45") -> CanonicalCandidate:
    return CanonicalCandidate(
        date=TODAY,
        time=time,
        amount=Decimal(amount),
        category_id=None,
        description="Noodles",
        is_essential=True,
        category_name="Dining",
    )


def _open(category_refs, extractor, store=None):
    return open_session(
        store=store or SqlExpenseStore(),
        categories=category_refs,
        year=2026,
        month=3,
        extractor=extractor,
        today=lambda: TODAY,
    )


def _stored_previews() -> list[Path]:
    root = Path(get_storage()._root) / "previews"
    if not root.exists():
        return []
    return [p for p in root.rglob("*") if p.is_file()]


def _persisted_count() -> int:
    with SessionLocal() as session:
        return len(list_expenses(session, year=2026, month=3))


def test_partial_batch_with_known_duplicate_needs_explicit_selection(category_refs):
    with SessionLocal() as session:
        create_expense(
            session,
            date=TODAY,
            time="12:30",
            amount=Decimal("45"),
            category_id=None,
            note="already logged",
            is_essential=True,
        )

    extractor = ScriptedExtractor([[_candidate("12:30")], NetworkError("Network error")])
    controller = _open(category_refs, extractor)

    controller.select_images([_png("a.png"), _png("b.png")])
    assert len(_stored_previews()) == 2

    session = asyncio.run(controller.start_analysis())
    assert session.state == IngestionState.RESULTS
    assert session.message == (
        "1 image(s) failed to analyze, showing results from the remaining 1 image(s)"
    )
    (candidate,) = session.candidates
    assert candidate.is_duplicated is True
    assert candidate.selected is False

    with pytest.raises(NothingSelected):
        asyncio.run(controller.confirm())
    assert controller.session.message == "Please select at least one record"
    assert _persisted_count() == 1

    controller.edit_candidate(candidate.id, {"selected": True})
    session = asyncio.run(controller.confirm())
    assert session.state == IngestionState.CLOSED
    assert _persisted_count() == 2
    assert controller.previews.live_count == 0
    assert _stored_previews() == []


def test_rejected_uploads_are_reported_and_never_stored(category_refs):
    controller = _open(category_refs, ScriptedExtractor([]))
    gif = UploadedImage(filename="a.gif", content_type="image/gif", body=b"GIF89a")

    session = controller.select_images([gif, _png("b.png")])
    assert session.state == IngestionState.PREVIEW
    assert session.message == "File a.gif format not supported, skipped"
    assert [i.filename for i in session.images] == ["b.png"]
    assert controller.previews.live_count == 1

    session = controller.remove_image(0)
    assert session.state == IngestionState.UPLOAD
    assert controller.previews.live_count == 0
    assert _stored_previews() == []


def test_overflowing_selection_releases_extra_previews(category_refs):
    controller = _open(category_refs, ScriptedExtractor([]))
    session = controller.select_images([_png(f"{i}.png") for i in range(7)])

    assert len(session.images) == 5
    assert controller.previews.live_count == 5
    assert len(_stored_previews()) == 5


def test_closing_mid_analysis_discards_results_and_releases_once(category_refs):
    holder = {}
    extractor = ScriptedExtractor(
        [[_candidate("12:30")], [_candidate("13:00")]],
        on_call=lambda: holder["controller"].close(),
    )
    controller = _open(category_refs, extractor)
    holder["controller"] = controller
    controller.select_images([_png("a.png"), _png("b.png")])

    session = asyncio.run(controller.start_analysis())

    assert extractor.calls == 1
    assert session.state == IngestionState.CLOSED
    assert session.candidates == ()
    assert controller.previews.live_count == 0
    assert _stored_previews() == []

    assert controller.close().state == IngestionState.CLOSED
    assert _persisted_count() == 0


def test_unexpected_analysis_crash_lands_in_error_state(category_refs):
    extractor = ScriptedExtractor([RuntimeError("boom")])
    controller = _open(category_refs, extractor)
    controller.select_images([_png("a.png")])

    session = asyncio.run(controller.start_analysis())
    assert session.state == IngestionState.ERROR
    assert session.message == "All 1 images failed to analyze, please try again"

    session = controller.retry()
    assert session.state == IngestionState.PREVIEW
    assert controller.previews.live_count == 1


def test_failed_commit_keeps_only_the_unsaved_remainder(category_refs):
    store = FlakyStore(fail_on_call=2)
    extractor = ScriptedExtractor([[_candidate("08:00"), _candidate("09:00", "12")]])
    controller = _open(category_refs, extractor, store=store)
    controller.select_images([_png("a.png")])
    asyncio.run(controller.start_analysis())

    session = asyncio.run(controller.confirm())
    assert session.state == IngestionState.RESULTS
    assert session.saving is False
    assert session.message == "database is locked"
    assert [c.time for c in session.candidates] == ["09:00"]
    assert _persisted_count() == 1

    session = asyncio.run(controller.confirm())
    assert session.state == IngestionState.CLOSED
    assert _persisted_count() == 2


def test_idle_sessions_are_closed_and_their_previews_released(category_refs):
    now = [0.0]
    registry = SessionRegistry(idle_timeout_s=600, clock=lambda: now[0])

    abandoned = registry.add(_open(category_refs, ScriptedExtractor([])))
    abandoned.select_images([_png("a.png"), _png("b.png")])
    active = registry.add(_open(category_refs, ScriptedExtractor([])))
    active.select_images([_png("c.png")])
    assert len(_stored_previews()) == 3

    now[0] = 400.0
    assert registry.get(active.session_id) is active

    now[0] = 700.0
    assert registry.get(abandoned.session_id) is None
    assert abandoned.session.state == IngestionState.CLOSED
    assert abandoned.previews.live_count == 0
    assert registry.get(active.session_id) is active
    assert active.previews.live_count == 1
    assert len(_stored_previews()) == 1
