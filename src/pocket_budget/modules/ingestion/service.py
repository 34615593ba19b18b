from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from typing import Any

from pocket_budget.core.config import settings
from pocket_budget.core.logging import get_logger, log_event, log_exception
from pocket_budget.core.storage import ObjectStorage, get_storage
from pocket_budget.modules.ingestion.commit import commit_candidates
from pocket_budget.modules.ingestion.domain import CategoryRef, ImageItem
from pocket_budget.modules.ingestion.errors import (
    CommitError,
    InvalidTransition,
    NothingSelected,
)
from pocket_budget.modules.ingestion.extraction import ExtractionClient, validate_image
from pocket_budget.modules.ingestion.orchestrator import (
    AllFailed,
    BatchOrchestrator,
    BatchOutcome,
    ExpenseStore,
    Extractor,
)
from pocket_budget.modules.ingestion.previews import PREVIEW_PREFIX, PreviewRegistry
from pocket_budget.modules.ingestion.state import (
    AnalysisFinished,
    AnalysisProgressed,
    AnalysisRequested,
    CandidateEdited,
    CommitFailed,
    CommitRequested,
    CommitSucceeded,
    ImageRemoved,
    ImagesSelected,
    IngestionSession,
    PersistCandidates,
    ReleasePreviews,
    RetryRequested,
    ReuploadRequested,
    RunAnalysis,
    SessionClosed,
    Transition,
    transition,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class UploadedImage:
    filename: str
    content_type: str | None
    body: bytes


class IngestionController:
    """
    Drives one smart-entry session.

    Events go through the pure state machine; the effects it returns are
    performed here. Dispatch is never re-entered, so a progress update can
    not interleave with a terminal transition.
    """

    def __init__(
        self,
        *,
        session_id: str,
        orchestrator: BatchOrchestrator,
        store: ExpenseStore,
        previews: PreviewRegistry,
        categories: Sequence[CategoryRef],
        year: int,
        month: int,
        today: Callable[[], date] = date.today,
        max_images: int | None = None,
    ):
        self.session_id = session_id
        self.year = year
        self.month = month
        self.categories = tuple(categories)
        self._orchestrator = orchestrator
        self._store = store
        self._previews = previews
        self._today = today
        self._dispatching = False
        self.session = IngestionSession(max_images=max_images or settings.max_image_count)

    @property
    def previews(self) -> PreviewRegistry:
        return self._previews

    def dispatch(self, event: object) -> Transition:
        if self._dispatching:
            raise RuntimeError("Ingestion session is already handling an event")
        self._dispatching = True
        try:
            result = transition(self.session, event)
            previous = self.session.state
            self.session = result.session
            if result.session.state != previous:
                log_event(
                    logger,
                    "ingestion.session.transition",
                    ingestion_session_id=self.session_id,
                    event_type=type(event).__name__,
                    from_state=previous.value,
                    to_state=result.session.state.value,
                )
            for effect in result.effects:
                if isinstance(effect, ReleasePreviews):
                    self._previews.release_many(effect.handles)
            return result
        finally:
            self._dispatching = False

    def select_images(self, uploads: Sequence[UploadedImage]) -> IngestionSession:
        accepted: list[ImageItem] = []
        rejections: list[str] = []
        try:
            for upload in uploads:
                check = validate_image(
                    filename=upload.filename,
                    content_type=upload.content_type,
                    byte_size=len(upload.body),
                )
                if not check.ok:
                    rejections.append(check.reason or f"File {upload.filename} skipped")
                    continue
                handle = self._previews.acquire(filename=upload.filename, body=upload.body)
                accepted.append(
                    ImageItem(
                        filename=upload.filename,
                        content_type=(upload.content_type or "").lower(),
                        body=upload.body,
                        preview=handle,
                    )
                )
            self.dispatch(ImagesSelected(images=tuple(accepted), rejections=tuple(rejections)))
        except BaseException:
            self._previews.release_many(i.preview for i in accepted)
            raise
        log_event(
            logger,
            "ingestion.session.images_selected",
            ingestion_session_id=self.session_id,
            accepted_count=len(accepted),
            rejected_count=len(rejections),
            image_count=len(self.session.images),
        )
        return self.session

    def remove_image(self, index: int) -> IngestionSession:
        self.dispatch(ImageRemoved(index=index))
        return self.session

    def read_preview(self, index: int) -> tuple[ImageItem, bytes]:
        if not 0 <= index < len(self.session.images):
            raise IndexError(index)
        image = self.session.images[index]
        return image, self._previews.read(image.preview)

    async def start_analysis(self) -> IngestionSession:
        result = self.dispatch(AnalysisRequested())
        for effect in result.effects:
            if isinstance(effect, RunAnalysis):
                await self._run_analysis(effect)
        return self.session

    async def _run_analysis(self, effect: RunAnalysis) -> None:
        run_id = effect.run_id

        def _progress(current: int, total: int) -> None:
            self.dispatch(AnalysisProgressed(run_id=run_id, current=current))

        def _cancelled() -> bool:
            return self.session.closed or self.session.run_id != run_id

        outcome: BatchOutcome
        try:
            outcome = await self._orchestrator.run(
                effect.images,
                self.categories,
                year=self.year,
                month=self.month,
                today=self._today(),
                on_progress=_progress,
                is_cancelled=_cancelled,
            )
        except Exception:  # noqa: BLE001
            log_exception(
                logger,
                "ingestion.analysis.error",
                ingestion_session_id=self.session_id,
                image_count=len(effect.images),
            )
            outcome = AllFailed(total=len(effect.images))
        self.dispatch(AnalysisFinished(run_id=run_id, outcome=outcome))

    def retry(self) -> IngestionSession:
        self.dispatch(RetryRequested())
        return self.session

    def reupload(self) -> IngestionSession:
        self.dispatch(ReuploadRequested())
        return self.session

    def edit_candidate(self, candidate_id: str, changes: Mapping[str, Any]) -> IngestionSession:
        self.dispatch(CandidateEdited(candidate_id=candidate_id, changes=dict(changes)))
        return self.session

    async def confirm(self) -> IngestionSession:
        result = self.dispatch(CommitRequested())
        persist = [e for e in result.effects if isinstance(e, PersistCandidates)]
        if not persist:
            if self.session.closed:
                raise InvalidTransition(self.session.state.value, "CommitRequested")
            raise NothingSelected(self.session.message or "Please select at least one record")

        for effect in persist:
            try:
                report = await commit_candidates(self._store, effect.candidates)
            except CommitError as e:
                self.dispatch(CommitFailed(message=str(e), persisted_ids=e.persisted_ids))
                return self.session
            log_event(
                logger,
                "ingestion.session.committed",
                ingestion_session_id=self.session_id,
                persisted_count=len(report.persisted_ids),
            )
        self.dispatch(CommitSucceeded())
        return self.session

    def close(self) -> IngestionSession:
        self.dispatch(SessionClosed())
        # Anything still live at this point was never attached to the session.
        self._previews.release_all()
        return self.session


class SessionRegistry:
    """
    In-process table of open smart-entry sessions.

    Sessions nobody has looked up for ``idle_timeout_s`` seconds are closed
    (releasing their previews) the next time a session is added or looked up.
    Must only be used from the event-loop thread.
    """

    def __init__(
        self,
        *,
        idle_timeout_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sessions: dict[str, IngestionController] = {}
        self._last_seen: dict[str, float] = {}
        self._idle_timeout_s = (
            settings.ingestion_session_idle_seconds if idle_timeout_s is None else idle_timeout_s
        )
        self._clock = clock

    def add(self, controller: IngestionController) -> IngestionController:
        self.evict_idle()
        self._sessions[controller.session_id] = controller
        self._last_seen[controller.session_id] = self._clock()
        return controller

    def get(self, session_id: str) -> IngestionController | None:
        self.evict_idle()
        controller = self._sessions.get(session_id)
        if controller is not None:
            self._last_seen[session_id] = self._clock()
        return controller

    def discard(self, session_id: str) -> IngestionController | None:
        self._last_seen.pop(session_id, None)
        return self._sessions.pop(session_id, None)

    def close(self, session_id: str) -> None:
        controller = self.discard(session_id)
        if controller is not None:
            controller.close()

    def evict_idle(self) -> int:
        if self._idle_timeout_s <= 0:
            return 0
        now = self._clock()
        expired = [
            (session_id, now - seen)
            for session_id, seen in self._last_seen.items()
            if now - seen >= self._idle_timeout_s
        ]
        for session_id, idle_s in expired:
            controller = self._sessions[session_id]
            log_event(
                logger,
                "ingestion.session.expired",
                ingestion_session_id=session_id,
                state=controller.session.state.value,
                idle_seconds=int(idle_s),
            )
            self.close(session_id)
        return len(expired)

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.close(session_id)


def open_session(
    *,
    store: ExpenseStore,
    categories: Sequence[CategoryRef],
    year: int,
    month: int,
    extractor: Extractor | None = None,
    storage: ObjectStorage | None = None,
    today: Callable[[], date] = date.today,
) -> IngestionController:
    session_id = uuid.uuid4().hex
    previews = PreviewRegistry(storage or get_storage(), prefix=f"{PREVIEW_PREFIX}/{session_id}")
    orchestrator = BatchOrchestrator(extractor=extractor or ExtractionClient(), store=store)
    controller = IngestionController(
        session_id=session_id,
        orchestrator=orchestrator,
        store=store,
        previews=previews,
        categories=categories,
        year=year,
        month=month,
        today=today,
    )
    log_event(
        logger,
        "ingestion.session.opened",
        ingestion_session_id=session_id,
        year=year,
        month=month,
        category_count=len(controller.categories),
    )
    return controller


_registry: SessionRegistry | None = None


def get_registry() -> SessionRegistry:
    global _registry  # noqa: PLW0603
    if _registry is None:
        _registry = SessionRegistry()
    return _registry
