"""
Smart-entry session state machine.

``transition(session, event)`` is pure: it returns the next session and the
effects the caller has to perform (release preview blobs, run the analysis,
persist candidates). It never does I/O itself.
"""

from __future__ import annotations

import dataclasses
import enum
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from pocket_budget.modules.ingestion.domain import (
    AnalysisProgress,
    CanonicalCandidate,
    ImageItem,
    PreviewHandle,
)
from pocket_budget.modules.ingestion.errors import IngestionValidationError, InvalidTransition
from pocket_budget.modules.ingestion.extraction import coerce_amount
from pocket_budget.modules.ingestion.orchestrator import (
    AllFailed,
    BatchOutcome,
    Cancelled,
    FullSuccess,
    NoneRecognized,
    PartialSuccess,
)

DEFAULT_MAX_IMAGES = 5

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

EDITABLE_FIELDS = frozenset(
    {"date", "time", "amount", "category_id", "description", "is_essential", "selected"}
)


class IngestionState(str, enum.Enum):
    UPLOAD = "upload"
    PREVIEW = "preview"
    ANALYZING = "analyzing"
    RESULTS = "results"
    ERROR = "error"
    NO_RESULTS = "no-results"
    CLOSED = "closed"


@dataclass(frozen=True)
class IngestionSession:
    state: IngestionState = IngestionState.UPLOAD
    previous_state: IngestionState | None = None
    images: tuple[ImageItem, ...] = ()
    progress: AnalysisProgress = AnalysisProgress()
    candidates: tuple[CanonicalCandidate, ...] = ()
    message: str | None = None
    run_id: int = 0
    saving: bool = False
    max_images: int = DEFAULT_MAX_IMAGES

    @property
    def closed(self) -> bool:
        return self.state == IngestionState.CLOSED

    @property
    def selected_candidates(self) -> tuple[CanonicalCandidate, ...]:
        return tuple(c for c in self.candidates if c.selected)


# Events


@dataclass(frozen=True)
class ImagesSelected:
    images: tuple[ImageItem, ...]
    rejections: tuple[str, ...] = ()


@dataclass(frozen=True)
class ImageRemoved:
    index: int


@dataclass(frozen=True)
class AnalysisRequested:
    pass


@dataclass(frozen=True)
class AnalysisProgressed:
    run_id: int
    current: int


@dataclass(frozen=True)
class AnalysisFinished:
    run_id: int
    outcome: BatchOutcome


@dataclass(frozen=True)
class RetryRequested:
    pass


@dataclass(frozen=True)
class ReuploadRequested:
    pass


@dataclass(frozen=True)
class CandidateEdited:
    candidate_id: str
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class CommitRequested:
    pass


@dataclass(frozen=True)
class CommitFailed:
    message: str
    persisted_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class CommitSucceeded:
    pass


@dataclass(frozen=True)
class SessionClosed:
    pass


# Effects


@dataclass(frozen=True)
class ReleasePreviews:
    handles: tuple[PreviewHandle, ...]


@dataclass(frozen=True)
class RunAnalysis:
    run_id: int
    images: tuple[ImageItem, ...]


@dataclass(frozen=True)
class PersistCandidates:
    candidates: tuple[CanonicalCandidate, ...]


Effect = ReleasePreviews | RunAnalysis | PersistCandidates


@dataclass(frozen=True)
class Transition:
    session: IngestionSession
    effects: tuple[Effect, ...] = field(default=())


def _move(session: IngestionSession, state: IngestionState, **changes: Any) -> IngestionSession:
    return dataclasses.replace(session, previous_state=session.state, state=state, **changes)


def _release(images: tuple[ImageItem, ...]) -> tuple[Effect, ...]:
    if not images:
        return ()
    return (ReleasePreviews(handles=tuple(i.preview for i in images)),)


def _joined(messages: list[str]) -> str | None:
    return "\n".join(messages) if messages else None


def _on_images_selected(session: IngestionSession, event: ImagesSelected) -> Transition:
    if session.state not in (IngestionState.UPLOAD, IngestionState.PREVIEW):
        raise InvalidTransition(session.state.value, "ImagesSelected")

    messages = list(event.rejections)
    if not event.images:
        if not messages:
            return Transition(session)
        return Transition(dataclasses.replace(session, message=_joined(messages)))

    if session.state == IngestionState.UPLOAD:
        keep = event.images[: session.max_images]
        overflow = event.images[session.max_images :]
        if overflow:
            messages.append(
                f"Maximum {session.max_images} images allowed, "
                f"only the first {session.max_images} were selected"
            )
        nxt = _move(
            session,
            IngestionState.PREVIEW,
            images=keep,
            message=_joined(messages),
        )
        return Transition(nxt, _release(session.images) + _release(overflow))

    remaining = max(session.max_images - len(session.images), 0)
    keep = event.images[:remaining]
    overflow = event.images[remaining:]
    if overflow:
        messages.append(
            f"Maximum {session.max_images} images allowed, only {remaining} more can be added"
        )
    nxt = dataclasses.replace(
        session, images=session.images + keep, message=_joined(messages)
    )
    return Transition(nxt, _release(overflow))


def _on_image_removed(session: IngestionSession, event: ImageRemoved) -> Transition:
    if session.state != IngestionState.PREVIEW:
        raise InvalidTransition(session.state.value, "ImageRemoved")
    if not 0 <= event.index < len(session.images):
        raise IngestionValidationError(f"No image at position {event.index}")

    removed = session.images[event.index]
    rest = session.images[: event.index] + session.images[event.index + 1 :]
    effects = _release((removed,))
    if not rest:
        return Transition(_move(session, IngestionState.UPLOAD, images=(), message=None), effects)
    return Transition(dataclasses.replace(session, images=rest), effects)


def _on_analysis_requested(session: IngestionSession, event: AnalysisRequested) -> Transition:
    if session.state == IngestionState.UPLOAD:
        return Transition(dataclasses.replace(session, message="Please select an image first"))
    if session.state != IngestionState.PREVIEW:
        raise InvalidTransition(session.state.value, "AnalysisRequested")

    run_id = session.run_id + 1
    nxt = _move(
        session,
        IngestionState.ANALYZING,
        run_id=run_id,
        message=None,
        candidates=(),
        progress=AnalysisProgress(current=1, total=len(session.images)),
    )
    return Transition(nxt, (RunAnalysis(run_id=run_id, images=session.images),))


def _on_analysis_progressed(session: IngestionSession, event: AnalysisProgressed) -> Transition:
    if session.state != IngestionState.ANALYZING or event.run_id != session.run_id:
        return Transition(session)
    progress = AnalysisProgress(current=event.current, total=session.progress.total)
    return Transition(dataclasses.replace(session, progress=progress))


def _on_analysis_finished(session: IngestionSession, event: AnalysisFinished) -> Transition:
    # Late or superseded results are dropped.
    if session.state != IngestionState.ANALYZING or event.run_id != session.run_id:
        return Transition(session)

    outcome = event.outcome
    if isinstance(outcome, Cancelled):
        return Transition(session)
    if isinstance(outcome, AllFailed):
        return Transition(_move(session, IngestionState.ERROR, message=outcome.message))
    if isinstance(outcome, NoneRecognized):
        return Transition(_move(session, IngestionState.NO_RESULTS, message=outcome.message))
    if isinstance(outcome, PartialSuccess):
        return Transition(
            _move(
                session,
                IngestionState.RESULTS,
                candidates=outcome.candidates,
                message=outcome.message,
            )
        )
    if isinstance(outcome, FullSuccess):
        return Transition(
            _move(session, IngestionState.RESULTS, candidates=outcome.candidates, message=None)
        )
    raise TypeError(f"Unknown batch outcome: {outcome!r}")


def _on_retry(session: IngestionSession, event: RetryRequested) -> Transition:
    if session.state != IngestionState.ERROR:
        raise InvalidTransition(session.state.value, "RetryRequested")
    return Transition(_move(session, IngestionState.PREVIEW, message=None))


def _on_reupload(session: IngestionSession, event: ReuploadRequested) -> Transition:
    if session.state not in (IngestionState.ERROR, IngestionState.NO_RESULTS):
        raise InvalidTransition(session.state.value, "ReuploadRequested")
    nxt = _move(
        session,
        IngestionState.UPLOAD,
        images=(),
        candidates=(),
        message=None,
        progress=AnalysisProgress(),
    )
    return Transition(nxt, _release(session.images))


def apply_candidate_changes(
    candidate: CanonicalCandidate, changes: Mapping[str, Any]
) -> CanonicalCandidate:
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise IngestionValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

    updates: dict[str, Any] = {}
    if "date" in changes:
        value = changes["date"]
        if isinstance(value, str):
            try:
                value = date.fromisoformat(value)
            except ValueError as e:
                raise IngestionValidationError("Invalid date") from e
        if not isinstance(value, date):
            raise IngestionValidationError("Invalid date")
        updates["date"] = value
    if "time" in changes:
        value = changes["time"] or None
        if value is not None and (not isinstance(value, str) or not _TIME_RE.match(value)):
            raise IngestionValidationError("Invalid time, expected HH:mm")
        updates["time"] = value
    if "amount" in changes:
        amount = coerce_amount(changes["amount"])
        if amount is None:
            raise IngestionValidationError("Invalid amount")
        updates["amount"] = amount
    if "category_id" in changes:
        value = changes["category_id"]
        updates["category_id"] = str(value) if value else None
    if "description" in changes:
        updates["description"] = str(changes["description"] or "")
    for flag in ("is_essential", "selected"):
        if flag in changes:
            if not isinstance(changes[flag], bool):
                raise IngestionValidationError(f"Invalid {flag}, expected true or false")
            updates[flag] = changes[flag]
    return dataclasses.replace(candidate, **updates)


def _on_candidate_edited(session: IngestionSession, event: CandidateEdited) -> Transition:
    if session.state != IngestionState.RESULTS or session.saving:
        raise InvalidTransition(session.state.value, "CandidateEdited")

    found = False
    updated: list[CanonicalCandidate] = []
    for candidate in session.candidates:
        if candidate.id == event.candidate_id:
            found = True
            updated.append(apply_candidate_changes(candidate, event.changes))
        else:
            updated.append(candidate)
    if not found:
        raise IngestionValidationError(f"Unknown candidate: {event.candidate_id}")
    return Transition(dataclasses.replace(session, candidates=tuple(updated)))


def _on_commit_requested(session: IngestionSession, event: CommitRequested) -> Transition:
    if session.state != IngestionState.RESULTS or session.saving:
        raise InvalidTransition(session.state.value, "CommitRequested")
    selected = session.selected_candidates
    if not selected:
        return Transition(
            dataclasses.replace(session, message="Please select at least one record")
        )
    nxt = dataclasses.replace(session, saving=True, message=None)
    return Transition(nxt, (PersistCandidates(candidates=selected),))


def _on_commit_failed(session: IngestionSession, event: CommitFailed) -> Transition:
    if session.state != IngestionState.RESULTS:
        raise InvalidTransition(session.state.value, "CommitFailed")
    persisted = set(event.persisted_ids)
    remaining = tuple(c for c in session.candidates if c.id not in persisted)
    return Transition(
        dataclasses.replace(session, saving=False, candidates=remaining, message=event.message)
    )


def _on_commit_succeeded(session: IngestionSession, event: CommitSucceeded) -> Transition:
    if session.state != IngestionState.RESULTS:
        raise InvalidTransition(session.state.value, "CommitSucceeded")
    return _close(session)


def _close(session: IngestionSession) -> Transition:
    nxt = _move(
        session,
        IngestionState.CLOSED,
        images=(),
        candidates=(),
        message=None,
        saving=False,
        progress=AnalysisProgress(),
    )
    return Transition(nxt, _release(session.images))


def _on_session_closed(session: IngestionSession, event: SessionClosed) -> Transition:
    return _close(session)


_HANDLERS: dict[type, Callable[[IngestionSession, Any], Transition]] = {
    ImagesSelected: _on_images_selected,
    ImageRemoved: _on_image_removed,
    AnalysisRequested: _on_analysis_requested,
    AnalysisProgressed: _on_analysis_progressed,
    AnalysisFinished: _on_analysis_finished,
    RetryRequested: _on_retry,
    ReuploadRequested: _on_reupload,
    CandidateEdited: _on_candidate_edited,
    CommitRequested: _on_commit_requested,
    CommitFailed: _on_commit_failed,
    CommitSucceeded: _on_commit_succeeded,
    SessionClosed: _on_session_closed,
}


def transition(session: IngestionSession, event: object) -> Transition:
    # A closed session absorbs everything, including a second close.
    if session.closed:
        if isinstance(event, ImagesSelected):
            return Transition(session, _release(event.images))
        return Transition(session)
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unknown event: {event!r}")
    return handler(session, event)
