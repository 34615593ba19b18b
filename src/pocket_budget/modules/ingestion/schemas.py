from __future__ import annotations

import datetime as dt
from decimal import Decimal

from pydantic import BaseModel, Field

from pocket_budget.modules.ingestion.domain import CanonicalCandidate
from pocket_budget.modules.ingestion.service import IngestionController


class ImageOut(BaseModel):
    index: int
    filename: str
    content_type: str
    byte_size: int


class ProgressOut(BaseModel):
    current: int
    total: int


class CandidateOut(BaseModel):
    id: str
    date: dt.date
    time: str | None
    amount: Decimal
    category_id: str | None
    category_name: str
    description: str
    is_essential: bool
    is_duplicated: bool
    selected: bool
    source_image_index: int

    @classmethod
    def from_candidate(cls, candidate: CanonicalCandidate) -> CandidateOut:
        return cls(
            id=candidate.id,
            date=candidate.date,
            time=candidate.time,
            amount=candidate.amount,
            category_id=candidate.category_id,
            category_name=candidate.category_name,
            description=candidate.description,
            is_essential=candidate.is_essential,
            is_duplicated=candidate.is_duplicated,
            selected=candidate.selected,
            source_image_index=candidate.source_image_index,
        )


class CandidateUpdateIn(BaseModel):
    date: dt.date | None = None
    time: str | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    category_id: str | None = None
    description: str | None = None
    is_essential: bool | None = None
    selected: bool | None = None


class SessionOut(BaseModel):
    id: str
    year: int
    month: int
    state: str
    message: str | None
    saving: bool
    max_images: int
    images: list[ImageOut]
    progress: ProgressOut
    candidates: list[CandidateOut]
    selected_count: int

    @classmethod
    def from_controller(cls, controller: IngestionController) -> SessionOut:
        s = controller.session
        return cls(
            id=controller.session_id,
            year=controller.year,
            month=controller.month,
            state=s.state.value,
            message=s.message,
            saving=s.saving,
            max_images=s.max_images,
            images=[
                ImageOut(
                    index=i,
                    filename=img.filename,
                    content_type=img.content_type,
                    byte_size=img.byte_size,
                )
                for i, img in enumerate(s.images)
            ],
            progress=ProgressOut(current=s.progress.current, total=s.progress.total),
            candidates=[CandidateOut.from_candidate(c) for c in s.candidates],
            selected_count=len(s.selected_candidates),
        )
