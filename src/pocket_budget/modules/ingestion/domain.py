from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal


def new_candidate_id() -> str:
    return f"expense_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class CategoryRef:
    id: str
    name: str


@dataclass(frozen=True)
class PreviewHandle:
    key: str


@dataclass(frozen=True)
class ImageItem:
    filename: str
    content_type: str
    body: bytes
    preview: PreviewHandle

    @property
    def byte_size(self) -> int:
        return len(self.body)


@dataclass
class CanonicalCandidate:
    date: date
    time: str | None
    amount: Decimal
    category_id: str | None
    description: str
    is_essential: bool
    category_name: str = ""
    source_image_index: int = 0
    is_duplicated: bool = False
    selected: bool = True
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = new_candidate_id()


@dataclass(frozen=True)
class AnalysisProgress:
    current: int = 0
    total: int = 0
