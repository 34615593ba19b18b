from __future__ import annotations

import uuid

from pydantic import BaseModel


class CategoryOut(BaseModel):
    id: uuid.UUID
    name: str
    emoji: str
