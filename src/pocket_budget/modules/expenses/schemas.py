from __future__ import annotations

import uuid
import datetime as dt
from decimal import Decimal

from pydantic import BaseModel, Field


class ExpenseCreateIn(BaseModel):
    date: dt.date
    time: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):([0-5]\d)$")
    amount: Decimal = Field(ge=0)
    category_id: uuid.UUID | None = None
    note: str = ""
    is_essential: bool = False


class ExpenseOut(BaseModel):
    id: uuid.UUID
    amount: Decimal
    transaction_datetime: dt.datetime
    note: str | None
    category_id: uuid.UUID | None
    is_essential: bool
    created_at: dt.datetime
    updated_at: dt.datetime
