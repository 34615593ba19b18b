from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Numeric, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pocket_budget.core.models import Base, Timestamped, UUIDPrimaryKey
from pocket_budget.modules.categories.models import Category


class Expense(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "expenses_expense"

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    # Wall-clock time as entered; midnight means "no time of day known".
    transaction_datetime: Mapped[datetime] = mapped_column(DateTime(timezone=False), index=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    category_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("categories_category.id"), nullable=True
    )
    is_essential: Mapped[bool] = mapped_column(Boolean, default=False)

    category: Mapped[Category | None] = relationship(Category)
