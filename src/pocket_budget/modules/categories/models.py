from __future__ import annotations

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from pocket_budget.core.models import Base, Timestamped, UUIDPrimaryKey


class Category(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "categories_category"

    name: Mapped[str] = mapped_column(String(100), index=True)
    emoji: Mapped[str] = mapped_column(String(10), default="")
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
