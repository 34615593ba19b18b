from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from pocket_budget.modules.categories.models import Category

DEFAULT_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("Dining", "🍜"),
    ("Transport", "🚗"),
    ("Shopping", "🛍️"),
    ("Entertainment", "🎮"),
    ("Medical", "💊"),
    ("Education", "📚"),
    ("Housing", "🏠"),
    ("Other", "📦"),
)


def list_categories(session: Session) -> list[Category]:
    return list(
        session.scalars(
            select(Category).where(Category.is_deleted.is_(False)).order_by(Category.name)
        )
    )


def ensure_default_categories(session: Session) -> list[Category]:
    existing = session.scalar(select(Category.id).limit(1))
    if existing is not None:
        return list_categories(session)
    session.add_all([Category(name=name, emoji=emoji) for name, emoji in DEFAULT_CATEGORIES])
    session.commit()
    return list_categories(session)
