from __future__ import annotations

import uuid
from datetime import MAXYEAR, MINYEAR, date, datetime, time
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from pocket_budget.core.db import SessionLocal
from pocket_budget.modules.categories.models import Category
from pocket_budget.modules.expenses.models import Expense


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    # The exclusive end bound of December needs the following year too.
    if not MINYEAR <= year < MAXYEAR:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid year")
    if not 1 <= month <= 12:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid month")
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


def list_expenses(session: Session, *, year: int, month: int) -> list[Expense]:
    start, end = month_bounds(year, month)
    return list(
        session.scalars(
            select(Expense)
            .where(Expense.transaction_datetime >= start, Expense.transaction_datetime < end)
            .order_by(Expense.transaction_datetime)
        )
    )


def create_expense(
    session: Session,
    *,
    date: date,
    time: str | None,
    amount: Decimal,
    category_id: uuid.UUID | str | None,
    note: str | None,
    is_essential: bool,
) -> Expense:
    if amount is None or Decimal(amount) < 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid amount")

    if isinstance(category_id, str):
        try:
            category_id = uuid.UUID(category_id)
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid category"
            ) from e

    if category_id is not None:
        category = session.get(Category, category_id)
        if category is None or category.is_deleted:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid category"
            )

    clean_note = note.strip() if isinstance(note, str) and note.strip() else None

    expense = Expense(
        amount=Decimal(amount).quantize(Decimal("0.01")),
        transaction_datetime=combine_date_time(date, time),
        note=clean_note,
        category_id=category_id,
        is_essential=bool(is_essential),
    )
    session.add(expense)
    session.commit()
    session.refresh(expense)
    return expense


def delete_expense(session: Session, *, expense_id: uuid.UUID) -> None:
    expense = session.scalar(select(Expense).where(Expense.id == expense_id))
    if not expense:
        return
    session.delete(expense)
    session.commit()


def combine_date_time(day: date, hhmm: str | None) -> datetime:
    if not hhmm:
        return datetime.combine(day, time(0, 0))
    hours, minutes = hhmm.split(":", 1)
    return datetime.combine(day, time(int(hours), int(minutes)))


class SqlExpenseStore:
    """
    Expense store backed by the application database.

    Every call runs in a worker thread with its own session so the
    ingestion pipeline can await it without blocking the event loop.
    """

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    async def list_expenses(self, year: int, month: int) -> list[Expense]:
        return await run_in_threadpool(self._list, year, month)

    async def create_expense(
        self,
        *,
        date: date,
        time: str | None,
        amount: Decimal,
        category_id: str | None,
        note: str,
        is_essential: bool,
    ) -> Expense:
        return await run_in_threadpool(
            self._create,
            date=date,
            time=time,
            amount=amount,
            category_id=category_id,
            note=note,
            is_essential=is_essential,
        )

    def _list(self, year: int, month: int) -> list[Expense]:
        with self._session_factory() as session:
            rows = list_expenses(session, year=year, month=month)
            session.expunge_all()
            return rows

    def _create(self, **kwargs) -> Expense:
        with self._session_factory() as session:
            expense = create_expense(session, **kwargs)
            session.expunge(expense)
            return expense
