from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from pocket_budget.core.db import db_session
from pocket_budget.modules.expenses.schemas import ExpenseCreateIn, ExpenseOut
from pocket_budget.modules.expenses.service import create_expense, delete_expense, list_expenses

router = APIRouter(tags=["expenses"])


@router.get("/expenses", response_model=list[ExpenseOut])
def list_expenses_endpoint(
    year: int,
    month: int,
    session: Session = Depends(db_session),
) -> list[ExpenseOut]:
    rows = list_expenses(session, year=year, month=month)
    return [ExpenseOut.model_validate(e, from_attributes=True) for e in rows]


@router.post("/expenses", response_model=ExpenseOut)
def create_expense_endpoint(
    payload: ExpenseCreateIn,
    session: Session = Depends(db_session),
) -> ExpenseOut:
    expense = create_expense(session, **payload.model_dump())
    return ExpenseOut.model_validate(expense, from_attributes=True)


@router.delete("/expenses/{expense_id}")
def delete_expense_endpoint(
    expense_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> Response:
    delete_expense(session, expense_id=expense_id)
    return Response(status_code=204)
