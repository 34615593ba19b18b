from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pocket_budget.core.db import db_session
from pocket_budget.modules.categories.schemas import CategoryOut
from pocket_budget.modules.categories.service import list_categories

router = APIRouter(tags=["categories"])


@router.get("/categories", response_model=list[CategoryOut])
def list_categories_endpoint(session: Session = Depends(db_session)) -> list[CategoryOut]:
    return [CategoryOut.model_validate(c, from_attributes=True) for c in list_categories(session)]
