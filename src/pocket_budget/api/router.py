from __future__ import annotations

from fastapi import APIRouter

from pocket_budget.modules.categories.api import router as categories_router
from pocket_budget.modules.expenses.api import router as expenses_router
from pocket_budget.modules.ingestion.api import router as ingestion_router

router = APIRouter()

router.include_router(categories_router, prefix="/api")
router.include_router(expenses_router, prefix="/api")
router.include_router(ingestion_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
