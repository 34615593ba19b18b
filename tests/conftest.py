from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

# Set env before any pocket_budget imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.pocket_budget_test.db")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")
os.environ.setdefault("GEMINI_API_KEY", "")


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import pocket_budget.models  # noqa: F401
    import pocket_budget.core.storage as storage_mod
    import pocket_budget.modules.ingestion.service as ingestion_service
    from pocket_budget.core.db import SessionLocal, engine
    from pocket_budget.core.models import Base
    from pocket_budget.modules.categories.service import ensure_default_categories

    # Reset storage cache and directory
    storage_mod._storage = None
    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    ingestion_service._registry = None

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    with SessionLocal() as session:
        ensure_default_categories(session)

    yield


@pytest.fixture()
def category_refs():
    from pocket_budget.core.db import SessionLocal
    from pocket_budget.modules.categories.service import list_categories
    from pocket_budget.modules.ingestion.domain import CategoryRef

    with SessionLocal() as session:
        return [CategoryRef(id=str(c.id), name=c.name) for c in list_categories(session)]
