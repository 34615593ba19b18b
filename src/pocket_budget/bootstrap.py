from __future__ import annotations

import pocket_budget.models  # noqa: F401
from pocket_budget.core.config import settings
from pocket_budget.core.db import SessionLocal, engine
from pocket_budget.core.logging import get_logger, log_event
from pocket_budget.core.models import Base
from pocket_budget.core.storage import get_storage
from pocket_budget.modules.categories.service import ensure_default_categories
from pocket_budget.modules.ingestion.previews import PREVIEW_PREFIX

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.environment in {"dev", "test"} and str(settings.database_url).startswith("sqlite"):
        Base.metadata.create_all(engine)

    with SessionLocal() as session:
        categories = ensure_default_categories(session)

    # Smart-entry sessions live in memory; previews left by a previous process have no owner.
    orphaned = get_storage().delete_prefix(PREVIEW_PREFIX)

    log_event(
        logger,
        "bootstrap.finish",
        environment=settings.environment,
        category_count=len(categories),
        orphaned_preview_count=orphaned,
    )
