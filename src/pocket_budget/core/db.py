from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session, sessionmaker

from pocket_budget.core.config import settings

_is_sqlite = make_url(settings.database_url).get_backend_name() == "sqlite"

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    # Store calls run in worker threads, one session per call.
    connect_args={"check_same_thread": False} if _is_sqlite else {},
)

if _is_sqlite:

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def db_session() -> Generator[Session, None, None]:
    with SessionLocal() as session:
        yield session
