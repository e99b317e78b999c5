from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, inspect as sa_inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from ventureclone.config import get_settings
from ventureclone.models import Base

_lock = threading.Lock()
_engine = None
_SessionLocal = None


def init_db(url: str | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        url = url or get_settings().database_url
        parsed = make_url(url)
        connect_args: dict = {}
        if parsed.get_backend_name() == "sqlite":
            connect_args["check_same_thread"] = False
            if parsed.database and parsed.database != ":memory:":
                Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(url, connect_args=connect_args)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _migrate_existing_db(_engine)


def _migrate_existing_db(engine) -> None:
    """Add columns that may be missing in older databases."""
    inspector = sa_inspect(engine)
    if not inspector.has_table("business_analyses"):
        return
    columns = {col["name"] for col in inspector.get_columns("business_analyses")}
    added = {
        "improvements_json": "TEXT",
        "detection_status": "VARCHAR(20) DEFAULT 'disabled'",
    }
    for name, ddl in added.items():
        if name not in columns:
            with engine.begin() as conn:
                conn.execute(text(f"ALTER TABLE business_analyses ADD COLUMN {name} {ddl}"))


def storage_ok() -> bool:
    """Return True when the database answers a trivial query."""
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def get_session() -> Session:
    with _lock:
        factory = _SessionLocal
    if factory is None:
        raise RuntimeError("Database is not initialised; call init_db() first")
    return factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Session that is rolled back on error and always closed."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

