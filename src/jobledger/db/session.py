from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from jobledger.config import Settings, get_settings


def engine_connect_args(settings: Settings) -> dict[str, Any]:
    """SQLite connections are shared across API threads and wait out other writers."""
    if not settings.database_url.startswith("sqlite"):
        return {}
    return {"check_same_thread": False, "timeout": settings.lock_timeout_sec}


settings = get_settings()
engine = create_engine(settings.database_url, connect_args=engine_connect_args(settings), future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def get_db_session() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
