from __future__ import annotations

from pathlib import Path

from jobledger.config import get_settings
from jobledger.db.base import Base
from jobledger.db.session import engine
from jobledger.db import models  # noqa: F401


def ensure_data_directories() -> None:
    settings = get_settings()
    paths: list[Path] = [
        settings.data_dir,
        settings.resume_dir,
        settings.trash_dir,
    ]
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)


def init_database() -> dict[str, int]:
    ensure_data_directories()
    Base.metadata.create_all(bind=engine)
    return {"tables": len(Base.metadata.tables)}
