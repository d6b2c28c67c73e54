from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="jobledger-tests-"))
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'jobledger.db'}"
os.environ["DATA_DIR"] = str(_TEST_ROOT)
os.environ["RESUME_DIR"] = str(_TEST_ROOT / "resumes")

from sqlalchemy.orm import Session  # noqa: E402

from jobledger.config import Settings, get_settings  # noqa: E402
from jobledger.core.runtime import get_bulk_import_registry, get_group_cache  # noqa: E402
from jobledger.db import models  # noqa: E402,F401
from jobledger.db.base import Base  # noqa: E402
from jobledger.db.session import SessionLocal, engine  # noqa: E402


@pytest.fixture(autouse=True)
def reset_db() -> Iterator[None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    resume_dir = get_settings().resume_dir
    shutil.rmtree(resume_dir, ignore_errors=True)
    resume_dir.mkdir(parents=True, exist_ok=True)
    get_group_cache().replace([])
    get_bulk_import_registry().clear()
    yield


@pytest.fixture
def db() -> Iterator[Session]:
    with SessionLocal() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return get_settings()
