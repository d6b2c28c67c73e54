from __future__ import annotations

import logging
from datetime import date

import pytest
from pydantic import ValidationError

from jobledger import logging_config
from jobledger.config import Settings
from jobledger.core.bulk_import import filename_tokens
from jobledger.core.resumes import build_base_filename, sanitize_component, version_suffix
from jobledger.db.session import engine_connect_args


def test_supported_extensions_are_normalized() -> None:
    settings = Settings(supported_file_types="PDF, .docx,,txt")
    assert settings.supported_extensions == {".pdf", ".docx", ".txt"}


def test_thresholds_must_be_unit_interval() -> None:
    with pytest.raises(ValidationError):
        Settings(similarity_threshold=1.5)


def test_unknown_comparison_fields_are_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(dedup_comparison_fields="text,salary")


def test_managed_filename_scheme() -> None:
    assert sanitize_component("Acme, Inc.") == "Acme-Inc"
    assert sanitize_component("  ") == "Unknown"
    assert build_base_filename("Acme", "Senior SWE", date(2026, 5, 1)) == "Acme_Senior-SWE_2026-05-01"
    assert [version_suffix(index) for index in range(3)] == ["", "_v1", "_v2"]


def test_filename_tokens_drop_noise_words() -> None:
    assert filename_tokens("Acme_SWE_Resume_2024.pdf") == frozenset({"acme", "swe"})
    assert filename_tokens("cv-final.docx") == frozenset()


def test_sqlite_connections_wait_for_other_writers() -> None:
    sqlite = Settings(database_url="sqlite:///ledger.db", lock_timeout_sec=4)
    assert engine_connect_args(sqlite) == {"check_same_thread": False, "timeout": 4}
    assert engine_connect_args(Settings(database_url="postgresql://db/ledger")) == {}


def test_configure_logging_keeps_library_loggers_quiet(monkeypatch) -> None:
    monkeypatch.setattr(logging_config, "_LOG_CONFIGURED", False)
    monkeypatch.setattr(logging.getLogger("jobledger"), "level", logging.NOTSET)
    monkeypatch.setattr(logging.getLogger("sqlalchemy.engine"), "level", logging.NOTSET)

    logging_config.configure_logging()

    assert logging.getLogger("jobledger").level == logging.INFO
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
