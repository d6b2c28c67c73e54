from __future__ import annotations

import logging

from jobledger.config import get_settings


_LOG_CONFIGURED = False

# Libraries that log every statement or request at INFO.
_QUIET_LOGGERS = ("sqlalchemy.engine", "urllib3", "multipart", "python_multipart")


def configure_logging() -> None:
    """Send ledger logs to stderr at ``log_level``; third-party logs only from WARNING."""
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=logging.WARNING,
        format=f"%(asctime)s {settings.app_name} %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger("jobledger").setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    _LOG_CONFIGURED = True
