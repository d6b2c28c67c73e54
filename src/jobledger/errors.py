"""Error taxonomy shared by the repository, engines and the HTTP layer.

Every error carries an HTTP ``status_code`` so the API can translate it in a
single exception handler.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    status_code = 500

    def __init__(self, message: str, *, data: dict[str, Any] | None = None):
        self.message = message
        self.data = data or {}
        super().__init__(message)


class NotFoundError(LedgerError, LookupError):
    status_code = 404


class ValidationError(LedgerError, ValueError):
    status_code = 422


class DuplicateContentError(LedgerError):
    status_code = 409

    def __init__(self, message: str, *, existing_version_id: str, data: dict[str, Any] | None = None):
        self.existing_version_id = existing_version_id
        super().__init__(message, data={"existing_version_id": existing_version_id, **(data or {})})


class ConflictError(LedgerError):
    status_code = 409


class InvalidStateError(LedgerError):
    status_code = 409


class UnsupportedOperationError(LedgerError):
    status_code = 400


class AlreadyUndoneError(LedgerError):
    status_code = 409


class OperationTimeout(LedgerError, TimeoutError):
    status_code = 504

    def __init__(self, message: str, *, partial: Any = None):
        self.partial = partial
        super().__init__(message)
