from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from jobledger.config import Settings, get_settings
from jobledger.core.locks import IdentityLocks
from jobledger.core.runtime import get_identity_locks
from jobledger.db.models import OperationLogEntry
from jobledger.errors import (
    AlreadyUndoneError,
    LedgerError,
    NotFoundError,
    UnsupportedOperationError,
)
from jobledger.types import BulkImportFailure, UndoResult, utcnow

if TYPE_CHECKING:
    from jobledger.core.resumes import ResumeManager

logger = logging.getLogger(__name__)


class OperationLog:
    """Append-only record of reversible file operations."""

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        locks: IdentityLocks | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.locks = locks or get_identity_locks()

    def record(
        self,
        operation_type: str,
        *,
        details: dict[str, Any] | None = None,
        can_undo: bool = False,
        session_id: str | None = None,
        affected_ids: Iterable[str] = (),
    ) -> OperationLogEntry | None:
        """Persist one entry.

        The operation it describes has already been committed, so a failure
        here is logged and never undoes that work.
        """
        try:
            entry = OperationLogEntry(
                operation_type=operation_type,
                timestamp=utcnow(),
                details_json=details or {},
                affected_entity_ids=[item for item in affected_ids if item],
                can_undo=can_undo,
                session_id=session_id or self.settings.default_session_id,
            )
            self.session.add(entry)
            self.session.flush()
            self._apply_retention()
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.warning("Failed to record %s operation", operation_type, exc_info=True)
            return None
        return entry

    def get_entry(self, entry_id: int, *, fresh: bool = False) -> OperationLogEntry:
        entry = self.session.get(OperationLogEntry, entry_id, populate_existing=fresh)
        if entry is None:
            raise NotFoundError(f"operation log entry {entry_id} not found")
        return entry

    def list_entries(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        session_id: str | None = None,
    ) -> list[OperationLogEntry]:
        statement = select(OperationLogEntry)
        if session_id:
            statement = statement.where(OperationLogEntry.session_id == session_id)
        statement = statement.order_by(OperationLogEntry.id.desc()).offset(offset).limit(limit)
        return list(self.session.scalars(statement).all())

    def undo(self, entry_id: int) -> UndoResult:
        with self.locks.hold(f"oplog:{entry_id}", timeout=self.settings.lock_timeout_sec):
            entry = self.get_entry(entry_id, fresh=True)
            if not entry.can_undo:
                raise UnsupportedOperationError(
                    f"{entry.operation_type} operation {entry_id} cannot be undone"
                )
            if entry.undone_at is not None:
                raise AlreadyUndoneError(f"operation {entry_id} was already undone")

            handlers = {
                "upload": self._undo_upload,
                "bulk_import": self._undo_bulk_import,
                "delete": self._undo_delete,
                "rollback": self._undo_rollback,
                "rename": self._undo_rename,
            }
            handler = handlers.get(entry.operation_type)
            if handler is None:
                raise UnsupportedOperationError(f"undo is not supported for {entry.operation_type}")

            from jobledger.core.resumes import ResumeManager

            manager = ResumeManager(self.session, settings=self.settings, locks=self.locks)
            operation_type = entry.operation_type
            details = dict(entry.details_json or {})
            result = handler(manager, entry_id, details)

            entry = self.get_entry(entry_id, fresh=True)
            entry.undone_at = utcnow()
            self.session.commit()

        logger.info("Undid %s operation %s", operation_type, entry_id)
        return result

    def _undo_upload(self, manager: ResumeManager, entry_id: int, details: dict[str, Any]) -> UndoResult:
        restore_to = details.get("original_path") if details.get("original_removed") else None
        manager.discard_version(
            details["version_id"],
            restore_original_to=restore_to,
            reactivate=details.get("previous_active_id"),
        )
        return UndoResult(
            entry_id=entry_id,
            operation_type="upload",
            reverted=[details["version_id"]],
            details=details,
        )

    def _undo_bulk_import(
        self, manager: ResumeManager, entry_id: int, details: dict[str, Any]
    ) -> UndoResult:
        reverted: list[str] = []
        failed: list[BulkImportFailure] = []
        for item in reversed(details.get("items", [])):
            restore_to = item.get("original_path") if item.get("original_removed") else None
            try:
                manager.discard_version(
                    item["version_id"],
                    restore_original_to=restore_to,
                    reactivate=item.get("previous_active_id"),
                )
            except LedgerError as exc:
                failed.append(BulkImportFailure(filename=item.get("filename", ""), error=exc.message))
                continue
            reverted.append(item["version_id"])
        return UndoResult(
            entry_id=entry_id,
            operation_type="bulk_import",
            reverted=reverted,
            failed=failed,
            details=details,
        )

    def _undo_delete(self, manager: ResumeManager, entry_id: int, details: dict[str, Any]) -> UndoResult:
        version = manager.restore_version(details["version"], details["trash_path"])
        self.record(
            "restore",
            details={"version_id": version.version_id, "undo_of": entry_id},
            affected_ids=[version.version_id, version.manifest_id],
        )
        return UndoResult(
            entry_id=entry_id,
            operation_type="delete",
            reverted=[version.version_id],
            details=details,
        )

    def _undo_rollback(self, manager: ResumeManager, entry_id: int, details: dict[str, Any]) -> UndoResult:
        previous = details["previous_active_id"]
        manager.activate_version(previous, log=False)
        return UndoResult(entry_id=entry_id, operation_type="rollback", reverted=[previous], details=details)

    def _undo_rename(self, manager: ResumeManager, entry_id: int, details: dict[str, Any]) -> UndoResult:
        old = details["old"]
        manager.rename_manifest(details["manifest_id"], old["company"], old["role"], log=False)
        return UndoResult(
            entry_id=entry_id,
            operation_type="rename",
            reverted=[details["manifest_id"]],
            details=details,
        )

    def _apply_retention(self) -> None:
        keep = self.settings.operation_log_retention
        cutoff = self.session.scalar(
            select(OperationLogEntry.id).order_by(OperationLogEntry.id.desc()).offset(keep - 1).limit(1)
        )
        if cutoff is not None:
            self.session.execute(delete(OperationLogEntry).where(OperationLogEntry.id < cutoff))
