from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from jobledger.config import Settings, get_settings
from jobledger.core.hashing import jaccard, tokenize
from jobledger.core.oplog import OperationLog
from jobledger.core.resumes import (
    ResumeManager,
    build_base_filename,
    file_extension,
    sanitize_component,
    version_suffix,
)
from jobledger.core.runtime import get_bulk_import_registry
from jobledger.db.base import as_utc
from jobledger.db.models import JobRecord
from jobledger.db.repositories import Repository
from jobledger.errors import (
    InvalidStateError,
    LedgerError,
    NotFoundError,
    OperationTimeout,
    ValidationError,
)
from jobledger.types import (
    BulkImportFailure,
    BulkImportOperation,
    BulkImportPreview,
    BulkImportResult,
    BulkImportStatus,
    JobRef,
    ManualMapping,
    MappingSource,
    Unmapped,
    utcnow,
)

logger = logging.getLogger(__name__)

NOISE_WORDS = {"resume", "cv", "curriculum", "vitae", "final", "draft", "copy", "updated"}
_SEPARATORS = re.compile(r"[_\-.]+")


def name_tokens(value: str) -> frozenset[str]:
    return frozenset(
        token
        for token in tokenize(_SEPARATORS.sub(" ", value))
        if token not in NOISE_WORDS and not token.isdigit()
    )


def filename_tokens(filename: str) -> frozenset[str]:
    return name_tokens(Path(filename).stem)


class BulkImportRegistry:
    """One bulk-import operation per session id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._operations: dict[str, BulkImportOperation] = {}
        self._running: dict[str, threading.Event] = {}

    def replace(self, operation: BulkImportOperation) -> None:
        with self._lock:
            if operation.session_id in self._running:
                raise InvalidStateError(f"a bulk import is executing for session {operation.session_id}")
            self._operations[operation.session_id] = operation

    def get(self, session_id: str) -> BulkImportOperation | None:
        with self._lock:
            operation = self._operations.get(session_id)
            return operation.model_copy(deep=True) if operation else None

    def replace_item(
        self,
        session_id: str,
        item_id: str,
        build: Callable[[BulkImportPreview], BulkImportPreview],
    ) -> BulkImportPreview:
        with self._lock:
            operation = self._require_preview(session_id)
            for index, item in enumerate(operation.preview_items):
                if item.id == item_id:
                    updated = build(item)
                    operation.preview_items[index] = updated
                    return updated.model_copy(deep=True)
        raise NotFoundError(f"bulk import item {item_id} not found")

    def begin(self, session_id: str) -> tuple[BulkImportOperation, threading.Event]:
        with self._lock:
            operation = self._require_preview(session_id)
            cancel_flag = threading.Event()
            self._running[session_id] = cancel_flag
            return operation.model_copy(deep=True), cancel_flag

    def finish(self, session_id: str, operation_id: str, status: BulkImportStatus | None) -> None:
        with self._lock:
            self._running.pop(session_id, None)
            operation = self._operations.get(session_id)
            if status is not None and operation is not None and operation.id == operation_id:
                operation.status = status

    def cancel(self, session_id: str) -> BulkImportOperation:
        with self._lock:
            operation = self._operations.get(session_id)
            if operation is None:
                raise NotFoundError(f"no bulk import for session {session_id}")
            if operation.is_terminal:
                raise InvalidStateError(f"bulk import {operation.id} is already {operation.status}")
            running = self._running.get(session_id)
            if running is not None:
                # The stored status changes when the running execute stops.
                running.set()
                accepted = operation.model_copy(deep=True)
                accepted.status = "cancelled"
                return accepted
            operation.status = "cancelled"
            operation.preview_items = []
            return operation.model_copy(deep=True)

    def clear(self) -> None:
        with self._lock:
            self._operations.clear()
            self._running.clear()

    def _require_preview(self, session_id: str) -> BulkImportOperation:
        operation = self._operations.get(session_id)
        if operation is None:
            raise NotFoundError(f"no bulk import for session {session_id}")
        if operation.is_terminal:
            raise InvalidStateError(f"bulk import {operation.id} is already {operation.status}")
        if session_id in self._running:
            raise InvalidStateError(f"bulk import {operation.id} is executing")
        return operation


class BulkImportReconciler:
    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        registry: BulkImportRegistry | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.registry = registry or get_bulk_import_registry()
        self.repo = Repository(session, settings=self.settings)
        self.oplog = OperationLog(session, settings=self.settings)

    def _session_id(self, session_id: str | None) -> str:
        return session_id or self.settings.default_session_id

    def scan(self, source_folder: str | Path, session_id: str | None = None) -> BulkImportOperation:
        """Preview every resume-like file in ``source_folder``.

        Replaces whatever operation the session held before.
        """
        session_id = self._session_id(session_id)
        folder = Path(source_folder).expanduser()
        if not folder.is_dir():
            raise NotFoundError(f"folder {folder} does not exist")

        jobs = self.session.scalars(
            select(JobRecord).where(JobRecord.archived.is_(False)).order_by(JobRecord.uuid)
        ).all()
        candidates = [(job, name_tokens(f"{job.company or ''} {job.role or ''}")) for job in jobs]

        paths = folder.rglob("*") if self.settings.bulk_import_recursive else folder.iterdir()
        items = []
        for path in sorted(paths):
            relative = path.relative_to(folder)
            if any(part.startswith(".") for part in relative.parts) or not path.is_file():
                continue
            items.append(self._preview(path, candidates))

        operation = BulkImportOperation(session_id=session_id, source_folder=str(folder), preview_items=items)
        self.registry.replace(operation)
        logger.info(
            "Scanned %s: %s files, %s auto-mapped",
            folder,
            len(items),
            sum(1 for item in items if item.status == "mapped"),
        )
        return operation.model_copy(deep=True)

    def update_mapping(
        self,
        item_id: str,
        *,
        job_uuid: str | None = None,
        manual_company: str | None = None,
        manual_role: str | None = None,
        session_id: str | None = None,
    ) -> BulkImportPreview:
        session_id = self._session_id(session_id)
        mapping: MappingSource = Unmapped()
        proposal_for: tuple[str | None, str | None, str | None] | None = None
        if job_uuid:
            job = self.repo.get_job(job_uuid)
            if job.archived:
                raise ValidationError(f"job {job_uuid} is archived")
            mapping = JobRef(job_uuid=job.uuid)
            proposal_for = (job.uuid, job.company, job.role)
        elif manual_company and manual_company.strip() and manual_role and manual_role.strip():
            mapping = ManualMapping(company=manual_company, role=manual_role)
            proposal_for = (None, manual_company, manual_role)

        proposed_filename = None
        if proposal_for:
            operation = self.registry.get(session_id)
            current = operation.find_item(item_id) if operation else None
            if current is not None:
                proposed_filename = self._proposed_filename(
                    *proposal_for, file_extension(current.original_filename)
                )

        def build(item: BulkImportPreview) -> BulkImportPreview:
            if item.status == "error":
                raise ValidationError(f"{item.original_filename} cannot be imported: {item.error_message}")
            data = item.model_dump()
            data["mapping"] = mapping.model_dump()
            data["status"] = "pending" if isinstance(mapping, Unmapped) else "mapped"
            data["match_score"] = 1.0 if proposal_for else 0.0
            if proposed_filename is not None:
                data["proposed_filename"] = proposed_filename
            return BulkImportPreview.model_validate(data)

        return self.registry.replace_item(session_id, item_id, build)

    def execute(
        self,
        session_id: str | None = None,
        timeout_sec: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BulkImportResult:
        """Upload every mapped item independently.

        Items already stored stay stored when the run times out or is
        cancelled; the rest are reported as skipped.
        """
        session_id = self._session_id(session_id)
        operation, cancel_flag = self.registry.begin(session_id)
        deadline = time.monotonic() + timeout_sec if timeout_sec is not None else None
        result = BulkImportResult(operation_id=operation.id, status="completed")
        log_items: list[dict[str, object]] = []
        cancelled = timed_out = False
        manager = ResumeManager(self.session, settings=self.settings)

        try:
            for item in operation.preview_items:
                if item.status != "mapped" or cancelled or timed_out:
                    result.skipped.append(item.original_filename)
                    continue
                if cancel_flag.is_set() or (cancel_event is not None and cancel_event.is_set()):
                    cancelled = True
                    result.skipped.append(item.original_filename)
                    continue
                if deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                    result.skipped.append(item.original_filename)
                    continue

                try:
                    data = Path(item.original_path).read_bytes()
                    version = manager.upload(
                        item.job_mapping,
                        data,
                        item.original_filename,
                        keep_original=self.settings.keep_original_default,
                        original_path=item.original_path,
                        company=item.manual_company,
                        role=item.manual_role,
                        session_id=session_id,
                        log=False,
                    )
                except LedgerError as exc:
                    logger.warning("Skipping %s: %s", item.original_filename, exc.message)
                    result.failed.append(BulkImportFailure(filename=item.original_filename, error=exc.message))
                    continue
                except OSError as exc:
                    logger.warning("Could not read %s: %s", item.original_path, exc)
                    result.failed.append(
                        BulkImportFailure(filename=item.original_filename, error=f"Unreadable file: {exc}")
                    )
                    continue
                except Exception as exc:
                    logger.exception("Unexpected error importing %s", item.original_filename)
                    result.failed.append(BulkImportFailure(filename=item.original_filename, error=str(exc)))
                    continue

                result.successful.append(item.original_filename)
                result.version_ids.append(version.version_id)
                log_items.append(
                    {
                        "filename": item.original_filename,
                        "version_id": version.version_id,
                        "original_path": item.original_path,
                        "original_removed": version.original_removed,
                        "previous_active_id": version.previous_active_id,
                    }
                )
        except BaseException:
            self.registry.finish(session_id, operation.id, None)
            raise

        result.status = "cancelled" if cancelled else "completed"
        self.registry.finish(session_id, operation.id, result.status)
        if log_items:
            entry = self.oplog.record(
                "bulk_import",
                details={
                    "operation_id": operation.id,
                    "source_folder": operation.source_folder,
                    "items": log_items,
                },
                can_undo=True,
                session_id=session_id,
                affected_ids=result.version_ids,
            )
            result.log_entry_id = entry.id if entry else None

        logger.info(
            "Bulk import %s %s: %s stored, %s failed, %s skipped",
            operation.id,
            result.status,
            len(result.successful),
            len(result.failed),
            len(result.skipped),
        )
        if timed_out:
            raise OperationTimeout(
                f"bulk import {operation.id} timed out after {timeout_sec}s",
                partial=result,
            )
        return result

    def cancel(self, session_id: str | None = None) -> BulkImportOperation:
        operation = self.registry.cancel(self._session_id(session_id))
        logger.info("Cancelled bulk import %s", operation.id)
        return operation

    def get_operation(self, session_id: str | None = None) -> BulkImportOperation:
        session_id = self._session_id(session_id)
        operation = self.registry.get(session_id)
        if operation is None:
            raise NotFoundError(f"no bulk import for session {session_id}")
        return operation

    def _preview(
        self,
        path: Path,
        candidates: list[tuple[JobRecord, frozenset[str]]],
    ) -> BulkImportPreview:
        extension = file_extension(path.name)
        error = ""
        if extension not in self.settings.supported_extensions:
            error = f"Unsupported file type '{extension or path.name}'"
        else:
            try:
                size = path.stat().st_size
                with path.open("rb") as handle:
                    handle.read(1)
            except OSError as exc:
                error = f"Unreadable file: {exc}"
            else:
                if size == 0:
                    error = "File is empty"
                elif size > self.settings.max_upload_bytes:
                    error = f"File size must be at most {self.settings.max_upload_bytes} bytes"
        if error:
            return BulkImportPreview(
                original_filename=path.name,
                original_path=str(path),
                status="error",
                error_message=error,
            )

        tokens = filename_tokens(path.name)
        best_job, best_score = None, 0.0
        for job, job_tokens in candidates:
            score = jaccard(tokens, job_tokens)
            if score > best_score:
                best_job, best_score = job, score

        if best_job is not None and best_score >= self.settings.bulk_import_match_threshold:
            return BulkImportPreview(
                original_filename=path.name,
                original_path=str(path),
                proposed_filename=self._proposed_filename(best_job.uuid, best_job.company, best_job.role, extension),
                mapping=JobRef(job_uuid=best_job.uuid),
                match_score=round(best_score, 6),
                status="mapped",
            )
        return BulkImportPreview(
            original_filename=path.name,
            original_path=str(path),
            proposed_filename=self._proposed_filename(None, None, None, extension),
            match_score=round(best_score, 6),
        )

    def _proposed_filename(
        self,
        job_uuid: str | None,
        company: str | None,
        role: str | None,
        extension: str,
    ) -> str:
        today = utcnow().date()
        if job_uuid:
            manifest = self.repo.get_manifest_for_job(job_uuid)
            if manifest is not None:
                return f"{manifest.base_filename}{version_suffix(manifest.version_counter)}{extension}"
            job = self.repo.get_job(job_uuid)
            on_date = (as_utc(job.reference_time) or utcnow()).date()
            return f"{build_base_filename(company, role, on_date)}{extension}"
        if company and role:
            manifest = self.repo.find_unassigned_manifest(
                sanitize_component(company), sanitize_component(role), today.isoformat()
            )
            if manifest is not None:
                return f"{manifest.base_filename}{version_suffix(manifest.version_counter)}{extension}"
        return f"{build_base_filename(company, role, today)}{extension}"
