from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from datetime import datetime, timedelta
from typing import Any, TypeVar, get_args

from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from jobledger.config import Settings, get_settings
from jobledger.core.locks import IdentityLocks
from jobledger.core.runtime import get_identity_locks
from jobledger.db.models import JobRecord, ResumeManifest, ResumeVersion
from jobledger.errors import ConflictError, NotFoundError, ValidationError
from jobledger.types import (
    ApplicationStatus,
    CaptureMethod,
    JobCapture,
    JobFilter,
    MergeEvent,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

APPLICATION_STATUSES = set(get_args(ApplicationStatus))
CAPTURE_METHODS = set(get_args(CaptureMethod))

UPDATABLE_JOB_FIELDS = {
    "company",
    "role",
    "text",
    "source_url",
    "source_html_path",
    "capture_method",
    "captured_at",
    "fetched_at",
    "application_status",
    "applied_date",
    "next_reminder",
    "followup_reminder",
    "auto_followup_enabled",
}


def job_lock_key(job_uuid: str) -> str:
    return f"job:{job_uuid}"


def resume_lock_key(job_uuid: str | None, base_filename: str = "") -> str:
    if job_uuid:
        return f"resumes:{job_uuid}"
    return f"resumes:unassigned:{base_filename}"


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class JobListing:
    """Lazy view over job records; every iteration runs a fresh query."""

    def __init__(self, session: Session, statement: Select[tuple[JobRecord]], batch_size: int = 100):
        self.session = session
        self.statement = statement
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[JobRecord]:
        result = self.session.scalars(self.statement, execution_options={"yield_per": self.batch_size})
        yield from result

    def count(self) -> int:
        statement = select(func.count()).select_from(self.statement.subquery())
        return int(self.session.scalar(statement) or 0)


class Repository:
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

    def run_locked(self, keys: Iterable[str], fn: Callable[[], T]) -> T:
        """Run ``fn`` under the identity locks for ``keys`` and commit.

        Any exception rolls the session back. Optimistic version conflicts are
        retried; other errors propagate unchanged.
        """
        keys = list(keys)
        attempts = self.settings.max_conflict_retries
        for attempt in range(1, attempts + 1):
            with self.locks.hold(*keys, timeout=self.settings.lock_timeout_sec):
                try:
                    result = fn()
                    self.session.commit()
                except StaleDataError:
                    self.session.rollback()
                    logger.warning("Concurrent update on %s (attempt %s/%s)", keys, attempt, attempts)
                    continue
                except BaseException:
                    self.session.rollback()
                    raise
            return result
        raise ConflictError(f"could not apply update to {', '.join(keys)} after {attempts} attempts")

    # Job records

    def create_job(self, capture: JobCapture) -> JobRecord:
        if not capture.text or not capture.text.strip():
            raise ValidationError("job text is required")

        now = utcnow()
        job = JobRecord(
            uuid=new_id(),
            company=_clean(capture.company),
            role=_clean(capture.role),
            text=capture.text,
            source_url=_clean(capture.source_url),
            source_html_path=_clean(capture.source_html_path),
            capture_method=capture.capture_method,
            captured_at=capture.captured_at or now,
            fetched_at=capture.fetched_at or now,
            application_status=capture.application_status,
            auto_followup_enabled=capture.auto_followup_enabled,
            merged_from=[],
            merge_history=[],
            archived=False,
            last_updated=now,
            imported_from=capture.imported_from,
            imported_at=now if capture.imported_from else None,
        )
        self.session.add(job)
        self.session.commit()
        self.session.refresh(job)
        logger.info("Created job %s (%s / %s)", job.uuid, job.company, job.role)
        return job

    def get_job(self, job_uuid: str) -> JobRecord:
        job = self.session.get(JobRecord, job_uuid)
        if job is None:
            raise NotFoundError(f"job {job_uuid} not found")
        return job

    def _load_job(self, job_uuid: str) -> JobRecord:
        job = self.session.get(JobRecord, job_uuid, populate_existing=True)
        if job is None:
            raise NotFoundError(f"job {job_uuid} not found")
        return job

    def update_job(
        self,
        job_uuid: str,
        changes: dict[str, Any] | Callable[[JobRecord], None],
    ) -> JobRecord:
        if callable(changes):
            mutate = changes
        else:
            unknown = set(changes) - UPDATABLE_JOB_FIELDS
            if unknown:
                raise ValidationError(f"fields cannot be updated: {sorted(unknown)}")
            status = changes.get("application_status")
            if status is not None and status not in APPLICATION_STATUSES:
                raise ValidationError(f"unsupported application status '{status}'")
            method = changes.get("capture_method")
            if method is not None and method not in CAPTURE_METHODS:
                raise ValidationError(f"unsupported capture method '{method}'")
            values = {
                key: _clean(value) if key in {"company", "role", "source_url"} else value
                for key, value in changes.items()
            }

            def mutate(job: JobRecord) -> None:
                for key, value in values.items():
                    setattr(job, key, value)

        def apply() -> JobRecord:
            job = self._load_job(job_uuid)
            mutate(job)
            if not job.text or not job.text.strip():
                raise ValidationError("job text is required")
            job.last_updated = utcnow()
            return job

        job = self.run_locked([job_lock_key(job_uuid)], apply)
        self.session.refresh(job)
        return job

    def list_jobs(self, filters: JobFilter | None = None) -> JobListing:
        filters = filters or JobFilter()
        statement = select(JobRecord)
        if not filters.include_archived:
            statement = statement.where(JobRecord.archived.is_(False))
        if filters.company:
            statement = statement.where(func.lower(JobRecord.company) == filters.company.strip().lower())
        if filters.role:
            statement = statement.where(func.lower(JobRecord.role) == filters.role.strip().lower())
        if filters.application_status:
            statement = statement.where(JobRecord.application_status == filters.application_status)
        if filters.capture_method:
            statement = statement.where(JobRecord.capture_method == filters.capture_method)
        statement = statement.order_by(JobRecord.captured_at.desc(), JobRecord.uuid.asc())
        if filters.limit:
            statement = statement.limit(filters.limit)
        return JobListing(self.session, statement)

    def delete_job(self, job_uuid: str) -> None:
        def apply() -> None:
            job = self._load_job(job_uuid)
            self._detach_manifests(job_uuid)
            self.session.delete(job)

        self.run_locked([job_lock_key(job_uuid), resume_lock_key(job_uuid)], apply)
        logger.info("Deleted job %s", job_uuid)

    def archive_job(self, job_uuid: str, note: str = "") -> JobRecord:
        def mutate(job: JobRecord) -> None:
            if job.archived:
                return
            now = utcnow()
            job.archived = True
            job.archived_at = now
            self._append_history(job, MergeEvent(timestamp=now, action="archive", actor_note=note))

        return self.update_job(job_uuid, mutate)

    def unarchive_job(self, job_uuid: str) -> JobRecord:
        def mutate(job: JobRecord) -> None:
            job.archived = False
            job.archived_at = None

        return self.update_job(job_uuid, mutate)

    def merge_jobs(
        self,
        surviving_uuid: str,
        source_uuids: Sequence[str],
        *,
        note: str = "",
        discard: bool = False,
    ) -> JobRecord:
        sources = [item for item in dict.fromkeys(source_uuids) if item != surviving_uuid]
        if not sources:
            raise ValidationError("merge needs at least one record besides the survivor")

        keys = [job_lock_key(item) for item in (surviving_uuid, *sources)]
        if discard:
            keys.extend(resume_lock_key(item) for item in sources)

        def apply() -> JobRecord:
            survivor = self._load_job(surviving_uuid)
            if survivor.archived:
                raise ConflictError(f"job {surviving_uuid} is archived and cannot survive a merge")
            others = [self._load_job(item) for item in sources]
            for other in others:
                if other.archived:
                    raise ConflictError(f"job {other.uuid} is already archived")

            lineage = set(survivor.merged_from or [])
            for other in others:
                lineage.add(other.uuid)
                lineage.update(other.merged_from or [])
            lineage.discard(survivor.uuid)

            now = utcnow()
            survivor.merged_from = sorted(lineage)
            self._append_history(
                survivor,
                MergeEvent(
                    timestamp=now,
                    action="delete" if discard else "merge",
                    source_uuids=list(sources),
                    actor_note=note,
                ),
            )
            survivor.last_updated = now

            for other in others:
                if discard:
                    self._detach_manifests(other.uuid)
                    self.session.delete(other)
                    continue
                other.archived = True
                other.archived_at = now
                other.last_updated = now
                self._append_history(
                    other,
                    MergeEvent(
                        timestamp=now,
                        action="archive",
                        source_uuids=[surviving_uuid],
                        actor_note=f"merged into {surviving_uuid}",
                    ),
                )
            return survivor

        survivor = self.run_locked(keys, apply)
        self.session.refresh(survivor)
        logger.info("Merged %s into %s (discard=%s)", sources, surviving_uuid, discard)
        return survivor

    def set_application_status(
        self,
        job_uuid: str,
        status: str,
        *,
        when: datetime | None = None,
    ) -> JobRecord:
        if status not in APPLICATION_STATUSES:
            raise ValidationError(f"unsupported application status '{status}'")

        def mutate(job: JobRecord) -> None:
            job.application_status = status
            if status == "applied" and job.applied_date is None:
                applied = when or utcnow()
                job.applied_date = applied
                if job.auto_followup_enabled:
                    job.followup_reminder = applied + timedelta(days=self.settings.followup_days)

        return self.update_job(job_uuid, mutate)

    def set_reminder(self, job_uuid: str, when: datetime | None) -> JobRecord:
        return self.update_job(job_uuid, {"next_reminder": when})

    def due_reminders(self, before: datetime) -> list[JobRecord]:
        statement = (
            select(JobRecord)
            .where(
                and_(
                    JobRecord.archived.is_(False),
                    or_(JobRecord.next_reminder <= before, JobRecord.followup_reminder <= before),
                )
            )
            .order_by(JobRecord.uuid.asc())
        )
        return list(self.session.scalars(statement).all())

    def _append_history(self, job: JobRecord, event: MergeEvent) -> None:
        history = [*(job.merge_history or []), event.model_dump(mode="json")]
        job.merge_history = history[-self.settings.merge_history_retention :]

    def _detach_manifests(self, job_uuid: str) -> None:
        now = utcnow()
        statement = select(ResumeManifest).where(ResumeManifest.job_uuid == job_uuid)
        for manifest in self.session.scalars(statement.execution_options(populate_existing=True)).all():
            manifest.job_uuid = None
            manifest.last_updated = now

    # Resume manifests

    def get_manifest(self, manifest_id: str, *, fresh: bool = False) -> ResumeManifest:
        manifest = self.session.get(ResumeManifest, manifest_id, populate_existing=fresh)
        if manifest is None:
            raise NotFoundError(f"resume manifest {manifest_id} not found")
        return manifest

    def get_manifest_for_job(self, job_uuid: str, *, fresh: bool = False) -> ResumeManifest | None:
        statement = select(ResumeManifest).where(ResumeManifest.job_uuid == job_uuid)
        if fresh:
            statement = statement.execution_options(populate_existing=True)
        return self.session.scalars(statement).first()

    def find_unassigned_manifest(
        self,
        company: str,
        role: str,
        filename_date: str,
        *,
        fresh: bool = False,
    ) -> ResumeManifest | None:
        statement = select(ResumeManifest).where(
            and_(
                ResumeManifest.job_uuid.is_(None),
                ResumeManifest.company == company,
                ResumeManifest.role == role,
                ResumeManifest.filename_date == filename_date,
            )
        )
        if fresh:
            statement = statement.execution_options(populate_existing=True)
        return self.session.scalars(statement).first()

    def list_manifests(self, *, job_uuid: str | None = None, unassigned: bool = False) -> list[ResumeManifest]:
        statement = select(ResumeManifest)
        if job_uuid is not None:
            statement = statement.where(ResumeManifest.job_uuid == job_uuid)
        elif unassigned:
            statement = statement.where(ResumeManifest.job_uuid.is_(None))
        statement = statement.order_by(ResumeManifest.created_at.desc())
        return list(self.session.scalars(statement).all())

    def get_version(self, version_id: str, *, fresh: bool = False) -> ResumeVersion:
        version = self.session.get(ResumeVersion, version_id, populate_existing=fresh)
        if version is None:
            raise NotFoundError(f"resume version {version_id} not found")
        return version
