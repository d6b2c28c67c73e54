from __future__ import annotations

import logging
import os
import re
import tempfile
import unicodedata
from datetime import date, datetime
from pathlib import Path
from typing import Any, get_args

from sqlalchemy import select
from sqlalchemy.orm import Session

from jobledger.config import Settings, get_settings
from jobledger.core.hashing import file_checksum
from jobledger.core.locks import IdentityLocks
from jobledger.core.oplog import OperationLog
from jobledger.db.base import as_utc
from jobledger.db.models import ResumeManifest, ResumeVersion
from jobledger.db.repositories import Repository, resume_lock_key
from jobledger.errors import ConflictError, DuplicateContentError, NotFoundError, ValidationError
from jobledger.types import ExtractionStatus, new_id, utcnow

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9]+")
EXTRACTION_STATUSES = set(get_args(ExtractionStatus))


def sanitize_component(value: str | None, fallback: str = "Unknown") -> str:
    if not value:
        return fallback
    ascii_value = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    cleaned = _UNSAFE.sub("-", ascii_value).strip("-")
    return cleaned[:80] or fallback


def build_base_filename(company: str | None, role: str | None, on_date: date) -> str:
    return f"{sanitize_component(company)}_{sanitize_component(role)}_{on_date.isoformat()}"


def version_suffix(index: int) -> str:
    return "" if index == 0 else f"_v{index}"


def file_extension(filename: str) -> str:
    return Path(filename).suffix.lower()


def write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-", suffix=path.suffix)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def natural_base_filename(manifest: ResumeManifest) -> str:
    return f"{manifest.company}_{manifest.role}_{manifest.filename_date}"


def manifest_lock_key(manifest: ResumeManifest) -> str:
    return resume_lock_key(manifest.job_uuid, natural_base_filename(manifest))


def version_snapshot(version: ResumeVersion) -> dict[str, Any]:
    return {
        "version_id": version.version_id,
        "manifest_id": version.manifest_id,
        "sequence": version.sequence,
        "version_suffix": version.version_suffix,
        "managed_path": version.managed_path,
        "file_checksum": version.file_checksum,
        "file_size": version.file_size,
        "upload_timestamp": as_utc(version.upload_timestamp).isoformat(),
        "original_path": version.original_path,
        "original_filename": version.original_filename,
        "is_active": version.is_active,
        "extraction_status": version.extraction_status,
        "extracted_text": version.extracted_text,
        "extraction_error": version.extraction_error,
    }


class ResumeManager:
    """Per-job resume file sets with exactly one active version."""

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        locks: IdentityLocks | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.repo = Repository(session, settings=self.settings, locks=locks)
        self.oplog = OperationLog(session, settings=self.settings)

    @property
    def resume_dir(self) -> Path:
        return self.settings.resume_dir

    def validate_file(self, filename: str, size: int) -> str:
        extension = file_extension(filename)
        supported = self.settings.supported_extensions
        if extension not in supported:
            raise ValidationError(
                f"Unsupported file type '{extension or filename}'. "
                f"Supported types: {', '.join(sorted(supported))}"
            )
        if size == 0:
            raise ValidationError("File is empty")
        if size > self.settings.max_upload_bytes:
            raise ValidationError(f"File size must be at most {self.settings.max_upload_bytes} bytes")
        return extension

    def upload(
        self,
        job_uuid: str | None,
        data: bytes,
        original_filename: str,
        *,
        keep_original: bool | None = None,
        original_path: str = "",
        company: str | None = None,
        role: str | None = None,
        session_id: str | None = None,
        log: bool = True,
    ) -> ResumeVersion:
        extension = self.validate_file(original_filename, len(data))
        keep_original = self.settings.keep_original_default if keep_original is None else keep_original
        checksum = file_checksum(data)

        if job_uuid:
            job = self.repo.get_job(job_uuid)
            company = company or job.company
            role = role or job.role
            on_date = (as_utc(job.reference_time) or utcnow()).date()
        else:
            if not (company and company.strip() and role and role.strip()):
                raise ValidationError("uploads without a job need both company and role")
            on_date = utcnow().date()

        natural_base = build_base_filename(company, role, on_date)
        keys = [resume_lock_key(job_uuid, natural_base), f"filename:{natural_base}"]
        written: list[Path] = []
        previous_active_id: str | None = None

        def apply() -> ResumeVersion:
            nonlocal previous_active_id
            self._remove_files(written)
            if job_uuid:
                manifest = self.repo.get_manifest_for_job(job_uuid, fresh=True)
            else:
                manifest = self.repo.find_unassigned_manifest(
                    sanitize_component(company), sanitize_component(role), on_date.isoformat(), fresh=True
                )

            now = utcnow()
            if manifest is None:
                manifest = ResumeManifest(
                    id=new_id(),
                    job_uuid=job_uuid,
                    base_filename=self._allocate_base_filename(natural_base),
                    company=sanitize_component(company),
                    role=sanitize_component(role),
                    filename_date=on_date.isoformat(),
                    file_extension=extension,
                    keep_original=keep_original,
                    version_counter=0,
                    last_updated=now,
                )
                self.session.add(manifest)

            for existing in manifest.versions:
                if existing.file_checksum == checksum:
                    raise DuplicateContentError(
                        f"{original_filename} has the same content as version "
                        f"'{existing.version_suffix or 'original'}' of {manifest.base_filename}",
                        existing_version_id=existing.version_id,
                    )

            suffix = version_suffix(manifest.version_counter)
            managed_path = self.resume_dir / f"{manifest.base_filename}{suffix}{extension}"
            if managed_path.exists():
                raise ConflictError(f"managed file {managed_path} already exists")
            write_atomic(managed_path, data)
            written.append(managed_path)

            previous_active_id = next(
                (existing.version_id for existing in manifest.versions if existing.is_active), None
            )
            for existing in manifest.versions:
                existing.is_active = False
            version = ResumeVersion(
                version_id=new_id(),
                sequence=manifest.version_counter,
                version_suffix=suffix,
                managed_path=str(managed_path),
                file_checksum=checksum,
                file_size=len(data),
                upload_timestamp=now,
                original_path=original_path,
                original_filename=original_filename,
                is_active=True,
                extraction_status="pending",
                extracted_text="",
                extraction_error="",
            )
            manifest.versions.append(version)
            manifest.version_counter += 1
            manifest.file_extension = extension
            manifest.keep_original = keep_original
            manifest.last_updated = now
            return version

        try:
            version = self.repo.run_locked(keys, apply)
        except BaseException:
            self._remove_files(written)
            raise

        self.session.refresh(version)
        original_removed = False
        if not keep_original and original_path:
            original_removed = self._remove_original(Path(original_path), Path(version.managed_path))

        logger.info("Stored resume %s as %s", original_filename, version.managed_path)
        if log:
            self.oplog.record(
                "upload",
                details={
                    "version_id": version.version_id,
                    "manifest_id": version.manifest_id,
                    "job_uuid": job_uuid,
                    "managed_path": version.managed_path,
                    "original_path": original_path,
                    "original_removed": original_removed,
                    "previous_active_id": previous_active_id,
                },
                can_undo=True,
                session_id=session_id,
                affected_ids=[version.version_id, version.manifest_id],
            )
        version.original_removed = original_removed
        version.previous_active_id = previous_active_id
        return version

    def delete_version(self, version_id: str, *, session_id: str | None = None) -> ResumeVersion | None:
        """Remove a version, promoting the most recent remaining one if it was active."""
        version = self.repo.get_version(version_id, fresh=True)
        snapshot = version_snapshot(version)
        manifest_id = version.manifest_id

        promoted = self._run_on_manifest(manifest_id, lambda manifest: self._detach_version(manifest, version_id))

        managed_path = Path(snapshot["managed_path"])
        trash_path = self.settings.trash_dir / f"{version_id}{managed_path.suffix}"
        try:
            trash_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(managed_path, trash_path)
        except OSError:
            logger.warning("Could not move %s to trash", managed_path, exc_info=True)
            trash_path = None

        self.oplog.record(
            "delete",
            details={
                "version": snapshot,
                "manifest_id": manifest_id,
                "trash_path": str(trash_path) if trash_path else "",
                "promoted_version_id": promoted.version_id if promoted else None,
            },
            can_undo=trash_path is not None,
            session_id=session_id,
            affected_ids=[version_id, manifest_id],
        )
        logger.info("Deleted resume version %s", version_id)
        return promoted

    def discard_version(
        self,
        version_id: str,
        *,
        restore_original_to: str | None = None,
        reactivate: str | None = None,
    ) -> ResumeVersion | None:
        """Drop a version without keeping it in trash; used to reverse uploads.

        When the dropped version was active, ``reactivate`` names the version to
        make active again. The most recent remaining version is used when it is
        gone.
        """
        version = self.repo.get_version(version_id, fresh=True)
        managed_path = Path(version.managed_path)
        promoted = self._run_on_manifest(
            version.manifest_id,
            lambda manifest: self._detach_version(manifest, version_id, reactivate=reactivate),
        )

        try:
            if restore_original_to and not Path(restore_original_to).exists():
                Path(restore_original_to).parent.mkdir(parents=True, exist_ok=True)
                os.replace(managed_path, restore_original_to)
            else:
                managed_path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not clean up %s", managed_path, exc_info=True)
        return promoted

    def restore_version(self, snapshot: dict[str, Any], trash_path: str) -> ResumeVersion:
        source = Path(trash_path)
        if not source.exists():
            raise NotFoundError(f"trashed file {trash_path} no longer exists")
        target = Path(snapshot["managed_path"])
        moved: list[tuple[Path, Path]] = []

        def restore(manifest: ResumeManifest) -> ResumeVersion:
            self._move_back(moved)
            for existing in manifest.versions:
                if existing.version_id == snapshot["version_id"]:
                    raise ConflictError(f"resume version {snapshot['version_id']} already exists")
                if existing.file_checksum == snapshot["file_checksum"]:
                    raise DuplicateContentError(
                        "a version with the same content already exists",
                        existing_version_id=existing.version_id,
                    )
            if target.exists():
                raise ConflictError(f"managed file {target} already exists")

            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, target)
            moved.append((target, source))

            make_active = bool(snapshot["is_active"]) or not manifest.versions
            if make_active:
                for existing in manifest.versions:
                    existing.is_active = False
            version = ResumeVersion(
                version_id=snapshot["version_id"],
                sequence=snapshot["sequence"],
                version_suffix=snapshot["version_suffix"],
                managed_path=snapshot["managed_path"],
                file_checksum=snapshot["file_checksum"],
                file_size=snapshot["file_size"],
                upload_timestamp=datetime.fromisoformat(snapshot["upload_timestamp"]),
                original_path=snapshot["original_path"],
                original_filename=snapshot["original_filename"],
                is_active=make_active,
                extraction_status=snapshot["extraction_status"],
                extracted_text=snapshot["extracted_text"],
                extraction_error=snapshot["extraction_error"],
            )
            manifest.versions.append(version)
            manifest.last_updated = utcnow()
            return version

        try:
            version = self._run_on_manifest(snapshot["manifest_id"], restore)
        except BaseException:
            self._move_back(moved)
            raise
        self.session.refresh(version)
        logger.info("Restored resume version %s", version.version_id)
        return version

    def activate_version(
        self,
        version_id: str,
        *,
        session_id: str | None = None,
        log: bool = True,
    ) -> ResumeVersion:
        version = self.repo.get_version(version_id, fresh=True)
        previous: dict[str, str | None] = {}

        def activate(manifest: ResumeManifest) -> ResumeVersion:
            target = None
            for existing in manifest.versions:
                if existing.version_id == version_id:
                    target = existing
            if target is None:
                raise NotFoundError(f"resume version {version_id} not found")
            current = manifest.active_version
            previous["id"] = current.version_id if current else None
            for existing in manifest.versions:
                existing.is_active = existing is target
            manifest.last_updated = utcnow()
            return target

        target = self._run_on_manifest(version.manifest_id, activate)
        self.session.refresh(target)
        previous_id = previous.get("id")
        if log and previous_id != version_id:
            self.oplog.record(
                "rollback",
                details={
                    "version_id": version_id,
                    "previous_active_id": previous_id,
                    "manifest_id": target.manifest_id,
                },
                can_undo=previous_id is not None,
                session_id=session_id,
                affected_ids=[version_id, target.manifest_id],
            )
        return target

    def rename_manifest(
        self,
        manifest_id: str,
        company: str,
        role: str,
        *,
        session_id: str | None = None,
        log: bool = True,
    ) -> ResumeManifest:
        if not company.strip() or not role.strip():
            raise ValidationError("rename needs both company and role")

        manifest = self.repo.get_manifest(manifest_id, fresh=True)
        new_natural = f"{sanitize_component(company)}_{sanitize_component(role)}_{manifest.filename_date}"
        keys = [
            manifest_lock_key(manifest),
            resume_lock_key(manifest.job_uuid, new_natural),
            f"filename:{new_natural}",
        ]
        old = {"company": manifest.company, "role": manifest.role, "base_filename": manifest.base_filename}
        moved: list[tuple[Path, Path]] = []

        def apply() -> ResumeManifest:
            self._move_back(moved)
            current = self.repo.get_manifest(manifest_id, fresh=True)
            base = self._allocate_base_filename(new_natural, exclude_id=current.id)
            plans = []
            for version in current.versions:
                source = Path(version.managed_path)
                target = self.resume_dir / f"{base}{version.version_suffix}{source.suffix}"
                if target != source and target.exists():
                    raise ConflictError(f"managed file {target} already exists")
                plans.append((version, source, target))
            for version, source, target in plans:
                if source.exists() and source != target:
                    os.replace(source, target)
                    moved.append((target, source))
                version.managed_path = str(target)
            current.company = sanitize_component(company)
            current.role = sanitize_component(role)
            current.base_filename = base
            current.last_updated = utcnow()
            return current

        try:
            renamed = self.repo.run_locked(keys, apply)
        except BaseException:
            self._move_back(moved)
            raise
        self.session.refresh(renamed)

        if log:
            self.oplog.record(
                "rename",
                details={
                    "manifest_id": manifest_id,
                    "old": old,
                    "new": {
                        "company": renamed.company,
                        "role": renamed.role,
                        "base_filename": renamed.base_filename,
                    },
                    "source_paths": [str(source) for _, source in moved],
                    "target_paths": [str(target) for target, _ in moved],
                },
                can_undo=True,
                session_id=session_id,
                affected_ids=[manifest_id],
            )
        logger.info("Renamed manifest %s to %s", manifest_id, renamed.base_filename)
        return renamed

    def attach_manifest(self, manifest_id: str, job_uuid: str) -> ResumeManifest:
        """Assign an unassigned manifest to a job."""
        self.repo.get_job(job_uuid)
        manifest = self.repo.get_manifest(manifest_id, fresh=True)
        keys = [manifest_lock_key(manifest), resume_lock_key(job_uuid)]

        def apply() -> ResumeManifest:
            current = self.repo.get_manifest(manifest_id, fresh=True)
            if current.job_uuid == job_uuid:
                return current
            if current.job_uuid is not None:
                raise ConflictError(f"manifest {manifest_id} already belongs to job {current.job_uuid}")
            if self.repo.get_manifest_for_job(job_uuid, fresh=True) is not None:
                raise ConflictError(f"job {job_uuid} already has resumes")
            current.job_uuid = job_uuid
            current.last_updated = utcnow()
            return current

        attached = self.repo.run_locked(keys, apply)
        self.session.refresh(attached)
        return attached

    def record_extraction(
        self,
        version_id: str,
        status: str,
        *,
        text: str = "",
        error: str = "",
    ) -> ResumeVersion:
        if status not in EXTRACTION_STATUSES:
            raise ValidationError(f"unsupported extraction status '{status}'")
        version = self.repo.get_version(version_id, fresh=True)

        def apply(manifest: ResumeManifest) -> ResumeVersion:
            current = self.repo.get_version(version_id, fresh=True)
            current.extraction_status = status
            current.extracted_text = text if status == "success" else ""
            current.extraction_error = error if status == "failed" else ""
            manifest.last_updated = utcnow()
            return current

        updated = self._run_on_manifest(version.manifest_id, apply)
        self.session.refresh(updated)
        return updated

    def version_path(self, version_id: str) -> Path:
        version = self.repo.get_version(version_id)
        path = Path(version.managed_path)
        if not path.is_file():
            raise NotFoundError(f"file for resume version {version_id} is missing")
        return path

    def read_version(self, version_id: str) -> bytes:
        return self.version_path(version_id).read_bytes()

    def list_versions(self, job_uuid: str) -> list[ResumeVersion]:
        manifest = self.repo.get_manifest_for_job(job_uuid)
        return list(manifest.versions) if manifest else []

    def _run_on_manifest(self, manifest_id: str, fn):
        manifest = self.repo.get_manifest(manifest_id, fresh=True)
        key = manifest_lock_key(manifest)

        def apply():
            current = self.repo.get_manifest(manifest_id, fresh=True)
            if manifest_lock_key(current) != key:
                raise ConflictError(f"manifest {manifest_id} changed owner during the update")
            return fn(current)

        return self.repo.run_locked([key], apply)

    def _detach_version(
        self, manifest: ResumeManifest, version_id: str, *, reactivate: str | None = None
    ) -> ResumeVersion | None:
        target = None
        for existing in manifest.versions:
            if existing.version_id == version_id:
                target = existing
        if target is None:
            raise NotFoundError(f"resume version {version_id} not found")

        was_active = target.is_active
        manifest.versions.remove(target)
        promoted = None
        if was_active and manifest.versions:
            promoted = next((item for item in manifest.versions if item.version_id == reactivate), None)
            if promoted is None:
                promoted = max(manifest.versions, key=lambda item: item.sequence)
            promoted.is_active = True
        manifest.last_updated = utcnow()
        return promoted

    def _allocate_base_filename(self, natural: str, exclude_id: str | None = None) -> str:
        statement = select(ResumeManifest.base_filename).where(
            ResumeManifest.base_filename.like(f"{natural}%")
        )
        if exclude_id is not None:
            statement = statement.where(ResumeManifest.id != exclude_id)
        taken = set(self.session.scalars(statement).all())
        if natural not in taken:
            return natural
        counter = 2
        while f"{natural}-{counter}" in taken:
            counter += 1
        return f"{natural}-{counter}"

    def _remove_original(self, original: Path, managed: Path) -> bool:
        try:
            if not original.is_file() or original.resolve() == managed.resolve():
                return False
            original.unlink()
            return True
        except OSError:
            logger.warning("Could not remove original file %s", original, exc_info=True)
            return False

    @staticmethod
    def _remove_files(paths: list[Path]) -> None:
        while paths:
            paths.pop().unlink(missing_ok=True)

    @staticmethod
    def _move_back(moved: list[tuple[Path, Path]]) -> None:
        while moved:
            current, previous = moved.pop()
            try:
                os.replace(current, previous)
            except OSError:
                logger.warning("Could not move %s back to %s", current, previous, exc_info=True)
