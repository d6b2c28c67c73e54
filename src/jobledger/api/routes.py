from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from jobledger.api.deps import get_db
from jobledger.api.schemas import (
    ArchiveRequest,
    AttachRequest,
    BulkExecuteRequest,
    BulkScanRequest,
    DedupScanRequest,
    ExtractionRequest,
    JobCreateRequest,
    JobListResponse,
    JobResponse,
    JobUpdateRequest,
    ManifestResponse,
    MappingUpdateRequest,
    MergeRequest,
    OperationEntryResponse,
    ReminderRequest,
    RenameRequest,
    ResumeVersionResponse,
    StatusRequest,
)
from jobledger.config import get_settings
from jobledger.core.bulk_import import BulkImportReconciler
from jobledger.core.dedup import DuplicateDetector
from jobledger.core.job_fetcher import fetch_job_text
from jobledger.core.oplog import OperationLog
from jobledger.core.resumes import ResumeManager
from jobledger.db.repositories import Repository
from jobledger.errors import ValidationError
from jobledger.types import (
    ApplicationStatus,
    BulkImportOperation,
    BulkImportPreview,
    BulkImportResult,
    DeduplicationResult,
    DuplicateGroup,
    JobCapture,
    JobFilter,
    UndoResult,
    utcnow,
)

router = APIRouter(prefix="/api", tags=["api"])


# Jobs


@router.post("/jobs", response_model=JobResponse, status_code=201)
def create_job(payload: JobCreateRequest, db: Session = Depends(get_db)) -> JobResponse:
    data = payload.model_dump()
    fetched_at = None
    if not data["text"].strip() and payload.source_url:
        data["text"] = fetch_job_text(payload.source_url, timeout_sec=get_settings().fetch_timeout_sec)
        data["capture_method"] = "url_fetch"
        fetched_at = utcnow()
    if not data["text"].strip():
        raise ValidationError("job text is required")

    job = Repository(db).create_job(JobCapture(**data, fetched_at=fetched_at))
    return JobResponse.model_validate(job)


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(
    include_archived: bool = False,
    company: str | None = None,
    role: str | None = None,
    application_status: ApplicationStatus | None = None,
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> JobListResponse:
    filters = JobFilter.model_validate(
        {
            "include_archived": include_archived,
            "company": company,
            "role": role,
            "application_status": application_status,
            "limit": limit,
        }
    )
    listing = Repository(db).list_jobs(filters)
    return JobListResponse(total=listing.count(), items=[JobResponse.model_validate(job) for job in listing])


@router.get("/jobs/{job_uuid}", response_model=JobResponse)
def get_job(job_uuid: str, db: Session = Depends(get_db)) -> JobResponse:
    return JobResponse.model_validate(Repository(db).get_job(job_uuid))


@router.patch("/jobs/{job_uuid}", response_model=JobResponse)
def update_job(job_uuid: str, payload: JobUpdateRequest, db: Session = Depends(get_db)) -> JobResponse:
    changes = payload.model_dump(exclude_unset=True)
    return JobResponse.model_validate(Repository(db).update_job(job_uuid, changes))


@router.delete("/jobs/{job_uuid}", status_code=204)
def delete_job(job_uuid: str, db: Session = Depends(get_db)) -> None:
    Repository(db).delete_job(job_uuid)


@router.post("/jobs/{job_uuid}/archive", response_model=JobResponse)
def archive_job(job_uuid: str, payload: ArchiveRequest, db: Session = Depends(get_db)) -> JobResponse:
    return JobResponse.model_validate(Repository(db).archive_job(job_uuid, note=payload.note))


@router.post("/jobs/{job_uuid}/unarchive", response_model=JobResponse)
def unarchive_job(job_uuid: str, db: Session = Depends(get_db)) -> JobResponse:
    return JobResponse.model_validate(Repository(db).unarchive_job(job_uuid))


@router.post("/jobs/{job_uuid}/status", response_model=JobResponse)
def set_status(job_uuid: str, payload: StatusRequest, db: Session = Depends(get_db)) -> JobResponse:
    return JobResponse.model_validate(Repository(db).set_application_status(job_uuid, payload.status))


@router.post("/jobs/{job_uuid}/reminder", response_model=JobResponse)
def set_reminder(job_uuid: str, payload: ReminderRequest, db: Session = Depends(get_db)) -> JobResponse:
    return JobResponse.model_validate(Repository(db).set_reminder(job_uuid, payload.when))


@router.get("/reminders", response_model=list[JobResponse])
def due_reminders(before: datetime | None = None, db: Session = Depends(get_db)) -> list[JobResponse]:
    return [JobResponse.model_validate(job) for job in Repository(db).due_reminders(before or utcnow())]


# Duplicates


@router.post("/dedup/scan", response_model=DeduplicationResult)
def scan_duplicates(payload: DedupScanRequest, db: Session = Depends(get_db)) -> DeduplicationResult:
    return DuplicateDetector(db).scan(candidates=payload.candidates, threshold=payload.threshold)


@router.get("/dedup/groups/{group_id}", response_model=DuplicateGroup)
def get_duplicate_group(group_id: str, db: Session = Depends(get_db)) -> DuplicateGroup:
    return DuplicateDetector(db).get_group(group_id)


@router.post("/dedup/groups/{group_id}/merge", response_model=JobResponse)
def merge_duplicate_group(group_id: str, payload: MergeRequest, db: Session = Depends(get_db)) -> JobResponse:
    survivor = DuplicateDetector(db).merge(
        group_id,
        payload.surviving_uuid,
        note=payload.note,
        discard=payload.discard,
    )
    return JobResponse.model_validate(survivor)


# Resumes


@router.post("/jobs/{job_uuid}/resumes", response_model=ResumeVersionResponse, status_code=201)
def upload_job_resume(
    job_uuid: str,
    file: UploadFile = File(...),
    keep_original: bool | None = Form(default=None),
    session_id: str | None = Form(default=None),
    db: Session = Depends(get_db),
) -> ResumeVersionResponse:
    version = ResumeManager(db).upload(
        job_uuid,
        file.file.read(),
        file.filename or "",
        keep_original=keep_original,
        session_id=session_id,
    )
    return ResumeVersionResponse.model_validate(version)


@router.get("/jobs/{job_uuid}/resumes", response_model=list[ResumeVersionResponse])
def list_job_resumes(job_uuid: str, db: Session = Depends(get_db)) -> list[ResumeVersionResponse]:
    manager = ResumeManager(db)
    manager.repo.get_job(job_uuid)
    return [ResumeVersionResponse.model_validate(version) for version in manager.list_versions(job_uuid)]


@router.post("/resumes", response_model=ResumeVersionResponse, status_code=201)
def upload_unassigned_resume(
    file: UploadFile = File(...),
    company: str = Form(...),
    role: str = Form(...),
    session_id: str | None = Form(default=None),
    db: Session = Depends(get_db),
) -> ResumeVersionResponse:
    version = ResumeManager(db).upload(
        None,
        file.file.read(),
        file.filename or "",
        company=company,
        role=role,
        session_id=session_id,
    )
    return ResumeVersionResponse.model_validate(version)


@router.get("/resumes", response_model=list[ManifestResponse])
def list_manifests(
    job_uuid: str | None = None,
    unassigned: bool = False,
    db: Session = Depends(get_db),
) -> list[ManifestResponse]:
    manifests = Repository(db).list_manifests(job_uuid=job_uuid, unassigned=unassigned)
    return [ManifestResponse.model_validate(manifest) for manifest in manifests]


@router.get("/resumes/versions/{version_id}/file")
def download_version(version_id: str, db: Session = Depends(get_db)) -> FileResponse:
    path = ResumeManager(db).version_path(version_id)
    return FileResponse(path, filename=path.name)


@router.post("/resumes/versions/{version_id}/activate", response_model=ResumeVersionResponse)
def activate_version(
    version_id: str,
    session_id: str | None = None,
    db: Session = Depends(get_db),
) -> ResumeVersionResponse:
    return ResumeVersionResponse.model_validate(ResumeManager(db).activate_version(version_id, session_id=session_id))


@router.delete("/resumes/versions/{version_id}")
def delete_version(version_id: str, session_id: str | None = None, db: Session = Depends(get_db)) -> dict:
    promoted = ResumeManager(db).delete_version(version_id, session_id=session_id)
    return {"deleted": version_id, "active_version_id": promoted.version_id if promoted else None}


@router.post("/resumes/versions/{version_id}/extraction", response_model=ResumeVersionResponse)
def record_extraction(
    version_id: str,
    payload: ExtractionRequest,
    db: Session = Depends(get_db),
) -> ResumeVersionResponse:
    version = ResumeManager(db).record_extraction(
        version_id,
        payload.status,
        text=payload.text,
        error=payload.error,
    )
    return ResumeVersionResponse.model_validate(version)


@router.post("/resumes/{manifest_id}/rename", response_model=ManifestResponse)
def rename_manifest(
    manifest_id: str,
    payload: RenameRequest,
    session_id: str | None = None,
    db: Session = Depends(get_db),
) -> ManifestResponse:
    manifest = ResumeManager(db).rename_manifest(manifest_id, payload.company, payload.role, session_id=session_id)
    return ManifestResponse.model_validate(manifest)


@router.post("/resumes/{manifest_id}/attach", response_model=ManifestResponse)
def attach_manifest(manifest_id: str, payload: AttachRequest, db: Session = Depends(get_db)) -> ManifestResponse:
    return ManifestResponse.model_validate(ResumeManager(db).attach_manifest(manifest_id, payload.job_uuid))


# Bulk import


@router.post("/bulk-import/scan", response_model=BulkImportOperation)
def scan_bulk_import(payload: BulkScanRequest, db: Session = Depends(get_db)) -> BulkImportOperation:
    return BulkImportReconciler(db).scan(payload.source_folder, session_id=payload.session_id)


@router.get("/bulk-import", response_model=BulkImportOperation)
def get_bulk_import(session_id: str | None = None, db: Session = Depends(get_db)) -> BulkImportOperation:
    return BulkImportReconciler(db).get_operation(session_id)


@router.patch("/bulk-import/items/{item_id}", response_model=BulkImportPreview)
def update_bulk_import_item(
    item_id: str,
    payload: MappingUpdateRequest,
    db: Session = Depends(get_db),
) -> BulkImportPreview:
    return BulkImportReconciler(db).update_mapping(
        item_id,
        job_uuid=payload.job_uuid,
        manual_company=payload.manual_company,
        manual_role=payload.manual_role,
        session_id=payload.session_id,
    )


@router.post("/bulk-import/execute", response_model=BulkImportResult)
def execute_bulk_import(payload: BulkExecuteRequest, db: Session = Depends(get_db)) -> BulkImportResult:
    return BulkImportReconciler(db).execute(session_id=payload.session_id, timeout_sec=payload.timeout_sec)


@router.post("/bulk-import/cancel", response_model=BulkImportOperation)
def cancel_bulk_import(session_id: str | None = None, db: Session = Depends(get_db)) -> BulkImportOperation:
    return BulkImportReconciler(db).cancel(session_id)


# Operation log


@router.get("/operations", response_model=list[OperationEntryResponse])
def list_operations(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session_id: str | None = None,
    db: Session = Depends(get_db),
) -> list[OperationEntryResponse]:
    entries = OperationLog(db).list_entries(limit=limit, offset=offset, session_id=session_id)
    return [OperationEntryResponse.model_validate(entry) for entry in entries]


@router.post("/operations/{entry_id}/undo", response_model=UndoResult)
def undo_operation(entry_id: int, db: Session = Depends(get_db)) -> UndoResult:
    return OperationLog(db).undo(entry_id)
