from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from jobledger.types import ApplicationStatus, CaptureMethod, ExtractionStatus


class JobCreateRequest(BaseModel):
    text: str = ""
    company: str | None = None
    role: str | None = None
    source_url: str | None = None
    source_html_path: str | None = None
    capture_method: CaptureMethod = "manual"
    captured_at: datetime | None = None
    application_status: ApplicationStatus = "interested"
    auto_followup_enabled: bool = False


class JobUpdateRequest(BaseModel):
    company: str | None = None
    role: str | None = None
    text: str | None = None
    source_url: str | None = None
    captured_at: datetime | None = None
    application_status: ApplicationStatus | None = None
    auto_followup_enabled: bool | None = None


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    uuid: str
    company: str | None
    role: str | None
    text: str
    content_hash: str
    source_url: str | None
    capture_method: str
    captured_at: datetime | None
    fetched_at: datetime | None
    application_status: str
    applied_date: datetime | None
    next_reminder: datetime | None
    followup_reminder: datetime | None
    auto_followup_enabled: bool
    merged_from: list[str]
    merge_history: list[dict[str, Any]]
    archived: bool
    archived_at: datetime | None
    last_updated: datetime | None


class JobListResponse(BaseModel):
    total: int
    items: list[JobResponse]


class ArchiveRequest(BaseModel):
    note: str = ""


class StatusRequest(BaseModel):
    status: ApplicationStatus


class ReminderRequest(BaseModel):
    when: datetime | None = None


class DedupScanRequest(BaseModel):
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    candidates: list[str] | None = None


class MergeRequest(BaseModel):
    surviving_uuid: str
    note: str = ""
    discard: bool = False


class ResumeVersionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    version_id: str
    manifest_id: str
    version_suffix: str
    managed_path: str
    file_checksum: str
    file_size: int
    upload_timestamp: datetime
    original_filename: str
    is_active: bool
    extraction_status: str
    extraction_error: str


class ManifestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_uuid: str | None
    base_filename: str
    company: str
    role: str
    filename_date: str
    file_extension: str
    keep_original: bool
    versions: list[ResumeVersionResponse]


class RenameRequest(BaseModel):
    company: str
    role: str


class AttachRequest(BaseModel):
    job_uuid: str


class ExtractionRequest(BaseModel):
    status: ExtractionStatus
    text: str = ""
    error: str = ""


class BulkScanRequest(BaseModel):
    source_folder: str
    session_id: str | None = None


class MappingUpdateRequest(BaseModel):
    job_uuid: str | None = None
    manual_company: str | None = None
    manual_role: str | None = None
    session_id: str | None = None


class BulkExecuteRequest(BaseModel):
    session_id: str | None = None
    timeout_sec: float | None = Field(default=None, gt=0)


class OperationEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    operation_type: str
    timestamp: datetime
    details_json: dict[str, Any]
    affected_entity_ids: list[str]
    can_undo: bool
    session_id: str
    undone_at: datetime | None
