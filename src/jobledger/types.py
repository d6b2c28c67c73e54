from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

CaptureMethod = Literal["manual", "url_fetch", "browser_helper"]
ApplicationStatus = Literal["interested", "applied", "interviewing", "offer", "rejected", "withdrawn"]
MergeAction = Literal["merge", "delete", "archive"]
ExtractionStatus = Literal["pending", "success", "failed"]
OperationType = Literal["upload", "bulk_import", "delete", "restore", "rename", "rollback"]
PreviewStatus = Literal["pending", "mapped", "error"]
BulkImportStatus = Literal["preview", "completed", "cancelled"]


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class JobCapture(BaseModel):
    text: str
    company: str | None = None
    role: str | None = None
    source_url: str | None = None
    source_html_path: str | None = None
    capture_method: CaptureMethod = "manual"
    captured_at: datetime | None = None
    fetched_at: datetime | None = None
    application_status: ApplicationStatus = "interested"
    auto_followup_enabled: bool = False
    imported_from: str | None = None


class JobFilter(BaseModel):
    include_archived: bool = False
    company: str | None = None
    role: str | None = None
    application_status: ApplicationStatus | None = None
    capture_method: CaptureMethod | None = None
    limit: int | None = None


class MergeEvent(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    action: MergeAction
    source_uuids: list[str] = Field(default_factory=list)
    actor_note: str = ""


class DuplicateMatch(BaseModel):
    uuid: str
    similarity_score: float


class DuplicateGroup(BaseModel):
    id: str = Field(default_factory=new_id)
    primary_uuid: str
    members: list[DuplicateMatch]
    max_similarity: float
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("members")
    @classmethod
    def validate_members(cls, value: list[DuplicateMatch]) -> list[DuplicateMatch]:
        if not value:
            raise ValueError("a duplicate group needs at least one member besides the primary")
        return value

    @property
    def uuids(self) -> list[str]:
        return [self.primary_uuid] + [member.uuid for member in self.members]


class DeduplicationResult(BaseModel):
    duplicate_groups: list[DuplicateGroup] = Field(default_factory=list)
    total_duplicates_found: int = 0
    threshold_used: float
    processed_at: datetime = Field(default_factory=utcnow)


class JobRef(BaseModel):
    kind: Literal["job"] = "job"
    job_uuid: str

    @field_validator("job_uuid")
    @classmethod
    def validate_uuid(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("job_uuid must not be blank")
        return value


class ManualMapping(BaseModel):
    kind: Literal["manual"] = "manual"
    company: str
    role: str

    @field_validator("company", "role")
    @classmethod
    def validate_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("manual mappings need both company and role")
        return value


class Unmapped(BaseModel):
    kind: Literal["unmapped"] = "unmapped"


MappingSource = Annotated[Union[JobRef, ManualMapping, Unmapped], Field(discriminator="kind")]


class BulkImportPreview(BaseModel):
    id: str = Field(default_factory=new_id)
    original_filename: str
    original_path: str
    proposed_filename: str = ""
    mapping: MappingSource = Field(default_factory=Unmapped)
    match_score: float = 0.0
    status: PreviewStatus = "pending"
    error_message: str = ""

    @model_validator(mode="after")
    def validate_status(self) -> BulkImportPreview:
        if self.status == "mapped" and isinstance(self.mapping, Unmapped):
            raise ValueError("mapped previews need a job mapping or a manual company and role")
        if self.status == "error" and not self.error_message:
            raise ValueError("error previews need an error message")
        return self

    @property
    def job_mapping(self) -> str | None:
        return self.mapping.job_uuid if isinstance(self.mapping, JobRef) else None

    @property
    def manual_company(self) -> str | None:
        return self.mapping.company if isinstance(self.mapping, ManualMapping) else None

    @property
    def manual_role(self) -> str | None:
        return self.mapping.role if isinstance(self.mapping, ManualMapping) else None


class BulkImportOperation(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str
    source_folder: str
    preview_items: list[BulkImportPreview] = Field(default_factory=list)
    status: BulkImportStatus = "preview"
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in {"completed", "cancelled"}

    def find_item(self, item_id: str) -> BulkImportPreview | None:
        for item in self.preview_items:
            if item.id == item_id:
                return item
        return None


class BulkImportFailure(BaseModel):
    filename: str
    error: str


class BulkImportResult(BaseModel):
    operation_id: str
    status: BulkImportStatus
    successful: list[str] = Field(default_factory=list)
    failed: list[BulkImportFailure] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    version_ids: list[str] = Field(default_factory=list)
    log_entry_id: int | None = None

    @computed_field
    @property
    def partial_failure(self) -> bool:
        return bool(self.failed)


class UndoResult(BaseModel):
    entry_id: int
    operation_type: OperationType
    reverted: list[str] = Field(default_factory=list)
    failed: list[BulkImportFailure] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)
