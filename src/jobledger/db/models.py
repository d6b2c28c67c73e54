from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from jobledger.core.hashing import content_hash
from jobledger.db.base import Base, TimestampMixin


class JobRecord(TimestampMixin, Base):
    __tablename__ = "job_records"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    role: Mapped[str | None] = mapped_column(String(255), nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_url: Mapped[str | None] = mapped_column(String(800), nullable=True)
    source_html_path: Mapped[str | None] = mapped_column(String(600), nullable=True)
    capture_method: Mapped[str] = mapped_column(String(40), default="manual", nullable=False)
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    application_status: Mapped[str] = mapped_column(String(40), default="interested", nullable=False)
    applied_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_reminder: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    followup_reminder: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_followup_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    merged_from: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    merge_history: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    imported_from: Mapped[str | None] = mapped_column(String(600), nullable=True)
    imported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    row_version: Mapped[int] = mapped_column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": row_version}

    @validates("text")
    def _rehash_text(self, key: str, value: str) -> str:
        self.content_hash = content_hash(value)
        return value

    @property
    def reference_time(self) -> datetime | None:
        return self.captured_at or self.fetched_at


class ResumeManifest(TimestampMixin, Base):
    __tablename__ = "resume_manifests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_uuid: Mapped[str | None] = mapped_column(
        ForeignKey("job_records.uuid", ondelete="SET NULL"), nullable=True, index=True
    )
    base_filename: Mapped[str] = mapped_column(String(400), nullable=False, index=True)
    company: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(255), nullable=False)
    filename_date: Mapped[str] = mapped_column(String(10), nullable=False)
    file_extension: Mapped[str] = mapped_column(String(16), nullable=False)
    keep_original: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version_counter: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    versions: Mapped[list[ResumeVersion]] = relationship(
        back_populates="manifest",
        cascade="all, delete-orphan",
        order_by="ResumeVersion.sequence",
    )

    row_version: Mapped[int] = mapped_column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": row_version}

    @property
    def filename_components(self) -> dict[str, str]:
        return {"company": self.company, "role": self.role, "date": self.filename_date}

    @property
    def active_version(self) -> ResumeVersion | None:
        for version in self.versions:
            if version.is_active:
                return version
        return None


class ResumeVersion(TimestampMixin, Base):
    __tablename__ = "resume_versions"
    __table_args__ = (UniqueConstraint("manifest_id", "sequence", name="uq_manifest_sequence"),)

    version_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    manifest_id: Mapped[str] = mapped_column(
        ForeignKey("resume_manifests.id", ondelete="CASCADE"), index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    version_suffix: Mapped[str] = mapped_column(String(20), default="", nullable=False)
    managed_path: Mapped[str] = mapped_column(String(800), nullable=False)
    file_checksum: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    file_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    upload_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    original_path: Mapped[str] = mapped_column(String(800), default="", nullable=False)
    original_filename: Mapped[str] = mapped_column(String(400), default="", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    extraction_status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    extracted_text: Mapped[str] = mapped_column(Text, default="", nullable=False)
    extraction_error: Mapped[str] = mapped_column(Text, default="", nullable=False)

    manifest: Mapped[ResumeManifest] = relationship(back_populates="versions")

    # Set by the upload that created this instance; not persisted.
    original_removed = False
    previous_active_id = None


class OperationLogEntry(Base):
    __tablename__ = "operation_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation_type: Mapped[str] = mapped_column(String(40), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    details_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    affected_entity_ids: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    can_undo: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    session_id: Mapped[str] = mapped_column(String(120), default="", nullable=False, index=True)
    undone_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
