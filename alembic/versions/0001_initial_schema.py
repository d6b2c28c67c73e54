"""Initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "job_records",
        sa.Column("uuid", sa.String(36), primary_key=True),
        sa.Column("company", sa.String(255), nullable=True),
        sa.Column("role", sa.String(255), nullable=True),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("source_url", sa.String(800), nullable=True),
        sa.Column("source_html_path", sa.String(600), nullable=True),
        sa.Column("capture_method", sa.String(40), nullable=False),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("application_status", sa.String(40), nullable=False),
        sa.Column("applied_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_reminder", sa.DateTime(timezone=True), nullable=True),
        sa.Column("followup_reminder", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_followup_enabled", sa.Boolean(), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("merged_from", sa.JSON(), nullable=False),
        sa.Column("merge_history", sa.JSON(), nullable=False),
        sa.Column("archived", sa.Boolean(), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("imported_from", sa.String(600), nullable=True),
        sa.Column("imported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_job_records_company", "job_records", ["company"])
    op.create_index("ix_job_records_content_hash", "job_records", ["content_hash"])
    op.create_index("ix_job_records_archived", "job_records", ["archived"])

    op.create_table(
        "resume_manifests",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "job_uuid",
            sa.String(36),
            sa.ForeignKey("job_records.uuid", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("base_filename", sa.String(400), nullable=False),
        sa.Column("company", sa.String(255), nullable=False),
        sa.Column("role", sa.String(255), nullable=False),
        sa.Column("filename_date", sa.String(10), nullable=False),
        sa.Column("file_extension", sa.String(16), nullable=False),
        sa.Column("keep_original", sa.Boolean(), nullable=False),
        sa.Column("version_counter", sa.Integer(), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_resume_manifests_job_uuid", "resume_manifests", ["job_uuid"])
    op.create_index("ix_resume_manifests_base_filename", "resume_manifests", ["base_filename"])

    op.create_table(
        "resume_versions",
        sa.Column("version_id", sa.String(36), primary_key=True),
        sa.Column(
            "manifest_id",
            sa.String(36),
            sa.ForeignKey("resume_manifests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("version_suffix", sa.String(20), nullable=False),
        sa.Column("managed_path", sa.String(800), nullable=False),
        sa.Column("file_checksum", sa.String(64), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("upload_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("original_path", sa.String(800), nullable=False),
        sa.Column("original_filename", sa.String(400), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("extraction_status", sa.String(20), nullable=False),
        sa.Column("extracted_text", sa.Text(), nullable=False),
        sa.Column("extraction_error", sa.Text(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("manifest_id", "sequence", name="uq_manifest_sequence"),
    )
    op.create_index("ix_resume_versions_manifest_id", "resume_versions", ["manifest_id"])
    op.create_index("ix_resume_versions_file_checksum", "resume_versions", ["file_checksum"])

    op.create_table(
        "operation_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("operation_type", sa.String(40), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("details_json", sa.JSON(), nullable=False),
        sa.Column("affected_entity_ids", sa.JSON(), nullable=False),
        sa.Column("can_undo", sa.Boolean(), nullable=False),
        sa.Column("session_id", sa.String(120), nullable=False),
        sa.Column("undone_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_operation_log_timestamp", "operation_log", ["timestamp"])
    op.create_index("ix_operation_log_session_id", "operation_log", ["session_id"])


def downgrade() -> None:
    op.drop_table("operation_log")
    op.drop_table("resume_versions")
    op.drop_table("resume_manifests")
    op.drop_table("job_records")
