from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import typer
import uvicorn

from jobledger.api.app import create_app
from jobledger.api.schemas import JobResponse, ManifestResponse, OperationEntryResponse, ResumeVersionResponse
from jobledger.config import get_settings
from jobledger.core.bulk_import import BulkImportReconciler
from jobledger.core.dedup import DuplicateDetector
from jobledger.core.job_fetcher import fetch_job_capture
from jobledger.core.oplog import OperationLog
from jobledger.core.resumes import ResumeManager
from jobledger.db.init import init_database
from jobledger.db.repositories import Repository
from jobledger.db.session import SessionLocal
from jobledger.errors import LedgerError, OperationTimeout
from jobledger.logging_config import configure_logging
from jobledger.types import JobCapture, JobFilter

app = typer.Typer(help="jobledger CLI")
jobs_app = typer.Typer(help="Job record commands")
dedup_app = typer.Typer(help="Duplicate detection")
resume_app = typer.Typer(help="Resume versions")
bulk_app = typer.Typer(help="Bulk resume import")
ops_app = typer.Typer(help="Operation log and undo")

app.add_typer(jobs_app, name="jobs")
app.add_typer(dedup_app, name="dedup")
app.add_typer(resume_app, name="resume")
app.add_typer(bulk_app, name="bulk-import")
app.add_typer(ops_app, name="ops")

_INITIALIZED = False


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _echo(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


@contextmanager
def _command() -> Iterator[None]:
    configure_logging()
    ensure_initialized()
    try:
        yield
    except OperationTimeout as exc:
        partial = exc.partial.model_dump(mode="json") if exc.partial is not None else None
        typer.echo(json.dumps({"error": exc.message, "partial": partial}, indent=2), err=True)
        raise typer.Exit(code=2) from exc
    except LedgerError as exc:
        typer.echo(json.dumps({"error": exc.message, "type": type(exc).__name__, **exc.data}, indent=2), err=True)
        raise typer.Exit(code=1) from exc


def _job(job) -> dict[str, Any]:
    return JobResponse.model_validate(job).model_dump(mode="json")


@app.command("init")
def init_cmd() -> None:
    """Initialize database and data directories."""
    configure_logging()
    result = init_database()
    _echo({"ok": True, **result})


@jobs_app.command("add")
def jobs_add(
    text: str = typer.Option("", "--text"),
    text_file: Path | None = typer.Option(None, "--text-file", exists=True, readable=True),
    url: str | None = typer.Option(None, "--url"),
    company: str | None = typer.Option(None, "--company"),
    role: str | None = typer.Option(None, "--role"),
    followup: bool = typer.Option(False, "--followup/--no-followup"),
) -> None:
    with _command():
        if text_file is not None:
            text = text_file.read_text(encoding="utf-8")
        if text.strip():
            capture = JobCapture(
                text=text,
                company=company,
                role=role,
                source_url=url,
                auto_followup_enabled=followup,
            )
        elif url:
            capture = fetch_job_capture(url, timeout_sec=get_settings().fetch_timeout_sec)
            if capture is None:
                raise typer.BadParameter(f"no job text could be fetched from {url}")
            capture = capture.model_copy(
                update={
                    "company": company or capture.company,
                    "role": role or capture.role,
                    "auto_followup_enabled": followup,
                }
            )
        else:
            raise typer.BadParameter("pass --text, --text-file or --url")

        with SessionLocal() as db:
            _echo(_job(Repository(db).create_job(capture)))


@jobs_app.command("list")
def jobs_list(
    limit: int = typer.Option(20, "--limit"),
    company: str | None = typer.Option(None, "--company"),
    include_archived: bool = typer.Option(False, "--include-archived"),
) -> None:
    with _command():
        filters = JobFilter(limit=limit, company=company, include_archived=include_archived)
        with SessionLocal() as db:
            _echo(
                [
                    {
                        "uuid": job.uuid,
                        "company": job.company,
                        "role": job.role,
                        "application_status": job.application_status,
                        "archived": job.archived,
                        "captured_at": job.captured_at.isoformat() if job.captured_at else None,
                    }
                    for job in Repository(db).list_jobs(filters)
                ]
            )


@jobs_app.command("show")
def jobs_show(job_uuid: str = typer.Argument(...)) -> None:
    with _command(), SessionLocal() as db:
        _echo(_job(Repository(db).get_job(job_uuid)))


@jobs_app.command("archive")
def jobs_archive(
    job_uuid: str = typer.Argument(...),
    note: str = typer.Option("", "--note"),
) -> None:
    with _command(), SessionLocal() as db:
        _echo(_job(Repository(db).archive_job(job_uuid, note=note)))


@jobs_app.command("status")
def jobs_status(
    job_uuid: str = typer.Argument(...),
    status: str = typer.Option(..., "--status"),
) -> None:
    with _command(), SessionLocal() as db:
        _echo(_job(Repository(db).set_application_status(job_uuid, status)))


@dedup_app.command("scan")
def dedup_scan(
    threshold: float | None = typer.Option(None, "--threshold"),
    auto_merge: bool = typer.Option(False, "--auto-merge"),
) -> None:
    with _command(), SessionLocal() as db:
        detector = DuplicateDetector(db)
        if auto_merge:
            merged = detector.auto_merge(threshold=threshold)
            _echo({"merged": [{"uuid": job.uuid, "merged_from": job.merged_from} for job in merged]})
            return
        _echo(detector.scan(threshold=threshold).model_dump(mode="json"))


@dedup_app.command("merge")
def dedup_merge(
    members: list[str] = typer.Argument(..., help="uuids of the records merged into the survivor"),
    keep: str = typer.Option(..., "--keep"),
    note: str = typer.Option("", "--note"),
    discard: bool = typer.Option(False, "--discard"),
) -> None:
    """Merge records listed by `dedup scan` into the --keep record."""
    with _command(), SessionLocal() as db:
        _echo(_job(Repository(db).merge_jobs(keep, members, note=note, discard=discard)))


@resume_app.command("upload")
def resume_upload(
    file: Path = typer.Argument(..., exists=True, readable=True, dir_okay=False),
    job_uuid: str | None = typer.Option(None, "--job"),
    company: str | None = typer.Option(None, "--company"),
    role: str | None = typer.Option(None, "--role"),
    keep_original: bool | None = typer.Option(None, "--keep-original/--remove-original"),
) -> None:
    with _command(), SessionLocal() as db:
        version = ResumeManager(db).upload(
            job_uuid,
            file.read_bytes(),
            file.name,
            keep_original=keep_original,
            original_path=str(file.resolve()),
            company=company,
            role=role,
        )
        _echo(ResumeVersionResponse.model_validate(version).model_dump(mode="json"))


@resume_app.command("list")
def resume_list(
    job_uuid: str | None = typer.Option(None, "--job"),
    unassigned: bool = typer.Option(False, "--unassigned"),
) -> None:
    with _command(), SessionLocal() as db:
        manifests = Repository(db).list_manifests(job_uuid=job_uuid, unassigned=unassigned)
        _echo([ManifestResponse.model_validate(manifest).model_dump(mode="json") for manifest in manifests])


@resume_app.command("activate")
def resume_activate(version_id: str = typer.Argument(...)) -> None:
    with _command(), SessionLocal() as db:
        version = ResumeManager(db).activate_version(version_id)
        _echo(ResumeVersionResponse.model_validate(version).model_dump(mode="json"))


@resume_app.command("delete")
def resume_delete(version_id: str = typer.Argument(...)) -> None:
    with _command(), SessionLocal() as db:
        promoted = ResumeManager(db).delete_version(version_id)
        _echo({"deleted": version_id, "active_version_id": promoted.version_id if promoted else None})


@resume_app.command("rename")
def resume_rename(
    manifest_id: str = typer.Argument(...),
    company: str = typer.Option(..., "--company"),
    role: str = typer.Option(..., "--role"),
) -> None:
    with _command(), SessionLocal() as db:
        manifest = ResumeManager(db).rename_manifest(manifest_id, company, role)
        _echo(ManifestResponse.model_validate(manifest).model_dump(mode="json"))


@bulk_app.command("run")
def bulk_run(
    folder: Path = typer.Argument(..., exists=True, file_okay=False),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only print the proposed mapping."),
    timeout: float | None = typer.Option(None, "--timeout"),
) -> None:
    """Import every auto-mapped file in a folder."""
    with _command(), SessionLocal() as db:
        reconciler = BulkImportReconciler(db)
        operation = reconciler.scan(folder)
        if dry_run:
            _echo(operation.model_dump(mode="json"))
            return
        result = reconciler.execute(timeout_sec=timeout)
        _echo(result.model_dump(mode="json"))


@ops_app.command("list")
def ops_list(
    limit: int = typer.Option(20, "--limit"),
    offset: int = typer.Option(0, "--offset"),
) -> None:
    with _command(), SessionLocal() as db:
        entries = OperationLog(db).list_entries(limit=limit, offset=offset)
        _echo([OperationEntryResponse.model_validate(entry).model_dump(mode="json") for entry in entries])


@ops_app.command("undo")
def ops_undo(entry_id: int = typer.Argument(...)) -> None:
    with _command(), SessionLocal() as db:
        _echo(OperationLog(db).undo(entry_id).model_dump(mode="json"))


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    app_instance = create_app()
    uvicorn.run(app_instance, host=host or settings.app_host, port=port or settings.app_port)
