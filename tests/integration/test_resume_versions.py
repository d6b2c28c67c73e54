from __future__ import annotations

from pathlib import Path

import pytest

from jobledger.core.resumes import ResumeManager
from jobledger.db.repositories import Repository
from jobledger.errors import DuplicateContentError, NotFoundError, ValidationError
from jobledger.types import JobCapture, utcnow


def _job(db, company: str = "Acme", role: str = "Software Engineer"):
    return Repository(db).create_job(JobCapture(text=f"{company} hiring {role}", company=company, role=role))


def _active(manager: ResumeManager, job_uuid: str) -> list[str]:
    return [version.version_id for version in manager.list_versions(job_uuid) if version.is_active]


def test_uploads_get_sequential_suffixes_and_one_active_version(db, settings) -> None:
    job = _job(db)
    manager = ResumeManager(db)

    versions = [manager.upload(job.uuid, f"resume {index}".encode(), "resume.pdf") for index in range(3)]

    day = utcnow().date().isoformat()
    names = [Path(version.managed_path).name for version in versions]
    assert names == [
        f"Acme_Software-Engineer_{day}.pdf",
        f"Acme_Software-Engineer_{day}_v1.pdf",
        f"Acme_Software-Engineer_{day}_v2.pdf",
    ]
    assert all(Path(version.managed_path).parent == settings.resume_dir for version in versions)
    assert _active(manager, job.uuid) == [versions[-1].version_id]
    assert manager.read_version(versions[0].version_id) == b"resume 0"


def test_duplicate_content_is_rejected_without_side_effects(db, settings) -> None:
    job = _job(db)
    manager = ResumeManager(db)
    first = manager.upload(job.uuid, b"same bytes", "resume.pdf")

    with pytest.raises(DuplicateContentError) as excinfo:
        manager.upload(job.uuid, b"same bytes", "resume-copy.pdf")

    assert excinfo.value.existing_version_id == first.version_id
    assert len(manager.list_versions(job.uuid)) == 1
    assert sorted(path.name for path in settings.resume_dir.glob("*.pdf")) == [Path(first.managed_path).name]


def test_validation_happens_before_any_write(db, settings) -> None:
    job = _job(db)
    manager = ResumeManager(db, settings=settings.model_copy(update={"max_upload_bytes": 8}))

    with pytest.raises(ValidationError):
        manager.upload(job.uuid, b"hello", "resume.exe")
    with pytest.raises(ValidationError):
        manager.upload(job.uuid, b"", "resume.pdf")
    with pytest.raises(ValidationError):
        manager.upload(job.uuid, b"way too many bytes", "resume.pdf")
    with pytest.raises(NotFoundError):
        manager.upload("missing", b"hello", "resume.pdf")

    assert manager.list_versions(job.uuid) == []
    assert list(settings.resume_dir.glob("*.pdf")) == []


def test_deleting_active_version_promotes_most_recent(db, settings) -> None:
    job = _job(db)
    manager = ResumeManager(db)
    v0 = manager.upload(job.uuid, b"zero", "resume.pdf")
    v1 = manager.upload(job.uuid, b"one", "resume.pdf")
    v2 = manager.upload(job.uuid, b"two", "resume.pdf")
    manager.activate_version(v0.version_id)
    manager.activate_version(v2.version_id)

    promoted = manager.delete_version(v2.version_id)

    assert promoted.version_id == v1.version_id
    assert _active(manager, job.uuid) == [v1.version_id]
    assert not Path(v2.managed_path).exists()
    assert (settings.trash_dir / f"{v2.version_id}.pdf").exists()


def test_deleting_inactive_version_keeps_active(db) -> None:
    job = _job(db)
    manager = ResumeManager(db)
    v0 = manager.upload(job.uuid, b"zero", "resume.pdf")
    v1 = manager.upload(job.uuid, b"one", "resume.pdf")

    assert manager.delete_version(v0.version_id) is None
    assert _active(manager, job.uuid) == [v1.version_id]


def test_remove_original_after_upload(db, tmp_path) -> None:
    job = _job(db)
    original = tmp_path / "Acme resume.pdf"
    original.write_bytes(b"pdf bytes")

    version = ResumeManager(db).upload(
        job.uuid,
        original.read_bytes(),
        original.name,
        keep_original=False,
        original_path=str(original),
    )

    assert version.original_removed is True
    assert not original.exists()
    assert Path(version.managed_path).read_bytes() == b"pdf bytes"


def test_unassigned_uploads_share_a_manifest_until_attached(db) -> None:
    manager = ResumeManager(db)
    first = manager.upload(None, b"one", "resume.docx", company="Globex", role="Data Scientist")
    second = manager.upload(None, b"two", "resume.docx", company="Globex", role="Data Scientist")
    assert first.manifest_id == second.manifest_id

    with pytest.raises(ValidationError):
        manager.upload(None, b"three", "resume.docx", company="Globex")

    job = _job(db, company="Globex", role="Data Scientist")
    manifest = manager.attach_manifest(first.manifest_id, job.uuid)
    assert manifest.job_uuid == job.uuid
    assert [version.version_id for version in manager.list_versions(job.uuid)] == [
        first.version_id,
        second.version_id,
    ]


def test_two_jobs_with_same_name_get_distinct_files(db) -> None:
    manager = ResumeManager(db)
    first = manager.upload(_job(db).uuid, b"one", "resume.pdf")
    second = manager.upload(_job(db).uuid, b"two", "resume.pdf")

    assert first.managed_path != second.managed_path
    assert Path(second.managed_path).stem.endswith("-2")


def test_rename_moves_every_version(db, settings) -> None:
    job = _job(db)
    manager = ResumeManager(db)
    v0 = manager.upload(job.uuid, b"zero", "resume.pdf")
    manager.upload(job.uuid, b"one", "resume.pdf")

    manifest = manager.rename_manifest(v0.manifest_id, "Initech", "Platform Engineer")

    names = sorted(Path(version.managed_path).name for version in manifest.versions)
    assert all(name.startswith("Initech_Platform-Engineer_") for name in names)
    assert all((settings.resume_dir / name).exists() for name in names)
    assert not Path(v0.managed_path).exists()


def test_extraction_results_are_recorded(db) -> None:
    job = _job(db)
    manager = ResumeManager(db)
    version = manager.upload(job.uuid, b"text", "resume.txt")

    updated = manager.record_extraction(version.version_id, "success", text="Python, SQL")
    assert updated.extraction_status == "success"
    assert updated.extracted_text == "Python, SQL"

    with pytest.raises(ValidationError):
        manager.record_extraction(version.version_id, "done")
