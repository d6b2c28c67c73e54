from pathlib import Path

from jobledger.core.bulk_import import BulkImportReconciler
from jobledger.core.dedup import DuplicateDetector
from jobledger.core.oplog import OperationLog
from jobledger.core.resumes import ResumeManager
from jobledger.db.repositories import Repository
from jobledger.db.session import SessionLocal
from jobledger.types import JobCapture


def test_capture_dedupe_import_and_undo(tmp_path) -> None:
    text = "Acme is hiring a backend engineer to build billing services in Python"
    with SessionLocal() as db:
        repo = Repository(db)
        original = repo.create_job(JobCapture(text=text, company="Acme", role="Backend Engineer"))
        repost = repo.create_job(
            JobCapture(text=text.upper(), company="ACME", role="backend engineer", capture_method="url_fetch")
        )
        repo.create_job(JobCapture(text="Globex needs a data analyst", company="Globex", role="Data Analyst"))

        detector = DuplicateDetector(db)
        result = detector.scan()
        assert result.total_duplicates_found == 1
        group = result.duplicate_groups[0]
        assert group.primary_uuid == original.uuid
        assert group.max_similarity == 1.0

        survivor = detector.merge(group.id, original.uuid)
        assert survivor.merged_from == [repost.uuid]
        assert detector.scan().duplicate_groups == []

        manager = ResumeManager(db)
        first = manager.upload(original.uuid, b"v0", "resume.pdf")

        folder = tmp_path / "exports"
        folder.mkdir()
        (folder / "Acme_Backend_Engineer_resume.pdf").write_bytes(b"v1")
        (folder / "Globex_Data_Analyst.docx").write_bytes(b"globex")
        (folder / "holiday-photo.png").write_bytes(b"png")

        reconciler = BulkImportReconciler(db)
        operation = reconciler.scan(folder)
        statuses = {item.original_filename: item.status for item in operation.preview_items}
        assert statuses == {
            "Acme_Backend_Engineer_resume.pdf": "mapped",
            "Globex_Data_Analyst.docx": "mapped",
            "holiday-photo.png": "error",
        }
        acme_item = next(item for item in operation.preview_items if item.job_mapping == original.uuid)
        assert acme_item.proposed_filename == Path(first.managed_path).stem + "_v1.pdf"

        imported = reconciler.execute()
        assert len(imported.successful) == 2
        assert imported.skipped == ["holiday-photo.png"]

        active = [version for version in manager.list_versions(original.uuid) if version.is_active]
        assert len(active) == 1 and active[0].version_suffix == "_v1"

        OperationLog(db).undo(imported.log_entry_id)
        active = [version for version in manager.list_versions(original.uuid) if version.is_active]
        assert [version.version_id for version in active] == [first.version_id]
