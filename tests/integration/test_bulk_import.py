from __future__ import annotations

import threading
import time

import pytest

from jobledger.core.bulk_import import BulkImportReconciler
from jobledger.core.resumes import ResumeManager
from jobledger.db.repositories import Repository
from jobledger.errors import InvalidStateError, NotFoundError, OperationTimeout, ValidationError
from jobledger.types import JobCapture, ManualMapping


def _jobs(db, *pairs: tuple[str, str]) -> dict[str, str]:
    repo = Repository(db)
    return {
        company: repo.create_job(JobCapture(text=f"{company} is hiring a {role}", company=company, role=role)).uuid
        for company, role in pairs
    }


def _folder(tmp_path, *names: str):
    folder = tmp_path / "incoming"
    folder.mkdir()
    for name in names:
        (folder / name).write_bytes(f"contents of {name}".encode())
    return folder


def _by_name(operation) -> dict:
    return {item.original_filename: item for item in operation.preview_items}


def test_scan_auto_maps_matching_filenames(db, tmp_path) -> None:
    jobs = _jobs(db, ("Acme", "SWE"), ("Globex", "Analyst"))
    folder = _folder(tmp_path, "Acme_SWE.pdf", "random.pdf", "notes.exe", ".hidden.pdf")
    (folder / "empty.pdf").write_bytes(b"")

    items = _by_name(BulkImportReconciler(db).scan(folder))

    assert sorted(items) == ["Acme_SWE.pdf", "empty.pdf", "notes.exe", "random.pdf"]
    assert items["Acme_SWE.pdf"].status == "mapped"
    assert items["Acme_SWE.pdf"].job_mapping == jobs["Acme"]
    assert items["Acme_SWE.pdf"].proposed_filename.startswith("Acme_SWE_")
    assert items["random.pdf"].status == "pending"
    assert items["notes.exe"].status == "error"
    assert "Unsupported" in items["notes.exe"].error_message
    assert items["empty.pdf"].error_message == "File is empty"


def test_partial_failure_completes_operation(db, tmp_path, settings) -> None:
    _jobs(db, ("Acme", "SWE"), ("Globex", "Analyst"), ("Initech", "Designer"))
    folder = _folder(tmp_path, "Acme_SWE.pdf", "Globex_Analyst.pdf", "Initech_Designer.pdf")
    reconciler = BulkImportReconciler(db, settings=settings.model_copy(update={"max_upload_bytes": 64}))

    operation = reconciler.scan(folder)
    assert [item.status for item in operation.preview_items] == ["mapped", "mapped", "mapped"]
    (folder / "Globex_Analyst.pdf").write_bytes(b"x" * 100)

    result = reconciler.execute()

    assert result.successful == ["Acme_SWE.pdf", "Initech_Designer.pdf"]
    assert [failure.filename for failure in result.failed] == ["Globex_Analyst.pdf"]
    assert result.partial_failure is True
    assert result.model_dump(mode="json")["partial_failure"] is True
    assert result.status == "completed"
    assert result.log_entry_id is not None
    assert reconciler.get_operation().status == "completed"

    with pytest.raises(InvalidStateError):
        reconciler.execute()


def test_manual_mapping_and_remap_rules(db, tmp_path) -> None:
    _jobs(db, ("Acme", "SWE"))
    folder = _folder(tmp_path, "random.pdf", "notes.exe")
    reconciler = BulkImportReconciler(db)
    items = _by_name(reconciler.scan(folder))

    partial = reconciler.update_mapping(items["random.pdf"].id, manual_company="Hooli")
    assert partial.status == "pending"

    mapped = reconciler.update_mapping(items["random.pdf"].id, manual_company="Hooli", manual_role="PM")
    assert mapped.status == "mapped"
    assert isinstance(mapped.mapping, ManualMapping)
    assert mapped.proposed_filename.startswith("Hooli_PM_")

    with pytest.raises(ValidationError):
        reconciler.update_mapping(items["notes.exe"].id, manual_company="Hooli", manual_role="PM")
    with pytest.raises(NotFoundError):
        reconciler.update_mapping(items["random.pdf"].id, job_uuid="missing")
    with pytest.raises(NotFoundError):
        reconciler.update_mapping("missing-item", manual_company="Hooli", manual_role="PM")

    result = reconciler.execute()
    assert result.successful == ["random.pdf"]
    assert result.skipped == ["notes.exe"]
    manifests = Repository(db).list_manifests(unassigned=True)
    assert [manifest.company for manifest in manifests] == ["Hooli"]


def test_update_mapping_proposes_filename_outside_registry_lock(db, tmp_path, monkeypatch) -> None:
    jobs = _jobs(db, ("Acme", "SWE"))
    folder = _folder(tmp_path, "random.pdf")
    reconciler = BulkImportReconciler(db)
    item = reconciler.scan(folder).preview_items[0]
    original_proposal = BulkImportReconciler._proposed_filename
    lock_held = []

    def record_lock(self, *args, **kwargs):
        lock_held.append(self.registry._lock.locked())
        return original_proposal(self, *args, **kwargs)

    monkeypatch.setattr(BulkImportReconciler, "_proposed_filename", record_lock)
    mapped = reconciler.update_mapping(item.id, job_uuid=jobs["Acme"])

    assert lock_held == [False]
    assert mapped.proposed_filename.startswith("Acme_SWE_")
    assert mapped.proposed_filename.endswith(".pdf")


def test_cancel_during_execute_keeps_committed_items(db, tmp_path, monkeypatch) -> None:
    _jobs(db, ("Acme", "SWE"), ("Globex", "Analyst"), ("Initech", "Designer"))
    folder = _folder(tmp_path, "Acme_SWE.pdf", "Globex_Analyst.pdf", "Initech_Designer.pdf")
    reconciler = BulkImportReconciler(db)
    reconciler.scan(folder)
    cancel = threading.Event()
    original_upload = ResumeManager.upload

    def upload_then_cancel(self, *args, **kwargs):
        version = original_upload(self, *args, **kwargs)
        cancel.set()
        return version

    monkeypatch.setattr(ResumeManager, "upload", upload_then_cancel)
    result = reconciler.execute(cancel_event=cancel)

    assert result.status == "cancelled"
    assert result.successful == ["Acme_SWE.pdf"]
    assert result.skipped == ["Globex_Analyst.pdf", "Initech_Designer.pdf"]
    assert len(result.version_ids) == 1
    assert reconciler.get_operation().status == "cancelled"


def test_cancel_while_executing_reports_cancelled(db, tmp_path, monkeypatch) -> None:
    _jobs(db, ("Acme", "SWE"), ("Globex", "Analyst"))
    folder = _folder(tmp_path, "Acme_SWE.pdf", "Globex_Analyst.pdf")
    reconciler = BulkImportReconciler(db)
    reconciler.scan(folder)
    original_upload = ResumeManager.upload
    accepted = []

    def upload_then_cancel(self, *args, **kwargs):
        version = original_upload(self, *args, **kwargs)
        if not accepted:
            accepted.append(reconciler.cancel())
        return version

    monkeypatch.setattr(ResumeManager, "upload", upload_then_cancel)
    result = reconciler.execute()

    assert accepted[0].status == "cancelled"
    assert result.status == "cancelled"
    assert result.skipped == ["Globex_Analyst.pdf"]
    assert reconciler.get_operation().status == "cancelled"


def test_timeout_reports_partial_result(db, tmp_path, monkeypatch) -> None:
    _jobs(db, ("Acme", "SWE"), ("Globex", "Analyst"))
    folder = _folder(tmp_path, "Acme_SWE.pdf", "Globex_Analyst.pdf")
    reconciler = BulkImportReconciler(db)
    reconciler.scan(folder)
    original_upload = ResumeManager.upload

    def slow_upload(self, *args, **kwargs):
        time.sleep(0.1)
        return original_upload(self, *args, **kwargs)

    monkeypatch.setattr(ResumeManager, "upload", slow_upload)
    with pytest.raises(OperationTimeout) as excinfo:
        reconciler.execute(timeout_sec=0.05)

    partial = excinfo.value.partial
    assert partial.successful == ["Acme_SWE.pdf"]
    assert partial.skipped == ["Globex_Analyst.pdf"]
    assert reconciler.get_operation().status == "completed"


def test_cancel_preview_and_rescan(db, tmp_path) -> None:
    folder = _folder(tmp_path, "random.pdf")
    reconciler = BulkImportReconciler(db)
    first = reconciler.scan(folder)

    cancelled = reconciler.cancel()
    assert cancelled.status == "cancelled"
    assert cancelled.preview_items == []
    with pytest.raises(InvalidStateError):
        reconciler.cancel()

    second = reconciler.scan(folder)
    assert second.id != first.id
    assert reconciler.get_operation().status == "preview"

    with pytest.raises(NotFoundError):
        reconciler.scan(tmp_path / "missing")
    with pytest.raises(NotFoundError):
        reconciler.get_operation("other-session")


def test_sessions_hold_independent_operations(db, tmp_path) -> None:
    folder = _folder(tmp_path, "random.pdf")
    reconciler = BulkImportReconciler(db)
    reconciler.scan(folder, session_id="a")
    reconciler.scan(folder, session_id="b")

    reconciler.cancel("a")

    assert reconciler.get_operation("a").status == "cancelled"
    assert reconciler.get_operation("b").status == "preview"
