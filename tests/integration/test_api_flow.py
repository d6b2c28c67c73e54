from __future__ import annotations

from fastapi.testclient import TestClient

from jobledger.api.app import create_app


def _client() -> TestClient:
    return TestClient(create_app())


def _create_job(client: TestClient, text: str, company: str = "Acme", role: str = "SWE") -> str:
    resp = client.post("/api/jobs", json={"text": text, "company": company, "role": role})
    assert resp.status_code == 201
    return resp.json()["uuid"]


def test_health() -> None:
    assert _client().get("/health").json() == {"status": "ok"}


def test_job_crud_and_error_mapping() -> None:
    client = _client()
    job_uuid = _create_job(client, "Build APIs in Python")

    assert client.get(f"/api/jobs/{job_uuid}").json()["company"] == "Acme"
    patched = client.patch(f"/api/jobs/{job_uuid}", json={"role": "Staff SWE"})
    assert patched.json()["role"] == "Staff SWE"

    missing = client.get("/api/jobs/missing")
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotFoundError"

    assert client.post("/api/jobs", json={"text": "  "}).status_code == 422
    assert client.post(f"/api/jobs/{job_uuid}/status", json={"status": "applied"}).json()["applied_date"]

    listing = client.get("/api/jobs").json()
    assert listing["total"] == 1


def test_job_capture_from_url(monkeypatch) -> None:
    monkeypatch.setattr(
        "jobledger.api.routes.fetch_job_text",
        lambda url, timeout_sec=30: "Platform Engineer\nRequirements: Kubernetes",
    )
    resp = _client().post("/api/jobs", json={"source_url": "https://example.com/jobs/1", "company": "Initech"})

    assert resp.status_code == 201
    assert resp.json()["capture_method"] == "url_fetch"
    assert resp.json()["text"].startswith("Platform Engineer")


def test_dedup_scan_and_merge() -> None:
    client = _client()
    first = _create_job(client, "Senior engineer building payment APIs with Python and Postgres")
    second = _create_job(client, "Senior engineer building payment APIs with Python and Postgres!")
    _create_job(client, "Barista needed for weekend shifts", company="Cafe", role="Barista")

    scan = client.post("/api/dedup/scan", json={}).json()
    assert len(scan["duplicate_groups"]) == 1
    group = scan["duplicate_groups"][0]
    assert {group["primary_uuid"], group["members"][0]["uuid"]} == {first, second}

    merged = client.post(
        f"/api/dedup/groups/{group['id']}/merge",
        json={"surviving_uuid": first, "note": "same posting"},
    )
    assert merged.status_code == 200
    assert merged.json()["merged_from"] == [second]
    assert client.get(f"/api/dedup/groups/{group['id']}").status_code == 404


def test_resume_upload_conflict_and_undo() -> None:
    client = _client()
    job_uuid = _create_job(client, "Build APIs in Python")

    upload = client.post(
        f"/api/jobs/{job_uuid}/resumes",
        files={"file": ("resume.pdf", b"%PDF resume", "application/pdf")},
    )
    assert upload.status_code == 201
    version_id = upload.json()["version_id"]

    duplicate = client.post(
        f"/api/jobs/{job_uuid}/resumes",
        files={"file": ("again.pdf", b"%PDF resume", "application/pdf")},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["data"]["existing_version_id"] == version_id

    unsupported = client.post(
        f"/api/jobs/{job_uuid}/resumes",
        files={"file": ("resume.exe", b"binary", "application/octet-stream")},
    )
    assert unsupported.status_code == 422

    download = client.get(f"/api/resumes/versions/{version_id}/file")
    assert download.content == b"%PDF resume"

    entries = client.get("/api/operations").json()
    assert entries[0]["operation_type"] == "upload"
    undo = client.post(f"/api/operations/{entries[0]['id']}/undo")
    assert undo.status_code == 200
    assert client.post(f"/api/operations/{entries[0]['id']}/undo").status_code == 409
    assert client.get(f"/api/jobs/{job_uuid}/resumes").json() == []


def test_bulk_import_endpoints(tmp_path) -> None:
    client = _client()
    _create_job(client, "Acme SWE role")
    folder = tmp_path / "incoming"
    folder.mkdir()
    (folder / "Acme_SWE.pdf").write_bytes(b"acme resume")
    (folder / "random.pdf").write_bytes(b"random resume")

    operation = client.post("/api/bulk-import/scan", json={"source_folder": str(folder)}).json()
    statuses = {item["original_filename"]: item["status"] for item in operation["preview_items"]}
    assert statuses == {"Acme_SWE.pdf": "mapped", "random.pdf": "pending"}

    random_item = next(item for item in operation["preview_items"] if item["original_filename"] == "random.pdf")
    mapped = client.patch(
        f"/api/bulk-import/items/{random_item['id']}",
        json={"manual_company": "Hooli", "manual_role": "PM"},
    )
    assert mapped.json()["status"] == "mapped"

    result = client.post("/api/bulk-import/execute", json={}).json()
    assert sorted(result["successful"]) == ["Acme_SWE.pdf", "random.pdf"]
    assert result["partial_failure"] is False
    assert result["failed"] == []
    assert client.post("/api/bulk-import/execute", json={}).status_code == 409
    assert client.get("/api/bulk-import").json()["status"] == "completed"
