"""API tests for the bulk, certificate, QR, email and health endpoints."""

import io
import time
import zipfile

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook

from certchain.core.config import Settings
from certchain.main import create_app
from certchain.services.csv_parser import sample_csv


def _settings(tmp_path, **overrides) -> Settings:
    values = {
        "output_dir": str(tmp_path / "output"),
        "upload_dir": str(tmp_path / "uploads"),
        "private_key": None,
        "contract_address": None,
        "pinata_jwt": None,
        "smtp_host": None,
        "verify_base_url": "https://certs.example.com/verify",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def client(tmp_path, chain_client):
    app = create_app(settings=_settings(tmp_path), chain_client=chain_client)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def offline_client(tmp_path):
    app = create_app(settings=_settings(tmp_path))
    with TestClient(app) as test_client:
        yield test_client


def _upload(client, content, file_name: str = "batch.csv"):
    data = content.encode("utf-8") if isinstance(content, str) else content
    return client.post(
        "/api/v1/bulk/upload",
        files={"file": (file_name, data, "text/csv")}
    )


def _wait_for_terminal(client, job_id: str, timeout: float = 30.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/v1/bulk/status/{job_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"Job {job_id} still {body['status']} after {timeout}s")
        time.sleep(0.05)


def test_root_and_liveness(client):
    assert client.get("/").json()["docs"] == "/docs"
    assert client.get("/api/v1/health/live").json()["status"] == "alive"


def test_health_reports_chain_details(client):
    body = client.get("/api/v1/health").json()

    assert body["status"] == "ok"
    assert body["blockchain"]["connected"] is True
    assert body["blockchain"]["chain_id"] == 31337
    assert body["active_jobs"] == 0


def test_health_is_degraded_without_chain(offline_client):
    body = offline_client.get("/api/v1/health").json()

    assert body["status"] == "degraded"
    assert body["blockchain"] == {"connected": False, "error": "not configured"}


def test_security_headers_are_set(client):
    response = client.get("/api/v1/health/live")
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_upload_validates_and_previews(client):
    content = sample_csv() + "Dan Brown,STU-2026-004,BSc,MIT,not a date,dan@example.com\n"

    response = _upload(client, content)

    assert response.status_code == 201
    body = response.json()
    assert body["validation"]["total_rows"] == 4
    assert body["validation"]["valid_count"] == 3
    assert body["validation"]["errors"][0]["field"] == "issue_date"
    assert body["validation"]["errors"][0]["row"] == 4
    assert [row["student_id"] for row in body["preview"]] == ["STU-2026-001", "STU-2026-002", "STU-2026-003"]

    status = client.get(f"/api/v1/bulk/status/{body['job_id']}").json()
    assert status["status"] == "validated"


def test_upload_rejects_other_formats(client):
    response = _upload(client, "a,b\n1,2\n", file_name="batch.xls")
    assert response.status_code == 400
    assert "Unsupported file format" in response.json()["detail"]


def test_upload_rejects_non_utf8_csv(client):
    response = _upload(client, b"studentName,studentId\n\xff\xfe\x00bad,1\n")

    assert response.status_code == 400
    assert "UTF-8" in response.json()["detail"]


def test_upload_accepts_xlsx(client):
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Student Name", "Student ID", "Degree", "Institution", "Issue Date"])
    sheet.append(["Ada Lovelace", "STU-1", "BSc", "London", "2026-06-15"])
    buffer = io.BytesIO()
    workbook.save(buffer)

    response = _upload(client, buffer.getvalue(), file_name="batch.xlsx")

    assert response.status_code == 201
    assert response.json()["validation"]["valid_count"] == 1
    assert response.json()["preview"][0]["student_name"] == "Ada Lovelace"


def test_upload_reports_missing_columns(client):
    response = _upload(client, "name,degree\nAda,BSc\n")

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["missing"] == ["student_id", "institution", "issue_date"]
    assert detail["hint"]


def test_upload_rejects_empty_file(client):
    response = _upload(client, "studentName,studentId,degree,institution,issueDate\n")
    assert response.status_code == 400
    assert response.json()["detail"] == "No data rows found in file"


def test_upload_over_size_limit(tmp_path, chain_client):
    app = create_app(settings=_settings(tmp_path, max_upload_size=64), chain_client=chain_client)
    with TestClient(app) as test_client:
        response = _upload(test_client, sample_csv())
    assert response.status_code == 413


def test_bulk_issuance_end_to_end(client, chain):
    job_id = _upload(client, sample_csv()).json()["job_id"]

    response = client.post("/api/v1/bulk/process", json={"job_id": job_id})
    assert response.status_code == 202
    assert response.json()["total_records"] == 3

    status = _wait_for_terminal(client, job_id)

    assert status["status"] == "completed"
    assert status["summary"]["blockchain_success"] == 3
    assert status["summary"]["nonces_consumed"] == 3
    assert status["summary"]["emails_skipped"] == 3
    assert chain.sent_nonces == [0, 1, 2]

    results = client.get(f"/api/v1/bulk/results/{job_id}").json()["results"]
    assert [result["row"] for result in results] == [1, 2, 3]
    cert_id = results[0]["cert_id"]

    verified = client.get(f"/api/v1/certificates/verify/{cert_id}").json()
    assert verified["verified"] is True
    assert verified["certificate"]["student_name"] == "Alice Johnson"

    archive = client.get(f"/api/v1/bulk/download/{job_id}")
    assert archive.headers["content-type"] == "application/zip"
    names = zipfile.ZipFile(io.BytesIO(archive.content)).namelist()
    assert "summary.json" in names
    assert any(name.startswith("certificates/") for name in names)

    again = client.post("/api/v1/bulk/process", json={"job_id": job_id})
    assert again.status_code == 409


def test_process_unknown_job(client):
    response = client.post("/api/v1/bulk/process", json={"job_id": "missing"})
    assert response.status_code == 404


def test_process_unknown_template(client):
    job_id = _upload(client, sample_csv()).json()["job_id"]

    response = client.post("/api/v1/bulk/process", json={"job_id": job_id, "template_id": "nope"})

    assert response.status_code == 400
    # Rejected before the job started, so it can still be processed
    assert client.get(f"/api/v1/bulk/status/{job_id}").json()["status"] == "validated"


def test_process_without_chain_is_unavailable(offline_client):
    job_id = _upload(offline_client, sample_csv()).json()["job_id"]

    response = offline_client.post("/api/v1/bulk/process", json={"job_id": job_id})

    assert response.status_code == 503


def test_results_before_completion_conflict(client):
    job_id = _upload(client, sample_csv()).json()["job_id"]

    assert client.get(f"/api/v1/bulk/results/{job_id}").status_code == 409
    assert client.get(f"/api/v1/bulk/download/{job_id}").status_code == 409


def test_status_unknown_job(client):
    assert client.get("/api/v1/bulk/status/missing").status_code == 404


def test_sample_csv_and_templates(client):
    sample = client.get("/api/v1/bulk/sample-csv")
    assert sample.text == sample_csv()

    templates = client.get("/api/v1/bulk/templates").json()["templates"]
    assert "default-certificate" in {template["id"] for template in templates}


def test_issue_single_certificate(client, chain):
    response = client.post("/api/v1/certificates/issue", json={
        "studentName": "Ada Lovelace",
        "studentId": "STU-9",
        "degree": "BSc Mathematics",
        "institution": "Test University",
        "issueDate": "2026-06-15",
    })

    assert response.status_code == 201
    certificate = response.json()["certificate"]
    assert certificate["blockchain"]["status"] == "success"
    assert certificate["notification"]["status"] == "skipped"
    assert certificate["content"]["pinned"] is False
    assert certificate["cert_id"] in chain.issued


def test_issue_single_invalid_record(client):
    response = client.post("/api/v1/certificates/issue", json={
        "studentName": "Ada Lovelace",
        "studentId": "STU-9",
        "degree": "BSc Mathematics",
        "institution": "Test University",
        "issueDate": "someday",
    })

    assert response.status_code == 400
    assert response.json()["detail"]["errors"] == ['Invalid date format: "someday". Use YYYY-MM-DD.']


def test_issue_single_revert_is_bad_gateway(client, chain):
    chain.revert.add("STU-9")

    response = client.post("/api/v1/certificates/issue", json={
        "studentName": "Ada Lovelace",
        "studentId": "STU-9",
        "degree": "BSc Mathematics",
        "institution": "Test University",
        "issueDate": "2026-06-15",
    })

    assert response.status_code == 502


def test_verify_unknown_certificate(client):
    assert client.get("/api/v1/certificates/verify/CERT-2026-999-NONE").status_code == 404


def test_certificate_routes_need_chain(offline_client):
    assert offline_client.get("/api/v1/certificates/stats").status_code == 503
    assert offline_client.get("/api/v1/certificates/verify/CERT-1").status_code == 503


def test_request_validation_error_shape(client):
    response = client.post("/api/v1/bulk/process", json={})

    assert response.status_code == 422
    assert response.json()["error"] == "Validation Error"


def test_qr_code_formats(offline_client):
    png = offline_client.get("/api/v1/qr/CERT-2026-001-ABCD")
    assert png.status_code == 200
    assert png.headers["content-type"] == "image/png"
    assert png.content.startswith(b"\x89PNG")

    svg = offline_client.get("/api/v1/qr/CERT-2026-001-ABCD", params={"format": "svg"})
    assert svg.headers["content-type"].startswith("image/svg+xml")
    assert "<svg" in svg.text

    body = offline_client.get("/api/v1/qr/CERT-2026-001-ABCD", params={"format": "dataurl", "width": 128}).json()
    assert body["data_url"].startswith("data:image/png;base64,")
    assert body["verify_url"] == "https://certs.example.com/verify?certId=CERT-2026-001-ABCD"


def test_qr_code_rejects_bad_parameters(offline_client):
    assert offline_client.get("/api/v1/qr/CERT-1", params={"format": "gif"}).status_code == 422
    assert offline_client.get("/api/v1/qr/CERT-1", params={"width": 10}).status_code == 422


def test_bulk_send_emails_status_codes(client):
    assert client.post("/api/v1/email/bulk-send/missing").status_code == 404

    job_id = _upload(client, sample_csv()).json()["job_id"]
    assert client.post(f"/api/v1/email/bulk-send/{job_id}").status_code == 409

    client.post("/api/v1/bulk/process", json={"job_id": job_id})
    assert _wait_for_terminal(client, job_id)["status"] == "completed"

    response = client.post(f"/api/v1/email/bulk-send/{job_id}")
    assert response.status_code == 503
    assert "SMTP_HOST" in response.json()["detail"]
