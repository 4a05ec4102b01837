from __future__ import annotations

from datetime import timedelta
from io import BytesIO

import pytest
from sqlalchemy import update

from ops_app.importer.utils import utc_now
from ops_app.models import ImportRecord, SignUp, StagedFile, db

BASE = "/admin/imports"


def _upload(client, content: bytes, filename="signups.csv", mimetype="text/csv"):
    return client.post(
        f"{BASE}/parse",
        data={"file": (BytesIO(content), filename, mimetype)},
        content_type="multipart/form-data",
    )


def _staged(client, text: str) -> str:
    response = _upload(client, text.encode("utf-8"))
    assert response.status_code == 201, response.get_json()
    return response.get_json()["file_id"]


def _prepare(client, text: str, data_types=("sign_ups",)) -> str:
    file_id = _staged(client, text)
    validated = client.post(f"{BASE}/validate", json={"file_id": file_id, "data_types": list(data_types)})
    assert validated.status_code == 200, validated.get_json()
    reconciled = client.post(f"{BASE}/reconcile", json={"file_id": file_id})
    assert reconciled.status_code == 200, reconciled.get_json()
    return file_id


@pytest.fixture
def admin_client(client, login, admin_user):
    login(admin_user)
    return client


@pytest.fixture
def ambiguous_sheet(ambassador_factory, operator_factory):
    ambassador_factory("John", "Smith", email="john.smith@example.com")
    ambassador_factory("John", "Smith", email="jsmith@example.com")
    operator_factory("FanDuel")
    return (
        "Ambassador Name,Date,State,Event,Rate,Operator,Email,firstname,lastname,CPA\n"
        "John Smith,1/5/2025,KS,,Standard,FanDuel,carol@example.com,Carol,King,$100\n"
        "John Smith,1/6/2025,KS,,Standard,FanDuel,dave@example.com,Dave,Ray,$100\n"
    )


def test_requires_authentication(client):
    response = client.get(f"{BASE}/")

    assert response.status_code == 401
    assert response.get_json()["error_code"] == "UNAUTHORIZED"


def test_viewer_can_read_history_but_not_upload(client, login, viewer_user, signups_csv):
    login(viewer_user)

    history = client.get(f"{BASE}/")
    upload = _upload(client, signups_csv.encode("utf-8"))

    assert history.status_code == 200
    assert upload.status_code == 403
    assert upload.get_json()["error_code"] == "FORBIDDEN"
    assert db.session.query(StagedFile).count() == 0


def test_inactive_user_is_forbidden(client, login, make_user):
    login(make_user("admin", is_active=False))

    response = client.get(f"{BASE}/")

    assert response.status_code == 403


def test_disabled_importer_returns_not_found(app, admin_client):
    app.config["IMPORTER_ENABLED"] = False

    response = admin_client.get(f"{BASE}/")

    assert response.status_code == 404
    assert response.get_json() == {"error": "Importer is disabled."}


def test_parse_upload(admin_client, signups_csv):
    response = _upload(admin_client, signups_csv.encode("utf-8"))

    assert response.status_code == 201
    payload = response.get_json()
    assert payload["file_name"] == "signups.csv"
    assert payload["total_rows"] == 3
    assert payload["import_status"] == "pending"
    assert "sign_ups" in payload["detected_data_types"]
    assert payload["preview_rows"][0]["Ambassador Name"] == "Jane Doe"


def test_parse_requires_file(admin_client):
    response = admin_client.post(f"{BASE}/parse")

    assert response.status_code == 400
    assert response.get_json()["error_code"] == "BAD_REQUEST"


def test_parse_rejects_unknown_format(admin_client):
    response = _upload(admin_client, b"%PDF-1.4", filename="report.pdf", mimetype="application/pdf")

    assert response.status_code == 400
    assert response.get_json()["error_code"] == "INVALID_FILE_FORMAT"


def test_parse_rejects_oversized_upload(app, admin_client):
    app.config["IMPORTER_MAX_UPLOAD_MB"] = 1

    response = _upload(admin_client, b"a" * (1024 * 1024 + 10))

    assert response.status_code == 413
    payload = response.get_json()
    assert payload["error_code"] == "FILE_TOO_LARGE"
    assert payload["details"]["max_size"] == 1024 * 1024


def test_request_body_over_content_limit(app, admin_client, monkeypatch):
    monkeypatch.setitem(app.config, "MAX_CONTENT_LENGTH", 64)

    response = _upload(admin_client, b"x" * 512)

    assert response.status_code == 413
    assert response.get_json()["error_code"] == "FILE_TOO_LARGE"


def test_file_status_and_expiry(admin_client, signups_csv):
    file_id = _staged(admin_client, signups_csv)

    status = admin_client.get(f"{BASE}/files/{file_id}")
    assert status.status_code == 200
    assert status.get_json()["import_status"] == "pending"
    assert status.get_json()["total_ambiguous"] == 0

    db.session.execute(
        update(StagedFile)
        .where(StagedFile.id == file_id)
        .values(expires_at=utc_now() - timedelta(minutes=1))
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    db.session.expire_all()

    expired = admin_client.get(f"{BASE}/files/{file_id}")
    gone = admin_client.get(f"{BASE}/files/{file_id}")
    assert expired.status_code == 410
    assert expired.get_json()["error_code"] == "FILE_EXPIRED"
    assert gone.status_code == 404
    assert gone.get_json()["error_code"] == "FILE_NOT_FOUND"


@pytest.mark.parametrize(
    "body",
    [{}, {"file_id": "  "}, {"file_id": 12}],
)
def test_validate_requires_file_id(admin_client, body):
    response = admin_client.post(f"{BASE}/validate", json=body)

    assert response.status_code == 400
    assert response.get_json()["details"] == {"field": "file_id"}


def test_validate_requires_json_object(admin_client):
    response = admin_client.post(f"{BASE}/validate", data="not json", content_type="text/plain")

    assert response.status_code == 400
    assert response.get_json()["message"] == "Request body must be a JSON object."


def test_validate_reports_failure(admin_client):
    file_id = _staged(
        admin_client,
        "Ambassador Name,Date,State,Event,Rate,Operator,Email,firstname,lastname,CPA\n"
        "Jane Doe,1/5/2025,KS,,Standard,FanDuel,broken-email,A,B,$10\n",
    )

    response = admin_client.post(
        f"{BASE}/validate", json={"file_id": file_id, "data_types": ["sign_ups"], "validation_mode": "strict"}
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["validation_passed"] is False
    assert payload["import_status"] == "failed"


def test_full_import_flow(admin_client, signups_csv, admin_user):
    file_id = _prepare(admin_client, signups_csv)

    response = admin_client.post(f"{BASE}/{file_id}/execute", json={"confirm": True})

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["execution_status"] == "completed"
    assert payload["summary"]["sign_ups_imported"] == 2
    assert payload["imported_by"] == admin_user.id
    assert payload["imported_by_name"] == "Admin User"
    assert db.session.query(SignUp).count() == 2

    again = admin_client.post(f"{BASE}/{file_id}/execute", json={"confirm": True})
    assert again.status_code == 409
    assert again.get_json()["error_code"] == "IMPORT_ALREADY_EXECUTED"


def test_execute_requires_confirmation(admin_client, signups_csv):
    file_id = _prepare(admin_client, signups_csv)

    missing = admin_client.post(f"{BASE}/{file_id}/execute", json={})
    invalid = admin_client.post(f"{BASE}/{file_id}/execute", json={"confirm": "maybe"})

    assert missing.status_code == 400
    assert missing.get_json()["details"] == {"field": "confirm"}
    assert invalid.status_code == 400
    assert invalid.get_json()["message"] == "'confirm' must be a boolean."
    assert db.session.query(ImportRecord).count() == 0


def test_execute_dry_run_flag(admin_client, signups_csv):
    file_id = _prepare(admin_client, signups_csv)

    response = admin_client.post(f"{BASE}/{file_id}/execute", json={"confirm": "true", "dry_run": "yes"})

    assert response.status_code == 200
    assert response.get_json()["dry_run"] is True
    assert db.session.query(SignUp).count() == 0


def test_execute_before_reconciliation(admin_client, signups_csv):
    file_id = _staged(admin_client, signups_csv)

    response = admin_client.post(f"{BASE}/{file_id}/execute", json={"confirm": True})

    assert response.status_code == 422
    assert response.get_json()["error_code"] == "IMPORT_NOT_READY"


def test_ambiguous_flow_with_decisions(admin_client, ambiguous_sheet):
    file_id = _staged(admin_client, ambiguous_sheet)
    admin_client.post(f"{BASE}/validate", json={"file_id": file_id, "data_types": ["sign_ups"]})
    reconciled = admin_client.post(f"{BASE}/reconcile", json={"file_id": file_id}).get_json()

    assert reconciled["status"] == "needs_review"
    match = reconciled["ambiguous_matches"][0]
    assert match["import_value"] == "John Smith"
    assert len(match["candidates"]) == 2

    blocked = admin_client.post(f"{BASE}/{file_id}/execute", json={"confirm": True})
    assert blocked.status_code == 422
    assert blocked.get_json()["error_code"] == "RECONCILIATION_NOT_COMPLETE"

    decided = admin_client.put(
        f"{BASE}/{file_id}/reconciliation",
        json={"decisions": [{"ambiguous_match_id": match["id"], "user_selection": "use_match"}]},
    )
    assert decided.status_code == 200
    assert decided.get_json()["all_resolved"] is True
    assert admin_client.get(f"{BASE}/files/{file_id}").get_json()["resolved_ambiguous"] == 1

    executed = admin_client.post(f"{BASE}/{file_id}/execute", json={"confirm": True})
    assert executed.status_code == 200
    assert executed.get_json()["summary"]["sign_ups_imported"] == 2
    assert executed.get_json()["summary"]["new_ambassadors_created"] == 0


def test_decisions_reject_bad_payload(admin_client, ambiguous_sheet):
    file_id = _prepare(admin_client, ambiguous_sheet)

    response = admin_client.put(f"{BASE}/{file_id}/reconciliation", json={"decisions": "use_match"})

    assert response.status_code == 400
    assert response.get_json()["error_code"] == "BAD_REQUEST"


def test_history_detail_report_and_audit(admin_client, signups_csv):
    file_id = _prepare(admin_client, signups_csv)
    import_id = admin_client.post(f"{BASE}/{file_id}/execute", json={"confirm": True}).get_json()["import_id"]

    history = admin_client.get(f"{BASE}/", query_string={"status": "completed", "data_type": "sign_ups"})
    assert history.status_code == 200
    listing = history.get_json()
    assert [item["import_id"] for item in listing["imports"]] == [import_id]
    assert listing["filters"]["statuses"] == ["completed"]
    assert listing["filters"]["data_types"] == ["sign_ups"]

    detail = admin_client.get(f"{BASE}/{import_id}")
    assert detail.status_code == 200
    assert detail.get_json()["file_id"] == file_id

    report = admin_client.get(f"{BASE}/{import_id}/report")
    assert report.status_code == 200
    assert report.get_json()["report_data"]["import_id"] == import_id

    exported = admin_client.get(f"{BASE}/{import_id}/report", query_string={"format": "csv"})
    assert exported.status_code == 200
    assert exported.mimetype == "text/csv"
    assert exported.headers["Content-Disposition"] == f'attachment; filename="import-report-{import_id}.csv"'
    assert exported.get_data(as_text=True).splitlines()[0] == "section,key,value"

    trail = admin_client.get(f"{BASE}/{import_id}/audit-trail").get_json()
    assert trail["import_id"] == import_id
    assert trail["total"] == 7
    assert {entry["actor"]["name"] for entry in trail["entries"]} == {"Admin User"}

    uploads = admin_client.get(f"{BASE}/audit", query_string={"action": "file_uploaded"}).get_json()
    assert uploads["total"] == 1
    assert uploads["entries"][0]["subject_id"] == file_id


def test_history_rejects_bad_filters(admin_client):
    response = admin_client.get(f"{BASE}/", query_string={"sort": "size"})

    assert response.status_code == 400
    assert response.get_json()["error_code"] == "BAD_REQUEST"


def test_unknown_import(admin_client):
    detail = admin_client.get(f"{BASE}/missing-import")
    report = admin_client.get(f"{BASE}/missing-import/report")

    assert detail.status_code == 404
    assert detail.get_json()["error_code"] == "IMPORT_NOT_FOUND"
    assert report.status_code == 404


def test_audit_trail_rejects_bad_paging(admin_client):
    response = admin_client.get(f"{BASE}/anything/audit-trail", query_string={"page_size": "0"})

    assert response.status_code == 400


def test_importer_health(client, stage_csv, signups_csv):
    stage_csv(signups_csv)

    response = client.get("/importer/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["enabled"] is True
    assert payload["staged_files"] == {"pending": 1}
    assert payload["staged_total"] == 1
