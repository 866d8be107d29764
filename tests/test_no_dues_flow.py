from __future__ import annotations

import io
import json
import os

from db import SessionLocal
from passwords import hash_password
from services.record_store import FORM_HISTORY, PENDING_FORMS, USERS, DbRecordStore


def _api(client, payload: dict):
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def _login(client, user_id: str, role: str = "EMPLOYEE") -> str:
    res = _api(client, {"action": "LOGIN_EXCHANGE", "token": None, "data": {"idToken": f"TEST:{user_id}:{role}"}})
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    return body["data"]["sessionToken"]


def _call(client, token: str, action: str, data: dict | None = None):
    res = _api(client, {"action": action, "token": token, "data": data or {}})
    return res.status_code, res.get_json()


def _seed(collection: str, value) -> None:
    with SessionLocal() as db:
        store = DbRecordStore(db)
        with store.transaction(collection):
            store.save(collection, value)


def _load(collection: str) -> list:
    with SessionLocal() as db:
        return DbRecordStore(db).load_list(collection)


def _submit(client, token: str, **overrides):
    form = {
        "name": "Asha Rao",
        "email": "asha@example.com",
        "department": "Finance",
        "noDuesType": "Transfer",
        "reason": "Relocation",
        "orderLetter": (io.BytesIO(b"%PDF-1.4 order letter"), "order letter.pdf"),
    }
    form.update(overrides)
    return client.post("/api/employee/no-dues", data=form, headers={"Authorization": f"Bearer {token}"})


def test_full_clearance_flow(app_client):
    app, client = app_client
    cfg = app.config["CFG"]

    emp = _login(client, "E1")
    it = _login(client, "I1", "IT")
    hod = _login(client, "H1", "HOD")

    res = _submit(client, emp)
    assert res.status_code == 200, res.get_json()
    form_id = res.get_json()["data"]["formId"]
    assert res.get_json()["data"]["status"] == "pending"
    assert len(os.listdir(cfg.UPLOAD_DIR)) == 1

    # Second submission conflicts and leaves no orphaned upload behind.
    res = _submit(client, emp)
    assert res.status_code == 409
    assert res.get_json()["error"]["message"] == f"You already have a pending application ({form_id})"
    assert len(os.listdir(cfg.UPLOAD_DIR)) == 1

    status, body = _call(client, it, "CASE_REVIEW_QUEUE")
    assert status == 200
    assert [c["formId"] for c in body["data"]["cases"]] == [form_id]

    status, body = _call(
        client,
        it,
        "CASE_ASSIGN_FORMS",
        {"formId": form_id, "assignedForms": [{"title": "Disposal Form"}, {"title": "E-File"}, {"title": "Form 365 - Transfer"}]},
    )
    assert status == 200
    assert body["data"]["status"] == "approved"

    status, body = _call(client, emp, "ASSIGNED_FORMS")
    assert body["data"]["assignedFormsCount"] == 3

    res = client.post(
        "/api/employee/forms/disposal",
        json={"disposalForm": json.dumps({"empName": "Asha Rao", "empNo": "E1", "itemsDisposed": "Laptop"})},
        headers={"Authorization": f"Bearer {emp}"},
    )
    assert res.status_code == 200
    assert res.get_json()["data"]["storageKey"] == "disposalFormData"

    status, body = _call(client, emp, "FORM_DATA_GET", {"formName": "disposalForm"})
    assert body["data"]["hasData"] is True
    assert body["data"]["formData"]["itemsDisposed"] == "Laptop"

    status, body = _call(
        client,
        emp,
        "FINAL_SUBMIT",
        {
            "disposalForm": {"empName": "Asha Rao", "empNo": "E1", "itemsDisposed": "Laptop"},
            "efileForm": {"empName": "Asha Rao", "fileNo": "EF-9"},
            "form365Transfer": {"nameFrom": "Asha Rao", "transferTo": "Audit"},
        },
    )
    assert status == 200, body
    assert body["data"]["status"] == "Submitted to HOD"

    # Employees cannot drive reviewer transitions.
    status, body = _call(client, emp, "CASE_HOD_APPROVE", {"formId": form_id})
    assert status == 403
    assert body["error"]["code"] == "FORBIDDEN"

    status, body = _call(client, it, "CASE_IT_COMPLETE", {"formId": form_id})
    assert status == 409

    res = client.post(f"/api/review/cases/{form_id}/hod-approve", json={"remarks": "ok"}, headers={"Authorization": f"Bearer {hod}"})
    assert res.status_code == 200
    assert res.get_json()["data"]["status"] == "Submitted to IT"

    res = client.post(f"/api/review/cases/{form_id}/it-complete", json={"remarks": "cleared"}, headers={"Authorization": f"Bearer {it}"})
    assert res.status_code == 200, res.get_json()
    out = res.get_json()["data"]
    assert out["status"] == "IT Completed"
    assert out["certificatesGenerated"] == 3
    assert out["certificatesFailed"] == 0

    history = _load(FORM_HISTORY)
    assert [h["formId"] for h in history] == [form_id]
    assert history[0]["finalStatus"] == "IT Completed"

    status, body = _call(client, emp, "CERTIFICATES_LIST")
    certs = body["data"]["certificates"]
    assert body["data"]["count"] == 3
    assert {c["source"] for c in certs} == {"active"}
    assert all("filepath" not in c for c in certs)

    cert_id = certs[0]["id"]
    res = client.get(f"/api/employee/certificates/{cert_id}/download", headers={"Authorization": f"Bearer {emp}"})
    assert res.status_code == 200
    assert res.mimetype == "application/pdf"
    assert "attachment" in res.headers["Content-Disposition"]
    assert res.data.startswith(b"%PDF-")

    other = _login(client, "E2")
    res = client.get(f"/api/employee/certificates/{cert_id}/download", headers={"Authorization": f"Bearer {other}"})
    assert res.status_code == 403
    assert res.get_json()["error"]["message"] == "Access denied"

    status, body = _call(client, emp, "TRACKING_DETAILS")
    steps = [e["step"] for e in body["data"]["timeline"]]
    assert body["data"]["status"] == "IT Completed"
    assert "certificates_generated" in steps
    assert "hod_approved" in steps

    status, body = _call(client, emp, "NOTIFICATIONS_PENDING")
    assert [n["type"] for n in body["data"]["notifications"]] == ["form_approval", "certificates_ready"]

    status, body = _call(client, emp, "HISTORY_LIST")
    assert body["data"]["summary"]["completedApplications"] == 1
    assert body["data"]["summary"]["totalCertificates"] == 3

    status, body = _call(client, emp, "DASHBOARD_STATUS")
    assert body["data"]["applicationStatus"] == "IT Completed"
    assert body["data"]["certificatesAvailable"] == 3

    # A completed case does not block the next application.
    res = _submit(client, emp)
    assert res.status_code == 200


def test_rejection_archives_and_allows_resubmission(app_client):
    _app, client = app_client
    emp = _login(client, "E5")
    it = _login(client, "I1", "IT")

    form_id = _submit(client, emp).get_json()["data"]["formId"]

    status, body = _call(client, it, "CASE_REJECT", {"formId": form_id})
    assert status == 400
    assert body["error"]["message"] == "Missing rejection reason"

    status, body = _call(client, it, "CASE_REJECT", {"formId": form_id, "reason": "Wrong order letter"})
    assert status == 200
    assert body["data"]["status"] == "rejected"

    status, body = _call(client, emp, "DASHBOARD_STATUS")
    assert body["data"]["applicationStatus"] == "rejected"
    assert body["data"]["formId"] is None
    assert body["data"]["rejectionReason"] == "Wrong order letter"
    assert body["data"]["canSubmitNew"] is True

    history = _load(FORM_HISTORY)
    assert history[0]["finalStatus"] == "rejected"
    assert history[0]["itProcessing"]["action"] == "rejected"

    status, body = _call(client, emp, "NOTIFICATIONS_HISTORY")
    assert body["data"]["notifications"][0]["details"]["rejectionStage"] == "IT"

    assert _submit(client, emp).status_code == 200


def test_sub_form_save_without_case(app_client):
    _app, client = app_client
    emp = _login(client, "E7")

    status, body = _call(client, emp, "SAVE_EFILE_FORM", {"efileForm": {"fileNo": "1"}})
    assert status == 404
    assert body["error"]["message"] == "No pending form found for this employee. Please submit initial application first."

    status, body = _call(client, emp, "FORM_DATA_GET", {"formName": "disposalForm"})
    assert status == 404

    status, body = _call(client, emp, "TRACKING_DETAILS")
    assert body["data"] == {"hasApplication": False, "status": "Not Submitted", "timeline": [], "forms": []}


def test_submission_validation(app_client):
    app, client = app_client
    emp = _login(client, "E8")

    res = client.post(
        "/api/employee/no-dues",
        data={"name": "A", "email": "a@x", "department": "IT", "noDuesType": "Transfer"},
        headers={"Authorization": f"Bearer {emp}"},
    )
    assert res.status_code == 400
    assert res.get_json()["error"]["message"] == "Order letter file is required"

    res = _submit(client, emp, orderLetter=(io.BytesIO(b"MZ..."), "tool.exe"))
    assert res.status_code == 400
    assert os.listdir(app.config["CFG"].UPLOAD_DIR) == []

    res = _submit(client, emp, department="")
    assert res.status_code == 400
    assert res.get_json()["error"]["message"].startswith("Missing required fields")
    assert os.listdir(app.config["CFG"].UPLOAD_DIR) == []


def test_action_submit_requires_a_stored_order_letter(app_client):
    app, client = app_client
    emp = _login(client, "E10")
    fields = {"name": "A", "email": "a@x", "department": "IT", "noDuesType": "Transfer"}

    status, body = _call(client, emp, "NO_DUES_SUBMIT", {**fields, "orderLetter": "../../etc/passwd"})
    assert status == 400
    assert body["error"]["message"] == "Invalid order letter reference"

    status, body = _call(client, emp, "NO_DUES_SUBMIT", {**fields, "orderLetter": "never_uploaded.pdf"})
    assert status == 400
    assert body["error"]["message"] == "Order letter file not found"
    assert _load(PENDING_FORMS) == []

    upload_dir = app.config["CFG"].UPLOAD_DIR
    with open(os.path.join(upload_dir, "abc123_letter.pdf"), "wb") as f:
        f.write(b"%PDF-1.4 letter")
    status, body = _call(client, emp, "NO_DUES_SUBMIT", {**fields, "orderLetter": "abc123_letter.pdf"})
    assert status == 200
    assert body["data"]["status"] == "pending"


def test_sub_form_save_after_terminal_case_is_not_found(app_client):
    _app, client = app_client
    emp = _login(client, "E11")
    it = _login(client, "I1", "IT")
    form_id = _submit(client, emp).get_json()["data"]["formId"]
    _call(client, it, "CASE_REJECT", {"formId": form_id, "reason": "Wrong letter"})

    status, body = _call(client, emp, "SAVE_DISPOSAL_FORM", {"disposalForm": {"a": 1}})
    assert status == 404
    assert body["error"]["message"] == "No pending form found for this employee. Please submit initial application first."


def test_auth_and_rbac_errors(app_client):
    _app, client = app_client

    status, body = _call(client, "", "TRACK_FORMS")
    assert status == 401
    assert body["error"]["code"] == "AUTH_INVALID"

    emp = _login(client, "E9")
    status, body = _call(client, emp, "NOT_A_THING")
    assert status == 400
    assert body["error"]["code"] == "BAD_REQUEST"

    status, body = _call(client, emp, "CERTIFICATES_STATS")
    assert status == 403

    status, body = _call(client, emp, "MY_PERMISSIONS_GET")
    assert "NO_DUES_SUBMIT" in body["data"]["actionKeys"]
    assert "CASE_IT_COMPLETE" not in body["data"]["actionKeys"]

    res = client.post("/api/auth/logout", headers={"Authorization": f"Bearer {emp}"})
    assert res.status_code == 200
    status, body = _call(client, emp, "GET_ME")
    assert status == 401


def test_employee_password_login(app_client):
    _app, client = app_client
    _seed(
        USERS,
        [{"employeeId": "E42", "name": "Ravi", "department": "Ops", "passwordHash": hash_password("correct horse")}],
    )

    res = client.post("/api/auth/login", json={"employeeId": "E42", "password": "wrong"})
    assert res.status_code == 401
    assert res.get_json()["error"]["message"] == "Invalid credentials"

    res = client.post("/api/auth/login", json={"employeeId": "E404", "password": "whatever"})
    assert res.status_code == 401

    res = client.post("/api/auth/login", json={"employeeId": "E42", "password": "correct horse"})
    assert res.status_code == 200
    data = res.get_json()["data"]
    assert data["me"]["role"] == "EMPLOYEE"
    assert data["me"]["fullName"] == "Ravi"

    status, body = _call(client, data["sessionToken"], "EMPLOYEE_INFO")
    assert body["data"]["employee"] == {"name": "Ravi", "employeeId": "E42", "department": "Ops"}


def test_admin_certificate_maintenance(app_client):
    app, client = app_client
    admin = _login(client, "A1", "ADMIN")
    cert_dir = app.config["CFG"].CERTIFICATES_DIR
    with open(os.path.join(cert_dir, "old.pdf"), "wb") as f:
        f.write(b"%PDF-old")
    os.utime(os.path.join(cert_dir, "old.pdf"), (1_000_000, 1_000_000))

    res = client.get("/api/admin/certificates/stats", headers={"Authorization": f"Bearer {admin}"})
    assert res.get_json()["data"]["totalCertificates"] == 1

    res = client.post("/api/admin/certificates/cleanup", json={}, headers={"Authorization": f"Bearer {admin}"})
    assert res.status_code == 200
    assert res.get_json()["data"]["deletedCount"] == 1
    assert os.listdir(cert_dir) == []
