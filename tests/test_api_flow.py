from __future__ import annotations

from decimal import Decimal

from fastapi.testclient import TestClient

from reportflow.core.db import SessionLocal
from reportflow.core.security import create_access_token
from reportflow.main import app
from reportflow.modules.identity.models import UserRole
from reportflow.modules.identity.service import create_user

HTML_REPORT = b"""
<html><body>
<table>
  <thead><tr><th>Date</th><th>Item</th><th>Total amount charged</th></tr></thead>
  <tbody>
    <tr><td>1 Jan</td><td>Hotel</td><td>50</td></tr>
    <tr><td>2 Jan</td><td>Taxi</td><td>75</td></tr>
  </tbody>
</table>
</body></html>
"""


def _token(email: str, role: UserRole) -> dict[str, str]:
    with SessionLocal() as session:
        user = create_user(session, email=email, password="pw", role=role, full_name=email)
        token = create_access_token(subject=str(user.id), role=user.role.value)
    return {"Authorization": f"Bearer {token}"}


def test_report_is_uploaded_approved_and_paid_over_http():
    client = TestClient(app)
    employee = _token("employee@example.com", UserRole.USER)
    manager = _token("manager@example.com", UserRole.MANAGER)

    resp = client.post("/api/reports", json={"report_date": "2026-01-31"}, headers=employee)
    assert resp.status_code == 200
    report_id = resp.json()["id"]
    assert resp.json()["status"] == "pending"

    resp = client.post(
        f"/api/reports/{report_id}/files",
        files=[
            ("uploads", ("statement.html", HTML_REPORT, "text/html")),
            ("uploads", ("invoice.txt", b"Total 10", "text/plain")),
        ],
        headers=employee,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert [f["status"] for f in body["files"]] == ["completed"]
    assert Decimal(body["files"][0]["total_amount"]) == Decimal("125.00")
    assert body["rejected"][0]["filename"] == "invoice.txt"
    assert body["rejected"][0]["code"] == "UNSUPPORTED_FILE_TYPE"

    resp = client.post(f"/api/reports/{report_id}/submit", headers=employee)
    assert resp.status_code == 200
    assert resp.json()["report"]["status"] == "pending_approval"
    assert Decimal(resp.json()["report"]["total_amount"]) == Decimal("125.00")

    inbox = client.get("/api/approvals/inbox", headers=manager).json()
    assert [r["id"] for r in inbox] == [report_id]
    assert client.get("/api/approvals/inbox", headers=employee).status_code == 403

    resp = client.post(
        f"/api/reports/{report_id}/approve", json={"comments": "ok"}, headers=manager
    )
    assert resp.status_code == 200
    assert resp.json()["applied"] is True
    assert resp.json()["report"]["status"] == "approved"

    resp = client.post(
        f"/api/reports/{report_id}/payment/proofs",
        files={"upload": ("receipt.png", b"\x89PNG proof", "image/png")},
        data={"method": "upi", "transaction_id": "UPI-1"},
        headers=employee,
    )
    assert resp.status_code == 200
    proof_id = resp.json()["proof"]["id"]
    assert resp.json()["payment"]["status"] == "pending_approval"

    queue = client.get("/api/approvals/proofs", headers=manager).json()
    assert [p["id"] for p in queue] == [proof_id]

    download = client.get(f"/api/proofs/{proof_id}/download", headers=manager)
    assert download.status_code == 200
    assert download.content == b"\x89PNG proof"

    resp = client.post(f"/api/proofs/{proof_id}/approve", headers=manager)
    assert resp.status_code == 200
    assert resp.json()["payment"]["status"] == "completed"

    payment = client.get(f"/api/reports/{report_id}/payment", headers=employee).json()
    assert payment["status"] == "completed"

    history = client.get("/api/payments", headers=employee).json()
    assert history["stats"]["total_payments"] == 1
    assert history["stats"]["completed_count"] == 1

    history_entries = client.get(f"/api/reports/{report_id}/history", headers=employee).json()
    actions = [h["action"] for h in history_entries]
    assert actions[0] == "report_submitted"
    assert "payment_proof_approved" in actions

    notifications = client.get("/api/notifications", headers=employee).json()
    assert [n["type"] for n in notifications["items"]] == [
        "payment_proof_approved",
        "report_approved",
    ]
    assert client.get("/api/notifications/unread-count", headers=employee).json() == {
        "unread_count": 2
    }
    assert client.post("/api/notifications/read-all", headers=employee).json() == {"updated": 2}

    stats = client.get("/api/manager/dashboard-stats", headers=manager).json()
    assert stats["reports_by_status"]["approved"] == 1
    assert Decimal(stats["paid_amount"]) == Decimal("125.00")


def test_invalid_transition_is_reported_as_conflict():
    client = TestClient(app)
    employee = _token("employee@example.com", UserRole.USER)
    manager = _token("manager@example.com", UserRole.MANAGER)

    report_id = client.post(
        "/api/reports", json={"report_date": "2026-01-31"}, headers=employee
    ).json()["id"]
    client.post(
        f"/api/reports/{report_id}/files",
        files=[("uploads", ("a.csv", b"Item,Amount\nA,10\n", "text/csv"))],
        headers=employee,
    )

    resp = client.post(f"/api/reports/{report_id}/approve", headers=manager)
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "INVALID_TRANSITION"
    assert resp.json()["detail"]["current_status"] == "processing"

    resp = client.post(f"/api/reports/{report_id}/reject", json={"comments": ""}, headers=manager)
    assert resp.status_code == 400


def test_extract_preview_returns_amounts_without_storing():
    client = TestClient(app)
    employee = _token("employee@example.com", UserRole.USER)

    resp = client.post(
        "/api/extract",
        files={"upload": ("r.csv", b"Item,Amount\nA,100.50\nB,junk\nC,200\n", "text/csv")},
        headers=employee,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["matched_column"] == "Amount"
    assert [Decimal(a["value"]) for a in body["amounts"]] == [Decimal("100.50"), Decimal("200")]
    assert Decimal(body["total"]) == Decimal("300.50")

    resp = client.post(
        "/api/extract",
        files={"upload": ("invoice.txt", b"Total 10", "text/plain")},
        headers=employee,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "UNSUPPORTED_FILE_TYPE"


def test_login_and_health_endpoints():
    with SessionLocal() as session:
        create_user(session, email="user@example.com", password="secret", role=UserRole.USER)

    client = TestClient(app)
    resp = client.post(
        "/api/auth/token", data={"username": "user@example.com", "password": "secret"}
    )
    assert resp.status_code == 200
    assert resp.json()["role"] == "user"
    assert resp.json()["token_type"] == "bearer"
    headers = {"Authorization": f"Bearer {resp.json()['access_token']}"}
    assert client.get("/api/auth/me", headers=headers).json()["email"] == "user@example.com"

    bad = client.post("/api/auth/token", data={"username": "user@example.com", "password": "x"})
    assert bad.status_code == 401

    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/healthz/storage").status_code == 200


def test_role_change_invalidates_tokens_issued_under_the_old_role():
    client = TestClient(app)
    admin = _token("admin@example.com", UserRole.ADMIN)
    manager = _token("manager@example.com", UserRole.MANAGER)
    manager_id = client.get("/api/auth/me", headers=manager).json()["id"]

    resp = client.patch(f"/api/users/{manager_id}/role", json={"role": "user"}, headers=admin)
    assert resp.status_code == 200
    assert resp.json()["role"] == "user"

    stale = client.get("/api/approvals/inbox", headers=manager)
    assert stale.status_code == 401

    admin_id = client.get("/api/auth/me", headers=admin).json()["id"]
    resp = client.patch(f"/api/users/{admin_id}/role", json={"role": "manager"}, headers=admin)
    assert resp.status_code == 400


def _approved_report_over_http(client, employee, manager) -> str:
    report_id = client.post(
        "/api/reports", json={"report_date": "2026-01-31"}, headers=employee
    ).json()["id"]
    client.post(
        f"/api/reports/{report_id}/files",
        files=[("uploads", ("a.csv", b"Item,Amount\nA,10\n", "text/csv"))],
        headers=employee,
    )
    client.post(f"/api/reports/{report_id}/submit", headers=employee)
    client.post(f"/api/reports/{report_id}/approve", headers=manager)
    return report_id


def test_dashboards_and_recent_lists():
    client = TestClient(app)
    employee = _token("employee@example.com", UserRole.USER)
    other = _token("other@example.com", UserRole.USER)
    manager = _token("manager@example.com", UserRole.MANAGER)
    admin = _token("admin@example.com", UserRole.ADMIN)
    report_id = _approved_report_over_http(client, employee, manager)

    resp = client.post(
        f"/api/reports/{report_id}/payment/proofs",
        files={"upload": ("receipt.png", b"\x89PNG part", "image/png")},
        data={"method": "upi", "amount": "4"},
        headers=employee,
    )
    proof_id = resp.json()["proof"]["id"]

    stats = client.get("/api/dashboard/stats", headers=employee).json()
    assert stats["total_reports"] == 1
    assert stats["reports_this_month"] == 1
    assert stats["reports_by_status"]["approved"] == 1
    assert Decimal(stats["paid_amount"]) == Decimal("0.00")
    assert Decimal(stats["awaiting_payment_amount"]) == Decimal("10.00")
    assert stats["proofs_in_review_count"] == 1

    activity = client.get("/api/manager/recent-activity", headers=manager).json()
    assert [p["id"] for p in activity["pending_proofs"]] == [proof_id]
    assert activity["pending_reports"] == []
    assert client.get("/api/manager/recent-activity", headers=employee).status_code == 403

    client.post(f"/api/proofs/{proof_id}/approve", headers=manager)

    stats = client.get("/api/dashboard/stats", headers=employee).json()
    assert Decimal(stats["paid_amount"]) == Decimal("4.00")
    assert Decimal(stats["awaiting_payment_amount"]) == Decimal("6.00")
    assert stats["proofs_in_review_count"] == 0
    assert client.get("/api/dashboard/stats", headers=other).json()["total_reports"] == 0

    recent = client.get("/api/dashboard/recent-reports", headers=employee).json()
    assert [r["id"] for r in recent] == [report_id]
    assert client.get("/api/dashboard/recent-reports", headers=other).json() == []
    payments = client.get("/api/dashboard/recent-payments", headers=employee).json()
    assert [(p["report_id"], p["status"]) for p in payments] == [(report_id, "partial")]
    assert client.get("/api/dashboard/recent-reports?limit=0", headers=employee).status_code == 422

    actions = client.get("/api/manager/recent-activity", headers=manager).json()["recent_actions"]
    assert {a["action"] for a in actions} == {"report_approved", "payment_proof_approved"}

    overview = client.get("/api/admin/dashboard-stats", headers=admin).json()
    assert overview["total_users"] == 4
    assert overview["active_users"] == 1
    assert overview["total_reports"] == 1
    assert overview["reports_this_month"] == 1
    assert Decimal(overview["paid_amount"]) == Decimal("4.00")
    assert Decimal(overview["outstanding_payment_amount"]) == Decimal("6.00")
    assert client.get("/api/admin/dashboard-stats", headers=manager).status_code == 403


def test_manager_comment_is_recorded_without_changing_status():
    client = TestClient(app)
    employee = _token("employee@example.com", UserRole.USER)
    manager = _token("manager@example.com", UserRole.MANAGER)
    report_id = _approved_report_over_http(client, employee, manager)

    resp = client.post(
        f"/api/reports/{report_id}/comments",
        json={"comments": "Attach the hotel invoice next time"},
        headers=manager,
    )
    assert resp.status_code == 200
    assert resp.json()["applied"] is True
    assert resp.json()["report"]["status"] == "approved"
    assert resp.json()["history"][0]["action"] == "report_commented"
    assert resp.json()["history"][0]["previous_status"] == "approved"
    assert resp.json()["history"][0]["new_status"] == "approved"

    notifications = client.get("/api/notifications", headers=employee).json()["items"]
    assert notifications[0]["type"] == "report_commented"
    assert "hotel invoice" in notifications[0]["message"]

    actions = client.get("/api/manager/recent-activity", headers=manager).json()["recent_actions"]
    assert "report_commented" in {a["action"] for a in actions}

    empty = client.post(
        f"/api/reports/{report_id}/comments", json={"comments": "  "}, headers=manager
    )
    assert empty.status_code == 400
    own = client.post(
        f"/api/reports/{report_id}/comments", json={"comments": "hi"}, headers=employee
    )
    assert own.status_code == 403


def test_comment_on_unsubmitted_report_is_a_conflict():
    client = TestClient(app)
    employee = _token("employee@example.com", UserRole.USER)
    manager = _token("manager@example.com", UserRole.MANAGER)
    report_id = client.post(
        "/api/reports", json={"report_date": "2026-01-31"}, headers=employee
    ).json()["id"]

    resp = client.post(
        f"/api/reports/{report_id}/comments", json={"comments": "Too early"}, headers=manager
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["current_status"] == "pending"


def test_admin_password_reset_returns_a_working_temporary_password():
    client = TestClient(app)
    admin = _token("admin@example.com", UserRole.ADMIN)
    with SessionLocal() as session:
        user = create_user(session, email="user@example.com", password="old", role=UserRole.USER)
        user_id = str(user.id)

    resp = client.post(f"/api/users/{user_id}/reset-password", headers=admin)
    assert resp.status_code == 200
    temporary = resp.json()["temporary_password"]
    assert resp.json()["user_id"] == user_id

    old = client.post("/api/auth/token", data={"username": "user@example.com", "password": "old"})
    assert old.status_code == 401
    new = client.post(
        "/api/auth/token", data={"username": "user@example.com", "password": temporary}
    )
    assert new.status_code == 200

    user_headers = {"Authorization": f"Bearer {new.json()['access_token']}"}
    denied = client.post(f"/api/users/{user_id}/reset-password", headers=user_headers)
    assert denied.status_code == 403
