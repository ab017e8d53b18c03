"""
HTTP API tests.

Verifies:
- Authentication (login, logout, /me) and 401 on protected routes
- Role enforcement (403 with required_roles) on approver and admin routes
- End-to-end request flows through the JSON API
- Admin automation endpoints never expose the secret
- Health endpoint
"""

import pytest

from app.extensions import db
from app.models import SecurityEvent


AMAZON_URL = "https://www.amazon.com.mx/dp/B08N5WRWNW"
OTHER_URL = "https://www.example-store.com/products/chair-42"


def _create(client, headers, **extra):
    payload = {"url": OTHER_URL, "justification": "Replacement chair"}
    payload.update(extra)
    response = client.post("/api/v1/purchase-requests/", json=payload, headers=headers)
    assert response.status_code == 201, response.json
    return response.json["request"]


# =============================================================================
# AUTH
# =============================================================================


class TestAuth:
    def test_login_and_me(self, client, employee):
        login = client.post("/api/v1/auth/login", json={"email": employee.email, "password": "Password123!"})
        assert login.status_code == 200
        token = login.json["token"]

        response = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json["user"]["email"] == "ana@vista.local"
        assert response.json["user"]["role"] == "employee"
        assert "password_hash" not in response.json["user"]

    def test_bad_password_is_logged(self, client, employee):
        response = client.post("/api/v1/auth/login", json={"email": employee.email, "password": "Wrong123!"})

        assert response.status_code == 401
        assert response.json["kind"] == "Unauthorized"
        db.session.expire_all()
        assert db.session.query(SecurityEvent).filter_by(event_type="LOGIN_FAILED").count() == 1

    def test_missing_fields(self, client, db_session):
        response = client.post("/api/v1/auth/login", json={"email": "ana@vista.local"})
        assert response.status_code == 400

    def test_logout_revokes_token(self, client, employee_headers):
        assert client.post("/api/v1/auth/logout", headers=employee_headers).status_code == 200
        assert client.get("/api/v1/auth/me", headers=employee_headers).status_code == 401

    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/api/v1/auth/me"),
            ("post", "/api/v1/purchase-requests/"),
            ("get", "/api/v1/purchase-requests/my"),
            ("get", "/api/v1/requests/"),
            ("get", "/api/v1/approvals/"),
            ("post", "/api/v1/approvals/1/approve"),
            ("get", "/api/v1/admin/dashboard"),
            ("put", "/api/v1/admin/automation/config"),
        ],
    )
    def test_protected_routes_require_token(self, client, db_session, method, path):
        response = getattr(client, method)(path, headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401
        assert getattr(client, method)(path).status_code == 401


# =============================================================================
# ROLES
# =============================================================================


class TestRoles:
    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/api/v1/approvals/"),
            ("get", "/api/v1/approvals/stats"),
            ("post", "/api/v1/approvals/1/approve"),
            ("post", "/api/v1/approvals/1/reject"),
            ("get", "/api/v1/admin/dashboard"),
            ("get", "/api/v1/admin/automation/config"),
            ("get", "/api/v1/admin/approved-orders"),
            ("patch", "/api/v1/admin/orders/1/purchased"),
        ],
    )
    def test_employee_is_denied(self, client, employee_headers, method, path):
        response = getattr(client, method)(path, headers=employee_headers)

        assert response.status_code == 403
        assert response.json["kind"] == "Forbidden"
        assert response.json["required_roles"]

    def test_denial_is_logged(self, client, employee_headers):
        client.get("/api/v1/approvals/", headers=employee_headers)
        db.session.expire_all()
        event = db.session.query(SecurityEvent).filter_by(event_type="ROLE_DENIED").one()
        assert event.resource == "/api/v1/approvals/"
        assert event.action == "GET"

    def test_scm_sees_all_requests_but_cannot_approve(self, client, employee_headers, scm_headers):
        created = _create(client, employee_headers)

        listing = client.get("/api/v1/requests/", headers=scm_headers)
        assert listing.status_code == 200
        assert [r["id"] for r in listing.json["items"]] == [created["id"]]

        assert client.post(f"/api/v1/approvals/{created['id']}/approve", headers=scm_headers).status_code == 403

    def test_employee_cannot_list_all(self, client, employee_headers):
        assert client.get("/api/v1/requests/", headers=employee_headers).status_code == 403

    def test_gm_cannot_use_admin_routes(self, client, gm_headers):
        assert client.get("/api/v1/admin/dashboard", headers=gm_headers).status_code == 403


# =============================================================================
# REQUESTER FLOWS
# =============================================================================


class TestPurchaseRequests:
    def test_create_url_request(self, client, employee_headers):
        created = _create(client, employee_headers, url=AMAZON_URL, quantity=2)

        assert created["status"] == "pending"
        assert created["request_number"].startswith("REQ-")
        assert created["is_automatable"] is True
        assert created["amazon_asin"] == "B08N5WRWNW"
        assert created["requester"]["email"] == "ana@vista.local"

    def test_create_itemized_request(self, client, employee_headers):
        response = client.post("/api/v1/purchase-requests/", json={
            "justification": "Onboarding kit",
            "items": [
                {"name": "Keyboard", "quantity": 2, "unit_price": "10.50"},
                {"name": "Mouse", "quantity": 1, "unit_price": "5.00"},
            ],
        }, headers=employee_headers)

        assert response.status_code == 201
        body = response.json["request"]
        assert body["kind"] == "itemized"
        assert body["total_amount"] == "26.00"
        assert len(body["items"]) == 2

    def test_validation_error_shape(self, client, employee_headers):
        response = client.post(
            "/api/v1/purchase-requests/", json={"url": OTHER_URL}, headers=employee_headers,
        )
        assert response.status_code == 400
        assert response.json == {"error": "Missing required fields: justification", "kind": "ValidationError"}

    def test_non_object_body(self, client, employee_headers):
        response = client.post("/api/v1/purchase-requests/", json=["x"], headers=employee_headers)
        assert response.status_code == 400

    def test_my_requests_only_lists_own(self, client, employee_headers, other_employee_headers):
        mine = _create(client, employee_headers)
        _create(client, other_employee_headers)

        response = client.get("/api/v1/purchase-requests/my", headers=employee_headers)

        assert response.status_code == 200
        assert [r["id"] for r in response.json["items"]] == [mine["id"]]

    def test_detail_visibility(self, client, employee_headers, other_employee_headers, gm_headers):
        created = _create(client, employee_headers)
        path = f"/api/v1/purchase-requests/{created['id']}"

        own = client.get(path, headers=employee_headers)
        assert own.status_code == 200
        assert [h["action"] for h in own.json["request"]["history"]] == ["created"]

        assert client.get(path, headers=gm_headers).status_code == 200

        denied = client.get(path, headers=other_employee_headers)
        assert denied.status_code == 403
        assert denied.json["kind"] == "Forbidden"

        assert client.get("/api/v1/purchase-requests/999", headers=employee_headers).status_code == 404

    def test_edit_and_cancel(self, client, employee_headers, other_employee_headers):
        created = _create(client, employee_headers)
        path = f"/api/v1/purchase-requests/{created['id']}"

        assert client.put(path, json={"quantity": 3}, headers=other_employee_headers).status_code == 403

        edited = client.put(path, json={"quantity": 3}, headers=employee_headers)
        assert edited.status_code == 200
        assert edited.json["request"]["quantity"] == 3

        cancelled = client.delete(path, json={"comment": "bought it myself"}, headers=employee_headers)
        assert cancelled.status_code == 200
        assert cancelled.json["request"]["status"] == "cancelled"

        again = client.delete(path, headers=employee_headers)
        assert again.status_code == 409
        assert again.json["kind"] == "InvalidState"

        history = client.get(f"{path}/history", headers=employee_headers)
        assert [h["action"] for h in history.json["history"]] == ["created", "cancelled"]
        assert history.json["history"][1]["comment"] == "bought it myself"

    def test_extract_metadata_requires_url(self, client, employee_headers):
        response = client.post("/api/v1/purchase-requests/extract-metadata", json={}, headers=employee_headers)
        assert response.status_code == 400
        assert response.json["error"] == "url is required"

    def test_extract_metadata_reports_fetch_errors_in_body(self, client, employee_headers):
        response = client.post(
            "/api/v1/purchase-requests/extract-metadata",
            json={"url": "ftp://files.example.com/a"},
            headers=employee_headers,
        )
        assert response.status_code == 200
        assert response.json["metadata"]["error"] == "url must be an http(s) URL"


# =============================================================================
# APPROVER FLOWS
# =============================================================================


class TestApprovals:
    def test_info_round_trip(self, client, employee_headers, gm_headers):
        created = _create(client, employee_headers)
        request_id = created["id"]

        missing_note = client.post(f"/api/v1/approvals/{request_id}/request-info", json={}, headers=gm_headers)
        assert missing_note.status_code == 400

        asked = client.post(
            f"/api/v1/approvals/{request_id}/request-info", json={"note": "Which model?"}, headers=gm_headers,
        )
        assert asked.status_code == 200
        assert asked.json["request"]["status"] == "info_requested"

        resubmitted = client.put(
            f"/api/v1/purchase-requests/{request_id}",
            json={"justification": "Model X200", "comment": "added model"},
            headers=employee_headers,
        )
        assert resubmitted.json["request"]["status"] == "pending"

        queue = client.get("/api/v1/approvals/", headers=gm_headers)
        assert [r["id"] for r in queue.json["items"]] == [request_id]

        approved = client.post(f"/api/v1/approvals/{request_id}/approve", json={"comment": "ok"}, headers=gm_headers)
        assert approved.status_code == 200
        assert approved.json["request"]["status"] == "approved"

        detail = client.get(f"/api/v1/approvals/{request_id}", headers=gm_headers)
        assert [h["action"] for h in detail.json["request"]["history"]] == [
            "created", "info_requested", "resubmitted", "approved",
        ]

    def test_double_approval_conflicts(self, client, employee_headers, gm_headers, admin_headers):
        created = _create(client, employee_headers)
        path = f"/api/v1/approvals/{created['id']}/approve"

        assert client.post(path, headers=gm_headers).status_code == 200

        second = client.post(path, headers=admin_headers)
        assert second.status_code == 409
        assert second.json["kind"] == "InvalidState"

    def test_reject_requires_reason(self, client, employee_headers, gm_headers):
        created = _create(client, employee_headers)
        path = f"/api/v1/approvals/{created['id']}/reject"

        assert client.post(path, json={}, headers=gm_headers).status_code == 400

        rejected = client.post(path, json={"reason": "Over budget"}, headers=gm_headers)
        assert rejected.status_code == 200
        assert rejected.json["request"]["rejection_reason"] == "Over budget"

    def test_stats(self, client, employee_headers, gm_headers):
        _create(client, employee_headers, urgency="urgent")

        response = client.get("/api/v1/approvals/stats", headers=gm_headers)

        assert response.status_code == 200
        assert response.json["stats"]["pending"] == 1
        assert response.json["stats"]["urgent_pending"] == 1

    def test_approval_of_amazon_request_reports_cart_outcome(
        self, client, employee_headers, gm_headers, admin, automation_account, fake_site,
    ):
        created = _create(client, employee_headers, url=AMAZON_URL)

        approved = client.post(f"/api/v1/approvals/{created['id']}/approve", headers=gm_headers)

        assert approved.status_code == 200
        assert approved.json["request"]["added_to_cart"] is True
        assert fake_site.cart == [(AMAZON_URL, 1)]


# =============================================================================
# ADMIN
# =============================================================================


class TestAdmin:
    def test_automation_config_never_returns_secret(self, client, admin_headers, fake_site):
        empty = client.get("/api/v1/admin/automation/config", headers=admin_headers)
        assert empty.status_code == 200
        assert empty.json["config"]["is_configured"] is False

        saved = client.put("/api/v1/admin/automation/config", json={
            "identity": "buyer@example.com",
            "secret": "retailer-pass",
            "marketplace": "https://www.amazon.com/",
        }, headers=admin_headers)
        assert saved.status_code == 200
        assert saved.json["config"]["has_secret"] is True
        assert saved.json["config"]["marketplace"] == "www.amazon.com"

        read = client.get("/api/v1/admin/automation/config", headers=admin_headers)
        assert "retailer-pass" not in read.get_data(as_text=True)
        assert "encrypted_secret" not in read.json["config"]

    def test_automation_config_rejects_unknown_fields(self, client, admin_headers):
        response = client.put(
            "/api/v1/admin/automation/config", json={"password": "x"}, headers=admin_headers,
        )
        assert response.status_code == 400
        assert response.json["error"] == "Field not allowed: password"

    def test_connection_test(self, client, admin_headers, automation_account, fake_site):
        response = client.post("/api/v1/admin/automation/test", headers=admin_headers)

        assert response.status_code == 200
        assert response.json["success"] is True
        assert response.json["config"]["test_status"] == "success"

        session = client.get("/api/v1/admin/automation/session", headers=admin_headers)
        assert session.json["session"]["logged_in"] is True
        assert session.json["session"]["identity"] == "buyer@example.com"

    def test_connection_test_without_account(self, client, admin_headers, fake_site):
        response = client.post("/api/v1/admin/automation/test", headers=admin_headers)
        assert response.status_code == 404
        assert response.json["kind"] == "NotFound"

    def test_orders_flow(self, client, employee_headers, gm_headers, admin_headers, fake_site):
        in_cart_candidate = _create(client, employee_headers, url=AMAZON_URL)
        manual = _create(client, employee_headers)
        for created in (in_cart_candidate, manual):
            client.post(f"/api/v1/approvals/{created['id']}/approve", headers=gm_headers)

        # No automation account yet, so the Amazon push failed
        pending_manual = client.get("/api/v1/admin/approved-orders?filter=pending_manual", headers=admin_headers)
        assert {r["id"] for r in pending_manual.json["items"]} == {in_cart_candidate["id"], manual["id"]}

        bad_filter = client.get("/api/v1/admin/approved-orders?filter=shipped", headers=admin_headers)
        assert bad_filter.status_code == 400

        client.put("/api/v1/admin/automation/config", json={
            "identity": "buyer@example.com", "secret": "retailer-pass",
        }, headers=admin_headers)
        retried = client.post(f"/api/v1/admin/orders/{in_cart_candidate['id']}/retry-cart", headers=admin_headers)
        assert retried.status_code == 200
        assert retried.json["request"]["added_to_cart"] is True
        assert retried.json["request"]["cart_error"] is None

        not_automatable = client.post(f"/api/v1/admin/orders/{manual['id']}/retry-cart", headers=admin_headers)
        assert not_automatable.status_code == 400

        purchased = client.patch(
            f"/api/v1/admin/orders/{manual['id']}/purchased", json={"notes": "PO-7781"}, headers=admin_headers,
        )
        assert purchased.status_code == 200
        assert purchased.json["request"]["status"] == "purchased"
        assert purchased.json["request"]["purchase_notes"] == "PO-7781"

        again = client.patch(f"/api/v1/admin/orders/{manual['id']}/purchased", headers=admin_headers)
        assert again.status_code == 409

        dashboard = client.get("/api/v1/admin/dashboard", headers=admin_headers)
        stats = dashboard.json["stats"]
        assert stats["amazon_in_cart"] == 1
        assert stats["purchased_orders"] == 1
        assert stats["pending_manual"] == 0

        archived = client.delete(f"/api/v1/admin/requests/{manual['id']}", headers=admin_headers)
        assert archived.status_code == 200
        assert client.delete(
            f"/api/v1/admin/requests/{in_cart_candidate['id']}", headers=admin_headers,
        ).status_code == 409


# =============================================================================
# SYSTEM
# =============================================================================


class TestSystem:
    def test_health(self, client, db_session):
        for path in ("/health", "/api/v1/health"):
            response = client.get(path)
            assert response.status_code == 200
            assert response.json["status"] == "healthy"
            assert response.json["checks"]["database"]["status"] == "healthy"
            assert response.json["checks"]["cart_worker"]["details"]["worker_mode"] == "inline"

    def test_version(self, client):
        response = client.get("/version")
        assert response.status_code == 200
        assert response.json["api_version"] == "1.0.0"

    def test_unknown_route_is_json(self, client):
        response = client.get("/api/v1/nope")
        assert response.status_code == 404
        assert response.json["kind"] == "Not Found"
