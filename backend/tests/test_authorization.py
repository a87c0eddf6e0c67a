"""
Authorization tests for EduNexia.

Verifies:
- Unauthenticated requests return 401
- Student role denied staff operations (403)
- Admin role can perform administrative reads
- Uploads are restricted to administrators
- Denials are written to security_events
"""

import pytest

from edunexia.decorators import require_auth, require_student, require_admin, require_portal
from edunexia.models import SecurityEvent


# =============================================================================
# UNAUTHENTICATED ACCESS - 401
# =============================================================================


class TestUnauthenticatedAccess:
    """All protected endpoints return 401 without a token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/auth/me"),
            ("POST", "/api/auth/logout-all"),
            ("GET", "/api/permissions/roles"),
            ("POST", "/api/permissions/roles"),
            ("GET", "/api/permissions"),
            ("GET", "/api/permissions/me"),
            ("POST", "/api/permissions/check"),
            ("GET", "/api/abac/phase-rules"),
            ("POST", "/api/abac/evaluate"),
            ("GET", "/api/audit/logs"),
            ("GET", "/api/audit/stats"),
            ("GET", "/api/crm/clients"),
            ("POST", "/api/crm/clients"),
            ("GET", "/api/v2/leads"),
            ("POST", "/api/v2/leads"),
            ("POST", "/api/v2/leads/1/checkout"),
            ("POST", "/api/uploads/pdf"),
            ("GET", "/api/uploads/pdfs"),
            ("GET", "/api/uploads/apostilas/x.pdf"),
            ("POST", "/api/ai/generate-image"),
        ],
    )
    def test_requires_auth(self, client, seed, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_invalid_token_rejected(self, client, seed):
        resp = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-real-token"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid or expired token"


# =============================================================================
# STUDENT DENIED STAFF OPERATIONS - 403
# =============================================================================


class TestStudentDenied:
    """Student role cannot reach CRM, audit or permission administration."""

    def test_cannot_list_leads(self, client, student_headers):
        resp = client.get("/api/v2/leads", headers=student_headers)
        assert resp.status_code == 403
        assert resp.get_json()["required_permission"] == "leads:read"

    def test_cannot_create_client(self, client, student_headers):
        resp = client.post("/api/crm/clients", json={"name": "X"}, headers=student_headers)
        assert resp.status_code == 403

    def test_cannot_create_role(self, client, student_headers):
        resp = client.post("/api/permissions/roles", json={"name": "evil-role"}, headers=student_headers)
        assert resp.status_code == 403

    def test_cannot_read_audit_logs(self, client, student_headers):
        resp = client.get("/api/audit/logs", headers=student_headers)
        assert resp.status_code == 403

    def test_cannot_upload_pdf(self, client, student_headers):
        resp = client.post("/api/uploads/pdf", headers=student_headers)
        assert resp.status_code == 403
        assert resp.get_json()["error"] == "Access restricted to administrators"

    def test_denial_is_logged(self, client, student_headers, student_user):
        client.get("/api/v2/leads", headers=student_headers)
        event = SecurityEvent.query.filter_by(user_id=student_user.id, event_type="PERMISSION_DENIED").first()
        assert event is not None
        assert event.success is False
        assert event.action == "leads:read"
        assert event.resource == "/api/v2/leads"


# =============================================================================
# ADMIN ACCESS - 200
# =============================================================================


class TestAdminAccess:
    """Admin role can perform administrative reads."""

    def test_can_list_roles(self, client, admin_headers):
        resp = client.get("/api/permissions/roles", headers=admin_headers)
        assert resp.status_code == 200
        names = {r["name"] for r in resp.get_json()["roles"]}
        assert {"super_admin", "admin", "sales", "student"} <= names

    def test_can_list_permissions(self, client, admin_headers):
        resp = client.get("/api/permissions", headers=admin_headers)
        assert resp.status_code == 200
        assert len(resp.get_json().get("permissions", [])) > 0

    def test_can_list_leads(self, client, admin_headers):
        resp = client.get("/api/v2/leads", headers=admin_headers)
        assert resp.status_code == 200

    def test_can_read_audit_logs(self, client, admin_headers):
        resp = client.get("/api/audit/logs", headers=admin_headers)
        assert resp.status_code == 200

    def test_cannot_create_roles(self, client, admin_headers):
        # admin holds roles:read only
        resp = client.post("/api/permissions/roles", json={"name": "custom"}, headers=admin_headers)
        assert resp.status_code == 403

    def test_cannot_delete_leads(self, client, admin_headers):
        resp = client.delete("/api/v2/leads/1", headers=admin_headers)
        assert resp.status_code == 403


class TestSuperAdmin:
    """super_admin passes every permission check."""

    def test_can_create_role(self, client, super_admin_headers):
        resp = client.post("/api/permissions/roles", json={"name": "custom"}, headers=super_admin_headers)
        assert resp.status_code == 201

    def test_check_endpoint(self, client, super_admin_headers):
        resp = client.post(
            "/api/permissions/check",
            json={"resource": "anything", "action": "delete"},
            headers=super_admin_headers,
        )
        assert resp.status_code == 200
        assert resp.get_json()["allowed"] is True


# =============================================================================
# PUBLIC ENDPOINTS - NO AUTH REQUIRED
# =============================================================================


class TestPublicEndpoints:
    """System health and version endpoints are public."""

    def test_health(self, client, seed):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["checks"]["database"]["status"] == "healthy"

    def test_version(self, client, seed):
        resp = client.get("/version")
        assert resp.status_code == 200
        body = resp.get_json()
        assert "api_version" in body
        assert "ASAAS_API_KEY" not in str(body)


# =============================================================================
# PORTAL GATES
# =============================================================================


def _probe():
    return {"ok": True}


def _call(app, gate, headers=None):
    view = require_auth(gate(_probe))
    with app.test_request_context("/probe", headers=headers or {}):
        result = view()
    if isinstance(result, tuple):
        return result[1]
    return 200


class TestPortalGates:
    """Portal gates run after require_auth and log PORTAL_DENIED on refusal."""

    def test_student_gate(self, app, student_headers, sales_headers, sales_user):
        assert _call(app, require_student, student_headers) == 200
        assert _call(app, require_student, sales_headers) == 403

        event = SecurityEvent.query.filter_by(user_id=sales_user.id, event_type="PORTAL_DENIED").one()
        assert event.resource == "/probe"

    def test_admin_gate_accepts_portal_or_role(self, app, admin_headers, super_admin_headers, student_headers):
        assert _call(app, require_admin, admin_headers) == 200
        assert _call(app, require_admin, super_admin_headers) == 200
        assert _call(app, require_admin, student_headers) == 403

    def test_multiple_portals(self, app, sales_headers, student_headers):
        gate = require_portal("partner", "polo")
        assert _call(app, gate, sales_headers) == 200
        assert _call(app, gate, student_headers) == 403

    def test_gate_needs_auth(self, app, seed):
        assert _call(app, require_student) == 401
