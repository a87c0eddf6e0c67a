"""
Attribute-based access evaluation.

Phase gate, period gate, payment gate, evaluation order and rule
administration, at the service level and through /api/abac.
"""

from datetime import date

import pytest

from edunexia.extensions import db
from edunexia.models import Lead, Polo, SecurityEvent, FinancialPeriod, PermissionAudit
from edunexia.services import abac_service, permission_service
from edunexia.services.abac_service import AccessContext
from edunexia.services.permission_service import PermissionDeniedError
from edunexia.validation import ValidationError, ConflictError, NotFoundError

from conftest import make_user


def _period(start, end, type="financial", institution_id=None, name="Periodo"):
    return abac_service.create_period({
        "name": name,
        "type": type,
        "start_date": start,
        "end_date": end,
        "institution_id": institution_id,
    })


# =============================================================================
# PHASE GATE
# =============================================================================


class TestPhaseGate:

    def test_active_allows_everything(self, db_session):
        assert abac_service.check_phase_gate("leads", "delete", "active").allowed

    def test_prospecting_fallback(self, db_session):
        assert abac_service.check_phase_gate("leads", "read", "prospecting").allowed
        assert abac_service.check_phase_gate("leads", "update", "prospecting").allowed
        assert not abac_service.check_phase_gate("leads", "create", "prospecting").allowed
        assert not abac_service.check_phase_gate("payments", "read", "prospecting").allowed

    def test_setup_phases_keep_payments_read_only(self, db_session):
        assert abac_service.check_phase_gate("payments", "read", "onboarding").allowed
        assert not abac_service.check_phase_gate("payments", "create", "implementation").allowed
        assert abac_service.check_phase_gate("leads", "create", "onboarding").allowed

    def test_suspended_and_canceled(self, db_session):
        assert abac_service.check_phase_gate("users", "update", "suspended").allowed
        assert abac_service.check_phase_gate("leads", "read", "suspended").allowed
        assert not abac_service.check_phase_gate("leads", "create", "suspended").allowed
        assert abac_service.check_phase_gate("reports", "read", "canceled").allowed
        assert not abac_service.check_phase_gate("leads", "read", "canceled").allowed

    def test_explicit_rule_wins(self, db_session):
        abac_service.create_phase_rule({
            "resource": "leads", "action": "update", "phase": "active", "is_allowed": False,
        })
        decision = abac_service.check_phase_gate("leads", "update", "active")
        assert not decision.allowed
        assert decision.gate == "phase"

    def test_resource_rules_switch_to_phase_default(self, db_session):
        # With any rule for "users" in prospecting, unlisted actions fall back to read-only
        abac_service.create_phase_rule({"resource": "users", "action": "read", "phase": "prospecting"})
        assert abac_service.check_phase_gate("users", "read", "prospecting").allowed
        assert not abac_service.check_phase_gate("users", "export", "prospecting").allowed

    def test_inactive_rule_ignored(self, db_session):
        abac_service.create_phase_rule({
            "resource": "leads", "action": "update", "phase": "active",
            "is_allowed": False, "is_active": False,
        })
        assert abac_service.check_phase_gate("leads", "update", "active").allowed


# =============================================================================
# PERIOD GATE
# =============================================================================


class TestPeriodGate:

    def test_inside_active_period(self, db_session):
        _period("2026-01-01", "2026-01-31")
        assert abac_service.check_period_gate("invoices", "create", date(2026, 1, 15)).allowed

    def test_outside_any_period_reads_only(self, db_session):
        _period("2026-01-01", "2026-01-31")
        assert not abac_service.check_period_gate("invoices", "create", date(2026, 3, 1)).allowed
        assert abac_service.check_period_gate("invoices", "read", date(2026, 3, 1)).allowed

    def test_rule_window_extends_period(self, db_session):
        _period("2026-01-01", "2026-01-31")
        abac_service.create_period_rule({
            "resource": "payments", "action": "create", "period_type": "financial",
            "days_before_start": 0, "days_after_end": 10,
        })
        assert abac_service.check_period_gate("payments", "create", date(2026, 2, 10)).allowed
        decision = abac_service.check_period_gate("payments", "create", date(2026, 2, 11))
        assert not decision.allowed
        assert decision.gate == "period"
        assert not abac_service.check_period_gate("payments", "create", date(2025, 12, 31)).allowed

    def test_any_matching_window_allows(self, db_session):
        _period("2026-01-01", "2026-01-31", type="enrollment", name="Jan")
        _period("2026-06-01", "2026-06-30", type="enrollment", name="Jun")
        abac_service.create_period_rule({
            "resource": "enrollments", "action": "create", "period_type": "enrollment",
            "days_before_start": 15, "days_after_end": 5,
        })
        assert abac_service.check_period_gate("enrollments", "create", date(2026, 5, 20)).allowed
        assert abac_service.check_period_gate("enrollments", "create", date(2026, 2, 5)).allowed
        assert not abac_service.check_period_gate("enrollments", "create", date(2026, 4, 1)).allowed

    def test_institution_periods_override_global(self, db_session, institution):
        _period("2026-01-01", "2026-12-31", name="Global")
        _period("2026-03-01", "2026-03-31", institution_id=institution.id, name="Own")
        assert not abac_service.check_period_gate(
            "invoices", "create", date(2026, 5, 1), institution_id=institution.id
        ).allowed
        assert abac_service.check_period_gate("invoices", "create", date(2026, 5, 1)).allowed

    def test_inactive_period_ignored(self, db_session):
        period = _period("2026-01-01", "2026-01-31")
        abac_service.update_period(period.id, {"is_active": False})
        assert not abac_service.check_period_gate("invoices", "create", date(2026, 1, 15)).allowed


# =============================================================================
# PAYMENT GATE
# =============================================================================


class TestPaymentGate:

    def test_defaults(self, db_session):
        assert abac_service.check_payment_gate("courses", "update", "paid").allowed
        assert abac_service.check_payment_gate("courses", "update", "pending").allowed
        assert abac_service.check_payment_gate("courses", "read", "overdue").allowed
        assert not abac_service.check_payment_gate("courses", "update", "overdue").allowed
        assert not abac_service.check_payment_gate("courses", "create", "refunded").allowed

    def test_rule_overrides_default(self, db_session):
        abac_service.create_payment_rule({
            "resource": "certificates", "action": "create", "payment_status": "pending", "is_allowed": False,
        })
        assert not abac_service.check_payment_gate("certificates", "create", "pending").allowed

        abac_service.create_payment_rule({
            "resource": "courses", "action": "read", "payment_status": "canceled", "is_allowed": False,
        })
        assert not abac_service.check_payment_gate("courses", "read", "canceled").allowed


# =============================================================================
# EVALUATION ORDER
# =============================================================================


class TestEvaluate:

    def test_super_admin_short_circuits(self, db_session, super_admin, other_institution):
        other_institution.phase = "canceled"
        db_session.commit()
        decision = abac_service.evaluate(
            super_admin.id, AccessContext("leads", "delete", institution_id=other_institution.id)
        )
        assert decision.allowed
        assert decision.gate == "super_admin"

    def test_rbac_first(self, student_user):
        decision = abac_service.evaluate(student_user.id, AccessContext("leads", "create"))
        assert not decision.allowed
        assert decision.gate == "rbac"

    def test_institution_access(self, sales_user, other_institution):
        decision = abac_service.evaluate(
            sales_user.id, AccessContext("leads", "create", institution_id=other_institution.id)
        )
        assert not decision.allowed
        assert decision.gate == "institution"

    def test_phase_of_institution(self, db_session, sales_user, institution):
        institution.phase = "suspended"
        db_session.commit()
        decision = abac_service.evaluate(
            sales_user.id, AccessContext("leads", "create", institution_id=institution.id)
        )
        assert not decision.allowed
        assert decision.gate == "phase"

    def test_owner_shortcut(self, db_session, sales_user, other_institution):
        lead = Lead(name="Mine", assigned_to_id=sales_user.id, institution_id=other_institution.id)
        db_session.add(lead)
        db_session.commit()
        decision = abac_service.evaluate(
            sales_user.id,
            AccessContext("leads", "update", entity_id=lead.id, institution_id=other_institution.id),
        )
        assert decision.allowed
        assert decision.gate == "owner"

    def test_owner_shortcut_never_covers_delete(self, db_session, seed, institution, other_institution):

        user = make_user("closer", role="sales", institution_id=institution.id)
        role = permission_service.get_role_by_name("sales")
        perm = permission_service.get_permission("leads", "delete")
        permission_service.add_permission_to_role(role.id, perm.id)

        lead = Lead(name="Mine", assigned_to_id=user.id, institution_id=other_institution.id)
        db_session.add(lead)
        db_session.commit()
        decision = abac_service.evaluate(
            user.id, AccessContext("leads", "delete", entity_id=lead.id, institution_id=other_institution.id)
        )
        assert not decision.allowed
        assert decision.gate == "institution"

    def test_polo_access(self, db_session, sales_user, other_institution):
        foreign = Polo(institution_id=other_institution.id, name="Fora", code="FORA")
        db_session.add(foreign)
        db_session.commit()
        decision = abac_service.evaluate(sales_user.id, AccessContext("leads", "read", polo_id=foreign.id))
        assert not decision.allowed
        assert decision.gate == "polo"

    def test_period_then_payment(self, sales_user):
        _period("2026-01-01", "2026-01-31")
        decision = abac_service.evaluate(
            sales_user.id, AccessContext("leads", "update", target_date=date(2026, 5, 1))
        )
        assert decision.gate == "period"

        decision = abac_service.evaluate(
            sales_user.id,
            AccessContext("leads", "update", target_date=date(2026, 1, 10), payment_status="overdue"),
        )
        assert decision.gate == "payment"
        assert not decision.allowed

    def test_all_gates_pass(self, sales_user, institution):
        decision = abac_service.evaluate(
            sales_user.id, AccessContext("leads", "update", institution_id=institution.id, payment_status="paid")
        )
        assert decision.allowed
        assert decision.gate == "all"

    def test_require_access_logs_denial(self, sales_user, other_institution):
        with pytest.raises(PermissionDeniedError):
            abac_service.require_access(
                sales_user.id,
                AccessContext("leads", "create", institution_id=other_institution.id),
                path="/api/v2/leads",
            )
        event = SecurityEvent.query.filter_by(event_type="ABAC_DENIED").one()
        assert event.reason.startswith("[institution]")
        assert event.institution_id == other_institution.id


# =============================================================================
# RULE ADMINISTRATION
# =============================================================================


class TestRuleAdministration:

    def test_period_range_invariant(self, db_session):
        with pytest.raises(ValidationError):
            _period("2026-02-01", "2026-01-01")

    def test_failed_update_leaves_period_untouched(self, db_session):
        period = _period("2026-01-01", "2026-01-31")
        with pytest.raises(ValidationError):
            abac_service.update_period(period.id, {"end_date": "2025-12-01"})
        assert db.session.get(FinancialPeriod, period.id).end_date == date(2026, 1, 31)

    def test_negative_days_rejected(self, db_session):
        with pytest.raises(ValidationError):
            abac_service.create_period_rule({
                "resource": "payments", "action": "create", "period_type": "financial",
                "days_before_start": -1,
            })

    def test_unknown_choice_rejected(self, db_session):
        with pytest.raises(ValidationError):
            abac_service.create_phase_rule({"resource": "leads", "action": "read", "phase": "dormant"})
        with pytest.raises(ValidationError):
            abac_service.create_payment_rule({"resource": "leads", "action": "read", "payment_status": "free"})

    def test_duplicate_phase_rule_conflicts(self, db_session):
        payload = {"resource": "leads", "action": "read", "phase": "active"}
        abac_service.create_phase_rule(payload)
        with pytest.raises(ConflictError):
            abac_service.create_phase_rule(payload)

    def test_unknown_institution(self, db_session):
        with pytest.raises(NotFoundError):
            _period("2026-01-01", "2026-01-31", institution_id=9999)

    def test_delete_missing(self, db_session):
        with pytest.raises(NotFoundError):
            abac_service.delete_period_rule(12345)

    def test_set_institution_phase(self, db_session, institution):
        abac_service.set_institution_phase(institution.id, "suspended")
        assert institution.phase == "suspended"
        assert institution.phase_updated_at is not None
        entry = PermissionAudit.query.filter_by(entity_type="institution", entity_id=institution.id).one()
        assert entry.old_value["phase"] == "active"
        assert entry.new_value["phase"] == "suspended"

        with pytest.raises(ValidationError):
            abac_service.set_institution_phase(institution.id, "dormant")

    def test_seed_default_rules_idempotent(self, db_session):
        created = abac_service.seed_default_rules()
        assert created["phase_rules"] == len(abac_service.DEFAULT_PHASE_RULES)
        assert created["payment_rules"] == len(abac_service.DEFAULT_PAYMENT_RULES)
        assert created["period_rules"] == len(abac_service.DEFAULT_PERIOD_RULES)
        assert abac_service.seed_default_rules() == {"phase_rules": 0, "payment_rules": 0, "period_rules": 0}


# =============================================================================
# ROUTES
# =============================================================================


class TestAbacRoutes:

    def test_rule_crud_requires_manage(self, client, admin_headers):
        resp = client.post(
            "/api/abac/phase-rules",
            json={"resource": "leads", "action": "read", "phase": "active"},
            headers=admin_headers,
        )
        assert resp.status_code == 403

    def test_rule_crud(self, client, super_admin_headers):
        resp = client.post(
            "/api/abac/periods",
            json={"name": "2026.1", "type": "academic", "start_date": "2026-02-01", "end_date": "2026-06-30"},
            headers=super_admin_headers,
        )
        assert resp.status_code == 201
        period_id = resp.get_json()["id"]

        resp = client.put(
            f"/api/abac/periods/{period_id}", json={"end_date": "2026-01-01"}, headers=super_admin_headers
        )
        assert resp.status_code == 400

        resp = client.get("/api/abac/periods", headers=super_admin_headers)
        assert resp.status_code == 200

        resp = client.delete(f"/api/abac/periods/{period_id}", headers=super_admin_headers)
        assert resp.status_code == 200
        resp = client.delete(f"/api/abac/periods/{period_id}", headers=super_admin_headers)
        assert resp.status_code == 404

    def test_evaluate_self(self, client, sales_headers, other_institution):
        resp = client.post(
            "/api/abac/evaluate",
            json={"resource": "leads", "action": "create", "institution_id": other_institution.id},
            headers=sales_headers,
        )
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["allowed"] is False
        assert body["gate"] == "institution"

    def test_evaluate_other_user_needs_permissions_read(self, client, sales_headers, admin_user):
        resp = client.post(
            "/api/abac/evaluate",
            json={"resource": "leads", "action": "read", "user_id": admin_user.id},
            headers=sales_headers,
        )
        assert resp.status_code == 403

    def test_evaluate_bad_date(self, client, sales_headers):
        resp = client.post(
            "/api/abac/evaluate",
            json={"resource": "leads", "action": "read", "target_date": "01/02/2026"},
            headers=sales_headers,
        )
        assert resp.status_code == 400

    def test_set_phase_route(self, client, admin_headers, institution):
        resp = client.put(
            f"/api/abac/institutions/{institution.id}/phase", json={"phase": "onboarding"}, headers=admin_headers
        )
        assert resp.status_code == 200
        assert resp.get_json()["institution"]["phase"] == "onboarding"
