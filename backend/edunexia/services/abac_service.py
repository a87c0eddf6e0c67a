# Overview: Service-layer operations for attribute-based access; phase, period and payment gates plus rule management.

"""
Attribute-Based Access Evaluation

WHY: Role grants say what a user may do in general. Whether they may do it
right now depends on attributes of the target: the institution's lifecycle
phase, the polo, the date the action applies to and the payment status of
the entity involved.

EVALUATION ORDER (first deny wins):
1. super_admin                    -> allow
2. RBAC (resource, action)        -> deny when missing
3. owner of entity_id             -> allow (never for delete / approve / reject)
4. institution access, then phase gate
5. polo access
6. period gate (target_date given)
7. payment-status gate (payment_status given or derivable)

PHASE GATE:
- An active rule for (resource, action, phase) decides on its own
- Otherwise, when the resource has any active rule in that phase, a
  per-phase default applies
- Otherwise a built-in table by phase applies

PERIOD GATE:
- Periods are institution-scoped; institutions without periods of their
  own fall back to global periods (institution_id NULL)
- Without applicable rules the date must fall inside an active period,
  otherwise only read actions pass
- With rules, the date must fall inside [start - days_before_start,
  end + days_after_end] for some period of the rule's period_type

PAYMENT GATE:
- An active rule for (resource, action, payment_status) decides
- No rule: pending / paid allow everything; overdue, refunded and
  canceled allow reads only
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import (
    Institution, CheckoutLink,
    InstitutionPhasePermission, FinancialPeriod, PeriodPermissionRule, PaymentStatusPermission,
    INSTITUTION_PHASES, PAYMENT_STATUSES, PERIOD_TYPES,
)
from ..permissions import READ_ACTIONS
from ..validation import (
    ModelValidationPolicy, ValidationError, ConflictError, NotFoundError,
    validate_payload, require_choice,
)
from . import audit_service, permission_service
from .audit_service import Actor
from .permission_service import PermissionDeniedError
from edunexia.time_utils import utcnow


OWNER_EXCLUDED_ACTIONS = permission_service.OWNER_EXCLUDED_ACTIONS


@dataclass
class AccessContext:
    resource: str
    action: str
    institution_id: int | None = None
    polo_id: int | None = None
    entity_id: int | None = None
    target_date: date | None = None
    payment_status: str | None = None


@dataclass
class AccessDecision:
    allowed: bool
    reason: str
    gate: str

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason, "gate": self.gate}


def _allow(gate: str, reason: str = "Allowed") -> AccessDecision:
    return AccessDecision(True, reason, gate)


def _deny(gate: str, reason: str) -> AccessDecision:
    return AccessDecision(False, reason, gate)


# =============================================================================
# PHASE GATE
# =============================================================================

# Resources usable while an institution is still being prospected
PROSPECTING_RESOURCES = {"users", "courses", "polos", "leads", "clients", "settings"}
PROSPECTING_RESTRICTED_ACTIONS = {"create", "delete", "approve"}

# Read-only while onboarding / implementing
SETUP_READONLY_RESOURCES = {"payments", "invoices", "certificates"}

SUSPENDED_FULL_RESOURCES = {"users", "reports", "settings", "support"}
CANCELED_READABLE_RESOURCES = {"reports", "settings", "support"}


def _phase_default(phase: str, action: str) -> bool:
    """Default for a resource that has rules in this phase, but none for this action."""
    if phase == "active":
        return True
    if phase in ("onboarding", "implementation"):
        return action not in ("delete", "cancel")
    # prospecting, suspended, canceled
    return action in READ_ACTIONS


def _phase_fallback(phase: str, resource: str, action: str) -> bool:
    """Built-in table used when no rule mentions the resource in this phase."""
    if phase == "active":
        return True
    if phase == "prospecting":
        return resource in PROSPECTING_RESOURCES and action not in PROSPECTING_RESTRICTED_ACTIONS
    if phase in ("onboarding", "implementation"):
        if resource in SETUP_READONLY_RESOURCES:
            return action in READ_ACTIONS
        return True
    if phase == "suspended":
        return resource in SUSPENDED_FULL_RESOURCES or action in READ_ACTIONS
    if phase == "canceled":
        return resource in CANCELED_READABLE_RESOURCES and action in READ_ACTIONS
    return False


def check_phase_gate(resource: str, action: str, phase: str) -> AccessDecision:
    rule = db.session.query(InstitutionPhasePermission).filter_by(
        resource=resource, action=action, phase=phase, is_active=True
    ).first()
    if rule is not None:
        if rule.is_allowed:
            return _allow("phase", f"Allowed by rule for phase '{phase}'")
        return _deny("phase", f"{resource}:{action} is not allowed while institution is '{phase}'")

    has_resource_rules = db.session.query(InstitutionPhasePermission.id).filter_by(
        resource=resource, phase=phase, is_active=True
    ).first() is not None

    allowed = _phase_default(phase, action) if has_resource_rules else _phase_fallback(phase, resource, action)
    if allowed:
        return _allow("phase")
    return _deny("phase", f"{resource}:{action} is not allowed while institution is '{phase}'")


# =============================================================================
# PERIOD GATE
# =============================================================================

def _periods_in_scope(institution_id: int | None) -> list[FinancialPeriod]:
    query = db.session.query(FinancialPeriod).filter(FinancialPeriod.is_active.is_(True))
    if institution_id is not None:
        own = query.filter(FinancialPeriod.institution_id == institution_id).all()
        if own:
            return own
    return query.filter(FinancialPeriod.institution_id.is_(None)).all()


def _period_rules(resource: str, action: str, institution_id: int | None) -> list[PeriodPermissionRule]:
    query = db.session.query(PeriodPermissionRule).filter(
        PeriodPermissionRule.resource == resource,
        PeriodPermissionRule.action == action,
        PeriodPermissionRule.is_active.is_(True),
    )
    if institution_id is not None:
        query = query.filter(db.or_(
            PeriodPermissionRule.institution_id == institution_id,
            PeriodPermissionRule.institution_id.is_(None),
        ))
    else:
        query = query.filter(PeriodPermissionRule.institution_id.is_(None))
    return query.all()


def rule_window(rule: PeriodPermissionRule, period: FinancialPeriod) -> tuple[date, date]:
    return (
        period.start_date - timedelta(days=rule.days_before_start or 0),
        period.end_date + timedelta(days=rule.days_after_end or 0),
    )


def check_period_gate(resource: str, action: str, target_date: date, institution_id: int | None = None) -> AccessDecision:
    periods = _periods_in_scope(institution_id)
    rules = _period_rules(resource, action, institution_id)

    if rules:
        windows = [
            rule_window(rule, period)
            for rule in rules
            for period in periods
            if period.type == rule.period_type
        ]
        if windows:
            # Widest window first; any window containing the date allows
            windows.sort(key=lambda w: (w[1] - w[0]), reverse=True)
            if any(start <= target_date <= end for start, end in windows):
                return _allow("period", "Inside period window")
            return _deny("period", f"{target_date.isoformat()} is outside the allowed period window")

    if any(p.start_date <= target_date <= p.end_date for p in periods):
        return _allow("period", "Inside active period")

    if action in READ_ACTIONS:
        return _allow("period", "No active period; read allowed")
    return _deny("period", f"No active period covers {target_date.isoformat()}")


# =============================================================================
# PAYMENT GATE
# =============================================================================

PAYMENT_OK_STATUSES = {"pending", "paid"}


def check_payment_gate(resource: str, action: str, payment_status: str) -> AccessDecision:
    rule = db.session.query(PaymentStatusPermission).filter_by(
        resource=resource, action=action, payment_status=payment_status, is_active=True
    ).first()
    if rule is not None:
        if rule.is_allowed:
            return _allow("payment", f"Allowed by rule for payment status '{payment_status}'")
        return _deny("payment", f"{resource}:{action} is not allowed when payment is '{payment_status}'")

    if payment_status in PAYMENT_OK_STATUSES or action in READ_ACTIONS:
        return _allow("payment")
    return _deny("payment", f"Payment is '{payment_status}'; only read access allowed")


def _derive_payment_status(ctx: AccessContext) -> str | None:
    if ctx.payment_status:
        return ctx.payment_status
    if ctx.resource == "checkout_links" and ctx.entity_id is not None:
        link = db.session.get(CheckoutLink, ctx.entity_id)
        if link:
            return link.payment_status
    return None


# =============================================================================
# EVALUATION
# =============================================================================

def evaluate(user_id: int, ctx: AccessContext) -> AccessDecision:
    """Run every gate in order and return the first denial (or an allow)."""
    if permission_service.is_super_admin(user_id):
        return _allow("super_admin", "Super admin")

    if not permission_service.check_user_permission(user_id, ctx.resource, ctx.action):
        return _deny("rbac", f"Missing permission: {ctx.resource}:{ctx.action}")

    if (
        ctx.entity_id is not None
        and ctx.action not in OWNER_EXCLUDED_ACTIONS
        and permission_service.is_entity_owner(user_id, ctx.resource, ctx.entity_id)
    ):
        return _allow("owner", "Entity owner")

    if ctx.institution_id is not None:
        if not permission_service.check_institution_access(user_id, ctx.institution_id):
            return _deny("institution", "No access to this institution")
        institution = db.session.get(Institution, ctx.institution_id)
        if institution is not None:
            decision = check_phase_gate(ctx.resource, ctx.action, institution.phase)
            if not decision.allowed:
                return decision

    if ctx.polo_id is not None and not permission_service.check_polo_access(user_id, ctx.polo_id):
        return _deny("polo", "No access to this polo")

    if ctx.target_date is not None:
        decision = check_period_gate(ctx.resource, ctx.action, ctx.target_date, ctx.institution_id)
        if not decision.allowed:
            return decision

    payment_status = _derive_payment_status(ctx)
    if payment_status is not None:
        decision = check_payment_gate(ctx.resource, ctx.action, payment_status)
        if not decision.allowed:
            return decision

    return _allow("all")


def require_access(
    user_id: int,
    ctx: AccessContext,
    path: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AccessDecision:
    """evaluate(), logging and raising PermissionDeniedError on denial."""
    decision = evaluate(user_id, ctx)
    if decision.allowed:
        return decision

    permission_service.log_security_event(
        user_id=user_id,
        event_type="ABAC_DENIED",
        success=False,
        resource=path,
        action=f"{ctx.resource}:{ctx.action}",
        reason=f"[{decision.gate}] {decision.reason}",
        ip_address=ip_address,
        user_agent=user_agent,
        institution_id=ctx.institution_id,
    )
    raise PermissionDeniedError(decision.reason)


# =============================================================================
# RULE MANAGEMENT
# =============================================================================

PHASE_RULE_POLICY = ModelValidationPolicy(
    writable_fields={"resource", "action", "phase", "description", "is_allowed", "is_active"},
    required_on_create={"resource", "action", "phase"},
    choices={"phase": INSTITUTION_PHASES},
)

PAYMENT_RULE_POLICY = ModelValidationPolicy(
    writable_fields={"resource", "action", "payment_status", "description", "is_allowed", "is_active"},
    required_on_create={"resource", "action", "payment_status"},
    choices={"payment_status": PAYMENT_STATUSES},
)

PERIOD_POLICY = ModelValidationPolicy(
    writable_fields={"institution_id", "name", "type", "start_date", "end_date", "is_active"},
    required_on_create={"name", "type", "start_date", "end_date"},
    choices={"type": PERIOD_TYPES},
)

PERIOD_RULE_POLICY = ModelValidationPolicy(
    writable_fields={
        "institution_id", "resource", "action", "period_type",
        "days_before_start", "days_after_end", "description", "is_active",
    },
    required_on_create={"resource", "action", "period_type"},
    choices={"period_type": PERIOD_TYPES},
)


# model -> (policy, audit entity_type, label)
_RULE_KINDS = {
    InstitutionPhasePermission: (PHASE_RULE_POLICY, "phase_rule", "phase rule"),
    PaymentStatusPermission: (PAYMENT_RULE_POLICY, "payment_rule", "payment rule"),
    FinancialPeriod: (PERIOD_POLICY, "period", "period"),
    PeriodPermissionRule: (PERIOD_RULE_POLICY, "period_rule", "period rule"),
}


def _check_invariants(model, obj) -> None:
    if model is FinancialPeriod and obj.start_date > obj.end_date:
        raise ValidationError("start_date must be on or before end_date")
    if model is PeriodPermissionRule:
        if (obj.days_before_start or 0) < 0 or (obj.days_after_end or 0) < 0:
            raise ValidationError("days_before_start and days_after_end must be >= 0")
    if getattr(obj, "institution_id", None) is not None:
        if not db.session.get(Institution, obj.institution_id):
            raise NotFoundError("Institution not found")


def _get(model, rule_id: int):
    obj = db.session.get(model, rule_id)
    if not obj:
        raise NotFoundError(f"{_RULE_KINDS[model][2].capitalize()} not found")
    return obj


def _commit_unique(label: str) -> None:
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"A {label} with these attributes already exists")


def _create(model, payload: dict, actor: Actor | None):
    policy, entity_type, label = _RULE_KINDS[model]
    data = validate_payload(model=model, payload=payload, policy=policy, partial=False)

    obj = model(**data)
    _check_invariants(model, obj)
    db.session.add(obj)
    _commit_unique(label)

    audit_service.record(actor, "create", entity_type, obj.id, f"Created {label} #{obj.id}", new_value=obj.to_dict())
    return obj


def _update(model, rule_id: int, payload: dict, actor: Actor | None):
    policy, entity_type, label = _RULE_KINDS[model]
    obj = _get(model, rule_id)
    patch = validate_payload(model=model, payload=payload, policy=policy, partial=True)

    old = obj.to_dict()
    for key, value in patch.items():
        setattr(obj, key, value)
    try:
        _check_invariants(model, obj)
    except (ValidationError, NotFoundError):
        db.session.rollback()
        raise
    _commit_unique(label)

    audit_service.record(
        actor, "update", entity_type, obj.id, f"Updated {label} #{obj.id}",
        old_value=old, new_value=obj.to_dict(),
    )
    return obj


def _delete(model, rule_id: int, actor: Actor | None) -> None:
    _policy, entity_type, label = _RULE_KINDS[model]
    obj = _get(model, rule_id)
    old = obj.to_dict()
    db.session.delete(obj)
    db.session.commit()

    audit_service.record(actor, "delete", entity_type, rule_id, f"Deleted {label} #{rule_id}", old_value=old)


def list_phase_rules(phase: str | None = None, resource: str | None = None) -> list[InstitutionPhasePermission]:
    query = db.session.query(InstitutionPhasePermission)
    if phase:
        query = query.filter(InstitutionPhasePermission.phase == phase)
    if resource:
        query = query.filter(InstitutionPhasePermission.resource == resource)
    return query.order_by(
        InstitutionPhasePermission.phase,
        InstitutionPhasePermission.resource,
        InstitutionPhasePermission.action,
    ).all()


def create_phase_rule(payload: dict, actor: Actor | None = None) -> InstitutionPhasePermission:
    return _create(InstitutionPhasePermission, payload, actor)


def update_phase_rule(rule_id: int, payload: dict, actor: Actor | None = None) -> InstitutionPhasePermission:
    return _update(InstitutionPhasePermission, rule_id, payload, actor)


def delete_phase_rule(rule_id: int, actor: Actor | None = None) -> None:
    _delete(InstitutionPhasePermission, rule_id, actor)


def list_payment_rules(payment_status: str | None = None, resource: str | None = None) -> list[PaymentStatusPermission]:
    query = db.session.query(PaymentStatusPermission)
    if payment_status:
        query = query.filter(PaymentStatusPermission.payment_status == payment_status)
    if resource:
        query = query.filter(PaymentStatusPermission.resource == resource)
    return query.order_by(
        PaymentStatusPermission.payment_status,
        PaymentStatusPermission.resource,
        PaymentStatusPermission.action,
    ).all()


def create_payment_rule(payload: dict, actor: Actor | None = None) -> PaymentStatusPermission:
    return _create(PaymentStatusPermission, payload, actor)


def update_payment_rule(rule_id: int, payload: dict, actor: Actor | None = None) -> PaymentStatusPermission:
    return _update(PaymentStatusPermission, rule_id, payload, actor)


def delete_payment_rule(rule_id: int, actor: Actor | None = None) -> None:
    _delete(PaymentStatusPermission, rule_id, actor)


def list_periods(institution_id: int | None = None, active_only: bool = False) -> list[FinancialPeriod]:
    query = db.session.query(FinancialPeriod)
    if institution_id is not None:
        query = query.filter(FinancialPeriod.institution_id == institution_id)
    if active_only:
        query = query.filter(FinancialPeriod.is_active.is_(True))
    return query.order_by(FinancialPeriod.start_date, FinancialPeriod.id).all()


def create_period(payload: dict, actor: Actor | None = None) -> FinancialPeriod:
    return _create(FinancialPeriod, payload, actor)


def update_period(period_id: int, payload: dict, actor: Actor | None = None) -> FinancialPeriod:
    return _update(FinancialPeriod, period_id, payload, actor)


def delete_period(period_id: int, actor: Actor | None = None) -> None:
    _delete(FinancialPeriod, period_id, actor)


def list_period_rules(resource: str | None = None, institution_id: int | None = None) -> list[PeriodPermissionRule]:
    query = db.session.query(PeriodPermissionRule)
    if resource:
        query = query.filter(PeriodPermissionRule.resource == resource)
    if institution_id is not None:
        query = query.filter(PeriodPermissionRule.institution_id == institution_id)
    return query.order_by(PeriodPermissionRule.resource, PeriodPermissionRule.action, PeriodPermissionRule.id).all()


def create_period_rule(payload: dict, actor: Actor | None = None) -> PeriodPermissionRule:
    return _create(PeriodPermissionRule, payload, actor)


def update_period_rule(rule_id: int, payload: dict, actor: Actor | None = None) -> PeriodPermissionRule:
    return _update(PeriodPermissionRule, rule_id, payload, actor)


def delete_period_rule(rule_id: int, actor: Actor | None = None) -> None:
    _delete(PeriodPermissionRule, rule_id, actor)


def set_institution_phase(institution_id: int, phase: str, actor: Actor | None = None) -> Institution:
    """Move an institution to another lifecycle phase (any phase may follow any other)."""
    require_choice("phase", phase, INSTITUTION_PHASES)

    institution = db.session.get(Institution, institution_id)
    if not institution:
        raise NotFoundError("Institution not found")

    if institution.phase == phase:
        return institution

    old = institution.to_dict()
    institution.phase = phase
    institution.phase_updated_at = utcnow()
    db.session.commit()

    audit_service.record(
        actor, "update", "institution", institution.id,
        f"Institution {institution.code} moved from {old['phase']} to {phase}",
        old_value=old,
        new_value=institution.to_dict(),
    )
    return institution


# =============================================================================
# DEFAULT RULES (idempotent)
# =============================================================================

DEFAULT_PHASE_RULES = (
    # (resource, action, phase, is_allowed, description)
    ("users", "read", "prospecting", True, "View users while prospecting"),
    ("users", "create", "prospecting", True, "Create users while prospecting"),
    ("users", "update", "prospecting", True, "Update users while prospecting"),
    ("users", "delete", "prospecting", False, "No user deletion while prospecting"),
    ("polos", "create", "prospecting", False, "No new polos while prospecting"),
    ("courses", "create", "prospecting", False, "No new courses while prospecting"),
    ("enrollments", "read", "prospecting", False, "No enrollments while prospecting"),
    ("enrollments", "create", "prospecting", False, "No enrollments while prospecting"),
    ("reports", "create", "prospecting", False, "No reports while prospecting"),
    ("enrollments", "create", "onboarding", False, "No enrollments before implementation"),
    ("polos", "create", "onboarding", True, "Create polos during onboarding"),
    ("courses", "create", "onboarding", True, "Create courses during onboarding"),
    ("enrollments", "create", "implementation", True, "Enroll students during implementation"),
    ("enrollments", "create", "suspended", False, "No enrollments while suspended"),
    ("payments", "create", "suspended", False, "No new charges while suspended"),
    ("users", "create", "canceled", False, "No new users after cancellation"),
)

DEFAULT_PAYMENT_RULES = (
    # (resource, action, payment_status, is_allowed, description)
    ("certificates", "create", "paid", True, "Issue certificates once paid"),
    ("certificates", "create", "pending", False, "No certificates while payment is pending"),
    ("certificates", "create", "overdue", False, "No certificates while payment is overdue"),
    ("enrollments", "create", "overdue", False, "No new enrollments while payment is overdue"),
    ("courses", "read", "overdue", True, "Students keep read access to courses while overdue"),
    ("courses", "read", "canceled", False, "No course access after payment cancellation"),
)

DEFAULT_PERIOD_RULES = (
    # (resource, action, period_type, days_before_start, days_after_end, description)
    ("enrollments", "create", "enrollment", 15, 5, "Early and late enrollment"),
    ("certificates", "create", "certification", 0, 30, "Certificates up to 30 days after the period"),
    ("payments", "create", "financial", 0, 10, "Charges up to 10 days after closing"),
    ("invoices", "update", "financial", 0, 5, "Invoice corrections up to 5 days after closing"),
)


def seed_default_rules() -> dict:
    """Insert the default phase, payment and period rules that don't exist yet."""
    created = {"phase_rules": 0, "payment_rules": 0, "period_rules": 0}

    for resource, action, phase, is_allowed, description in DEFAULT_PHASE_RULES:
        exists = db.session.query(InstitutionPhasePermission.id).filter_by(
            resource=resource, action=action, phase=phase
        ).first()
        if exists:
            continue
        db.session.add(InstitutionPhasePermission(
            resource=resource, action=action, phase=phase, is_allowed=is_allowed, description=description,
        ))
        created["phase_rules"] += 1

    for resource, action, payment_status, is_allowed, description in DEFAULT_PAYMENT_RULES:
        exists = db.session.query(PaymentStatusPermission.id).filter_by(
            resource=resource, action=action, payment_status=payment_status
        ).first()
        if exists:
            continue
        db.session.add(PaymentStatusPermission(
            resource=resource, action=action, payment_status=payment_status,
            is_allowed=is_allowed, description=description,
        ))
        created["payment_rules"] += 1

    for resource, action, period_type, before, after, description in DEFAULT_PERIOD_RULES:
        exists = db.session.query(PeriodPermissionRule.id).filter_by(
            institution_id=None, resource=resource, action=action, period_type=period_type
        ).first()
        if exists:
            continue
        db.session.add(PeriodPermissionRule(
            resource=resource, action=action, period_type=period_type,
            days_before_start=before, days_after_end=after, description=description,
        ))
        created["period_rules"] += 1

    db.session.commit()
    return created
