from __future__ import annotations

from ..extensions import db
from edunexia.time_utils import to_utc_z, to_iso_date


PAYMENT_STATUSES = ("pending", "paid", "overdue", "refunded", "canceled")
PERIOD_TYPES = ("financial", "academic", "enrollment", "certification")


class InstitutionPhasePermission(db.Model):
    """
    Permission gated by the institution lifecycle phase.

    DESIGN: One row per (resource, action, phase). is_allowed=False is an
    explicit deny for that phase; is_active=False disables the row without
    deleting it.
    """
    __tablename__ = "institution_phase_permissions"
    __table_args__ = (
        db.UniqueConstraint("resource", "action", "phase", name="uq_phase_permissions"),
        db.Index("ix_phase_permissions_phase_resource", "phase", "resource"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    resource = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(32), nullable=False)
    phase = db.Column(db.String(32), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_allowed = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "resource": self.resource,
            "action": self.action,
            "phase": self.phase,
            "description": self.description,
            "is_allowed": self.is_allowed,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class FinancialPeriod(db.Model):
    """
    A dated window (financial, academic, enrollment or certification).

    institution_id=None marks a global period that applies to every
    institution without one of its own.
    """
    __tablename__ = "financial_periods"
    __table_args__ = (
        db.CheckConstraint("start_date <= end_date", name="ck_financial_periods_range"),
        db.Index("ix_financial_periods_institution_dates", "institution_id", "start_date", "end_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    institution_id = db.Column(db.Integer, db.ForeignKey("institutions.id"), nullable=True)
    name = db.Column(db.String(128), nullable=False)
    type = db.Column(db.String(32), nullable=False, default="financial")
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    institution = db.relationship("Institution", backref=db.backref("financial_periods", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "institution_id": self.institution_id,
            "name": self.name,
            "type": self.type,
            "start_date": to_iso_date(self.start_date),
            "end_date": to_iso_date(self.end_date),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class PeriodPermissionRule(db.Model):
    """
    Widens a period window for one (resource, action).

    A rule with days_before_start=15 lets the action happen up to 15 days
    before the period starts; days_after_end extends past the end.
    """
    __tablename__ = "period_permission_rules"
    __table_args__ = (
        db.CheckConstraint("days_before_start >= 0 AND days_after_end >= 0", name="ck_period_rules_days"),
        db.Index("ix_period_rules_resource_action", "resource", "action"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    institution_id = db.Column(db.Integer, db.ForeignKey("institutions.id"), nullable=True)
    resource = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(32), nullable=False)
    period_type = db.Column(db.String(32), nullable=False)
    days_before_start = db.Column(db.Integer, nullable=False, default=0)
    days_after_end = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "institution_id": self.institution_id,
            "resource": self.resource,
            "action": self.action,
            "period_type": self.period_type,
            "days_before_start": self.days_before_start,
            "days_after_end": self.days_after_end,
            "description": self.description,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class PaymentStatusPermission(db.Model):
    """Permission gated by the payment status of the entity being acted on."""
    __tablename__ = "payment_status_permissions"
    __table_args__ = (
        db.UniqueConstraint("resource", "action", "payment_status", name="uq_payment_status_permissions"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    resource = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(32), nullable=False)
    payment_status = db.Column(db.String(16), nullable=False, index=True)
    description = db.Column(db.Text, nullable=True)
    is_allowed = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "resource": self.resource,
            "action": self.action,
            "payment_status": self.payment_status,
            "description": self.description,
            "is_allowed": self.is_allowed,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
