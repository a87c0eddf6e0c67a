from __future__ import annotations

from ..extensions import db
from edunexia.time_utils import to_utc_z


INSTITUTION_PHASES = ("prospecting", "onboarding", "implementation", "active", "suspended", "canceled")


class Institution(db.Model):
    """
    Multi-tenant root: every tenant is an Institution.

    WHY: Schools and universities share one database. Polos, users, leads and
    clients hang off an institution, and ABAC phase rules are evaluated
    against the institution's current lifecycle phase.

    PHASE: prospecting -> onboarding -> implementation -> active,
    with suspended / canceled reachable from any phase.
    """
    __tablename__ = "institutions"
    __table_args__ = (
        db.CheckConstraint(
            "phase IN ('prospecting', 'onboarding', 'implementation', 'active', 'suspended', 'canceled')",
            name="ck_institutions_phase",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    phase = db.Column(db.String(32), nullable=False, default="prospecting", index=True)
    phase_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Owner is the institution's primary admin (ownership checks)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id", use_alter=True, name="fk_institutions_owner_id"), nullable=True, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    owner = db.relationship("User", foreign_keys=[owner_id], post_update=True)

    def __repr__(self) -> str:
        return f"<Institution id={self.id} name={self.name!r} phase={self.phase}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "phase": self.phase,
            "phase_updated_at": to_utc_z(self.phase_updated_at),
            "owner_id": self.owner_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Polo(db.Model):
    """
    Polo (branch / teaching center) within an institution.

    MULTI-TENANT: Polos are scoped to institutions via institution_id.
    Polo codes are unique within an institution, not globally.
    """
    __tablename__ = "polos"
    __table_args__ = (
        db.UniqueConstraint("institution_id", "code", name="uq_polos_institution_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    institution_id = db.Column(db.Integer, db.ForeignKey("institutions.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True)

    manager_id = db.Column(db.Integer, db.ForeignKey("users.id", use_alter=True, name="fk_polos_manager_id"), nullable=True, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    institution = db.relationship("Institution", backref=db.backref("polos", lazy=True))
    manager = db.relationship("User", foreign_keys=[manager_id], post_update=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "institution_id": self.institution_id,
            "name": self.name,
            "code": self.code,
            "manager_id": self.manager_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
