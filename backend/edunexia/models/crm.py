from __future__ import annotations

from ..extensions import db
from edunexia.time_utils import to_utc_z, to_iso_date


LEAD_STATUSES = ("new", "contacted", "qualified", "proposal", "negotiation", "won", "lost", "inactive", "converted")
CLIENT_TYPES = ("pf", "pj")
LEAD_ACTIVITY_TYPES = ("note", "contact", "email", "checkout")
CHECKOUT_STATUSES = ("pending", "active", "canceled", "expired")


class Lead(db.Model):
    """
    Sales prospect.

    LIFECYCLE: new -> contacted -> qualified -> proposal -> negotiation ->
    won / lost / inactive. A paid checkout or an explicit conversion moves
    the lead to "converted" and links converted_to_client_id.
    """
    __tablename__ = "leads"
    __table_args__ = (
        db.Index("ix_leads_status", "status"),
        db.Index("ix_leads_assigned_to", "assigned_to_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True, index=True)
    phone = db.Column(db.String(32), nullable=True)
    company = db.Column(db.String(255), nullable=True)
    source = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="new")
    notes = db.Column(db.Text, nullable=True)

    institution_id = db.Column(db.Integer, db.ForeignKey("institutions.id"), nullable=True, index=True)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    converted_to_client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    assigned_to = db.relationship("User", foreign_keys=[assigned_to_id])
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    converted_to_client = db.relationship("Client", foreign_keys=[converted_to_client_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "company": self.company,
            "source": self.source,
            "status": self.status,
            "notes": self.notes,
            "institution_id": self.institution_id,
            "assigned_to_id": self.assigned_to_id,
            "created_by_id": self.created_by_id,
            "converted_to_client_id": self.converted_to_client_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Client(db.Model):
    """
    Paying customer (pessoa fisica "pf" or pessoa juridica "pj").

    document (CPF / CNPJ) is unique when present.
    asaas_customer_id links the client to the payment gateway customer.
    """
    __tablename__ = "clients"
    __table_args__ = (
        db.Index("ix_clients_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(2), nullable=False, default="pf")
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    document = db.Column(db.String(32), nullable=True, unique=True)

    address = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(128), nullable=True)
    state = db.Column(db.String(2), nullable=True)
    zip_code = db.Column(db.String(16), nullable=True)
    segment = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    asaas_customer_id = db.Column(db.String(64), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    institution_id = db.Column(db.Integer, db.ForeignKey("institutions.id"), nullable=True, index=True)
    polo_id = db.Column(db.Integer, db.ForeignKey("polos.id"), nullable=True)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    contacts = db.relationship(
        "Contact",
        backref="client",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="Contact.id",
    )

    def to_dict(self, include_contacts: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "email": self.email,
            "phone": self.phone,
            "document": self.document,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "segment": self.segment,
            "notes": self.notes,
            "asaas_customer_id": self.asaas_customer_id,
            "is_active": self.is_active,
            "institution_id": self.institution_id,
            "polo_id": self.polo_id,
            "assigned_to_id": self.assigned_to_id,
            "created_by_id": self.created_by_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_contacts:
            data["contacts"] = [c.to_dict() for c in self.contacts]
        return data


class Contact(db.Model):
    """Person at a client. Deleted together with the client."""
    __tablename__ = "contacts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    position = db.Column(db.String(128), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "name": self.name,
            "position": self.position,
            "email": self.email,
            "phone": self.phone,
            "is_primary": self.is_primary,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LeadActivity(db.Model):
    """Timeline entry on a lead (note, contact, email, checkout)."""
    __tablename__ = "lead_activities"
    __table_args__ = (
        db.Index("ix_lead_activities_lead_created", "lead_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)
    type = db.Column(db.String(16), nullable=False)
    description = db.Column(db.Text, nullable=False)
    details = db.Column("metadata", db.JSON, nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lead = db.relationship(
        "Lead",
        backref=db.backref("activities", lazy=True, cascade="all, delete-orphan"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "type": self.type,
            "description": self.description,
            "metadata": self.details,
            "created_by_id": self.created_by_id,
            "created_at": to_utc_z(self.created_at),
        }


class CheckoutLink(db.Model):
    """
    Payment-collection link issued through the payment gateway.

    STATUS MACHINE (link lifecycle):
        pending -> active -> canceled | expired
        pending -> canceled | expired
    canceled and expired are terminal.

    payment_status tracks the gateway-side charge separately
    (pending, paid, overdue, refunded, canceled).
    """
    __tablename__ = "checkout_links"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending', 'active', 'canceled', 'expired')",
            name="ck_checkout_links_status",
        ),
        db.CheckConstraint("value > 0", name="ck_checkout_links_value_positive"),
        db.Index("ix_checkout_links_lead", "lead_id"),
        db.Index("ix_checkout_links_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id"), nullable=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=True, index=True)

    description = db.Column(db.String(255), nullable=False)
    value = db.Column(db.Numeric(10, 2), nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    expiration_time = db.Column(db.Integer, nullable=False, default=30)  # minutes

    course_id = db.Column(db.Integer, nullable=True)
    product_id = db.Column(db.Integer, nullable=True)
    additional_info = db.Column(db.Text, nullable=True)

    asaas_checkout_id = db.Column(db.String(64), nullable=True, unique=True)
    url = db.Column(db.String(512), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending")
    payment_status = db.Column(db.String(16), nullable=False, default="pending")
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    lead = db.relationship("Lead", backref=db.backref("checkout_links", lazy=True))
    client = db.relationship("Client", backref=db.backref("checkout_links", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "client_id": self.client_id,
            "description": self.description,
            "value": float(self.value) if self.value is not None else None,
            "due_date": to_iso_date(self.due_date),
            "expiration_time": self.expiration_time,
            "course_id": self.course_id,
            "product_id": self.product_id,
            "additional_info": self.additional_info,
            "asaas_checkout_id": self.asaas_checkout_id,
            "url": self.url,
            "status": self.status,
            "payment_status": self.payment_status,
            "paid_at": to_utc_z(self.paid_at),
            "created_by_id": self.created_by_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
