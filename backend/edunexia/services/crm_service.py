# Overview: Service-layer operations for the CRM; leads, activities, clients and contacts.

"""
CRM Service

LEADS: Prospects move through the sales pipeline until they are converted
into a client (explicitly, or automatically when a checkout is paid).
Conversion is one-way: a converted lead keeps converted_to_client_id.

CLIENTS: Document (CPF / CNPJ) is unique across clients. Deleting a client
removes its contacts (ON DELETE CASCADE plus ORM delete-orphan).

CONTACTS: At most one primary contact per client; marking a contact primary
clears the flag on its siblings.

AUDIT: Every mutation writes a permission_audit entry through audit_service.
"""
from __future__ import annotations

from ..extensions import db
from ..models import (
    Lead, Client, Contact, LeadActivity, Institution,
    LEAD_STATUSES, CLIENT_TYPES, LEAD_ACTIVITY_TYPES,
)
from ..validation import (
    ModelValidationPolicy, ValidationError, ConflictError, NotFoundError,
    validate_payload, require_choice,
)
from . import audit_service
from .audit_service import Actor
from edunexia.time_utils import utcnow


DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100

LEAD_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "email", "phone", "company", "source", "status", "notes",
        "institution_id", "assigned_to_id",
    },
    required_on_create={"name"},
    choices={"status": tuple(s for s in LEAD_STATUSES if s != "converted")},
)

CLIENT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "type", "email", "phone", "document",
        "address", "city", "state", "zip_code", "segment", "notes",
        "is_active", "institution_id", "polo_id", "assigned_to_id",
    },
    required_on_create={"name"},
    choices={"type": CLIENT_TYPES},
)

CONTACT_POLICY = ModelValidationPolicy(
    writable_fields={"name", "position", "email", "phone", "is_primary", "notes"},
    required_on_create={"name"},
)


def paginate(query, page: int | None, per_page: int | None) -> dict:
    """
    Items plus pagination metadata.

    page=None returns every row without pagination metadata.
    """
    if page is None:
        rows = query.all()
        return {"items": [r.to_dict() for r in rows], "count": len(rows)}

    per_page = min(per_page or DEFAULT_PER_PAGE, MAX_PER_PAGE)
    page = max(page, 1)

    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    rows = query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [r.to_dict() for r in rows],
        "count": len(rows),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def _require_institution(institution_id: int | None) -> None:
    if institution_id is not None and not db.session.get(Institution, institution_id):
        raise NotFoundError("Institution not found")


# =============================================================================
# LEADS
# =============================================================================

def list_leads(
    status: str | None = None,
    source: str | None = None,
    assigned_to_id: int | None = None,
    institution_id: int | None = None,
    search: str | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Newest-first leads, optionally filtered; search matches name, email, phone and company."""
    query = db.session.query(Lead)
    if status:
        require_choice("status", status, LEAD_STATUSES)
        query = query.filter(Lead.status == status)
    if source:
        query = query.filter(Lead.source == source)
    if assigned_to_id is not None:
        query = query.filter(Lead.assigned_to_id == assigned_to_id)
    if institution_id is not None:
        query = query.filter(Lead.institution_id == institution_id)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(db.or_(
            Lead.name.ilike(like),
            Lead.email.ilike(like),
            Lead.phone.ilike(like),
            Lead.company.ilike(like),
        ))
    query = query.order_by(Lead.created_at.desc(), Lead.id.desc())
    return paginate(query, page, per_page)


def get_lead(lead_id: int) -> Lead:
    lead = db.session.get(Lead, lead_id)
    if not lead:
        raise NotFoundError("Lead not found")
    return lead


def create_lead(payload: dict, actor: Actor | None = None) -> Lead:
    data = validate_payload(model=Lead, payload=payload, policy=LEAD_POLICY, partial=False)
    _require_institution(data.get("institution_id"))

    now = utcnow()
    lead = Lead(**data, created_by_id=actor.user_id if actor else None, created_at=now, updated_at=now)
    db.session.add(lead)
    db.session.commit()

    audit_service.record(actor, "create", "lead", lead.id, f"Created lead {lead.name}", new_value=lead.to_dict())
    return lead


def update_lead(lead_id: int, payload: dict, actor: Actor | None = None) -> Lead:
    lead = get_lead(lead_id)
    patch = validate_payload(model=Lead, payload=payload, policy=LEAD_POLICY, partial=True)
    if lead.status == "converted" and "status" in patch:
        raise ConflictError("Converted leads cannot change status")
    _require_institution(patch.get("institution_id"))

    old = lead.to_dict()
    for key, value in patch.items():
        setattr(lead, key, value)
    lead.updated_at = utcnow()
    db.session.commit()

    audit_service.record(
        actor, "update", "lead", lead.id, f"Updated lead {lead.name}",
        old_value=old, new_value=lead.to_dict(),
    )
    return lead


def delete_lead(lead_id: int, actor: Actor | None = None) -> None:
    """Delete a lead and its activities. Leads with checkout links are kept."""
    lead = get_lead(lead_id)
    if lead.checkout_links:
        raise ConflictError("Lead has checkout links; cancel them instead of deleting the lead")

    old = lead.to_dict()
    db.session.delete(lead)
    db.session.commit()

    audit_service.record(actor, "delete", "lead", lead_id, f"Deleted lead {old['name']}", old_value=old)


def list_lead_activities(lead_id: int) -> list[LeadActivity]:
    get_lead(lead_id)
    return (
        db.session.query(LeadActivity)
        .filter(LeadActivity.lead_id == lead_id)
        .order_by(LeadActivity.created_at.desc(), LeadActivity.id.desc())
        .all()
    )


def add_lead_activity(
    lead_id: int,
    type: str,
    description: str,
    metadata: dict | None = None,
    actor: Actor | None = None,
    commit: bool = True,
) -> LeadActivity:
    """Append a timeline entry. commit=False lets callers fold it into their own transaction."""
    require_choice("type", type, LEAD_ACTIVITY_TYPES)
    if not description or not str(description).strip():
        raise ValidationError("description required")
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")

    lead = get_lead(lead_id)
    activity = LeadActivity(
        lead=lead,
        type=type,
        description=str(description).strip(),
        details=metadata,
        created_by_id=actor.user_id if actor else None,
        created_at=utcnow(),
    )
    db.session.add(activity)
    if commit:
        db.session.commit()
    return activity


def build_client_from_lead(lead: Lead, overrides: dict, actor: Actor | None) -> Client:
    """Stage a Client built from the lead (not committed)."""
    base = {
        "name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "institution_id": lead.institution_id,
        "assigned_to_id": lead.assigned_to_id,
    }
    if lead.company:
        base["type"] = "pj"
    base.update(overrides)
    data = validate_payload(model=Client, payload=base, policy=CLIENT_POLICY, partial=False)
    _require_unique_document(data.get("document"))

    now = utcnow()
    client = Client(**data, created_by_id=actor.user_id if actor else None, created_at=now, updated_at=now)
    db.session.add(client)
    return client


def convert_lead_to_client(lead_id: int, overrides: dict | None = None, actor: Actor | None = None) -> Client:
    """
    Create a client from the lead and mark the lead converted.

    overrides may carry client fields the lead doesn't have (type, document, address...).
    Raises ConflictError when the lead was already converted.
    """
    lead = get_lead(lead_id)
    if lead.status == "converted" or lead.converted_to_client_id is not None:
        raise ConflictError("Lead already converted")

    client = build_client_from_lead(lead, overrides or {}, actor)
    db.session.flush()

    old = lead.to_dict()
    lead.status = "converted"
    lead.converted_to_client_id = client.id
    lead.updated_at = utcnow()
    db.session.commit()

    audit_service.record(actor, "create", "client", client.id, f"Created client {client.name} from lead #{lead.id}", new_value=client.to_dict())
    audit_service.record(
        actor, "update", "lead", lead.id, f"Converted lead {lead.name}",
        old_value=old, new_value=lead.to_dict(),
    )
    return client


# =============================================================================
# CLIENTS
# =============================================================================

def _require_unique_document(document: str | None, exclude_id: int | None = None) -> None:
    if not document:
        return
    query = db.session.query(Client.id).filter(Client.document == document)
    if exclude_id is not None:
        query = query.filter(Client.id != exclude_id)
    if query.first():
        raise ConflictError("A client with this document already exists")


def list_clients(
    search: str | None = None,
    type: str | None = None,
    institution_id: int | None = None,
    is_active: bool | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    query = db.session.query(Client)
    if type:
        require_choice("type", type, CLIENT_TYPES)
        query = query.filter(Client.type == type)
    if institution_id is not None:
        query = query.filter(Client.institution_id == institution_id)
    if is_active is not None:
        query = query.filter(Client.is_active.is_(is_active))
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(db.or_(
            Client.name.ilike(like),
            Client.email.ilike(like),
            Client.document.ilike(like),
        ))
    query = query.order_by(Client.name.asc(), Client.id.asc())
    return paginate(query, page, per_page)


def get_client(client_id: int) -> Client:
    client = db.session.get(Client, client_id)
    if not client:
        raise NotFoundError("Client not found")
    return client


def create_client(payload: dict, actor: Actor | None = None) -> Client:
    data = validate_payload(model=Client, payload=payload, policy=CLIENT_POLICY, partial=False)
    _require_unique_document(data.get("document"))
    _require_institution(data.get("institution_id"))

    now = utcnow()
    client = Client(**data, created_by_id=actor.user_id if actor else None, created_at=now, updated_at=now)
    db.session.add(client)
    db.session.commit()

    audit_service.record(actor, "create", "client", client.id, f"Created client {client.name}", new_value=client.to_dict())
    return client


def update_client(client_id: int, payload: dict, actor: Actor | None = None) -> Client:
    client = get_client(client_id)
    patch = validate_payload(model=Client, payload=payload, policy=CLIENT_POLICY, partial=True)
    if "document" in patch:
        _require_unique_document(patch["document"], exclude_id=client.id)
    _require_institution(patch.get("institution_id"))

    old = client.to_dict()
    for key, value in patch.items():
        setattr(client, key, value)
    client.updated_at = utcnow()
    db.session.commit()

    audit_service.record(
        actor, "update", "client", client.id, f"Updated client {client.name}",
        old_value=old, new_value=client.to_dict(),
    )
    return client


def delete_client(client_id: int, actor: Actor | None = None) -> None:
    """Delete a client together with its contacts."""
    client = get_client(client_id)
    if client.checkout_links:
        raise ConflictError("Client has checkout links; deactivate it instead")

    old = client.to_dict(include_contacts=True)

    # Leads converted into this client keep their status but lose the link
    db.session.query(Lead).filter(Lead.converted_to_client_id == client.id).update(
        {Lead.converted_to_client_id: None}, synchronize_session=False
    )
    db.session.delete(client)
    db.session.commit()

    audit_service.record(actor, "delete", "client", client_id, f"Deleted client {old['name']}", old_value=old)


# =============================================================================
# CONTACTS
# =============================================================================

def list_contacts(client_id: int) -> list[Contact]:
    return list(get_client(client_id).contacts)


def _get_contact(client_id: int, contact_id: int) -> Contact:
    contact = db.session.get(Contact, contact_id)
    if not contact or contact.client_id != client_id:
        raise NotFoundError("Contact not found")
    return contact


def _clear_primary(client: Client, keep: Contact) -> None:
    for other in client.contacts:
        if other is not keep and other.is_primary:
            other.is_primary = False


def create_contact(client_id: int, payload: dict, actor: Actor | None = None) -> Contact:
    client = get_client(client_id)
    data = validate_payload(model=Contact, payload=payload, policy=CONTACT_POLICY, partial=False)

    now = utcnow()
    contact = Contact(**data, created_at=now, updated_at=now)
    client.contacts.append(contact)
    if contact.is_primary:
        _clear_primary(client, contact)
    db.session.commit()

    audit_service.record(
        actor, "create", "contact", contact.id, f"Added contact {contact.name} to client {client.name}",
        new_value=contact.to_dict(),
    )
    return contact


def update_contact(client_id: int, contact_id: int, payload: dict, actor: Actor | None = None) -> Contact:
    contact = _get_contact(client_id, contact_id)
    patch = validate_payload(model=Contact, payload=payload, policy=CONTACT_POLICY, partial=True)

    old = contact.to_dict()
    for key, value in patch.items():
        setattr(contact, key, value)
    if patch.get("is_primary"):
        _clear_primary(contact.client, contact)
    contact.updated_at = utcnow()
    db.session.commit()

    audit_service.record(
        actor, "update", "contact", contact.id, f"Updated contact {contact.name}",
        old_value=old, new_value=contact.to_dict(),
    )
    return contact


def delete_contact(client_id: int, contact_id: int, actor: Actor | None = None) -> None:
    contact = _get_contact(client_id, contact_id)
    old = contact.to_dict()
    contact.client.contacts.remove(contact)
    db.session.commit()

    audit_service.record(actor, "delete", "contact", contact_id, f"Deleted contact {old['name']}", old_value=old)
