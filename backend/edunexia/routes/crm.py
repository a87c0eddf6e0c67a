# Overview: Flask API routes for CRM clients and contacts; parses input and returns JSON responses.

# backend/edunexia/routes/crm.py
"""
CRM client and contact routes.

Clients are checked against the ABAC gates of their institution (phase,
ownership) on top of the clients:* permission. Contacts live under their
client and share its permissions.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import crm_service
from ..decorators import require_auth, require_permission, current_actor, enforce_access
from ..validation import ValidationError, ConflictError, NotFoundError, parse_int_arg

crm_bp = Blueprint("crm", __name__, url_prefix="/api/crm")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _bool_arg(name: str) -> bool | None:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return raw.lower() in ("1", "true", "yes")


# =============================================================================
# CLIENTS
# =============================================================================

@crm_bp.get("/clients")
@require_auth
@require_permission("clients", "read")
def list_clients():
    """
    List clients.

    Query params:
    - search: str (name, email or document)
    - type: pf | pj
    - institution_id: int
    - is_active: bool
    - page, per_page: int (pagination; per_page max 100)
    """
    try:
        result = crm_service.list_clients(
            search=request.args.get("search"),
            type=request.args.get("type"),
            institution_id=parse_int_arg("institution_id", request.args.get("institution_id")),
            is_active=_bool_arg("is_active"),
            page=parse_int_arg("page", request.args.get("page"), minimum=1),
            per_page=parse_int_arg("per_page", request.args.get("per_page"), minimum=1),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(result)


@crm_bp.get("/clients/<int:client_id>")
@require_auth
@require_permission("clients", "read")
def get_client(client_id: int):
    try:
        client = crm_service.get_client(client_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(client.to_dict(include_contacts=True))


@crm_bp.post("/clients")
@require_auth
@require_permission("clients", "create")
def create_client():
    data = _body()
    try:
        institution_id = parse_int_arg("institution_id", data.get("institution_id"))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    if institution_id is not None:
        denied = enforce_access("clients", "create", institution_id=institution_id)
        if denied:
            return denied

    try:
        client = crm_service.create_client(data, actor=current_actor())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create client")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(client.to_dict()), 201


@crm_bp.put("/clients/<int:client_id>")
@require_auth
@require_permission("clients", "update")
def update_client(client_id: int):
    try:
        client = crm_service.get_client(client_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    denied = enforce_access("clients", "update", entity_id=client.id, institution_id=client.institution_id)
    if denied:
        return denied

    try:
        client = crm_service.update_client(client_id, _body(), actor=current_actor())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to update client")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(client.to_dict())


@crm_bp.delete("/clients/<int:client_id>")
@require_auth
@require_permission("clients", "delete")
def delete_client(client_id: int):
    try:
        client = crm_service.get_client(client_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    denied = enforce_access("clients", "delete", entity_id=client.id, institution_id=client.institution_id)
    if denied:
        return denied

    try:
        crm_service.delete_client(client_id, actor=current_actor())
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"message": "Client deleted"})


# =============================================================================
# CONTACTS
# =============================================================================

@crm_bp.get("/clients/<int:client_id>/contacts")
@require_auth
@require_permission("clients", "read")
def list_contacts(client_id: int):
    try:
        contacts = crm_service.list_contacts(client_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"items": [c.to_dict() for c in contacts], "count": len(contacts)})


@crm_bp.post("/clients/<int:client_id>/contacts")
@require_auth
@require_permission("clients", "update")
def create_contact(client_id: int):
    """
    Add a contact to a client.

    Request body: name (required), email, phone, position, is_primary.
    A new primary contact demotes the previous one.
    """
    try:
        contact = crm_service.create_contact(client_id, _body(), actor=current_actor())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to create contact")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(contact.to_dict()), 201


@crm_bp.put("/clients/<int:client_id>/contacts/<int:contact_id>")
@require_auth
@require_permission("clients", "update")
def update_contact(client_id: int, contact_id: int):
    try:
        contact = crm_service.update_contact(client_id, contact_id, _body(), actor=current_actor())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(contact.to_dict())


@crm_bp.delete("/clients/<int:client_id>/contacts/<int:contact_id>")
@require_auth
@require_permission("clients", "update")
def delete_contact(client_id: int, contact_id: int):
    try:
        crm_service.delete_contact(client_id, contact_id, actor=current_actor())
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"message": "Contact deleted"})
