# Overview: Flask API routes for leads, lead activities and checkout links; parses input and returns JSON responses.

# backend/edunexia/routes/leads.py
"""
Lead pipeline routes (v2).

Provides endpoints for:
- Leads (list, get, create, update, delete) and their activity timeline
- Manual conversion of a lead into a client
- Checkout payment links: create for a lead, read, refresh status from the
  payment gateway, cancel
- Gateway webhook: payment notifications authenticated by a shared token

ERRORS:
- PaymentGatewayError -> 502 (gateway unreachable, rejected or misconfigured)
- CheckoutStateError  -> 409 (illegal status transition)
"""

import hmac

from flask import Blueprint, request, jsonify, current_app

from ..services import crm_service, checkout_service, permission_service
from ..services.asaas_client import PaymentGatewayError
from ..services.checkout_service import CheckoutStateError
from ..decorators import require_auth, require_permission, current_actor, enforce_access
from ..validation import ValidationError, ConflictError, NotFoundError, parse_int_arg

leads_bp = Blueprint("leads", __name__, url_prefix="/api/v2")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _gateway_error(e: PaymentGatewayError):
    current_app.logger.warning("Payment gateway error (%s): %s", e.status_code, e)
    return jsonify({"error": str(e), "gateway_status": e.status_code}), 502


# =============================================================================
# LEADS
# =============================================================================

@leads_bp.get("/leads")
@require_auth
@require_permission("leads", "read")
def list_leads():
    """
    List leads, newest first.

    Query params:
    - status, source: str
    - assigned_to_id, institution_id: int
    - search: str (name, email, phone or company)
    - page, per_page: int (pagination; per_page max 100)
    """
    try:
        result = crm_service.list_leads(
            status=request.args.get("status"),
            source=request.args.get("source"),
            assigned_to_id=parse_int_arg("assigned_to_id", request.args.get("assigned_to_id")),
            institution_id=parse_int_arg("institution_id", request.args.get("institution_id")),
            search=request.args.get("search"),
            page=parse_int_arg("page", request.args.get("page"), minimum=1),
            per_page=parse_int_arg("per_page", request.args.get("per_page"), minimum=1),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(result)


@leads_bp.get("/leads/<int:lead_id>")
@require_auth
@require_permission("leads", "read")
def get_lead(lead_id: int):
    try:
        lead = crm_service.get_lead(lead_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(lead.to_dict())


@leads_bp.post("/leads")
@require_auth
@require_permission("leads", "create")
def create_lead():
    data = _body()
    try:
        institution_id = parse_int_arg("institution_id", data.get("institution_id"))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    if institution_id is not None:
        denied = enforce_access("leads", "create", institution_id=institution_id)
        if denied:
            return denied

    try:
        lead = crm_service.create_lead(data, actor=current_actor())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to create lead")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(lead.to_dict()), 201


@leads_bp.put("/leads/<int:lead_id>")
@require_auth
@require_permission("leads", "update")
def update_lead(lead_id: int):
    try:
        lead = crm_service.get_lead(lead_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    denied = enforce_access("leads", "update", entity_id=lead.id, institution_id=lead.institution_id)
    if denied:
        return denied

    try:
        lead = crm_service.update_lead(lead_id, _body(), actor=current_actor())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to update lead")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(lead.to_dict())


@leads_bp.delete("/leads/<int:lead_id>")
@require_auth
@require_permission("leads", "delete")
def delete_lead(lead_id: int):
    try:
        lead = crm_service.get_lead(lead_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    denied = enforce_access("leads", "delete", entity_id=lead.id, institution_id=lead.institution_id)
    if denied:
        return denied

    try:
        crm_service.delete_lead(lead_id, actor=current_actor())
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"message": "Lead deleted"})


# =============================================================================
# ACTIVITIES
# =============================================================================

@leads_bp.get("/leads/<int:lead_id>/activities")
@require_auth
@require_permission("leads", "read")
def list_activities(lead_id: int):
    try:
        activities = crm_service.list_lead_activities(lead_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"items": [a.to_dict() for a in activities], "count": len(activities)})


@leads_bp.post("/leads/<int:lead_id>/activities")
@require_auth
@require_permission("leads", "update")
def add_activity(lead_id: int):
    """
    Append a timeline entry.

    Request body:
    - type: note | contact | email | checkout (required)
    - description: str (required)
    - metadata: object (optional)
    """
    data = _body()
    try:
        activity = crm_service.add_lead_activity(
            lead_id,
            type=data.get("type"),
            description=data.get("description"),
            metadata=data.get("metadata"),
            actor=current_actor(),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    return jsonify(activity.to_dict()), 201


@leads_bp.post("/leads/<int:lead_id>/convert")
@require_auth
@require_permission("clients", "create")
def convert_lead(lead_id: int):
    """
    Convert a lead into a client.

    Request body: optional client fields (type, document, address...) that
    override or complete what the lead carries.
    """
    try:
        lead = crm_service.get_lead(lead_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    denied = enforce_access("leads", "update", entity_id=lead.id, institution_id=lead.institution_id)
    if denied:
        return denied

    try:
        client = crm_service.convert_lead_to_client(lead_id, _body(), actor=current_actor())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to convert lead")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"client": client.to_dict(), "lead": crm_service.get_lead(lead_id).to_dict()}), 201


# =============================================================================
# CHECKOUT LINKS
# =============================================================================

@leads_bp.get("/leads/<int:lead_id>/checkout")
@require_auth
@require_permission("checkout_links", "read")
def list_checkout_links(lead_id: int):
    try:
        links = checkout_service.list_lead_checkout_links(lead_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"items": [link.to_dict() for link in links], "count": len(links)})


@leads_bp.post("/leads/<int:lead_id>/checkout")
@require_auth
@require_permission("checkout_links", "create")
def create_checkout_link(lead_id: int):
    """
    Create a payment link for the lead through the payment gateway.

    Request body (camelCase or snake_case):
    - description: str (required, min 3 chars)
    - value: number > 0 (required)
    - dueDate: YYYY-MM-DD (required; past dates are accepted)
    - expirationTime: minutes, 5..60 (default 30)
    - courseId, productId: int (optional)
    - additionalInfo: str (optional)
    """
    try:
        lead = crm_service.get_lead(lead_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    denied = enforce_access("checkout_links", "create", institution_id=lead.institution_id)
    if denied:
        return denied

    try:
        link = checkout_service.create_checkout_link(lead_id, _body(), actor=current_actor())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except PaymentGatewayError as e:
        return _gateway_error(e)
    except Exception:
        current_app.logger.exception("Failed to create checkout link")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(link.to_dict()), 201


@leads_bp.get("/checkout/<int:link_id>")
@require_auth
@require_permission("checkout_links", "read")
def get_checkout_link(link_id: int):
    try:
        link = checkout_service.get_checkout_link(link_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(link.to_dict())


@leads_bp.post("/checkout/<int:link_id>/refresh")
@require_auth
@require_permission("checkout_links", "update")
def refresh_checkout_link(link_id: int):
    """Pull the payment status from the gateway; a first "paid" converts the lead."""
    try:
        link = checkout_service.refresh_checkout_status(link_id, actor=current_actor())
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except PaymentGatewayError as e:
        return _gateway_error(e)
    except Exception:
        current_app.logger.exception("Failed to refresh checkout link")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(link.to_dict())


@leads_bp.post("/checkout/<int:link_id>/cancel")
@require_auth
@require_permission("checkout_links", "update")
def cancel_checkout_link(link_id: int):
    try:
        link = checkout_service.get_checkout_link(link_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    denied = enforce_access("checkout_links", "update", entity_id=link.id)
    if denied:
        return denied

    try:
        link = checkout_service.cancel_checkout_link(link_id, actor=current_actor())
    except CheckoutStateError as e:
        return jsonify({"error": str(e)}), 409
    except PaymentGatewayError as e:
        return _gateway_error(e)
    except Exception:
        current_app.logger.exception("Failed to cancel checkout link")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(link.to_dict())


@leads_bp.post("/checkout/webhook")
def checkout_webhook():
    """
    Payment notifications pushed by the gateway.

    Authenticated by the asaas-access-token header, not a user session.
    Unhandled event types are acknowledged with 200 so the gateway stops retrying.
    """
    expected = current_app.config.get("ASAAS_WEBHOOK_TOKEN")
    if not expected:
        current_app.logger.error("Checkout webhook called but ASAAS_WEBHOOK_TOKEN is not configured")
        return jsonify({"error": "Webhook not configured"}), 503

    supplied = request.headers.get("asaas-access-token", "")
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        permission_service.log_security_event(
            user_id=None,
            event_type="WEBHOOK_REJECTED",
            success=False,
            resource=request.path,
            action="webhook",
            reason="Invalid webhook token",
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
        return jsonify({"error": "Invalid webhook token"}), 401

    data = request.get_json(silent=True)
    try:
        link = checkout_service.handle_webhook_event(data)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        current_app.logger.warning("Webhook for unknown checkout link: %s", e)
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to process checkout webhook")
        return jsonify({"error": "Internal server error"}), 500

    if link is None:
        current_app.logger.info("Ignoring webhook event %s", data.get("event"))
        return jsonify({"received": True, "handled": False})
    return jsonify({"received": True, "handled": True, "checkout_link": link.to_dict()})
