# Overview: Flask API routes for attribute-based access rules; parses input and returns JSON responses.

# backend/edunexia/routes/abac.py
"""
ABAC rule management and evaluation.

Four rule families share the same CRUD shape:
- phase-rules:   what each institution phase allows per (resource, action)
- payment-rules: what each payment status allows per (resource, action)
- periods:       financial periods (financial, academic, enrollment, certification)
- period-rules:  (resource, action) windows relative to a period type

Reads need permissions:read, writes need permissions:manage. Rule changes
are audited by abac_service.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import abac_service, permission_service
from ..services.abac_service import AccessContext
from ..decorators import require_auth, require_permission, current_actor
from ..validation import ValidationError, ConflictError, NotFoundError
from edunexia.time_utils import parse_iso_date

abac_bp = Blueprint("abac", __name__, url_prefix="/api/abac")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _error(e: Exception):
    """Map a service exception to an error response, or None if unexpected."""
    if isinstance(e, NotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, ConflictError):
        return jsonify({"error": str(e)}), 409
    if isinstance(e, ValidationError):
        return jsonify({"error": str(e)}), 400
    return None


def _crud(label: str, create, update, delete):
    """Bind create / update / delete views for one rule family."""

    def create_view():
        try:
            obj = create(_body(), actor=current_actor())
        except (ValidationError, ConflictError, NotFoundError) as e:
            return _error(e)
        except Exception:
            current_app.logger.exception("Failed to create %s", label)
            return jsonify({"error": "Internal server error"}), 500
        return jsonify(obj.to_dict()), 201

    def update_view(rule_id: int):
        try:
            obj = update(rule_id, _body(), actor=current_actor())
        except (ValidationError, ConflictError, NotFoundError) as e:
            return _error(e)
        except Exception:
            current_app.logger.exception("Failed to update %s", label)
            return jsonify({"error": "Internal server error"}), 500
        return jsonify(obj.to_dict())

    def delete_view(rule_id: int):
        try:
            delete(rule_id, actor=current_actor())
        except NotFoundError as e:
            return _error(e)
        return jsonify({"message": f"{label.capitalize()} deleted"})

    return create_view, update_view, delete_view


def _register(path: str, endpoint: str, label: str, create, update, delete) -> None:
    create_view, update_view, delete_view = _crud(label, create, update, delete)
    manage = require_permission("permissions", "manage")

    abac_bp.add_url_rule(
        path, endpoint=f"create_{endpoint}",
        view_func=require_auth(manage(create_view)), methods=["POST"],
    )
    abac_bp.add_url_rule(
        f"{path}/<int:rule_id>", endpoint=f"update_{endpoint}",
        view_func=require_auth(manage(update_view)), methods=["PUT"],
    )
    abac_bp.add_url_rule(
        f"{path}/<int:rule_id>", endpoint=f"delete_{endpoint}",
        view_func=require_auth(manage(delete_view)), methods=["DELETE"],
    )


# =============================================================================
# LISTS
# =============================================================================

@abac_bp.get("/phase-rules")
@require_auth
@require_permission("permissions", "read")
def list_phase_rules():
    """Query params: phase, resource"""
    rules = abac_service.list_phase_rules(
        phase=request.args.get("phase"),
        resource=request.args.get("resource"),
    )
    return jsonify({"rules": [r.to_dict() for r in rules], "count": len(rules)})


@abac_bp.get("/payment-rules")
@require_auth
@require_permission("permissions", "read")
def list_payment_rules():
    """Query params: payment_status, resource"""
    rules = abac_service.list_payment_rules(
        payment_status=request.args.get("payment_status"),
        resource=request.args.get("resource"),
    )
    return jsonify({"rules": [r.to_dict() for r in rules], "count": len(rules)})


@abac_bp.get("/periods")
@require_auth
@require_permission("permissions", "read")
def list_periods():
    """Query params: institution_id, active_only"""
    periods = abac_service.list_periods(
        institution_id=request.args.get("institution_id", type=int),
        active_only=request.args.get("active_only", "false").lower() == "true",
    )
    return jsonify({"periods": [p.to_dict() for p in periods], "count": len(periods)})


@abac_bp.get("/period-rules")
@require_auth
@require_permission("permissions", "read")
def list_period_rules():
    """Query params: resource, institution_id"""
    rules = abac_service.list_period_rules(
        resource=request.args.get("resource"),
        institution_id=request.args.get("institution_id", type=int),
    )
    return jsonify({"rules": [r.to_dict() for r in rules], "count": len(rules)})


_register(
    "/phase-rules", "phase_rule", "phase rule",
    abac_service.create_phase_rule, abac_service.update_phase_rule, abac_service.delete_phase_rule,
)
_register(
    "/payment-rules", "payment_rule", "payment rule",
    abac_service.create_payment_rule, abac_service.update_payment_rule, abac_service.delete_payment_rule,
)
_register(
    "/periods", "period", "period",
    abac_service.create_period, abac_service.update_period, abac_service.delete_period,
)
_register(
    "/period-rules", "period_rule", "period rule",
    abac_service.create_period_rule, abac_service.update_period_rule, abac_service.delete_period_rule,
)


# =============================================================================
# INSTITUTION PHASE
# =============================================================================

@abac_bp.put("/institutions/<int:institution_id>/phase")
@require_auth
@require_permission("institutions", "update")
def set_institution_phase(institution_id: int):
    """
    Move an institution to another phase.

    Request body:
    - phase: prospecting | onboarding | implementation | active | suspended | canceled
    """
    try:
        institution = abac_service.set_institution_phase(
            institution_id, _body().get("phase"), actor=current_actor()
        )
    except (ValidationError, NotFoundError) as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to update institution phase")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"institution": institution.to_dict()})


# =============================================================================
# EVALUATION
# =============================================================================

def _optional_int(data: dict, key: str) -> int | None:
    value = data.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


@abac_bp.post("/evaluate")
@require_auth
def evaluate():
    """
    Evaluate a full access decision without side effects.

    Request body:
    - resource, action: str (required)
    - institution_id, polo_id, entity_id: int (optional)
    - target_date: YYYY-MM-DD (optional, enables the period gate)
    - payment_status: str (optional, enables the payment gate)
    - user_id: int (optional; evaluating another user needs permissions:read)
    """
    data = _body()
    resource = data.get("resource")
    action = data.get("action")
    if not resource or not action:
        return jsonify({"error": "resource and action required"}), 400

    try:
        target_date = parse_iso_date(data.get("target_date"))
    except (TypeError, ValueError, AttributeError):
        return jsonify({"error": "target_date must be YYYY-MM-DD"}), 400

    try:
        user_id = _optional_int(data, "user_id") or g.current_user.id
        ctx = AccessContext(
            resource=resource,
            action=action,
            institution_id=_optional_int(data, "institution_id"),
            polo_id=_optional_int(data, "polo_id"),
            entity_id=_optional_int(data, "entity_id"),
            target_date=target_date,
            payment_status=data.get("payment_status") or None,
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    if user_id != g.current_user.id and not permission_service.check_user_permission(
        g.current_user.id, "permissions", "read"
    ):
        return jsonify({
            "error": "Permission denied",
            "required_permission": "permissions:read",
        }), 403

    decision = abac_service.evaluate(user_id, ctx)
    return jsonify({"user_id": user_id, **decision.to_dict()})
