# Overview: Flask API routes for the permission audit trail; parses filters and returns JSON or CSV.

# backend/edunexia/routes/audit.py
"""
Permission audit trail (read-only).

Query params for /logs:
- userId, actionType, entityType, entityId
- startDate, endDate (ISO-8601; a bare endDate date covers that whole day)
- limit (default 100, max 1000), offset
- format: json (default) | csv
"""

from flask import Blueprint, request, jsonify, g, Response

from ..services import audit_service, permission_service
from ..decorators import require_auth, require_permission
from ..validation import ValidationError, parse_int_arg
from edunexia.time_utils import utcnow

audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")


@audit_bp.get("/logs")
@require_auth
@require_permission("audit_logs", "read")
def list_logs():
    try:
        filters = audit_service.filters_from_args(request.args)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    output_format = (request.args.get("format") or "json").lower()
    if output_format not in ("json", "csv"):
        return jsonify({"error": "format must be one of: json, csv"}), 400

    if output_format == "csv":
        if not permission_service.check_user_permission(g.current_user.id, "audit_logs", "export"):
            return jsonify({
                "error": "Permission denied",
                "required_permission": "audit_logs:export",
            }), 403
        filename = f"audit-logs-{utcnow().strftime('%Y%m%dT%H%M%S')}.csv"
        return Response(
            audit_service.export_csv(filters),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    return jsonify(audit_service.list_logs(filters))


@audit_bp.get("/logs/<int:log_id>")
@require_auth
@require_permission("audit_logs", "read")
def get_log(log_id: int):
    entry = audit_service.get_log(log_id)
    if not entry:
        return jsonify({"error": "Audit entry not found"}), 404
    return jsonify(entry.to_dict())


@audit_bp.get("/stats")
@require_auth
@require_permission("audit_logs", "read")
def stats():
    """Counts by action and entity type plus the most active users."""
    try:
        filters = audit_service.filters_from_args(request.args)
        top = parse_int_arg("top", request.args.get("top"), default=10, minimum=1, maximum=50)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify(audit_service.get_stats(filters.start_date, filters.end_date, top=top))
