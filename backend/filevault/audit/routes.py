from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required

from ..common.errors import APIError
from ..common.rbac import current_user
from ..models import AuditLog


audit_bp = Blueprint("audit", __name__, url_prefix="/audit")

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000


def _parse_optional_int(value: str | None, field_name: str) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError as error:
        raise APIError(400, "INVALID_PARAMETER", f"{field_name} must be an integer.") from error


@audit_bp.before_request
@jwt_required()
def _guard_admin():
    # CORS preflight requests do not carry JWT and must pass untouched.
    if request.method == "OPTIONS":
        return None

    user = current_user(required=True)
    assert user is not None
    if not user.is_admin:
        raise APIError(403, "FORBIDDEN", "Audit logs are restricted to administrators.")
    return None


@audit_bp.get("/logs")
def list_logs():
    action = (request.args.get("action") or "").strip()
    user_id = _parse_optional_int(request.args.get("user_id"), "user_id")
    limit = _parse_optional_int(request.args.get("limit"), "limit") or DEFAULT_LIMIT
    limit = max(1, min(limit, MAX_LIMIT))

    query = AuditLog.query
    if action:
        query = query.filter(AuditLog.action == action)
    if user_id is not None:
        query = query.filter(AuditLog.user_id == user_id)

    logs = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    return jsonify({"logs": [entry.to_dict() for entry in logs]})
