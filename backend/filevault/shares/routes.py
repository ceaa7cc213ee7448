from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required

from ..common.audit import audit
from ..common.errors import APIError
from ..common.rbac import current_user, item_owner_id, load_item, parse_access_level, parse_target_type
from ..extensions import db
from ..models import AccessLevel, File, Folder, Permission, TargetType, User


shares_bp = Blueprint("shares", __name__, url_prefix="/shares")

COLLECTION_TYPES = {"files": TargetType.FILE, "folders": TargetType.FOLDER}


def _parse_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise APIError(400, "INVALID_PARAMETER", f"{field_name} must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise APIError(400, "INVALID_PARAMETER", f"{field_name} must be an integer.") from error


def _get_item(item_id: int, item_type: TargetType) -> File | Folder:
    item = load_item(item_id, item_type)
    if item is None:
        if item_type == TargetType.FILE:
            raise APIError(404, "FILE_NOT_FOUND", "File not found.")
        raise APIError(404, "FOLDER_NOT_FOUND", "Folder not found.")
    return item


def _get_grantee(user_id: int) -> User:
    grantee = db.session.get(User, user_id)
    if grantee is None:
        raise APIError(404, "USER_NOT_FOUND", "User not found.")
    return grantee


def _grant(actor: User, item: File | Folder, item_type: TargetType, grantee: User, access: AccessLevel) -> Permission:
    if item_owner_id(item) != actor.id:
        raise APIError(403, "FORBIDDEN", "Only the owner can share this item.")
    if grantee.id == actor.id:
        raise APIError(400, "INVALID_PARAMETER", "Owner already has full access.")

    permission = Permission(
        file_id=item.id if item_type == TargetType.FILE else None,
        folder_id=item.id if item_type == TargetType.FOLDER else None,
        user_id=grantee.id,
        granted_by=actor.id,
        access_level=access.value,
    )
    db.session.add(permission)
    return permission


@shares_bp.post("")
@jwt_required()
def grant_permission():
    actor = current_user(required=True)
    assert actor is not None

    payload = request.get_json(silent=True) or {}
    item_type = parse_target_type(payload.get("target_type"))
    item = _get_item(_parse_int(payload.get("target_id"), "target_id"), item_type)
    grantee = _get_grantee(_parse_int(payload.get("user_id"), "user_id"))
    access = parse_access_level(payload.get("access_level"), default=AccessLevel.VIEW.value)

    permission = _grant(actor, item, item_type, grantee, access)
    db.session.flush()
    audit(
        "grant_permission",
        actor=actor,
        target_type=item_type.value,
        target_id=item.id,
        details=f"Granted {access.value} on {item.name} to {grantee.username}",
    )
    db.session.commit()

    return jsonify({"permission": permission.to_dict()}), 201


@shares_bp.post("/multiple")
@jwt_required()
def grant_permission_multiple():
    actor = current_user(required=True)
    assert actor is not None

    payload = request.get_json(silent=True) or {}
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise APIError(400, "INVALID_PARAMETER", "items must be a non-empty list.")
    grantee = _get_grantee(_parse_int(payload.get("user_id"), "user_id"))
    access = parse_access_level(payload.get("access_level"), default=AccessLevel.VIEW.value)

    created: list[Permission] = []
    errors: list[dict[str, Any]] = []
    for raw in items:
        entry = raw if isinstance(raw, dict) else {}
        try:
            item_type = parse_target_type(entry.get("type"))
            item = _get_item(_parse_int(entry.get("id"), "id"), item_type)
            created.append(_grant(actor, item, item_type, grantee, access))
        except APIError as error:
            errors.append({"id": entry.get("id"), "type": entry.get("type"), "code": error.code, "message": error.message})

    if not created:
        db.session.rollback()
        raise APIError(403, "FORBIDDEN", "None of the selected items could be shared.", {"errors": errors})

    db.session.flush()
    audit(
        "grant_permission_multiple",
        actor=actor,
        target_type="file",
        details=f"Granted {access.value} on {len(created)} items to {grantee.username}",
    )
    db.session.commit()

    return jsonify({"permissions": [item.to_dict() for item in created], "errors": errors}), 201


@shares_bp.get("/<string:collection>/<int:item_id>")
@jwt_required()
def list_permissions(collection: str, item_id: int):
    actor = current_user(required=True)
    assert actor is not None

    item_type = COLLECTION_TYPES.get(collection)
    if item_type is None:
        raise APIError(404, "HTTP_ERROR", "Unknown share collection.")
    item = _get_item(item_id, item_type)
    if item_owner_id(item) != actor.id:
        raise APIError(403, "FORBIDDEN", "Only the owner can view sharing for this item.")

    column = Permission.file_id if item_type == TargetType.FILE else Permission.folder_id
    permissions = Permission.query.filter(column == item.id).order_by(Permission.created_at.asc(), Permission.id.asc()).all()
    return jsonify({"permissions": [permission.to_dict() for permission in permissions]})


@shares_bp.delete("/<int:permission_id>")
@jwt_required()
def revoke_permission(permission_id: int):
    actor = current_user(required=True)
    assert actor is not None

    permission = db.session.get(Permission, permission_id)
    if permission is None:
        raise APIError(404, "PERMISSION_NOT_FOUND", "Permission not found.")

    item = load_item(permission.target_id, permission.target_type)
    is_owner = item is not None and item_owner_id(item) == actor.id
    if not is_owner and permission.granted_by != actor.id:
        raise APIError(403, "FORBIDDEN", "Only the owner or the granter can revoke this permission.")

    target_type = permission.target_type.value
    target_id = permission.target_id
    db.session.delete(permission)
    audit(
        "revoke_permission",
        actor=actor,
        target_type=target_type,
        target_id=target_id,
        details=f"Revoked permission {permission_id}",
    )
    db.session.commit()
    return jsonify({"deleted": True})
