from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required
from sqlalchemy import func

from ..common.audit import audit
from ..common.errors import APIError
from ..common.rbac import admin_required, current_user
from ..extensions import db
from ..models import User, UserRole, UserStatus


users_bp = Blueprint("users", __name__, url_prefix="/users")

SEARCH_LIMIT = 20


def _public_user(user: User) -> dict[str, object]:
    return {"id": user.id, "username": user.username}


@users_bp.get("")
@admin_required
def list_users():
    users = User.query.order_by(User.id.asc()).all()
    return jsonify({"users": [user.to_dict() for user in users]})


@users_bp.post("")
@admin_required
def create_user():
    actor = current_user(required=True)
    assert actor is not None

    payload = request.get_json(silent=True) or {}
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""

    if len(username) < 3:
        raise APIError(400, "INVALID_PARAMETER", "Username must be at least 3 characters.")
    if len(password) < 8:
        raise APIError(400, "INVALID_PARAMETER", "Password must be at least 8 characters.")

    try:
        role = UserRole((payload.get("role") or UserRole.EMPLOYEE.value).strip().lower())
    except ValueError as error:
        raise APIError(400, "INVALID_PARAMETER", "Unknown role.") from error
    if role == UserRole.SUPERADMIN and actor.role != UserRole.SUPERADMIN.value:
        raise APIError(403, "FORBIDDEN", "Only a superadmin can create another superadmin.")

    try:
        status = UserStatus((payload.get("status") or UserStatus.ACTIVE.value).strip().lower())
    except ValueError as error:
        raise APIError(400, "INVALID_PARAMETER", "Unknown status.") from error

    exists = User.query.filter(func.lower(User.username) == username.lower()).one_or_none()
    if exists is not None:
        raise APIError(409, "USER_EXISTS", "Username is already taken.")

    user = User(username=username, role=role.value, status=status.value)
    user.set_password(password)
    db.session.add(user)
    db.session.flush()
    audit("create_user", actor=actor, target_type="user", target_id=user.id, details=f"Created user {username} ({role.value})")
    db.session.commit()

    return jsonify({"user": user.to_dict()}), 201


@users_bp.get("/search")
@jwt_required()
def search_users():
    user = current_user(required=True)
    assert user is not None

    q = (request.args.get("q") or "").strip()
    if not q:
        return jsonify({"users": []})

    matches = (
        User.query.filter(User.id != user.id, User.username.ilike(f"%{q}%"))
        .order_by(User.username.asc())
        .limit(SEARCH_LIMIT)
        .all()
    )
    return jsonify({"users": [_public_user(item) for item in matches]})


@users_bp.get("/available")
@jwt_required()
def available_users():
    user = current_user(required=True)
    assert user is not None

    others = (
        User.query.filter(User.id != user.id, User.status == UserStatus.ACTIVE.value)
        .order_by(User.username.asc())
        .all()
    )
    return jsonify({"users": [_public_user(item) for item in others]})
