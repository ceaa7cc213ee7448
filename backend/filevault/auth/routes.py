from __future__ import annotations

import re
from typing import Any

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import create_access_token, create_refresh_token, jwt_required
from sqlalchemy import func

from ..common.audit import audit
from ..common.errors import APIError
from ..common.rate_limit import login_rate_limiter
from ..common.rbac import current_user
from ..extensions import db
from ..models import User, UserSettings


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

MIN_PASSWORD_LENGTH = 8

DEFAULT_SETTINGS: dict[str, Any] = {
    "theme": "light",
    "notifications_enabled": True,
    "language": "en",
}
THEMES = {"light", "dark"}
LANGUAGE_PATTERN = re.compile(r"[a-z]{2,3}(-[A-Za-z0-9]{2,4})?")


def _claims(user: User) -> dict[str, Any]:
    return {"role": user.role, "username": user.username}


def _token_response(user: User) -> dict[str, Any]:
    claims = _claims(user)
    return {
        "access_token": create_access_token(identity=str(user.id), additional_claims=claims),
        "refresh_token": create_refresh_token(identity=str(user.id), additional_claims=claims),
        "user": user.to_dict(),
    }


def _sanitize_settings(raw: dict[str, Any] | None) -> dict[str, Any]:
    payload = raw or {}
    theme = payload.get("theme")
    if theme not in THEMES:
        theme = DEFAULT_SETTINGS["theme"]

    language = payload.get("language")
    if isinstance(language, str) and LANGUAGE_PATTERN.fullmatch(language.strip()):
        language = language.strip()
    else:
        language = DEFAULT_SETTINGS["language"]

    return {
        "theme": theme,
        "notifications_enabled": bool(payload.get("notifications_enabled", DEFAULT_SETTINGS["notifications_enabled"])),
        "language": language,
    }


def _apply_settings(settings: UserSettings, values: dict[str, Any]) -> None:
    settings.theme = values["theme"]
    settings.notifications_enabled = values["notifications_enabled"]
    settings.language = values["language"]


def _load_or_create_settings(user: User) -> UserSettings:
    settings = db.session.get(UserSettings, user.id)
    if settings is None:
        settings = UserSettings(user_id=user.id, **DEFAULT_SETTINGS)
        db.session.add(settings)
        db.session.flush()
    return settings


def _settings_response(user: User, settings: UserSettings) -> dict[str, Any]:
    return {
        "user_id": user.id,
        "settings": settings.to_dict(),
        "updated_at": settings.updated_at.isoformat() if settings.updated_at else None,
    }


@auth_bp.post("/login")
def login():
    payload = request.get_json(silent=True) or {}
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""

    if not username or not password:
        raise APIError(400, "INVALID_CREDENTIALS", "Username and password are required.")

    remote_ip = (request.headers.get("X-Forwarded-For") or request.remote_addr or "unknown").split(",")[0].strip()
    rate_limit_key = f"{remote_ip}:{username.lower()}"

    if login_rate_limiter.is_blocked(
        rate_limit_key,
        current_app.config["LOGIN_RATE_LIMIT_WINDOW_SECONDS"],
        current_app.config["LOGIN_RATE_LIMIT_MAX_ATTEMPTS"],
    ):
        current_app.logger.warning("Login rate limit hit for %s from %s", username, remote_ip)
        raise APIError(429, "RATE_LIMITED", "Too many login attempts. Please try again later.")

    user = User.query.filter(func.lower(User.username) == username.lower()).one_or_none()
    if user is None or not user.is_active or not user.verify_password(password):
        login_rate_limiter.add_failure(rate_limit_key)
        audit(
            "login_failed",
            actor=user,
            target_type="user",
            target_id=user.id if user is not None else None,
            details=f"Failed login for {username}",
        )
        db.session.commit()
        raise APIError(401, "INVALID_CREDENTIALS", "Invalid username or password.")

    login_rate_limiter.clear(rate_limit_key)
    audit("login", actor=user, target_type="user", target_id=user.id, details=f"User {user.username} logged in")
    db.session.commit()

    return jsonify(_token_response(user))


@auth_bp.post("/refresh")
@jwt_required(refresh=True)
def refresh():
    user = current_user(required=True)
    assert user is not None

    access_token = create_access_token(identity=str(user.id), additional_claims=_claims(user))
    return jsonify({"access_token": access_token})


@auth_bp.get("/me")
@jwt_required()
def me():
    user = current_user(required=True)
    assert user is not None
    return jsonify({"user": user.to_dict()})


@auth_bp.patch("/password")
@jwt_required()
def change_password():
    user = current_user(required=True)
    assert user is not None

    payload = request.get_json(silent=True) or {}
    current_password = payload.get("current_password") or ""
    new_password = payload.get("new_password") or ""

    if not user.verify_password(current_password):
        raise APIError(400, "INVALID_PARAMETER", "Current password is incorrect.")
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise APIError(400, "INVALID_PARAMETER", f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")

    user.set_password(new_password)
    audit("change_password", actor=user, target_type="user", target_id=user.id, details="Password changed")
    db.session.commit()
    return jsonify({"updated": True})


@auth_bp.get("/settings")
@jwt_required()
def get_settings():
    user = current_user(required=True)
    assert user is not None

    settings = _load_or_create_settings(user)
    normalized = _sanitize_settings(settings.to_dict())
    if settings.to_dict() != normalized:
        _apply_settings(settings, normalized)
    db.session.commit()

    return jsonify(_settings_response(user, settings))


@auth_bp.patch("/settings")
@jwt_required()
def update_settings():
    user = current_user(required=True)
    assert user is not None

    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise APIError(400, "INVALID_PARAMETER", "Settings payload must be an object.")

    settings = _load_or_create_settings(user)
    normalized = _sanitize_settings({**settings.to_dict(), **payload})
    _apply_settings(settings, normalized)
    db.session.commit()

    current_app.logger.info("User %s updated settings", user.username)
    return jsonify(_settings_response(user, settings))
