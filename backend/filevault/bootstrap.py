from __future__ import annotations

from flask import current_app

from .extensions import db
from .models import User, UserRole, UserStatus


def ensure_superadmin() -> User | None:
    username = str(current_app.config.get("SUPERADMIN_USERNAME") or "").strip()
    password = str(current_app.config.get("SUPERADMIN_PASSWORD") or "")
    if not username or not password:
        return None

    user = User.query.filter_by(username=username).one_or_none()
    if user is None:
        user = User(username=username, role=UserRole.SUPERADMIN.value, status=UserStatus.ACTIVE.value)
        user.set_password(password)
        db.session.add(user)
        current_app.logger.info("Created superadmin account %s", username)
    return user


def bootstrap_defaults(commit: bool = False) -> None:
    ensure_superadmin()
    if commit:
        db.session.commit()
