from __future__ import annotations

from flask import current_app, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditLog, User


def _request_actor_ip() -> str | None:
    if not has_request_context():
        return None
    forwarded = request.headers.get("X-Forwarded-For") or ""
    if forwarded.strip():
        return forwarded.split(",")[0].strip()[:45]
    return request.remote_addr or None


def _request_user_agent() -> str | None:
    if not has_request_context():
        return None
    value = (request.headers.get("User-Agent") or "").strip()
    return value[:255] or None


def audit(
    action: str,
    actor: User | None = None,
    target_type: str = "folder",
    target_id: int | None = None,
    details: str | None = None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """Record an audit event in the caller's transaction.

    The caller's pending changes are flushed first and any failure there
    propagates. The audit row itself is written inside a savepoint; if that
    insert fails it is rolled back and logged, and the primary action stands.
    """
    entry = AuditLog(
        user_id=actor.id if actor else None,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details,
        ip_address=ip_address or _request_actor_ip(),
        user_agent=user_agent or _request_user_agent(),
    )
    db.session.flush()
    try:
        with db.session.begin_nested():
            db.session.add(entry)
            db.session.flush([entry])
    except SQLAlchemyError:
        current_app.logger.warning("Failed to record audit event %s", action, exc_info=True)
        if entry in db.session:
            db.session.expunge(entry)
