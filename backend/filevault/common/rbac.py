from __future__ import annotations

from functools import wraps
from typing import Any, Callable

from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

from ..extensions import db
from ..models import AccessLevel, File, Folder, Permission, TargetType, User
from .errors import APIError


# Stored grant level -> does it satisfy the required capability. Deliberately
# not a linear hierarchy: any grant allows view, download and edit need an
# exact match.
CAPABILITY_RULES: dict[str, Callable[[str], bool]] = {
    AccessLevel.VIEW.value: lambda stored: True,
    AccessLevel.DOWNLOAD.value: lambda stored: stored == AccessLevel.DOWNLOAD.value,
    AccessLevel.EDIT.value: lambda stored: stored == AccessLevel.EDIT.value,
}

# Display precedence when one subject holds several grants on the same item.
_LEVEL_RANK = {AccessLevel.VIEW.value: 0, AccessLevel.DOWNLOAD.value: 1, AccessLevel.EDIT.value: 2}

OWNER_ACCESS = "owner"


def current_user(required: bool = True) -> User | None:
    identity = get_jwt_identity()
    if identity is None:
        if required:
            raise APIError(401, "UNAUTHENTICATED", "Authentication required.")
        return None

    user = db.session.get(User, int(identity))
    if (user is None or not user.is_active) and required:
        raise APIError(401, "UNAUTHENTICATED", "Invalid session.")
    return user


def admin_required(func: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        verify_jwt_in_request()
        user = current_user(required=True)
        assert user is not None
        if not user.is_admin:
            raise APIError(403, "FORBIDDEN", "Admin access required.")
        return func(*args, **kwargs)

    return wrapper


def parse_target_type(value: Any) -> TargetType:
    try:
        return TargetType(str(value or "").strip().lower())
    except ValueError as error:
        raise APIError(400, "INVALID_PARAMETER", "target_type must be 'file' or 'folder'.") from error


def parse_access_level(value: Any, default: str | None = None) -> AccessLevel:
    raw = value if value not in (None, "") else default
    try:
        return AccessLevel(str(raw or "").strip().lower())
    except ValueError as error:
        raise APIError(400, "INVALID_ACCESS", "access_level must be 'view', 'download' or 'edit'.") from error


def load_item(item_id: int, item_type: TargetType | str) -> File | Folder | None:
    model = File if TargetType(item_type) == TargetType.FILE else Folder
    return db.session.get(model, item_id)


def item_owner_id(item: File | Folder) -> int:
    return item.created_by if isinstance(item, File) else item.owner_id


def grants_for(item_id: int, item_type: TargetType | str, user_id: int) -> list[Permission]:
    query = Permission.query.filter(Permission.user_id == user_id)
    if TargetType(item_type) == TargetType.FILE:
        query = query.filter(Permission.file_id == item_id)
    else:
        query = query.filter(Permission.folder_id == item_id)
    return query.all()


def check_access(item_id: int, item_type: TargetType | str, user_id: int, capability: AccessLevel | str) -> bool:
    """Decide whether ``user_id`` may exercise ``capability`` on one item.

    Ownership allows everything. Otherwise only grants on this exact item
    count; grants on ancestor folders are not inherited here. A missing item
    is a deny, never an error.
    """
    item = load_item(item_id, item_type)
    if item is None:
        return False
    if item_owner_id(item) == user_id:
        return True

    rule = CAPABILITY_RULES.get(AccessLevel(capability).value)
    if rule is None:
        return False
    return any(rule(grant.access_level) for grant in grants_for(item_id, item_type, user_id))


def strongest_level(levels: list[str]) -> str | None:
    known = [level for level in levels if level in _LEVEL_RANK]
    if not known:
        return AccessLevel.VIEW.value if levels else None
    return max(known, key=lambda level: _LEVEL_RANK[level])


def grant_level_map(user_id: int, item_type: TargetType) -> dict[int, str]:
    """Map of item id -> strongest stored level for every grant the user holds on that item type."""
    column = Permission.file_id if item_type == TargetType.FILE else Permission.folder_id
    rows = db.session.query(column, Permission.access_level).filter(Permission.user_id == user_id, column.isnot(None)).all()

    collected: dict[int, list[str]] = {}
    for item_id, level in rows:
        collected.setdefault(item_id, []).append(level)
    return {item_id: strongest_level(levels) or AccessLevel.VIEW.value for item_id, levels in collected.items()}


def annotate_access(item: File | Folder, user_id: int, levels: dict[int, str]) -> dict[str, Any]:
    payload = item.to_dict()
    is_owner = item_owner_id(item) == user_id
    payload["is_owner"] = is_owner
    payload["access_level"] = OWNER_ACCESS if is_owner else levels.get(item.id, AccessLevel.VIEW.value)
    return payload


def require_access(item_id: int, item_type: TargetType, user: User, capability: AccessLevel, message: str) -> None:
    if not check_access(item_id, item_type, user.id, capability):
        raise APIError(403, "FORBIDDEN", message)


def can_browse_folder(folder: Folder, user: User) -> bool:
    """Folder-level sharing for listings: a grant on the folder or any ancestor lets the user browse it."""
    cursor: Folder | None = folder
    seen: set[int] = set()
    while cursor is not None and cursor.id not in seen:
        seen.add(cursor.id)
        if check_access(cursor.id, TargetType.FOLDER, user.id, AccessLevel.VIEW):
            return True
        cursor = db.session.get(Folder, cursor.parent_id) if cursor.parent_id is not None else None
    return False


def remove_grants(item_id: int, item_type: TargetType, user_id: int) -> int:
    removed = 0
    for grant in grants_for(item_id, item_type, user_id):
        db.session.delete(grant)
        removed += 1
    return removed
