"""Folder tree reads and the soft-delete / restore / purge lifecycle.

Functions here stage changes on ``db.session`` and flush where ids are
needed; committing is left to the caller so one request is one unit of work.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import and_, func, or_

from ..common.errors import InvalidMoveError
from ..common.rbac import annotate_access, grant_level_map
from ..extensions import db
from ..models import File, Folder, Permission, TargetType, User, utc_now


ROOT_CRUMB = {"id": 0, "name": "My Files"}
RECENT_LIMIT = 10


def _shared_ids(user_id: int, item_type: TargetType) -> list[int]:
    column = Permission.file_id if item_type == TargetType.FILE else Permission.folder_id
    rows = db.session.query(column).filter(Permission.user_id == user_id, column.isnot(None)).distinct().all()
    return [row[0] for row in rows]


def list_folders(parent_id: int | None, user_id: int) -> list[Folder]:
    if parent_id is None:
        conditions = [and_(Folder.parent_id.is_(None), Folder.owner_id == user_id)]
        shared = _shared_ids(user_id, TargetType.FOLDER)
        if shared:
            conditions.append(Folder.id.in_(shared))
        query = Folder.query.filter(or_(*conditions))
    else:
        query = Folder.query.filter(Folder.parent_id == parent_id)
    return query.filter(Folder.is_deleted.is_(False)).order_by(Folder.name.asc(), Folder.id.asc()).all()


def list_files(folder_id: int | None, user_id: int) -> list[File]:
    if folder_id is None:
        conditions = [and_(File.folder_id.is_(None), File.created_by == user_id)]
        shared = _shared_ids(user_id, TargetType.FILE)
        if shared:
            conditions.append(File.id.in_(shared))
        query = File.query.filter(or_(*conditions))
    else:
        query = File.query.filter(File.folder_id == folder_id)
    return query.filter(File.is_deleted.is_(False)).order_by(File.name.asc(), File.id.asc()).all()


def list_children(parent_id: int | None, user: User, *, recursive_size: bool = False) -> dict[str, list[dict[str, Any]]]:
    folder_levels = grant_level_map(user.id, TargetType.FOLDER)
    file_levels = grant_level_map(user.id, TargetType.FILE)

    folders = []
    for folder in list_folders(parent_id, user.id):
        payload = annotate_access(folder, user.id, folder_levels)
        payload["size"] = folder_size(folder.id, recursive=recursive_size)
        folders.append(payload)

    files = [annotate_access(item, user.id, file_levels) for item in list_files(parent_id, user.id)]
    return {"folders": folders, "files": files}


def ancestors(folder: Folder) -> list[Folder]:
    """Chain from the root down to ``folder`` inclusive."""
    chain: list[Folder] = []
    seen: set[int] = set()
    cursor: Folder | None = folder
    while cursor is not None and cursor.id not in seen:
        seen.add(cursor.id)
        chain.append(cursor)
        cursor = db.session.get(Folder, cursor.parent_id) if cursor.parent_id is not None else None
    chain.reverse()
    return chain


def breadcrumbs(folder: Folder | None) -> list[dict[str, Any]]:
    crumbs = [dict(ROOT_CRUMB)]
    if folder is not None:
        crumbs.extend({"id": item.id, "name": item.name} for item in ancestors(folder))
    return crumbs


def is_hidden(folder: Folder) -> bool:
    # A soft-deleted ancestor hides the whole subtree.
    return any(item.is_deleted for item in ancestors(folder))


def descendant_folder_ids(folder_id: int) -> list[int]:
    collected: list[int] = []
    frontier = [folder_id]
    while frontier:
        rows = db.session.query(Folder.id).filter(Folder.parent_id.in_(frontier)).all()
        frontier = [row[0] for row in rows if row[0] not in collected and row[0] != folder_id]
        collected.extend(frontier)
    return collected


def folder_size(folder_id: int, *, recursive: bool = False) -> int:
    folder_ids = [folder_id]
    if recursive:
        folder_ids.extend(descendant_folder_ids(folder_id))
    total = (
        db.session.query(func.coalesce(func.sum(File.size), 0))
        .filter(File.folder_id.in_(folder_ids), File.is_deleted.is_(False))
        .scalar()
    )
    return int(total or 0)


def rename(item: File | Folder, name: str) -> File | Folder:
    item.name = name
    return item


def move_file(file: File, target_folder_id: int | None) -> File:
    if target_folder_id is not None and db.session.get(Folder, target_folder_id) is None:
        raise InvalidMoveError("Target folder does not exist.")
    file.folder_id = target_folder_id
    return file


def move_folder(folder: Folder, target_parent_id: int | None) -> Folder:
    if target_parent_id is not None:
        if target_parent_id == folder.id:
            raise InvalidMoveError("Cannot move a folder into itself.")
        target = db.session.get(Folder, target_parent_id)
        if target is None:
            raise InvalidMoveError("Target folder does not exist.")
        if any(item.id == folder.id for item in ancestors(target)):
            raise InvalidMoveError("Cannot move a folder into one of its descendants.")
    folder.parent_id = target_parent_id
    return folder


def _mark_deleted(item: File | Folder, actor_id: int) -> None:
    item.is_deleted = True
    item.deleted_at = utc_now()
    item.deleted_by = actor_id


def _clear_deleted(item: File | Folder) -> None:
    item.is_deleted = False
    item.deleted_at = None
    item.deleted_by = None


def soft_delete_file(file: File, actor_id: int) -> File:
    _mark_deleted(file, actor_id)
    return file


def restore_file(file: File) -> File:
    _clear_deleted(file)
    return file


def soft_delete_folder(folder: Folder, actor_id: int, *, recursive: bool = False) -> Folder:
    """Flag the folder itself. Descendants stay untouched unless ``recursive``;
    listings already refuse to descend into a deleted folder."""
    _mark_deleted(folder, actor_id)
    if recursive:
        subtree = descendant_folder_ids(folder.id)
        for child in Folder.query.filter(Folder.id.in_(subtree), Folder.is_deleted.is_(False)).all():
            _mark_deleted(child, actor_id)
        for item in File.query.filter(File.folder_id.in_([folder.id, *subtree]), File.is_deleted.is_(False)).all():
            _mark_deleted(item, actor_id)
    return folder


def restore_folder(folder: Folder, *, recursive: bool = False) -> Folder:
    _clear_deleted(folder)
    if recursive:
        subtree = descendant_folder_ids(folder.id)
        for child in Folder.query.filter(Folder.id.in_(subtree), Folder.is_deleted.is_(True)).all():
            _clear_deleted(child)
        for item in File.query.filter(File.folder_id.in_([folder.id, *subtree]), File.is_deleted.is_(True)).all():
            _clear_deleted(item)
    return folder


def permanent_delete_file(file: File) -> str:
    """Delete the row and its grants; returns the locator for the caller to purge after commit."""
    locator = file.storage_path
    Permission.query.filter(Permission.file_id == file.id).delete(synchronize_session=False)
    db.session.delete(file)
    db.session.flush()
    return locator


def permanent_delete_folder(folder_id: int) -> list[File]:
    """Remove the folder, every subfolder and every contained file, children first.

    Returns every File row that existed anywhere in the subtree so the caller
    can purge the backing content objects.
    """
    removed: list[File] = list(File.query.filter(File.folder_id == folder_id).all())

    for child_id in [row[0] for row in db.session.query(Folder.id).filter(Folder.parent_id == folder_id).all()]:
        removed.extend(permanent_delete_folder(child_id))

    direct_files = [item for item in removed if item.folder_id == folder_id]
    file_ids = [item.id for item in direct_files]
    if file_ids:
        Permission.query.filter(Permission.file_id.in_(file_ids)).delete(synchronize_session=False)
    for item in direct_files:
        db.session.delete(item)

    Permission.query.filter(Permission.folder_id == folder_id).delete(synchronize_session=False)
    folder = db.session.get(Folder, folder_id)
    if folder is not None:
        db.session.delete(folder)
    db.session.flush()
    return removed


def trash_files(user_id: int) -> list[File]:
    return (
        File.query.filter(
            or_(
                File.deleted_by == user_id,
                and_(File.deleted_by.is_(None), File.created_by == user_id, File.is_deleted.is_(True)),
            )
        )
        .order_by(File.deleted_at.desc(), File.id.desc())
        .all()
    )


def trash_folders(user_id: int) -> list[Folder]:
    return (
        Folder.query.filter(
            or_(
                Folder.deleted_by == user_id,
                and_(Folder.deleted_by.is_(None), Folder.owner_id == user_id, Folder.is_deleted.is_(True)),
            )
        )
        .order_by(Folder.deleted_at.desc(), Folder.id.desc())
        .all()
    )


def _owned_or_shared_files(user_id: int):
    conditions = [File.created_by == user_id]
    shared = _shared_ids(user_id, TargetType.FILE)
    if shared:
        conditions.append(File.id.in_(shared))
    return File.query.filter(or_(*conditions), File.is_deleted.is_(False))


def recent_files(user_id: int, limit: int = RECENT_LIMIT) -> list[File]:
    return _owned_or_shared_files(user_id).order_by(File.last_accessed_at.desc(), File.id.desc()).limit(limit).all()


def starred_files(user_id: int) -> list[File]:
    return _owned_or_shared_files(user_id).filter(File.is_starred.is_(True)).order_by(File.name.asc()).all()


def toggle_star(file: File) -> File:
    file.is_starred = not file.is_starred
    return file


def touch(file: File) -> None:
    file.last_accessed_at = utc_now()


def storage_usage() -> int:
    total = db.session.query(func.coalesce(func.sum(File.size), 0)).filter(File.is_deleted.is_(False)).scalar()
    return int(total or 0)
