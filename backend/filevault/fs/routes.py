from __future__ import annotations

from pathlib import Path
from typing import Any
from urllib.parse import quote

from flask import Blueprint, Response, current_app, jsonify, request, send_file
from flask_jwt_extended import jwt_required
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from ..common.audit import audit
from ..common.errors import APIError
from ..common.feature_flags import AUTO_EXTRACT_ZIP, EXPORT_TRUST_FOLDER_ACCESS, RECURSIVE_DELETE, RECURSIVE_SIZE, flag_enabled
from ..common.rbac import (
    annotate_access,
    can_browse_folder,
    check_access,
    current_user,
    grant_level_map,
    remove_grants,
    require_access,
)
from ..common.storage import ContentStore, get_content_store, guess_mime_type, is_zip_name, purge_content, validate_node_name
from ..extensions import db
from ..models import AccessLevel, File, Folder, TargetType, User
from . import hierarchy
from .export import plan_bulk_export, plan_folder_export, stream_zip
from .ingest import ArchiveIngestor, IngestReport, auto_extract_archives, ingest_folder_upload


fs_bp = Blueprint("fs", __name__, url_prefix="/fs")

ROOT_TOKENS = {"", "root", "0", "null", "none"}


def _parse_folder_id(value: Any, field_name: str = "folder_id") -> int | None:
    if value is None or str(value).strip().lower() in ROOT_TOKENS:
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError) as error:
        raise APIError(400, "INVALID_PARAMETER", f"{field_name} must be an integer or 'root'.") from error
    return parsed or None


def _parse_id_list(name: str) -> list[int]:
    ids: list[int] = []
    for raw in request.args.getlist(name):
        for token in raw.split(","):
            try:
                ids.append(int(token.strip()))
            except ValueError:
                continue
    return ids


def _get_file(file_id: int) -> File:
    file = db.session.get(File, file_id)
    if file is None:
        raise APIError(404, "FILE_NOT_FOUND", "File not found.")
    return file


def _get_folder(folder_id: int) -> Folder:
    folder = db.session.get(Folder, folder_id)
    if folder is None:
        raise APIError(404, "FOLDER_NOT_FOUND", "Folder not found.")
    return folder


def _visible_folder(folder_id: int) -> Folder:
    folder = _get_folder(folder_id)
    if hierarchy.is_hidden(folder):
        raise APIError(404, "FOLDER_NOT_FOUND", "Folder not found.")
    return folder


def _writable_target(folder_id: int | None, user: User) -> Folder | None:
    if folder_id is None:
        return None
    folder = _visible_folder(folder_id)
    require_access(folder.id, TargetType.FOLDER, user, AccessLevel.EDIT, "You cannot write in this folder.")
    return folder


def _file_payload(file: File, user: User) -> dict[str, Any]:
    return annotate_access(file, user.id, grant_level_map(user.id, TargetType.FILE))


def _folder_payload(folder: Folder, user: User) -> dict[str, Any]:
    return annotate_access(folder, user.id, grant_level_map(user.id, TargetType.FOLDER))


def _zip_response(chunks, download_name: str) -> Response:
    fallback = secure_filename(download_name) or "download.zip"
    disposition = f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(download_name)}"
    return Response(chunks, mimetype="application/zip", headers={"Content-Disposition": disposition})


def _store_upload(store: ContentStore, upload: FileStorage, name: str) -> tuple[str, int]:
    locator = store.put(upload.stream, name)
    return locator, store.path(locator).stat().st_size


@fs_bp.get("")
@jwt_required()
def list_directory():
    user = current_user(required=True)
    assert user is not None

    folder_id = _parse_folder_id(request.args.get("folder_id"))
    folder: Folder | None = None
    if folder_id is not None:
        folder = _visible_folder(folder_id)
        if not can_browse_folder(folder, user):
            raise APIError(403, "FORBIDDEN", "You cannot view this folder.")

    if flag_enabled(AUTO_EXTRACT_ZIP):
        auto_extract_archives(get_content_store(), user, folder_id, hierarchy.list_files(folder_id, user.id))

    contents = hierarchy.list_children(folder_id, user, recursive_size=flag_enabled(RECURSIVE_SIZE))
    if folder is not None:
        audit("view_folder", actor=user, target_type="folder", target_id=folder.id, details=f"Viewed folder {folder.name}")
        db.session.commit()

    return jsonify(
        {
            "folder": folder.to_dict() if folder is not None else None,
            "folders": contents["folders"],
            "files": contents["files"],
            "breadcrumbs": hierarchy.breadcrumbs(folder),
        }
    )


@fs_bp.post("/folder")
@jwt_required()
def create_folder():
    user = current_user(required=True)
    assert user is not None

    payload = request.get_json(silent=True) or {}
    name = validate_node_name(payload.get("name") or "")
    parent_id = _parse_folder_id(payload.get("parent_id"), "parent_id")
    _writable_target(parent_id, user)

    folder = Folder(name=name, parent_id=parent_id, owner_id=user.id)
    db.session.add(folder)
    db.session.flush()
    audit("create_folder", actor=user, target_type="folder", target_id=folder.id, details=f"Created folder {name}")
    db.session.commit()

    return jsonify({"folder": _folder_payload(folder, user)}), 201


@fs_bp.post("/upload")
@jwt_required()
def upload_files():
    user = current_user(required=True)
    assert user is not None

    uploads = [item for item in request.files.getlist("files") if item and item.filename]
    if not uploads:
        raise APIError(400, "INVALID_PARAMETER", "Multipart field 'files' is required.")

    folder_id = _parse_folder_id(request.form.get("folder_id"))
    _writable_target(folder_id, user)

    store = get_content_store()
    created: list[File] = []
    try:
        for upload in uploads:
            name = validate_node_name(Path(upload.filename.replace("\\", "/")).name)
            locator, size = _store_upload(store, upload, name)
            record = File(
                name=name,
                folder_id=folder_id,
                size=size,
                mime_type=upload.mimetype or guess_mime_type(name),
                storage_path=locator,
                created_by=user.id,
            )
            db.session.add(record)
            created.append(record)
        db.session.flush()
        audit(
            "upload_bulk",
            actor=user,
            target_type="folder",
            target_id=folder_id,
            details=f"Uploaded {len(created)} files",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        purge_content(store, [item.storage_path for item in created])
        raise

    return jsonify({"files": [_file_payload(item, user) for item in created]}), 201


@fs_bp.post("/upload-folder")
@jwt_required()
def upload_folder():
    user = current_user(required=True)
    assert user is not None

    uploads = [item for item in request.files.getlist("files") if item and item.filename]
    if not uploads:
        raise APIError(400, "INVALID_PARAMETER", "Multipart field 'files' is required.")
    paths = request.form.getlist("paths")

    folder_id = _parse_folder_id(request.form.get("folder_id"))
    _writable_target(folder_id, user)

    entries = []
    for index, upload in enumerate(uploads):
        relative_path = paths[index] if index < len(paths) and paths[index] else upload.filename
        entries.append((upload.stream, relative_path, upload.mimetype))

    store = get_content_store()
    report = IngestReport()
    try:
        ingest_folder_upload(store, user, entries, folder_id, report=report)
        audit(
            "upload_folder",
            actor=user,
            target_type="folder",
            target_id=folder_id,
            details=f"Uploaded folder with {len(report.files)} files",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        purge_content(store, [item.storage_path for item in report.files])
        raise

    return jsonify(report.to_dict()), 201


@fs_bp.post("/upload-archive")
@jwt_required()
def upload_archive():
    user = current_user(required=True)
    assert user is not None

    upload = request.files.get("archive")
    if upload is None or not upload.filename:
        raise APIError(400, "INVALID_PARAMETER", "Multipart field 'archive' is required.")
    if not is_zip_name(upload.filename):
        raise APIError(400, "INVALID_ARCHIVE", "Only .zip archives are supported.")

    folder_id = _parse_folder_id(request.form.get("folder_id"))
    _writable_target(folder_id, user)

    store = get_content_store()
    staged = store.put(upload.stream, upload.filename)
    report = IngestReport()
    try:
        with store.open(staged) as handle:
            ArchiveIngestor.from_config(store, user).ingest_stream(handle, folder_id, report=report)
        audit(
            "upload_archive_extract",
            actor=user,
            target_type="folder",
            target_id=folder_id,
            details=f"Extracted archive {upload.filename} ({len(report.files)} files)",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        purge_content(store, [item.storage_path for item in report.files])
        raise
    finally:
        store.delete(staged)

    return jsonify(report.to_dict()), 201


def _serve_file(file_id: int, capability: AccessLevel, action: str, as_attachment: bool):
    user = current_user(required=True)
    assert user is not None

    file = _get_file(file_id)
    if file.is_deleted:
        raise APIError(404, "FILE_NOT_FOUND", "File not found.")
    require_access(file.id, TargetType.FILE, user, capability, f"You cannot {capability.value} this file.")

    path = get_content_store().path(file.storage_path)
    hierarchy.touch(file)
    audit(action, actor=user, target_type="file", target_id=file.id, details=f"Accessed file {file.name}")
    db.session.commit()

    return send_file(path, as_attachment=as_attachment, download_name=file.name, mimetype=file.mime_type)


@fs_bp.get("/files/<int:file_id>/view")
@jwt_required()
def view_file(file_id: int):
    return _serve_file(file_id, AccessLevel.VIEW, "view_file", as_attachment=False)


@fs_bp.get("/files/<int:file_id>/download")
@jwt_required()
def download_file(file_id: int):
    return _serve_file(file_id, AccessLevel.DOWNLOAD, "download", as_attachment=True)


@fs_bp.patch("/files/<int:file_id>/rename")
@jwt_required()
def rename_file(file_id: int):
    user = current_user(required=True)
    assert user is not None

    file = _get_file(file_id)
    require_access(file.id, TargetType.FILE, user, AccessLevel.EDIT, "You cannot rename this file.")
    payload = request.get_json(silent=True) or {}
    name = validate_node_name(payload.get("name") or "")

    previous = file.name
    hierarchy.rename(file, name)
    audit("rename_file", actor=user, target_type="file", target_id=file.id, details=f"Renamed {previous} to {name}")
    db.session.commit()
    return jsonify({"file": _file_payload(file, user)})


@fs_bp.patch("/folders/<int:folder_id>/rename")
@jwt_required()
def rename_folder(folder_id: int):
    user = current_user(required=True)
    assert user is not None

    folder = _get_folder(folder_id)
    require_access(folder.id, TargetType.FOLDER, user, AccessLevel.EDIT, "You cannot rename this folder.")
    payload = request.get_json(silent=True) or {}
    name = validate_node_name(payload.get("name") or "")

    previous = folder.name
    hierarchy.rename(folder, name)
    audit("rename_folder", actor=user, target_type="folder", target_id=folder.id, details=f"Renamed {previous} to {name}")
    db.session.commit()
    return jsonify({"folder": _folder_payload(folder, user)})


@fs_bp.patch("/files/<int:file_id>/move")
@jwt_required()
def move_file(file_id: int):
    user = current_user(required=True)
    assert user is not None

    file = _get_file(file_id)
    require_access(file.id, TargetType.FILE, user, AccessLevel.EDIT, "You cannot move this file.")
    payload = request.get_json(silent=True) or {}
    target_id = _parse_folder_id(payload.get("folder_id"))
    _writable_target(target_id, user)

    hierarchy.move_file(file, target_id)
    audit("move_file", actor=user, target_type="file", target_id=file.id, details=f"Moved file to folder {target_id}")
    db.session.commit()
    return jsonify({"file": _file_payload(file, user)})


@fs_bp.patch("/folders/<int:folder_id>/move")
@jwt_required()
def move_folder(folder_id: int):
    user = current_user(required=True)
    assert user is not None

    folder = _get_folder(folder_id)
    require_access(folder.id, TargetType.FOLDER, user, AccessLevel.EDIT, "You cannot move this folder.")
    payload = request.get_json(silent=True) or {}
    target_id = _parse_folder_id(payload.get("parent_id"), "parent_id")
    if target_id != folder.id:
        _writable_target(target_id, user)

    hierarchy.move_folder(folder, target_id)
    audit("move_folder", actor=user, target_type="folder", target_id=folder.id, details=f"Moved folder to {target_id}")
    db.session.commit()
    return jsonify({"folder": _folder_payload(folder, user)})


@fs_bp.delete("/files/<int:file_id>")
@jwt_required()
def delete_file(file_id: int):
    user = current_user(required=True)
    assert user is not None

    file = _get_file(file_id)
    if file.created_by == user.id:
        hierarchy.soft_delete_file(file, user.id)
        audit("delete_file", actor=user, target_type="file", target_id=file.id, details=f"Moved {file.name} to trash")
        db.session.commit()
        return jsonify({"deleted": True, "unshared": False})

    if check_access(file.id, TargetType.FILE, user.id, AccessLevel.EDIT):
        remove_grants(file.id, TargetType.FILE, user.id)
        audit("unshare_file", actor=user, target_type="file", target_id=file.id, details=f"Removed own access to {file.name}")
        db.session.commit()
        return jsonify({"deleted": False, "unshared": True})

    raise APIError(403, "FORBIDDEN", "You cannot delete this file.")


@fs_bp.delete("/folders/<int:folder_id>")
@jwt_required()
def delete_folder(folder_id: int):
    user = current_user(required=True)
    assert user is not None

    folder = _get_folder(folder_id)
    if folder.owner_id == user.id:
        hierarchy.soft_delete_folder(folder, user.id, recursive=flag_enabled(RECURSIVE_DELETE))
        audit("delete_folder", actor=user, target_type="folder", target_id=folder.id, details=f"Moved {folder.name} to trash")
        db.session.commit()
        return jsonify({"deleted": True, "unshared": False})

    if check_access(folder.id, TargetType.FOLDER, user.id, AccessLevel.EDIT):
        remove_grants(folder.id, TargetType.FOLDER, user.id)
        audit(
            "unshare_folder",
            actor=user,
            target_type="folder",
            target_id=folder.id,
            details=f"Removed own access to {folder.name}",
        )
        db.session.commit()
        return jsonify({"deleted": False, "unshared": True})

    raise APIError(403, "FORBIDDEN", "You cannot delete this folder.")


@fs_bp.post("/files/<int:file_id>/restore")
@jwt_required()
def restore_file(file_id: int):
    user = current_user(required=True)
    assert user is not None

    file = _get_file(file_id)
    if file.created_by != user.id:
        raise APIError(403, "FORBIDDEN", "Only the owner can restore this file.")

    hierarchy.restore_file(file)
    audit("restore_file", actor=user, target_type="file", target_id=file.id, details=f"Restored {file.name}")
    db.session.commit()
    return jsonify({"file": _file_payload(file, user)})


@fs_bp.post("/folders/<int:folder_id>/restore")
@jwt_required()
def restore_folder(folder_id: int):
    user = current_user(required=True)
    assert user is not None

    folder = _get_folder(folder_id)
    require_access(folder.id, TargetType.FOLDER, user, AccessLevel.EDIT, "You cannot restore this folder.")

    hierarchy.restore_folder(folder, recursive=flag_enabled(RECURSIVE_DELETE))
    audit("restore_folder", actor=user, target_type="folder", target_id=folder.id, details=f"Restored {folder.name}")
    db.session.commit()
    return jsonify({"folder": _folder_payload(folder, user)})


@fs_bp.delete("/files/<int:file_id>/permanent")
@jwt_required()
def permanent_delete_file(file_id: int):
    user = current_user(required=True)
    assert user is not None

    file = _get_file(file_id)
    require_access(file.id, TargetType.FILE, user, AccessLevel.EDIT, "You cannot delete this file.")

    name = file.name
    locator = hierarchy.permanent_delete_file(file)
    audit("permanent_delete_file", actor=user, target_type="file", target_id=file_id, details=f"Permanently deleted {name}")
    db.session.commit()

    purge_content(get_content_store(), [locator])
    return jsonify({"deleted": True})


@fs_bp.delete("/folders/<int:folder_id>/permanent")
@jwt_required()
def permanent_delete_folder(folder_id: int):
    user = current_user(required=True)
    assert user is not None

    folder = _get_folder(folder_id)
    require_access(folder.id, TargetType.FOLDER, user, AccessLevel.EDIT, "You cannot delete this folder.")

    name = folder.name
    removed = hierarchy.permanent_delete_folder(folder.id)
    locators = [item.storage_path for item in removed]
    audit(
        "permanent_delete_folder",
        actor=user,
        target_type="folder",
        target_id=folder_id,
        details=f"Permanently deleted {name} and {len(locators)} files",
    )
    db.session.commit()

    purge_content(get_content_store(), locators)
    return jsonify({"deleted": True, "files_deleted": len(locators)})


@fs_bp.patch("/files/<int:file_id>/star")
@jwt_required()
def toggle_star(file_id: int):
    user = current_user(required=True)
    assert user is not None

    file = _get_file(file_id)
    require_access(file.id, TargetType.FILE, user, AccessLevel.VIEW, "You cannot access this file.")

    hierarchy.toggle_star(file)
    audit(
        "toggle_star",
        actor=user,
        target_type="file",
        target_id=file.id,
        details=f"{'Starred' if file.is_starred else 'Unstarred'} {file.name}",
    )
    db.session.commit()
    return jsonify({"file": _file_payload(file, user)})


@fs_bp.get("/recent")
@jwt_required()
def recent():
    user = current_user(required=True)
    assert user is not None

    levels = grant_level_map(user.id, TargetType.FILE)
    return jsonify({"files": [annotate_access(item, user.id, levels) for item in hierarchy.recent_files(user.id)]})


@fs_bp.get("/starred")
@jwt_required()
def starred():
    user = current_user(required=True)
    assert user is not None

    levels = grant_level_map(user.id, TargetType.FILE)
    return jsonify({"files": [annotate_access(item, user.id, levels) for item in hierarchy.starred_files(user.id)]})


@fs_bp.get("/trash")
@jwt_required()
def trash():
    user = current_user(required=True)
    assert user is not None

    return jsonify(
        {
            "files": [item.to_dict() for item in hierarchy.trash_files(user.id)],
            "folders": [item.to_dict() for item in hierarchy.trash_folders(user.id)],
        }
    )


@fs_bp.get("/folders/<int:folder_id>/download")
@jwt_required()
def download_folder(folder_id: int):
    user = current_user(required=True)
    assert user is not None

    if not check_access(folder_id, TargetType.FOLDER, user.id, AccessLevel.DOWNLOAD):
        if db.session.get(Folder, folder_id) is None:
            raise APIError(404, "FOLDER_NOT_FOUND", "Folder not found.")
        raise APIError(403, "FORBIDDEN", "No permission to download this folder.")
    folder = _visible_folder(folder_id)

    store = get_content_store()
    entries = plan_folder_export(store, user, folder, trust_folder_access=flag_enabled(EXPORT_TRUST_FOLDER_ACCESS))
    audit(
        "download_folder_zip",
        actor=user,
        target_type="folder",
        target_id=folder.id,
        details=f"Downloaded folder {folder.name} as zip",
    )
    db.session.commit()

    chunks = stream_zip(
        store,
        entries,
        chunk_size=current_app.config["EXPORT_CHUNK_SIZE"],
        logger=current_app.logger,
    )
    return _zip_response(chunks, f"{folder.name}.zip")


@fs_bp.get("/bulk-download")
@jwt_required()
def bulk_download():
    user = current_user(required=True)
    assert user is not None

    file_ids = _parse_id_list("file_ids")
    folder_ids = _parse_id_list("folder_ids")
    if not file_ids and not folder_ids:
        raise APIError(400, "INVALID_PARAMETER", "No items specified for download.")

    store = get_content_store()
    planner = plan_bulk_export(
        store,
        user,
        file_ids,
        folder_ids,
        trust_folder_access=flag_enabled(EXPORT_TRUST_FOLDER_ACCESS),
    )
    audit(
        "bulk_download",
        actor=user,
        target_type="file",
        details=f"Bulk downloaded {len(file_ids)} files and {len(folder_ids)} folders ({planner.skipped} skipped)",
    )
    db.session.commit()

    chunks = stream_zip(
        store,
        planner.entries,
        chunk_size=current_app.config["EXPORT_CHUNK_SIZE"],
        logger=current_app.logger,
    )
    return _zip_response(chunks, "download.zip")


@fs_bp.get("/storage-usage")
@jwt_required()
def storage_usage():
    current_user(required=True)

    used = hierarchy.storage_usage()
    total = int(current_app.config["STORAGE_CAPACITY_BYTES"])
    percentage = round(used / total * 100, 2) if total > 0 else 0.0
    return jsonify({"used": used, "total": total, "percentage": percentage})
