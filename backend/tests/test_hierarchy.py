from __future__ import annotations

import io

import pytest

from filevault.common.errors import InvalidMoveError
from filevault.common.storage import get_content_store
from filevault.extensions import db
from filevault.fs import hierarchy
from filevault.models import File, Folder, Permission, User


def _alice() -> User:
    return User.query.filter_by(username="alice").one()


def _folder(owner: User, name: str, parent: Folder | None = None) -> Folder:
    folder = Folder(name=name, parent_id=parent.id if parent else None, owner_id=owner.id)
    db.session.add(folder)
    db.session.flush()
    return folder


def _stored_file(owner: User, name: str, folder: Folder | None, data: bytes = b"payload") -> File:
    locator = get_content_store().put_bytes(data, name)
    item = File(
        name=name,
        folder_id=folder.id if folder else None,
        size=len(data),
        mime_type="text/plain",
        storage_path=locator,
        created_by=owner.id,
    )
    db.session.add(item)
    db.session.flush()
    return item


def test_move_folder_into_descendant_is_rejected(app):
    with app.app_context():
        alice = _alice()
        top = _folder(alice, "top")
        middle = _folder(alice, "middle", top)
        bottom = _folder(alice, "bottom", middle)

        with pytest.raises(InvalidMoveError):
            hierarchy.move_folder(top, bottom.id)
        with pytest.raises(InvalidMoveError):
            hierarchy.move_folder(top, top.id)
        assert top.parent_id is None
        assert middle.parent_id == top.id

        hierarchy.move_folder(bottom, None)
        assert bottom.parent_id is None


def test_soft_delete_and_restore_round_trip(app):
    with app.app_context():
        alice = _alice()
        folder = _folder(alice, "reports")
        item = _stored_file(alice, "q1.txt", folder)

        hierarchy.soft_delete_file(item, alice.id)
        hierarchy.soft_delete_folder(folder, alice.id)
        db.session.commit()

        assert item in hierarchy.trash_files(alice.id)
        assert folder in hierarchy.trash_folders(alice.id)
        assert hierarchy.list_folders(None, alice.id) == []

        hierarchy.restore_file(item)
        hierarchy.restore_folder(folder)
        db.session.commit()

        assert item.is_deleted is False and item.deleted_at is None and item.deleted_by is None
        assert folder.is_deleted is False and folder.deleted_by is None
        assert [entry.id for entry in hierarchy.list_folders(None, alice.id)] == [folder.id]


def test_soft_delete_is_shallow_unless_recursive(app):
    with app.app_context():
        alice = _alice()
        parent = _folder(alice, "parent")
        child = _folder(alice, "child", parent)
        nested = _stored_file(alice, "nested.txt", child)

        hierarchy.soft_delete_folder(parent, alice.id)
        assert child.is_deleted is False
        assert hierarchy.is_hidden(child) is True

        hierarchy.restore_folder(parent)
        hierarchy.soft_delete_folder(parent, alice.id, recursive=True)
        db.session.flush()
        assert child.is_deleted is True
        assert nested.is_deleted is True

        hierarchy.restore_folder(parent, recursive=True)
        db.session.flush()
        assert child.is_deleted is False
        assert nested.is_deleted is False


def test_permanent_folder_delete_removes_whole_subtree(app):
    with app.app_context():
        alice = _alice()
        bob = User.query.filter_by(username="bob").one()
        root = _folder(alice, "archive")
        sub = _folder(alice, "2024", root)
        deep = _folder(alice, "q4", sub)
        files = [_stored_file(alice, "a.txt", root), _stored_file(alice, "b.txt", sub), _stored_file(alice, "c.txt", deep)]
        db.session.add(Permission(folder_id=sub.id, user_id=bob.id, granted_by=alice.id, access_level="view"))
        db.session.add(Permission(file_id=files[2].id, user_id=bob.id, granted_by=alice.id, access_level="view"))
        db.session.commit()
        locators = {item.storage_path for item in files}

        removed = hierarchy.permanent_delete_folder(root.id)
        removed_locators = {item.storage_path for item in removed}
        db.session.commit()

        assert removed_locators == locators
        assert Folder.query.count() == 0
        assert File.query.count() == 0
        assert Permission.query.count() == 0


def test_folder_size_is_shallow_by_default(app):
    with app.app_context():
        alice = _alice()
        parent = _folder(alice, "media")
        child = _folder(alice, "clips", parent)
        _stored_file(alice, "one.txt", parent, b"12345")
        _stored_file(alice, "two.txt", child, b"1234567890")
        db.session.commit()

        assert hierarchy.folder_size(parent.id) == 5
        assert hierarchy.folder_size(parent.id, recursive=True) == 15


def test_breadcrumbs_start_at_my_files(app):
    with app.app_context():
        alice = _alice()
        top = _folder(alice, "top")
        inner = _folder(alice, "inner", top)

        crumbs = hierarchy.breadcrumbs(inner)
        assert crumbs == [
            {"id": 0, "name": "My Files"},
            {"id": top.id, "name": "top"},
            {"id": inner.id, "name": "inner"},
        ]


def _upload(client, headers, name: str, data: bytes, folder_id=None):
    form = {"files": [(io.BytesIO(data), name)]}
    if folder_id is not None:
        form["folder_id"] = str(folder_id)
    response = client.post("/fs/upload", data=form, headers=headers, content_type="multipart/form-data")
    assert response.status_code == 201
    return response.get_json()["files"][0]


def test_trash_restore_and_permanent_delete_over_http(client, app, login):
    headers = login()
    uploaded = _upload(client, headers, "notes.txt", b"remember")

    deleted = client.delete(f"/fs/files/{uploaded['id']}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.get_json()["deleted"] is True

    listing = client.get("/fs", headers=headers).get_json()
    assert listing["files"] == []

    trash = client.get("/fs/trash", headers=headers).get_json()
    assert [item["id"] for item in trash["files"]] == [uploaded["id"]]

    restored = client.post(f"/fs/files/{uploaded['id']}/restore", headers=headers)
    assert restored.status_code == 200
    assert [item["name"] for item in client.get("/fs", headers=headers).get_json()["files"]] == ["notes.txt"]

    with app.app_context():
        locator = db.session.get(File, uploaded["id"]).storage_path
        assert get_content_store().exists(locator)

    purged = client.delete(f"/fs/files/{uploaded['id']}/permanent", headers=headers)
    assert purged.status_code == 200

    with app.app_context():
        assert db.session.get(File, uploaded["id"]) is None
        assert not get_content_store().exists(locator)


def test_listing_inside_deleted_folder_is_not_found(client, login):
    headers = login()
    parent = client.post("/fs/folder", json={"name": "old", "parent_id": None}, headers=headers).get_json()["folder"]
    child = client.post("/fs/folder", json={"name": "inner", "parent_id": parent["id"]}, headers=headers).get_json()["folder"]

    assert client.delete(f"/fs/folders/{parent['id']}", headers=headers).status_code == 200
    assert client.get(f"/fs?folder_id={child['id']}", headers=headers).status_code == 404


def test_move_folder_cycle_over_http(client, login):
    headers = login()
    outer = client.post("/fs/folder", json={"name": "outer"}, headers=headers).get_json()["folder"]
    inner = client.post("/fs/folder", json={"name": "inner", "parent_id": outer["id"]}, headers=headers).get_json()["folder"]

    response = client.patch(f"/fs/folders/{outer['id']}/move", json={"parent_id": inner["id"]}, headers=headers)
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "INVALID_MOVE"


def test_view_updates_recent_and_star_toggles(client, login):
    headers = login()
    uploaded = _upload(client, headers, "photo.txt", b"pixels")

    view = client.get(f"/fs/files/{uploaded['id']}/view", headers=headers)
    assert view.status_code == 200
    assert view.data == b"pixels"

    recent = client.get("/fs/recent", headers=headers).get_json()["files"]
    assert recent[0]["id"] == uploaded["id"]

    starred = client.patch(f"/fs/files/{uploaded['id']}/star", headers=headers)
    assert starred.get_json()["file"]["is_starred"] is True
    assert [item["id"] for item in client.get("/fs/starred", headers=headers).get_json()["files"]] == [uploaded["id"]]


def test_missing_content_is_reported(client, app, login):
    headers = login()
    uploaded = _upload(client, headers, "gone.txt", b"bytes")

    with app.app_context():
        get_content_store().delete(db.session.get(File, uploaded["id"]).storage_path)

    response = client.get(f"/fs/files/{uploaded['id']}/download", headers=headers)
    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == "CONTENT_MISSING"


def test_storage_usage_counts_live_files(client, login):
    headers = login()
    _upload(client, headers, "a.txt", b"12345")
    second = _upload(client, headers, "b.txt", b"123")
    client.delete(f"/fs/files/{second['id']}", headers=headers)

    usage = client.get("/fs/storage-usage", headers=headers).get_json()
    assert usage["used"] == 5
    assert usage["total"] > 0


def test_recursive_delete_flag_cascades(client, app, login):
    app.config["FEATURE_FLAGS"] = {"fs.recursive_delete": True, "fs.auto_extract_zip": "false"}
    headers = login()
    parent = client.post("/fs/folder", json={"name": "outer"}, headers=headers).get_json()["folder"]
    child = client.post("/fs/folder", json={"name": "inner", "parent_id": parent["id"]}, headers=headers).get_json()["folder"]

    assert client.delete(f"/fs/folders/{parent['id']}", headers=headers).status_code == 200

    with app.app_context():
        assert db.session.get(Folder, child["id"]).is_deleted is True

    assert client.post(f"/fs/folders/{parent['id']}/restore", headers=headers).status_code == 200
    with app.app_context():
        assert db.session.get(Folder, child["id"]).is_deleted is False
