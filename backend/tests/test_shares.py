from __future__ import annotations

import io


def _user_id(client, headers) -> int:
    return client.get("/auth/me", headers=headers).get_json()["user"]["id"]


def _share(client, headers, target_type: str, target_id: int, user_id: int, access_level: str = "view"):
    return client.post(
        "/shares",
        json={"target_type": target_type, "target_id": target_id, "user_id": user_id, "access_level": access_level},
        headers=headers,
    )


def _team_folder_with_file(client, headers):
    folder = client.post("/fs/folder", json={"name": "team"}, headers=headers).get_json()["folder"]
    upload = client.post(
        "/fs/upload",
        data={"folder_id": str(folder["id"]), "files": [(io.BytesIO(b"draft content"), "draft.txt")]},
        headers=headers,
        content_type="multipart/form-data",
    )
    assert upload.status_code == 201
    return folder, upload.get_json()["files"][0]


def test_view_grant_on_folder_allows_listing_but_not_editing(client, login):
    alice = login()
    bob = login("bob", "bobpass123")
    folder, file = _team_folder_with_file(client, alice)

    assert client.get(f"/fs?folder_id={folder['id']}", headers=bob).status_code == 403
    assert _share(client, alice, "folder", folder["id"], _user_id(client, bob)).status_code == 201

    root = client.get("/fs", headers=bob).get_json()
    assert [item["id"] for item in root["folders"]] == [folder["id"]]
    assert root["folders"][0]["is_owner"] is False
    assert root["folders"][0]["access_level"] == "view"

    listing = client.get(f"/fs?folder_id={folder['id']}", headers=bob)
    assert listing.status_code == 200
    assert [item["name"] for item in listing.get_json()["files"]] == ["draft.txt"]

    rename = client.patch(f"/fs/files/{file['id']}/rename", json={"name": "mine.txt"}, headers=bob)
    assert rename.status_code == 403
    assert client.delete(f"/fs/files/{file['id']}", headers=bob).status_code == 403


def test_edit_grant_allows_rename_and_unshare(client, app, login):
    alice = login()
    bob = login("bob", "bobpass123")
    _, file = _team_folder_with_file(client, alice)
    bob_id = _user_id(client, bob)
    assert _share(client, alice, "file", file["id"], bob_id, "edit").status_code == 201

    rename = client.patch(f"/fs/files/{file['id']}/rename", json={"name": "final.txt"}, headers=bob)
    assert rename.status_code == 200
    assert rename.get_json()["file"]["name"] == "final.txt"

    # Edit does not imply download.
    assert client.get(f"/fs/files/{file['id']}/download", headers=bob).status_code == 403

    unshare = client.delete(f"/fs/files/{file['id']}", headers=bob)
    assert unshare.status_code == 200
    assert unshare.get_json()["unshared"] is True

    listing = client.get("/fs", headers=bob).get_json()
    assert listing["files"] == []
    alice_view = client.get(f"/fs/files/{file['id']}/view", headers=alice)
    assert alice_view.status_code == 200


def test_only_owner_can_share_and_list_permissions(client, login):
    alice = login()
    bob = login("bob", "bobpass123")
    folder, _ = _team_folder_with_file(client, alice)
    alice_id = _user_id(client, alice)
    bob_id = _user_id(client, bob)

    assert _share(client, bob, "folder", folder["id"], alice_id).status_code == 403
    assert _share(client, alice, "folder", folder["id"], bob_id, "owner").status_code == 400
    assert _share(client, alice, "folder", 9999, bob_id).status_code == 404

    assert _share(client, alice, "folder", folder["id"], bob_id, "download").status_code == 201
    listed = client.get(f"/shares/folders/{folder['id']}", headers=alice)
    assert listed.status_code == 200
    permissions = listed.get_json()["permissions"]
    assert [(item["username"], item["access_level"]) for item in permissions] == [("bob", "download")]

    assert client.get(f"/shares/folders/{folder['id']}", headers=bob).status_code == 403


def test_share_multiple_collects_errors(client, login):
    alice = login()
    bob = login("bob", "bobpass123")
    folder, file = _team_folder_with_file(client, alice)
    bob_file = client.post(
        "/fs/upload",
        data={"files": [(io.BytesIO(b"bob"), "bob.txt")]},
        headers=bob,
        content_type="multipart/form-data",
    ).get_json()["files"][0]
    alice_id = _user_id(client, alice)

    response = client.post(
        "/shares/multiple",
        json={
            "items": [{"id": folder["id"], "type": "folder"}, {"id": file["id"], "type": "file"}],
            "user_id": _user_id(client, bob),
            "access_level": "view",
        },
        headers=alice,
    )
    assert response.status_code == 201
    assert len(response.get_json()["permissions"]) == 2
    assert response.get_json()["errors"] == []

    forbidden = client.post(
        "/shares/multiple",
        json={"items": [{"id": file["id"], "type": "file"}], "user_id": alice_id, "access_level": "view"},
        headers=bob,
    )
    assert forbidden.status_code == 403

    partial = client.post(
        "/shares/multiple",
        json={
            "items": [{"id": bob_file["id"], "type": "file"}, {"id": file["id"], "type": "file"}],
            "user_id": alice_id,
        },
        headers=bob,
    )
    assert partial.status_code == 201
    assert len(partial.get_json()["permissions"]) == 1
    assert partial.get_json()["errors"][0]["code"] == "FORBIDDEN"


def test_revoke_by_owner_or_granter_only(client, login):
    alice = login()
    bob = login("bob", "bobpass123")
    _, file = _team_folder_with_file(client, alice)
    permission = _share(client, alice, "file", file["id"], _user_id(client, bob)).get_json()["permission"]

    assert client.delete(f"/shares/{permission['id']}", headers=bob).status_code == 403
    assert client.delete(f"/shares/{permission['id']}", headers=alice).status_code == 200
    assert client.delete(f"/shares/{permission['id']}", headers=alice).status_code == 404
    assert client.get(f"/fs/files/{file['id']}/view", headers=bob).status_code == 403
