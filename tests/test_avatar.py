"""Tests for avatar uploads."""

import os
from io import BytesIO

import minisocial

MIB = 1024 * 1024
PNG_HEADER = b"\x89PNG\r\n\x1a\n"


def png_bytes(size: int) -> bytes:
    return PNG_HEADER + b"\x00" * (size - len(PNG_HEADER))


def upload(client, data: bytes, filename="me.png", mimetype="image/png"):
    return client.post(
        "/upload-avatar",
        data={"avatar": (BytesIO(data), filename, mimetype)},
        content_type="multipart/form-data",
    )


def test_upload_requires_login(client):
    response = upload(client, png_bytes(1024))
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/login")


def test_text_file_is_rejected(login_as, db):
    client, user = login_as("alice")

    response = upload(client, b"hello", filename="notes.txt", mimetype="text/plain")

    assert response.status_code == 400
    assert response.data == b"Only images allowed"
    assert db.users.find_one({"_id": user["_id"]})["avatar"] == minisocial.DEFAULT_AVATAR


def test_missing_file_is_rejected(login_as):
    client, _ = login_as("alice")

    response = client.post("/upload-avatar", data={"note": "x"}, content_type="multipart/form-data")

    assert response.status_code == 400
    assert response.data == b"No file uploaded"


def test_three_mib_image_is_rejected(login_as, db, config):
    client, user = login_as("alice")

    response = upload(client, png_bytes(3 * MIB))

    assert response.status_code == 413
    assert response.data == b"File too large"
    assert db.users.find_one({"_id": user["_id"]})["avatar"] == minisocial.DEFAULT_AVATAR
    assert os.listdir(config.upload_folder) == []


def test_image_just_over_ceiling_is_rejected(login_as, config):
    client, _ = login_as("alice")

    response = upload(client, png_bytes(2 * MIB + 1))

    assert response.status_code == 413
    assert os.listdir(config.upload_folder) == []


def test_valid_upload_replaces_and_removes_old_avatar(login_as, db, config):
    client, user = login_as("alice")

    response = upload(client, png_bytes(MIB))
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/profile")
    first = db.users.find_one({"_id": user["_id"]})["avatar"]
    assert first != minisocial.DEFAULT_AVATAR
    assert first.endswith(".png")
    assert os.path.getsize(os.path.join(config.upload_folder, first)) == MIB
    with open(os.path.join(config.upload_folder, first), "rb") as f:
        assert f.read() == png_bytes(MIB)

    upload(client, png_bytes(MIB), filename="again.PNG")
    second = db.users.find_one({"_id": user["_id"]})["avatar"]

    assert second != first
    assert second.endswith(".png")
    assert not os.path.exists(os.path.join(config.upload_folder, first))
    assert os.path.exists(os.path.join(config.upload_folder, second))


def test_missing_previous_file_is_tolerated(login_as, db, config):
    client, user = login_as("alice")
    db.users.update_one({"_id": user["_id"]}, {"$set": {"avatar": "already-gone.png"}})

    response = upload(client, png_bytes(1024), filename="pic.jpg", mimetype="image/jpeg")

    assert response.status_code == 302
    assert db.users.find_one({"_id": user["_id"]})["avatar"].endswith(".jpg")


def test_remove_avatar_file_tolerates_concurrent_delete(app, config):
    with app.app_context():
        minisocial.remove_avatar_file("never-written.png")
        minisocial.remove_avatar_file(minisocial.DEFAULT_AVATAR)

    assert os.listdir(config.upload_folder) == []


def test_stored_name_is_random_and_stays_in_upload_folder(login_as, db, config):
    client, user = login_as("alice")

    upload(client, png_bytes(1024), filename="../../evil.GIF", mimetype="image/gif")

    name = db.users.find_one({"_id": user["_id"]})["avatar"]
    assert os.path.basename(name) == name
    assert "evil" not in name
    assert name.endswith(".gif")
    assert os.listdir(config.upload_folder) == [name]


def test_uploaded_avatar_is_served(login_as, db):
    client, user = login_as("alice")
    upload(client, png_bytes(2048))
    name = db.users.find_one({"_id": user["_id"]})["avatar"]

    response = client.get(f"/uploads/{name}")

    assert response.status_code == 200
    assert response.data.startswith(PNG_HEADER)
    assert f"/uploads/{name}".encode() in client.get("/profile").data
