from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest

from filevault import create_app
from filevault.bootstrap import bootstrap_defaults
from filevault.common.rate_limit import login_rate_limiter
from filevault.extensions import db
from filevault.models import User


@pytest.fixture
def app(tmp_path: Path):
    db_path = tmp_path / "test.db"
    storage_path = tmp_path / "storage"

    login_rate_limiter.clear()
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "STORAGE_ROOT": str(storage_path),
            "JWT_SECRET_KEY": "test-secret-key-at-least-32-bytes-long",
            "SUPERADMIN_USERNAME": "root",
            "SUPERADMIN_PASSWORD": "rootpass123",
            "FEATURE_FLAGS": {},
            "EXPORT_CHUNK_SIZE": 1024,
        }
    )

    with app.app_context():
        db.create_all()
        bootstrap_defaults(commit=True)

        for username, password in (("alice", "alicepass"), ("bob", "bobpass123")):
            user = User(username=username)
            user.set_password(password)
            db.session.add(user)
        db.session.commit()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
    login_rate_limiter.clear()


@pytest.fixture
def client(app):
    return app.test_client()


def build_zip(entries: dict[str, bytes | None]) -> bytes:
    """In-memory archive; a ``None`` value writes a directory entry."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, data in entries.items():
            if data is None:
                archive.writestr(name if name.endswith("/") else f"{name}/", b"")
            else:
                archive.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def make_zip():
    return build_zip


@pytest.fixture
def login(client):
    def _login(username: str = "alice", password: str = "alicepass") -> dict[str, str]:
        response = client.post("/auth/login", json={"username": username, "password": password})
        assert response.status_code == 200
        return {"Authorization": f"Bearer {response.get_json()['access_token']}"}

    return _login
