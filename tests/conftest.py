import mongomock
import pytest

import minisocial


def make_user_form(prefix: str) -> dict:
    return {
        "name": prefix.title(),
        "username": prefix,
        "age": "30",
        "email": f"{prefix}@example.com",
        "password": "Sup3rSecret!",
    }


@pytest.fixture
def config(tmp_path):
    return minisocial.Config(
        jwt_secret="test-secret-0123456789abcdef0123456789",
        upload_folder=str(tmp_path / "upload"),
        log_level="WARNING",
    )


@pytest.fixture
def db():
    return mongomock.MongoClient()["miniproject_test"]


@pytest.fixture
def app(config, db):
    app = minisocial.create_app(config, db=db)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login_as(app, db):
    """Register `prefix` and log in on a fresh (or given) client; returns (client, user doc)."""
    def _login_as(prefix, client=None):
        client = client or app.test_client()
        form = make_user_form(prefix)
        client.post("/register", data=form)
        client.post("/login", data={"email": form["email"], "password": form["password"]})
        return client, db.users.find_one({"email": form["email"]})
    return _login_as
