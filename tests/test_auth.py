import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

os.environ.setdefault("SECRET_KEY", "test")
os.environ.setdefault("SUPABASE_URL", "http://localhost")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "service")

import biscuit_qc
from biscuit_qc import create_app, get_supabase
from biscuit_qc.auth import routes as auth_routes
from config.supabase_schema import table_name


class FakeQuery:
    def __init__(self, rows):
        self.rows = rows

    def select(self, columns="*"):
        return self

    def execute(self):
        return SimpleNamespace(data=[dict(row) for row in self.rows])


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}

    def table(self, name):
        return FakeQuery(self.tables.setdefault(name, []))


@pytest.fixture
def auth_app(monkeypatch, tmp_path):
    fake_supabase = FakeSupabase()
    monkeypatch.setattr(biscuit_qc, "create_client", lambda url, key: fake_supabase)
    monkeypatch.setenv("QC_STORE_PATH", str(tmp_path / "qc.db"))
    monkeypatch.setenv("OPERATOR_PASSWORD", "line-pw")
    monkeypatch.setenv("SUPERVISOR_PASSWORD", "shift-pw")
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    monkeypatch.setattr(
        auth_routes, "ENVIRONMENT_USERS", auth_routes._load_environment_users()
    )
    app = create_app()
    app.testing = True
    return app, fake_supabase


def test_environment_user_login(auth_app):
    app, supabase = auth_app
    client = app.test_client()
    with app.app_context():
        assert get_supabase() is supabase

    response = client.post("/login", json={"username": "supervisor", "password": "shift-pw"})
    assert response.status_code == 200
    assert response.get_json()["user"] == {
        "user_id": None,
        "username": "supervisor",
        "role": "SUPERVISOR",
    }

    me = client.get("/api/me").get_json()
    assert me["user"]["role"] == "SUPERVISOR"


def test_form_login_is_accepted(auth_app):
    app, _ = auth_app
    client = app.test_client()
    response = client.post("/login", data={"username": "OPERATOR", "password": "line-pw"})
    assert response.status_code == 200
    assert response.get_json()["user"]["role"] == "OPERATOR"


def test_supabase_user_login_takes_precedence(auth_app):
    app, supabase = auth_app
    supabase.tables[table_name("app_users")] = [
        {
            "id": "user-1",
            "username": "amara",
            "display_name": "Amara Osei",
            "password_hash": generate_password_hash("biscuits"),
            "role": "supervisor",
        }
    ]
    client = app.test_client()

    response = client.post("/login", json={"username": "AMARA", "password": "biscuits"})
    assert response.status_code == 200
    assert response.get_json()["user"] == {
        "user_id": "user-1",
        "username": "Amara Osei",
        "role": "SUPERVISOR",
    }


def test_invalid_credentials_are_rejected(auth_app):
    app, _ = auth_app
    client = app.test_client()

    response = client.post("/login", json={"username": "operator", "password": "wrong"})
    assert response.status_code == 401
    assert response.get_json() == {"error": "Invalid credentials."}

    # no password configured for this role
    assert client.post("/login", json={"username": "admin", "password": ""}).status_code == 401
    assert client.get("/api/me").status_code == 401


def test_logout_clears_session(auth_app):
    app, _ = auth_app
    client = app.test_client()
    client.post("/login", json={"username": "operator", "password": "line-pw"})

    response = client.post("/logout")
    assert response.get_json() == {"status": "logged_out"}
    with client.session_transaction() as sess:
        assert "username" not in sess
    assert client.get("/api/me").status_code == 401
