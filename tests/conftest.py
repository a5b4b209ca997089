import sqlite3

import pytest

from pridesphere.app import create_app
from pridesphere.database import connect


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "DB_PATH": str(tmp_path / "test.db"),
        "UPLOAD_FOLDER": str(tmp_path / "uploads"),
        "GEMINI_API_KEY": "test-key",
        "GOOGLE_PLACES_API_KEY": "test-key",
    })
    yield app


@pytest.fixture
def make_client(app):
    """Returns a factory that signs up a fresh user and hands back (client, user_id)."""
    counter = {"n": 0}

    def _make(name=None, **extra):
        counter["n"] += 1
        name = name or f"user{counter['n']}"
        client = app.test_client()
        payload = {"email": f"{name}@example.com", "password": "rainbow-pass", "display_name": name.title(),
                   "username": name}
        payload.update(extra)
        resp = client.post("/api/auth/signup", json=payload)
        assert resp.status_code == 201, resp.get_json()
        return client, resp.get_json()["user"]["id"]

    return _make


@pytest.fixture
def db(app):
    """A raw connection for checking rows the API does not expose."""
    conn = connect(app.config["DB_PATH"])
    yield conn
    conn.close()


@pytest.fixture
def community(make_client):
    """An owner, a member and the community they share."""
    owner, owner_id = make_client("owner")
    member, member_id = make_client("member")
    resp = owner.post("/api/communities", json={"name": "Queer Hikers", "category": "Outdoors",
                                                "tags": "hiking, nature"})
    assert resp.status_code == 201
    community_id = resp.get_json()["id"]
    assert member.post(f"/api/communities/{community_id}/join").status_code == 201
    return {
        "id": community_id,
        "owner": owner, "owner_id": owner_id,
        "member": member, "member_id": member_id,
    }


@pytest.fixture
def rival_db(app):
    """A second writer that gives up at once instead of waiting for the lock."""
    conn = sqlite3.connect(app.config["DB_PATH"], timeout=0)
    yield conn
    conn.close()


@pytest.fixture
def try_write(rival_db):
    """Runs one statement on the second writer and reports 'committed' or 'locked'."""
    def _write(query, *params):
        try:
            with rival_db:
                rival_db.execute(query, params)
        except sqlite3.OperationalError:
            return "locked"
        return "committed"

    return _write
