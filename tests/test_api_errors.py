from collections import defaultdict

import psycopg2
import pytest

from flag_api.dependencies import get_storage
from flag_api.main import app
from fakes import FakeStorage


class BrokenStorage(FakeStorage):
    def load_flags(self):
        raise psycopg2.OperationalError("db unavailable")


@pytest.fixture
def broken_client(client):
    app.dependency_overrides[get_storage] = lambda: BrokenStorage()
    return client


def test_unknown_flag_returns_404(client):
    assert client.get("/api/flags/nope").status_code == 404
    assert client.get("/api/flaggings/nope/1").status_code == 404
    assert client.get("/flag/flag/nope/1", follow_redirects=False).status_code == 404


def test_unknown_entity_returns_404(client):
    assert client.get("/api/entities/node/999/flags").status_code == 404


def test_invalid_entity_id_returns_422(client):
    assert client.get("/api/flaggings/bookmarks/not_a_number").status_code == 422


def test_invalid_limit_returns_422(client):
    assert client.get("/api/flaggings/bookmarks/top?limit=0").status_code == 422
    assert client.get("/api/flaggings/bookmarks/top?limit=1000").status_code == 422


def test_invalid_action_body_returns_422(client):
    r = client.post("/api/flaggings/bookmarks/1", json={"action": "Flag!"})
    assert r.status_code == 422


def test_missing_entity_type_returns_422(client):
    assert client.get("/api/users/me/flaggings").status_code == 422


def test_invalid_flag_definition_returns_422(client):
    r = client.post("/api/flags", json={"entity_type": "node"})
    assert r.status_code == 422


def test_db_connection_error_returns_503(broken_client):
    r = broken_client.get("/api/flags")
    assert r.status_code == 503
    assert r.json() == {"detail": "Database unavailable"}


def test_health_is_independent_of_database(broken_client):
    r = broken_client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "api_version": 3}


def test_health_details_reports_unhealthy(broken_client):
    data = broken_client.get("/api/health/details").json()
    assert data["status"] == "unhealthy"
    assert data["database"] == "unavailable"


def test_health_details(client, make_flag):
    make_flag()
    data = client.get("/api/health/details").json()
    assert data["status"] == "healthy"
    assert data["flags"] == 1
    assert data["broken_flags"] == []
    assert data["uninstalled_default_flags"] == []


def test_action_links_have_their_own_rate_limit(client, monkeypatch):
    monkeypatch.setattr("flag_api.middleware.rate_limit.RATE_LIMIT_REQUESTS", 100)
    monkeypatch.setattr("flag_api.middleware.rate_limit.RATE_LIMIT_ACTIONS", 2)
    monkeypatch.setattr("flag_api.middleware.rate_limit._requests", defaultdict(list))

    for _ in range(2):
        assert client.get("/flag/flag/nope/1", follow_redirects=False).status_code == 404
    r = client.get("/flag/flag/nope/1", follow_redirects=False)
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) >= 1
    # Other endpoints still answer.
    assert client.get("/api/health").status_code == 200
