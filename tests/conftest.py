"""
Shared test fixtures for the flag API test suite.

API tests run against FakeStorage (tests/fakes.py) through the get_storage
dependency override, so no database is needed.
"""
import sys
import os
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

# Auth disabled for general API tests: every request acts as the dev admin (uid 1).
# Set to empty rather than pop, so the .env loader in flag_api.config will not override them.
# Auth-specific tests set their own secret via monkeypatch.
os.environ["DISABLE_AUTH"] = "true"
os.environ["FLAG_JWT_SECRET"] = ""
os.environ["FLAG_LINK_SECRET"] = "test-link-secret-for-flag-tests!"
os.environ["FLAG_ANONYMOUS_FLAGGING"] = ""
os.environ["FLAG_PAGE_CACHE"] = ""
os.environ["FLAG_DEFAULTS_FILE"] = ""
os.environ["RATE_LIMIT_REQUESTS"] = "0"

from starlette.testclient import TestClient

from flag_api import hooks
from flag_api.dependencies import current_account, get_storage
from flag_api.main import app
from flag_api.service import FlagService
from flag_api.session import FlagSession
from fakes import ADMIN, ALICE, FakeStorage


@pytest.fixture(autouse=True)
def clean_hooks():
    hooks.registry.clear()
    yield
    hooks.registry.clear()


@pytest.fixture
def storage():
    """FakeStorage seeded with a few users and content entities."""
    s = FakeStorage()
    s.add_user(1, "dev", "admin")
    s.add_user(2, "alice", "read")
    s.add_user(3, "bob", "read")
    s.add_entity("node", 1, bundle="article", label="First post", url="/node/1", uid=2)
    s.add_entity("node", 2, bundle="page", label="About us", url="/node/2", uid=3)
    s.add_entity("comment", 5, bundle="comment", label="Nice!", url="/comment/5", uid=3)
    return s


@pytest.fixture
def make_service(storage):
    def _make(account=ALICE, sid=""):
        return FlagService(storage, FlagSession(account=account, sid=sid))
    return _make


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def make_flag(storage):
    """Save a flag directly through the handler API and return it freshly loaded."""
    def _make(name="bookmarks", entity_type="node", roles=("authenticated",), **values):
        service = FlagService(storage, FlagSession(account=ADMIN))
        flag = service.create_flag(entity_type)
        flag.form_input({
            "name": name,
            "title": name.replace("_", " ").title(),
            "roles": {"flag": list(roles), "unflag": list(roles)},
            **values,
        })
        flag.construct()
        flag.save()
        service.save_roles(flag)
        return flag
    return _make


@pytest.fixture
def client(storage):
    """Test client with auth disabled and FakeStorage behind get_storage."""
    app.dependency_overrides[get_storage] = lambda: storage
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def act_as():
    """Make API requests act as the given account."""
    def _act_as(account):
        app.dependency_overrides[current_account] = lambda: account
    return _act_as


