"""
/flag/... action links: token checks, redirects, JSON toggles and confirmation forms.

Without an override the client acts as the dev admin (uid 1), so valid tokens
are seeded with uid 1.
"""
from urllib.parse import urlencode

import pytest

from flag_api.accounts import ANONYMOUS
from flag_api.routers.links import BAD_TOKEN
from flag_api.tokens import get_token
from fakes import ALICE


def _link(action="flag", name="bookmarks", entity_id=1, seed=1, **query):
    query.setdefault("token", get_token(name, entity_id, seed))
    return f"/flag/{action}/{name}/{entity_id}?{urlencode(query)}"


@pytest.fixture
def bookmarks(make_flag):
    return make_flag(flag_short="Bookmark", unflag_short="Unbookmark")


def test_link_flags_and_redirects(client, storage, bookmarks):
    r = client.get(_link(destination="/node/2"), follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/node/2"
    assert len(storage.flaggings) == 1

    r = client.get(_link("unflag", destination="/node/2"), follow_redirects=False)
    assert r.status_code == 303
    assert storage.flaggings == {}


def test_redirect_defaults_to_entity_url(client, bookmarks):
    r = client.get(_link(), follow_redirects=False)
    assert r.headers["location"] == "/node/1"


@pytest.mark.parametrize("destination", [
    "https://evil.example/",
    "//evil.example/",
    "javascript:alert(1)",
    "node/1",
])
def test_offsite_destination_is_ignored(client, bookmarks, destination):
    r = client.get(_link(destination=destination), follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/node/1"


def test_bad_token_is_rejected(client, storage, bookmarks):
    r = client.get(_link(token="nope"), follow_redirects=False)
    assert r.status_code == 403
    assert r.json()["detail"] == BAD_TOKEN
    assert storage.flaggings == {}

    # Another user's token does not work either.
    r = client.get(_link(seed=ALICE.uid), follow_redirects=False)
    assert r.status_code == 403


def test_js_toggle_returns_json(client, bookmarks):
    r = client.get(_link(js=1))
    assert r.status_code == 200
    data = r.json()
    assert data["status"] is True
    assert data["flagStatus"] == "flagged"
    assert data["count"] == 1
    assert ">Unbookmark</a>" in data["newLink"]

    r = client.get(_link(token="nope", js=1))
    assert r.status_code == 403
    assert r.json() == {"status": False, "errorMessage": BAD_TOKEN, "errors": {}}


def test_denied_action_returns_403(client, act_as, make_flag):
    make_flag(roles=("editor",))
    act_as(ALICE)
    r = client.get(_link(seed=ALICE.uid), follow_redirects=False)
    assert r.status_code == 403


def test_unknown_action_flag_or_entity(client, bookmarks):
    assert client.get(_link("bookmark"), follow_redirects=False).status_code == 404
    assert client.get(_link(name="nope"), follow_redirects=False).status_code == 404
    assert client.get(_link(entity_id=999), follow_redirects=False).status_code == 404


def test_wrong_entity_type_is_not_found(client, make_flag):
    make_flag("follow", "user")
    # Comment 5 exists, but "follow" flags users and there is no user 5.
    assert client.get(_link(name="follow", entity_id=5), follow_redirects=False).status_code == 404


# ============================================================================
# Anonymous visitors
# ============================================================================

@pytest.fixture
def anonymous_flagging(monkeypatch):
    monkeypatch.setattr("flag_api.handlers.base.ANONYMOUS_FLAGGING", True)
    monkeypatch.setattr("flag_api.service.ANONYMOUS_FLAGGING", True)


def test_anonymous_link_uses_the_visitor_session(client, storage, act_as, anonymous_flagging, make_flag):
    make_flag(roles=("anonymous",))
    act_as(ANONYMOUS)
    client.cookies.set("flag_session", "visitor-session")

    r = client.get(_link(seed="visitor-session"), follow_redirects=False)
    assert r.status_code == 303

    [flagging] = storage.flaggings.values()
    assert (flagging["uid"], flagging["sid"]) == (0, "visitor-session")


def test_anonymous_without_session_cannot_follow_links(client, storage, act_as,
                                                       anonymous_flagging, make_flag):
    make_flag(roles=("anonymous",))
    act_as(ANONYMOUS)

    r = client.get(_link(seed=""), follow_redirects=False)
    assert r.status_code == 403
    assert r.json()["detail"] == BAD_TOKEN
    assert storage.flaggings == {}


def test_confirm_form_starts_anonymous_session(client, storage, act_as, anonymous_flagging, make_flag):
    make_flag(roles=("anonymous",), link_type="confirm", flag_confirmation="Sure?",
              unflag_confirmation="Sure?")
    act_as(ANONYMOUS)

    r = client.get("/flag/confirm/flag/bookmarks/1")
    assert r.status_code == 200
    sid = r.cookies.get("flag_session")
    assert sid
    assert f"token={get_token('bookmarks', 1, sid)}" in r.text


def test_anonymous_denied_when_disabled(client, act_as, make_flag):
    make_flag(roles=("anonymous",))
    act_as(ANONYMOUS)
    assert client.get(_link(seed=""), follow_redirects=False).status_code == 403


# ============================================================================
# Confirmation forms
# ============================================================================

@pytest.fixture
def confirm_flag(make_flag):
    return make_flag(link_type="confirm", flag_short="Bookmark",
                     flag_confirmation="Bookmark this post?", unflag_confirmation="Remove bookmark?")


def test_confirm_link_redirects_to_form(client, confirm_flag):
    r = client.get("/flag/flag/bookmarks/1?destination=/node/2", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/flag/confirm/flag/bookmarks/1?destination=%2Fnode%2F2"


def test_confirm_form(client, confirm_flag):
    r = client.get("/flag/confirm/flag/bookmarks/1?destination=/node/2")
    assert r.status_code == 200
    html = r.text
    token = get_token("bookmarks", 1, 1)
    assert f'action="/flag/confirm/flag/bookmarks/1?destination=%2Fnode%2F2&amp;token={token}"' in html
    assert '<p class="flag-confirm-question">Bookmark this post?</p>' in html
    assert "<button type=\"submit\">Bookmark</button>" in html
    assert '<a href="/node/2">Cancel</a>' in html


def test_confirm_form_requires_access(client, act_as, make_flag):
    make_flag(roles=("editor",), link_type="confirm", flag_confirmation="Sure?", unflag_confirmation="Sure?")
    act_as(ALICE)
    assert client.get("/flag/confirm/flag/bookmarks/1").status_code == 403


def test_confirm_submit(client, storage, confirm_flag):
    token = get_token("bookmarks", 1, 1)
    r = client.post(f"/flag/confirm/flag/bookmarks/1?destination=/node/2&token={token}",
                    follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/node/2"
    assert len(storage.flaggings) == 1

    r = client.post("/flag/confirm/unflag/bookmarks/1?token=nope", follow_redirects=False)
    assert r.status_code == 403
    assert len(storage.flaggings) == 1
