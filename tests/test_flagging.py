"""
Flag and unflag through the handler API: state, counts, hooks and rollback.
"""
import pytest

from flag_api import hooks
from flag_api.accounts import ANONYMOUS
from flag_api.config import SESSION_COOKIE_NAME
from flag_api.handlers.base import BaseFlag
from fakes import ALICE, BOB


def test_flag_then_unflag_restores_state(make_flag, service):
    make_flag()
    flag = service.get_flag("bookmarks")

    assert flag.flag("flag", 1)
    assert flag.is_flagged(1)
    assert flag.get_count(1) == 1

    assert flag.flag("unflag", 1)
    assert not flag.is_flagged(1)
    assert flag.get_count(1) == 0


def test_flagging_twice_is_a_no_op(make_flag, service, storage):
    make_flag()
    flag = service.get_flag("bookmarks")
    assert flag.flag("flag", 1)
    assert flag.flag("flag", 1)
    assert len(storage.flaggings) == 1
    assert flag.get_count(1) == 1


def test_unflag_without_flagging_never_goes_negative(make_flag, service, storage):
    make_flag()
    flag = service.get_flag("bookmarks")
    assert flag.flag("unflag", 1)
    assert flag.get_count(1) == 0
    assert storage.counts == {}


def test_counts_are_per_entity_across_users(make_flag, make_service):
    make_flag()
    alice = make_service(ALICE).get_flag("bookmarks")
    bob = make_service(BOB).get_flag("bookmarks")
    assert alice.flag("flag", 1)
    assert bob.flag("flag", 1)
    assert bob.flag("flag", 2)

    check = make_service(ALICE).get_flag("bookmarks")
    assert check.get_count(1) == 2
    assert check.get_count(2) == 1
    assert check.is_flagged(1)
    assert not check.is_flagged(2)

    assert alice.flag("unflag", 1)
    assert make_service(BOB).get_flag("bookmarks").get_count(1) == 1


def test_global_flag_is_shared_by_all_users(make_flag, make_service, storage):
    make_flag("promote", **{"global": True})
    assert make_service(ALICE).get_flag("promote").flag("flag", 1)

    bob_flag = make_service(BOB).get_flag("promote")
    assert bob_flag.is_flagged(1)
    # Already flagged globally: nothing new is recorded.
    assert bob_flag.flag("flag", 1)
    assert bob_flag.get_count(1) == 1
    assert [(f["uid"], f["sid"]) for f in storage.flaggings.values()] == [(0, "")]

    assert bob_flag.flag("unflag", 1)
    assert not make_service(ALICE).get_flag("promote").is_flagged(1)


def test_user_count(make_flag, service):
    make_flag()
    flag = service.get_flag("bookmarks")
    flag.flag("flag", 1)
    flag.flag("flag", 2)
    assert flag.get_user_count(ALICE.uid) == 2
    assert flag.get_user_count(BOB.uid) == 0


def test_hook_failure_rolls_back_the_flagging(make_flag, service, storage):
    make_flag()

    @hooks.hook("flag_flag")
    def explode(flag, entity_id, account, flagging):
        raise RuntimeError("boom")

    flag = service.get_flag("bookmarks")
    with pytest.raises(RuntimeError):
        flag.flag("flag", 1)

    assert storage.flaggings == {}
    assert storage.counts == {}
    assert storage.rollbacks == 1
    assert not flag.is_flagged(1)


def test_unflag_racing_another_unflag_keeps_count(make_flag, make_service, storage, monkeypatch):
    make_flag()
    make_service(ALICE).get_flag("bookmarks").flag("flag", 1)
    make_service(BOB).get_flag("bookmarks").flag("flag", 1)
    lookup = BaseFlag._is_flagged

    def lookup_then_lose_the_race(self, entity_id, uid, sid):
        flagging_id = lookup(self, entity_id, uid, sid)
        # Another request unflags and commits between our lookup and our write.
        storage.decrease_count(self.fid, entity_id, 1, 0)
        storage.delete_flagging(flagging_id)
        return flagging_id

    monkeypatch.setattr(BaseFlag, "_is_flagged", lookup_then_lose_the_race)
    unflagged = []
    hooks.hook("flag_unflag")(lambda *args: unflagged.append(args))

    assert make_service(ALICE).get_flag("bookmarks").flag("unflag", 1)
    assert [row["uid"] for row in storage.flaggings.values()] == [BOB.uid]
    assert [row["count"] for row in storage.counts.values()] == [1]
    assert unflagged == []


def test_flag_racing_another_flag_is_already_flagged(make_flag, service, storage, monkeypatch):
    make_flag()
    flag = service.get_flag("bookmarks")
    flag.flag("flag", 1)
    # A stale lookup: the insert then hits the unique key.
    monkeypatch.setattr(BaseFlag, "_is_flagged", lambda self, entity_id, uid, sid: None)

    assert flag.flag("flag", 1)
    assert len(storage.flaggings) == 1
    assert [row["count"] for row in storage.counts.values()] == [1]
    assert storage.rollbacks == 1


def test_flag_hook_receives_saved_flagging(make_flag, service):
    make_flag()
    seen = []

    @hooks.hook("flag_flag")
    def remember(flag, entity_id, account, flagging):
        seen.append((flag.name, entity_id, account.uid, flagging["flagging_id"]))

    service.get_flag("bookmarks").flag("flag", 1)
    assert seen == [("bookmarks", 1, ALICE.uid, 1)]


def test_unflag_hook_sees_decreased_count(make_flag, service):
    make_flag()
    flag = service.get_flag("bookmarks")
    flag.flag("flag", 1)
    seen = []

    @hooks.hook("flag_unflag")
    def remember(flag, entity_id, account, flagging):
        seen.append(flag.service.storage.entity_counts("node", entity_id))

    flag.flag("unflag", 1)
    assert seen == [[]]


def test_validate_hook_blocks_the_action(make_flag, service, storage):
    make_flag()

    @hooks.hook("flag_validate")
    def limit(action, flag, entity_id, account, skip_permission_check, flagging):
        if action == "flag":
            return {"limit": "You may only bookmark 0 items."}

    flag = service.get_flag("bookmarks")
    assert not flag.flag("flag", 1)
    assert flag.get_errors() == {"limit": "You may only bookmark 0 items."}
    assert storage.flaggings == {}


def test_access_denied_is_reported(make_flag, service):
    make_flag(roles=("editor",))
    flag = service.get_flag("bookmarks")
    assert not flag.flag("flag", 1)
    assert "access-denied" in flag.errors


def test_skip_permission_check_still_requires_matching_entity(make_flag, service):
    make_flag(roles=("editor",), types=["page"])
    flag = service.get_flag("bookmarks")
    assert flag.flag("flag", 2, skip_permission_check=True)
    assert not flag.flag("flag", 1, skip_permission_check=True)
    assert "entity-type" in flag.errors


def test_unknown_action_is_an_error(make_flag, service):
    make_flag()
    flag = service.get_flag("bookmarks")
    assert not flag.flag("bookmark", 1, skip_permission_check=True)
    assert "action" in flag.errors


def test_anonymous_needs_a_session(make_flag, make_service):
    make_flag(roles=("anonymous",))
    flag = make_service(ANONYMOUS).get_flag("bookmarks")
    assert not flag.flag("flag", 1, skip_permission_check=True)
    assert "session" in flag.errors


def test_anonymous_flagging_gets_a_session_id(make_flag, make_service, storage, monkeypatch):
    monkeypatch.setattr("flag_api.handlers.base.ANONYMOUS_FLAGGING", True)
    monkeypatch.setattr("flag_api.service.ANONYMOUS_FLAGGING", True)
    make_flag(roles=("anonymous",))
    service = make_service(ANONYMOUS)
    flag = service.get_flag("bookmarks")

    assert flag.flag("flag", 1)
    sid = service.session.sid
    assert sid
    assert service.session.outgoing[SESSION_COOKIE_NAME] == sid
    [flagging] = storage.flaggings.values()
    assert (flagging["uid"], flagging["sid"]) == (0, sid)

    # Another anonymous visitor has a different session and sees nothing.
    other = make_service(ANONYMOUS, sid="other-session").get_flag("bookmarks")
    assert not other.is_flagged(1)
    assert other.get_count(1) == 1


def test_reset_flag_for_one_entity(make_flag, make_service, storage):
    make_flag()
    make_service(ALICE).get_flag("bookmarks").flag("flag", 1)
    make_service(BOB).get_flag("bookmarks").flag("flag", 1)
    make_service(BOB).get_flag("bookmarks").flag("flag", 2)
    reset_rows = []

    @hooks.hook("flag_reset")
    def remember(flag, entity_id, rows):
        reset_rows.extend(rows)

    service = make_service(ALICE)
    flag = service.get_flag("bookmarks")
    assert service.reset_flag(flag, 1) == 2
    assert len(reset_rows) == 2
    assert flag.get_count(1) == 0
    assert flag.get_count(2) == 1
    assert not flag.is_flagged(1)


def test_get_flags_filters_by_entity_type_and_bundle(make_flag, service):
    make_flag("bookmarks", types=["article"])
    make_flag("follow", "user")

    assert list(service.get_flags("node", "article")) == ["bookmarks"]
    assert service.get_flags("node", "page") == {}
    assert list(service.get_flags("user")) == ["follow"]
    assert sorted(service.get_flags()) == ["bookmarks", "follow"]


def test_flag_alter_hook_changes_loaded_flags(make_flag, service):
    make_flag()

    @hooks.hook("flag_alter")
    def rename(flag):
        flag.title = "Saved items"

    assert service.get_flag("bookmarks").title == "Saved items"


def test_get_flag_by_fid(make_flag, service):
    saved = make_flag()
    assert service.get_flag(fid=saved.fid).name == "bookmarks"
    assert service.get_flag(fid=999) is None


def test_delete_flag_removes_flaggings_and_permissions(make_flag, service, storage):
    make_flag()
    service.get_flag("bookmarks").flag("flag", 1)
    deleted = []

    @hooks.hook("flag_delete")
    def remember(flag):
        deleted.append(flag.name)

    service.get_flag("bookmarks").delete()
    assert deleted == ["bookmarks"]
    assert storage.flaggings == {}
    assert storage.counts == {}
    assert storage.permissions == set()
    assert service.get_flag("bookmarks") is None


def test_entity_flags_lists_who_flagged(make_flag, make_service, service):
    make_flag()
    make_service(ALICE).get_flag("bookmarks").flag("flag", 1)
    make_service(BOB).get_flag("bookmarks").flag("flag", 1)

    rows = service.get_entity_flags("node", 1, "bookmarks")
    assert sorted(r["username"] for r in rows) == ["alice", "bob"]
    assert service.get_entity_flags("node", 1, "missing") == []
