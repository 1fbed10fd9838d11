from chatledger.db.repository import ALL_PERMISSIONS, DEFAULT_MEMBER_PERMISSIONS, SessionRepository

from tests.conftest import Harness


def test_first_login_owns_the_account(db):
    sessions = SessionRepository(db)
    sessions.login("u1", "acc-1")
    sessions.login("u2", "acc-1")

    owner = sessions.check_authorization({"user_id": "u1"})
    member = sessions.check_authorization({"user_id": "u2"})
    assert owner.permissions == ["admin", *ALL_PERMISSIONS]
    assert member.permissions == DEFAULT_MEMBER_PERMISSIONS


def test_unknown_user_has_no_session(db):
    sessions = SessionRepository(db)
    assert sessions.get_or_create_session("ghost") is None
    assert not sessions.check_authorization({"user_id": "ghost"}).authorized


def test_group_sender_uses_owner_account(db):
    sessions = SessionRepository(db)
    sessions.login("group-9", "acc-1")

    session = sessions.get_or_create_session("guest", group_owner_id="group-9")
    assert session.account_id == "acc-1"
    auth = sessions.check_authorization({"user_id": "guest", "group_owner_id": "group-9"})
    assert auth.authorized
    assert auth.permissions == DEFAULT_MEMBER_PERMISSIONS


def test_granted_permissions_take_effect(db):
    sessions = SessionRepository(db)
    sessions.login("u1", "acc-1")
    sessions.login("u2", "acc-1")
    sessions.set_permissions("u2", ["view", "manage_budgets"])
    assert "manage_budgets" in sessions.check_authorization({"user_id": "u2"}).permissions


def test_group_message_is_recorded_on_owner_ledger():
    h = Harness()
    h.login("group-9")
    h.send("guest", "/add 30 padaria", is_group_context=True, group_owner_id="group-9")
    [entry] = h.repo.list_entries("acc-1")
    assert entry.amount == 30

    # group members get the default member permissions
    reply = h.send("guest", "/budget padaria 100", is_group_context=True, group_owner_id="group-9")
    assert reply.startswith("🚫")
