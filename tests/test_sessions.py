"""Tests for session lifecycle and the single-session rule."""

import pytest

from tenantauth.service.errors import NotFoundError


class TestSessionService:
    def test_create_sets_expiry_from_jwt_ttl(self, runtime, make_member, clock):
        user, account = make_member()
        session = runtime.sessions.create("tok-1", account.id, user.id)
        assert session.login_date == clock.now
        assert (session.expiration_date - session.login_date).total_seconds() == 3600
        assert runtime.sessions.is_active(session)

    def test_new_session_replaces_previous(self, runtime, make_member):
        user, account = make_member()
        runtime.sessions.create("tok-1", account.id, user.id)
        runtime.sessions.create("tok-2", account.id, user.id)
        assert runtime.sessions.find_by_token("tok-1") is None
        assert [s.token for s in runtime.sessions.find_by_user_account_id(account.id)] == ["tok-2"]

    def test_sessions_of_other_accounts_untouched(self, runtime, make_member):
        user_a, account_a = make_member("a@example.com")
        user_b, account_b = make_member("b@example.com")
        runtime.sessions.create("tok-a", account_a.id, user_a.id)
        runtime.sessions.create("tok-b", account_b.id, user_b.id)
        assert runtime.sessions.find_by_token("tok-a") is not None

    def test_get_and_delete_missing_token(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.sessions.get_by_token("nope")
        with pytest.raises(NotFoundError):
            runtime.sessions.delete_by_token("nope")

    def test_expiry_and_sweep(self, runtime, make_member, clock):
        user, account = make_member()
        session = runtime.sessions.create("tok-1", account.id, user.id)
        clock.advance(hours=2)
        assert not runtime.sessions.is_active(session)
        assert runtime.sessions.find_active_by_user_account_id(account.id) is None
        assert runtime.sessions.search(active=False).total == 1
        assert runtime.sessions.delete_expired() == 1
        assert runtime.sessions.delete_expired() == 0

    def test_delete_all_by_user_account(self, runtime, make_member):
        user, account = make_member()
        runtime.sessions.create("tok-1", account.id, user.id)
        assert runtime.sessions.delete_all_by_user_account(account.id) == 1
        assert runtime.sessions.find_by_user_id(user.id) == []

    def test_search_by_user(self, runtime, make_member):
        user, account = make_member()
        runtime.sessions.create("tok-1", account.id, user.id)
        page = runtime.sessions.search(user_id=user.id, active=True)
        assert page.total == 1
        assert page.contents[0].token == "tok-1"
