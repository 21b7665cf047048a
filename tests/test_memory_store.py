from datetime import datetime, timedelta, timezone

import pytest

from tenantauth.requests import ActionTokenRequest, EstablishmentRequest, OrganisationRequest
from tenantauth.service.action_types import ActionType
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import Organisation, Session, User


def _now():
    return datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestConstraints:
    def test_duplicate_email_case_insensitive(self):
        store = MemoryStore()
        store.create_user(User(id="u1", email="Ada@Example.com", username="ada#1"))
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user(User(id="u2", email="ada@example.com", username="ada#2"))
        assert exc.value.detail == {"field": "email"}

    def test_duplicate_organisation_name(self):
        store = MemoryStore()
        store.create_organisation(Organisation(id="o1", name="Acme"))
        with pytest.raises(ConstraintViolation):
            store.create_organisation(Organisation(id="o2", name="Acme"))

    def test_session_requires_account(self):
        store = MemoryStore()
        later = _now() + timedelta(hours=1)
        with pytest.raises(ConstraintViolation):
            store.replace_sessions(Session("t1", "acc-1", "u1", _now(), later))


class TestPersistence:
    def test_state_survives_reload(self, runtime, make_member, tmp_path):
        acme = runtime.organisations.create(OrganisationRequest(name="Acme"))
        hq = runtime.establishments.create(
            EstablishmentRequest(name="HQ", organisation_id=acme.id)
        )
        user, account = make_member(establishment_id=hq.id)
        token = runtime.action_tokens.create(
            ActionTokenRequest(type=ActionType.ACCEPT_TERMS, user_id=user.id, expires_in=4)
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_user_by_email("member@example.com").id == user.id
        restored = reloaded.get_user_account(account.id)
        assert restored.organisation_id == acme.id
        assert [r.name for r in restored.roles] == ["user"]
        assert [str(c) for c in restored.roles[0].claims] == [
            "read:own:users",
            "read:own:user-accounts",
        ]
        restored_token = reloaded.get_action_token(token.token)
        assert restored_token.expires_at == token.expires_at
        assert reloaded.get_credential(user.id, "password") is not None
