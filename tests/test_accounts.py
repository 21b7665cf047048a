import pytest

from tenantauth.requests import (
    EstablishmentRequest,
    OrganisationRequest,
    UserAccountRequest,
    UserAccountUpdateRequest,
    UserCreateRequest,
)
from tenantauth.service.errors import BadRequestError, NotFoundError
from tenantauth.service.scope import AuthScope
from tenantauth.storage.models import ClaimAction, ClaimScope


@pytest.fixture
def tenants(runtime):
    acme = runtime.organisations.create(OrganisationRequest(name="Acme"))
    globex = runtime.organisations.create(OrganisationRequest(name="Globex"))
    hq = runtime.establishments.create(EstablishmentRequest(name="HQ", organisation_id=acme.id))
    return acme, globex, hq


def _own_scope(user_id):
    return AuthScope(ClaimAction.READ, ClaimScope.OWN, "user-accounts", user_id=user_id)


class TestCreate:
    def test_organisation_derived_from_establishment(self, runtime, tenants, make_member):
        acme, _, hq = tenants
        _, account = make_member(establishment_id=hq.id)
        assert account.organisation_id == acme.id
        assert account.establishment_id == hq.id
        assert account.role_names == ["user"]

    def test_establishment_outside_organisation_rejected(self, runtime, tenants, make_member):
        _, globex, hq = tenants
        user, _ = make_member()
        with pytest.raises(BadRequestError) as exc:
            runtime.accounts.create(
                UserAccountRequest(
                    user_id=user.id, organisation_id=globex.id, establishment_id=hq.id
                )
            )
        assert "does not belong to organisation" in exc.value.message

    def test_duplicate_binding_rejected(self, runtime, tenants, make_member):
        acme, _, _ = tenants
        user, _ = make_member(organisation_id=acme.id)
        with pytest.raises(BadRequestError) as exc:
            runtime.accounts.create(UserAccountRequest(user_id=user.id, organisation_id=acme.id))
        assert exc.value.message.startswith("User account already exists")

    def test_unknown_user_and_role(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.accounts.create(UserAccountRequest(user_id="missing"))
        user = runtime.users.create(UserCreateRequest(email="loner@example.com"))
        with pytest.raises(NotFoundError):
            runtime.accounts.create(UserAccountRequest(user_id=user.id, roles=["ghost"]))


class TestUpdate:
    def test_roles_are_replaced(self, runtime, make_member):
        runtime.roles.ensure("editor", ["update:any:users"])
        _, account = make_member()
        updated = runtime.accounts.update(account.id, UserAccountUpdateRequest(roles=["editor"]))
        assert updated.role_names == ["editor"]

    def test_move_to_existing_binding_rejected(self, runtime, tenants, make_member):
        acme, _, _ = tenants
        user, account = make_member()
        runtime.accounts.create(UserAccountRequest(user_id=user.id, organisation_id=acme.id))
        with pytest.raises(BadRequestError):
            runtime.accounts.update(
                account.id, UserAccountUpdateRequest(organisation_id=acme.id)
            )

    def test_clear_establishment_keeps_organisation(self, runtime, tenants, make_member):
        acme, _, hq = tenants
        _, account = make_member(establishment_id=hq.id)
        moved = runtime.accounts.update(
            account.id, UserAccountUpdateRequest(establishment_id=None)
        )
        assert moved.organisation_id == acme.id
        assert moved.establishment_id is None


class TestScope:
    def test_own_scope_hides_other_accounts(self, runtime, make_member):
        alice, alice_account = make_member(email="alice@example.com")
        _, bob_account = make_member(email="bob@example.com")
        scope = _own_scope(alice.id)

        assert runtime.accounts.find_by_id(alice_account.id, scope) is not None
        assert runtime.accounts.find_by_id(bob_account.id, scope) is None
        with pytest.raises(NotFoundError):
            runtime.accounts.get_by_id(bob_account.id, scope)

    def test_search_narrowed_to_scope(self, runtime, make_member):
        alice, _ = make_member(email="alice@example.com")
        bob, _ = make_member(email="bob@example.com")
        scope = _own_scope(alice.id)

        assert runtime.accounts.search().total == 2
        assert [a.user_id for a in runtime.accounts.search(scope=scope).contents] == [alice.id]
        assert runtime.accounts.search(user_id=bob.id, scope=scope).total == 0

    def test_scope_on_other_resource_does_not_restrict(self, runtime, make_member):
        alice, _ = make_member(email="alice@example.com")
        make_member(email="bob@example.com")
        scope = AuthScope(ClaimAction.READ, ClaimScope.OWN, "users", user_id=alice.id)
        assert runtime.accounts.search(scope=scope).total == 2


class TestDisable:
    def test_last_account_disables_user(self, runtime, make_member):
        user, account = make_member()
        disabled = runtime.accounts.disable(account.id)
        assert disabled.enabled is False
        assert runtime.users.get_by_id(user.id).enabled is False

    def test_enable_restores_account_only(self, runtime, make_member):
        user, account = make_member()
        runtime.accounts.disable(account.id)
        assert runtime.accounts.enable(account.id).enabled is True
        assert runtime.users.get_by_id(user.id).enabled is False
