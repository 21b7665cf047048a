import pytest

from tenantauth.requests import EstablishmentRequest, OrganisationRequest
from tenantauth.service.errors import ForbiddenError
from tenantauth.storage.models import ClaimAction, ClaimScope


@pytest.fixture
def member_factory(runtime, make_member):
    acme = runtime.organisations.create(OrganisationRequest(name="Acme"))
    hq = runtime.establishments.create(EstablishmentRequest(name="HQ", organisation_id=acme.id))
    runtime.roles.ensure("admin", ["admin:admin:*"])
    runtime.roles.ensure(
        "manager", ["read:own:user-accounts", "read:organisation:user-accounts"]
    )
    runtime.roles.ensure("clerk", ["read:establishment:user-accounts"])

    def _make(email, roles):
        return make_member(email=email, roles=roles, establishment_id=hq.id)[1]

    return acme, hq, _make


class TestAuthorize:
    def test_admin_passes_everything(self, runtime, member_factory):
        _, _, make = member_factory
        account = make("root@example.com", ["admin"])
        scope = runtime.scope.authorize(account, ["delete:any:organisations"])
        assert scope.scope == ClaimScope.ADMIN
        assert scope.restricts("user-accounts") is False

    def test_missing_claim_forbidden(self, runtime, member_factory):
        _, _, make = member_factory
        account = make("plain@example.com", ["user"])
        with pytest.raises(ForbiddenError) as exc:
            runtime.scope.authorize(account, ["delete:any:users"])
        assert exc.value.detail == {"required": ["delete:any:users"]}

    def test_most_permissive_scope_wins(self, runtime, member_factory):
        acme, _, make = member_factory
        account = make("boss@example.com", ["manager"])
        scope = runtime.scope.authorize(account, ["read:own:user-accounts"])
        assert scope.scope == ClaimScope.ORGANISATION
        assert scope.organisation_id == acme.id
        assert scope.user_id is None

    def test_own_scope_binds_user(self, runtime, member_factory):
        _, _, make = member_factory
        account = make("plain@example.com", ["user"])
        scope = runtime.scope.authorize(account, ["read:own:user-accounts"])
        assert scope.scope == ClaimScope.OWN
        assert scope.user_id == account.user_id
        assert scope.restricts("user-accounts")

    def test_establishment_scope_binds_establishment(self, runtime, member_factory):
        _, hq, make = member_factory
        account = make("clerk@example.com", ["clerk"])
        scope = runtime.scope.authorize(account, ["read:establishment:user-accounts"])
        assert scope.establishment_id == hq.id

    def test_no_scope_for_other_action(self, runtime, member_factory):
        _, _, make = member_factory
        account = make("plain@example.com", ["user"])
        with pytest.raises(ForbiddenError):
            runtime.scope.get_most_permissive_scope(
                account, ClaimAction.DELETE, "user-accounts"
            )


class TestScopedQueries:
    def test_organisation_scope_lists_colleagues(self, runtime, member_factory, make_member):
        _, _, make = member_factory
        manager = make("boss@example.com", ["manager"])
        make("plain@example.com", ["user"])
        make_member(email="outsider@example.com")
        scope = runtime.scope.authorize(manager, ["read:organisation:user-accounts"])
        assert runtime.accounts.search(scope=scope).total == 2
        assert runtime.accounts.search().total == 3
