import pytest

from conftest import PASSWORD
from tenantauth.requests import (
    EstablishmentRequest,
    EstablishmentUpdateRequest,
    OrganisationRequest,
    OrganisationUpdateRequest,
    UserAccountRequest,
)
from tenantauth.service.errors import AuthenticationError, BadRequestError, NotFoundError
from tenantauth.service.tenants import seed


@pytest.fixture
def acme(runtime):
    return runtime.organisations.create(OrganisationRequest(name="Acme"))


@pytest.fixture
def hq(runtime, acme):
    return runtime.establishments.create(
        EstablishmentRequest(name="HQ", organisation_id=acme.id)
    )


class TestOrganisations:
    def test_create_and_find(self, runtime, acme, clock):
        assert acme.enabled is True
        assert acme.created_at == clock.now
        assert runtime.organisations.find_by_name(" Acme ").id == acme.id

    def test_duplicate_name_rejected(self, runtime, acme):
        with pytest.raises(BadRequestError) as exc:
            runtime.organisations.create(OrganisationRequest(name="Acme"))
        assert exc.value.message == 'Organisation with name "Acme" already exists'

    def test_rename_to_taken_name_rejected(self, runtime, acme):
        other = runtime.organisations.create(OrganisationRequest(name="Globex"))
        with pytest.raises(BadRequestError):
            runtime.organisations.update(other.id, OrganisationUpdateRequest(name="Acme"))

    def test_get_unknown(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.organisations.get_by_id("missing")

    def test_search_pages(self, runtime):
        for name in ("Alpha", "Beta", "Gamma"):
            runtime.organisations.create(OrganisationRequest(name=name))
        page = runtime.organisations.search(page=1, size=2)
        assert page.total == 3
        assert len(page.contents) == 2


class TestEstablishments:
    def test_same_name_allowed_in_other_organisation(self, runtime, acme, hq):
        globex = runtime.organisations.create(OrganisationRequest(name="Globex"))
        other = runtime.establishments.create(
            EstablishmentRequest(name="HQ", organisation_id=globex.id)
        )
        assert other.id != hq.id

    def test_duplicate_in_organisation_rejected(self, runtime, acme, hq):
        with pytest.raises(BadRequestError) as exc:
            runtime.establishments.create(
                EstablishmentRequest(name="HQ", organisation_id=acme.id)
            )
        assert "already exists in this organisation" in exc.value.message

    def test_unknown_organisation(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.establishments.create(
                EstablishmentRequest(name="HQ", organisation_id="missing")
            )

    def test_move_to_other_organisation(self, runtime, acme, hq, make_member, clock):
        _, account = make_member(organisation_id=acme.id, establishment_id=hq.id)
        globex = runtime.organisations.create(OrganisationRequest(name="Globex"))
        moved = runtime.establishments.update(
            hq.id, EstablishmentUpdateRequest(organisation_id=globex.id)
        )
        assert moved.organisation_id == globex.id
        assert runtime.establishments.find_by_organisation(globex.id)[0].id == hq.id

        moved_account = runtime.accounts.get_by_id(account.id)
        assert moved_account.organisation_id == globex.id
        assert moved_account.establishment_id == hq.id
        assert moved_account.updated_at == clock.now
        assert runtime.accounts.find_by_user_id(account.user_id)[0].organisation_id == globex.id


class TestCascades:
    async def test_disable_organisation_disables_members(
        self, runtime, acme, hq, make_member
    ):
        user, account = make_member(organisation_id=acme.id, establishment_id=hq.id)
        token = await runtime.jwt.authenticate(account, PASSWORD)

        runtime.organisations.disable(acme.id)

        assert runtime.establishments.get_by_id(hq.id).enabled is False
        assert runtime.accounts.get_by_id(account.id).enabled is False
        assert runtime.users.get_by_id(user.id).enabled is False
        with pytest.raises(AuthenticationError):
            runtime.jwt.load_identity_from_token(token.access_token)

    def test_disable_establishment_keeps_user_with_other_account(
        self, runtime, acme, hq, make_member
    ):
        user, account = make_member(organisation_id=acme.id, establishment_id=hq.id)
        runtime.accounts.create(
            UserAccountRequest(user_id=user.id, organisation_id=acme.id, roles=["user"])
        )
        runtime.establishments.disable(hq.id)
        assert runtime.accounts.get_by_id(account.id).enabled is False
        assert runtime.users.get_by_id(user.id).enabled is True

    def test_delete_organisation_removes_accounts(self, runtime, acme, hq, make_member):
        user, account = make_member(organisation_id=acme.id, establishment_id=hq.id)
        runtime.organisations.delete(acme.id)
        assert runtime.establishments.find_by_id(hq.id) is None
        assert runtime.accounts.find_by_id(account.id) is None
        assert runtime.users.find_by_id(user.id) is not None


class TestSeed:
    def test_seed_is_idempotent(self, runtime):
        pairs = [("Acme", "HQ"), ("Acme", "Lab"), ("Initech", "Main")]
        assert seed(runtime.organisations, runtime.establishments, ["Acme"], pairs) == (2, 3)
        assert seed(runtime.organisations, runtime.establishments, ["Acme"], pairs) == (0, 0)
        acme = runtime.organisations.find_by_name("Acme")
        names = sorted(e.name for e in runtime.establishments.find_by_organisation(acme.id))
        assert names == ["HQ", "Lab"]
