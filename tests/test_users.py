import itertools

import pytest

from conftest import PASSWORD
from tenantauth.requests import CredentialRequest, UserCreateRequest, UserUpdateRequest
from tenantauth.service.errors import BadRequestError, ConflictError, NotFoundError
from tenantauth.service.users import UserService
from tenantauth.storage.models import CredentialType


@pytest.fixture
def users(runtime):
    counter = itertools.count(100001)
    return UserService(
        runtime.store,
        runtime.credentials,
        clock=runtime.clock,
        suffix_factory=lambda: str(next(counter)),
    )


def _google(google_id):
    return CredentialRequest(type=CredentialType.GOOGLE, google_id=google_id)


class TestUsernames:
    def test_from_email_local_part(self, users):
        assert users.generate_username("Jean.Dupont@example.com") == "jeandupont#100001"

    def test_from_full_name(self, users):
        name = users.generate_username("x@example.com", first_name="Zoë", last_name="Ng")
        assert name == "zoeng#100001"

    def test_explicit_username_is_normalized(self, users):
        assert users.generate_username("x@example.com", username="The Boss!") == "theboss#100001"

    def test_collision_retries_with_new_suffix(self, runtime):
        suffixes = iter(["111111", "111111", "222222"])
        users = UserService(
            runtime.store, runtime.credentials, suffix_factory=lambda: next(suffixes)
        )
        first = users.create(UserCreateRequest(email="sam@example.com"))
        second = users.create(UserCreateRequest(email="sam@example.org"))
        assert first.username == "sam#111111"
        assert second.username == "sam#222222"

    def test_gives_up_when_every_suffix_is_taken(self, runtime):
        users = UserService(runtime.store, runtime.credentials, suffix_factory=lambda: "123456")
        users.create(UserCreateRequest(email="sam@example.com"))
        with pytest.raises(BadRequestError):
            users.generate_username("sam@example.org")


class TestCreate:
    def test_names_are_formatted(self, users):
        user = users.create(
            UserCreateRequest(email="a@example.com", first_name="jean PAUL", last_name="dupont")
        )
        assert user.first_name == "Jean Paul"
        assert user.last_name == "DUPONT"
        assert user.enabled is True
        assert user.email_validated is False

    def test_duplicate_email_rejected(self, users):
        users.create(UserCreateRequest(email="a@example.com"))
        with pytest.raises(BadRequestError) as exc:
            users.create(UserCreateRequest(email="A@Example.com"))
        assert exc.value.message == "A user with the same email already exists"

    def test_password_credential_created(self, runtime, users):
        user = users.create(
            UserCreateRequest(
                email="a@example.com",
                credentials=[CredentialRequest(type=CredentialType.PASSWORD, password=PASSWORD)],
            )
        )
        assert runtime.credentials.verify_password(user.id, PASSWORD)

    def test_failed_credential_removes_user(self, users):
        users.create(UserCreateRequest(email="a@example.com", credentials=[_google("g-1")]))
        with pytest.raises(ConflictError):
            users.create(UserCreateRequest(email="b@example.com", credentials=[_google("g-1")]))
        assert users.find_by_email("b@example.com") is None


class TestUpdate:
    def test_patch_only_touches_set_fields(self, users):
        user = users.create(UserCreateRequest(email="a@example.com", phone="555-0100"))
        patched = users.patch(user.id, UserUpdateRequest(first_name="ada"))
        assert patched.first_name == "Ada"
        assert patched.phone == "555-0100"

    def test_update_clears_optional_fields(self, users):
        user = users.create(UserCreateRequest(email="a@example.com", phone="555-0100"))
        updated = users.update(user.id, UserUpdateRequest(first_name="ada"))
        assert updated.phone is None
        assert updated.email == "a@example.com"

    def test_email_change_to_taken_address_rejected(self, users):
        users.create(UserCreateRequest(email="a@example.com"))
        other = users.create(UserCreateRequest(email="b@example.com"))
        with pytest.raises(BadRequestError):
            users.patch(other.id, UserUpdateRequest(email="a@example.com"))

    def test_taken_username_rejected(self, users):
        first = users.create(UserCreateRequest(email="a@example.com"))
        other = users.create(UserCreateRequest(email="b@example.com"))
        with pytest.raises(BadRequestError):
            users.patch(other.id, UserUpdateRequest(username=first.username))


class TestLifecycle:
    async def test_disable_drops_accounts_and_sessions(self, runtime, make_member):
        user, account = make_member()
        await runtime.jwt.authenticate(account, PASSWORD)
        assert runtime.sessions.find_by_user_id(user.id)

        runtime.users.disable(user.id)

        assert runtime.accounts.get_by_id(account.id).enabled is False
        assert runtime.sessions.find_by_user_id(user.id) == []

    def test_delete_cascades(self, runtime, make_member):
        user, account = make_member()
        runtime.users.delete(user.id)
        assert runtime.accounts.find_by_id(account.id) is None
        assert runtime.credentials.find_by_user_id(user.id) == []
        with pytest.raises(NotFoundError):
            runtime.users.delete(user.id)

    def test_search_by_enabled(self, runtime, make_member):
        make_member(email="a@example.com")
        user, _ = make_member(email="b@example.com")
        runtime.users.disable(user.id)
        page = runtime.users.search(enabled=False)
        assert [u.id for u in page.contents] == [user.id]
