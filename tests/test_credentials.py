"""Tests for password and Google credentials."""

import pytest

from tenantauth.requests import UserCreateRequest
from tenantauth.service.errors import ConflictError, NotFoundError
from tenantauth.storage.models import CredentialType


@pytest.fixture
def user(runtime):
    return runtime.users.create(UserCreateRequest(email="creds@example.com"))


@pytest.fixture
def other_user(runtime):
    return runtime.users.create(UserCreateRequest(email="other@example.com"))


class TestPasswordCredential:
    def test_create_stores_hash_not_plaintext(self, runtime, user):
        credential = runtime.credentials.create_password(user.id, "Sup3rSecret!")
        assert credential.type == CredentialType.PASSWORD
        assert credential.password != "Sup3rSecret!"
        assert credential.password.startswith("$argon2id$")

    def test_same_password_hashes_differ(self, runtime):
        assert runtime.credentials.hash_password("abc12345") != runtime.credentials.hash_password(
            "abc12345"
        )

    def test_create_twice_conflicts(self, runtime, user):
        runtime.credentials.create_password(user.id, "Sup3rSecret!")
        with pytest.raises(ConflictError):
            runtime.credentials.create_password(user.id, "An0therOne!")

    def test_update_requires_existing_password(self, runtime, user):
        with pytest.raises(NotFoundError):
            runtime.credentials.update_password(user.id, "Sup3rSecret!")

    def test_set_password_upserts(self, runtime, user):
        runtime.credentials.set_password(user.id, "FirstPass1!")
        assert runtime.credentials.verify_password(user.id, "FirstPass1!")
        runtime.credentials.set_password(user.id, "SecondPass2!")
        assert runtime.credentials.verify_password(user.id, "SecondPass2!")
        assert not runtime.credentials.verify_password(user.id, "FirstPass1!")
        assert len(runtime.credentials.find_by_user_id(user.id)) == 1

    def test_verify_without_credential_is_false(self, runtime, user):
        assert runtime.credentials.verify_password(user.id, "whatever1") is False

    def test_verify_wrong_password_is_false(self, runtime, user):
        runtime.credentials.create_password(user.id, "Sup3rSecret!")
        assert runtime.credentials.verify_password(user.id, "wrong-password") is False

    def test_delete_password(self, runtime, user):
        runtime.credentials.create_password(user.id, "Sup3rSecret!")
        assert runtime.credentials.delete_password(user.id)
        assert not runtime.credentials.has_password(user.id)
        assert not runtime.credentials.delete_password(user.id)


class TestGoogleCredential:
    def test_create_and_find(self, runtime, user):
        runtime.credentials.create_google(user.id, "google-123")
        assert runtime.credentials.has_google(user.id)
        assert runtime.credentials.find_by_google_id("google-123").user_id == user.id

    def test_second_google_credential_conflicts(self, runtime, user):
        runtime.credentials.create_google(user.id, "google-123")
        with pytest.raises(ConflictError):
            runtime.credentials.create_google(user.id, "google-456")

    def test_google_id_linked_to_other_user_conflicts(self, runtime, user, other_user):
        runtime.credentials.create_google(user.id, "google-123")
        with pytest.raises(ConflictError):
            runtime.credentials.create_google(other_user.id, "google-123")

    def test_delete_all(self, runtime, user):
        runtime.credentials.create_google(user.id, "google-123")
        runtime.credentials.create_password(user.id, "Sup3rSecret!")
        assert runtime.credentials.delete_all(user.id) == 2
        assert runtime.credentials.find_by_user_id(user.id) == []
