"""Tests for the action:scope:resource claim codec."""

import pytest

from tenantauth.service.claims import (
    ADMIN,
    USER_ACCOUNTS,
    claim,
    is_admin_claim,
    parse_claim,
    parse_claims,
    serialize_claim,
)
from tenantauth.service.errors import (
    BadRequestError,
    InvalidClaimActionError,
    InvalidClaimFormatError,
    InvalidClaimScopeError,
)
from tenantauth.storage.models import Claim, ClaimAction, ClaimScope


class TestParseClaim:
    """Every accepted input shape converges on the same claim."""

    def test_parse_string(self):
        parsed = parse_claim("read:organisation:users")
        assert parsed == Claim(ClaimAction.READ, ClaimScope.ORGANISATION, "users")

    def test_parse_sequence(self):
        assert parse_claim(["update", "own", "users"]) == parse_claim("update:own:users")
        assert parse_claim(("delete", "any", "roles")) == parse_claim("delete:any:roles")

    def test_parse_mapping(self):
        parsed = parse_claim({"action": "create", "scope": "establishment", "resource": "user-accounts"})
        assert parsed.action is ClaimAction.CREATE
        assert parsed.scope is ClaimScope.ESTABLISHMENT
        assert parsed.resource == USER_ACCOUNTS

    def test_parse_object_with_attributes(self):
        class Holder:
            action = "enable"
            scope = "any"
            resource = "organisations"

        assert str(parse_claim(Holder())) == "enable:any:organisations"

    def test_extra_segments_are_ignored(self):
        assert serialize_claim("read:any:users:extra:stuff") == "read:any:users"

    @pytest.mark.parametrize("value", ["read:any", "read", "", "read::users", ":any:users", "read:any:"])
    def test_malformed_strings_rejected(self, value):
        with pytest.raises(InvalidClaimFormatError):
            parse_claim(value)

    def test_wrong_sequence_length_rejected(self):
        with pytest.raises(InvalidClaimFormatError):
            parse_claim(["read", "any"])

    def test_unknown_action_rejected(self):
        with pytest.raises(InvalidClaimActionError) as exc:
            parse_claim("fly:any:users")
        assert exc.value.detail == {"action": "fly"}

    def test_unknown_scope_rejected(self):
        with pytest.raises(InvalidClaimScopeError):
            parse_claim("read:galaxy:users")

    def test_claim_errors_are_bad_requests(self):
        with pytest.raises(BadRequestError) as exc:
            parse_claim("read:any")
        assert exc.value.status_code == 400

    def test_resource_kept_as_is(self):
        assert parse_claim("execute:own:Reports").resource == "Reports"


class TestSerializeClaim:
    @pytest.mark.parametrize(
        "value",
        [
            "admin:admin:*",
            "read:any:users",
            "update:organisation:user-accounts",
            "disable:establishment:establishments",
            "execute:own:sessions",
        ],
    )
    def test_round_trip(self, value):
        assert serialize_claim(parse_claim(value)) == value

    def test_serialize_claim_object(self):
        assert serialize_claim(claim(ClaimAction.READ, ClaimScope.OWN, "users")) == "read:own:users"

    def test_parse_claims_keeps_order(self):
        parsed = parse_claims(["read:any:users", ("update", "own", "users")])
        assert [str(c) for c in parsed] == ["read:any:users", "update:own:users"]


class TestAdminClaim:
    def test_admin_sentinel(self):
        assert str(ADMIN) == "admin:admin:*"
        assert is_admin_claim("admin:admin:*")
        assert not is_admin_claim("admin:any:*")
