"""Tests for the role registry."""

import pytest

from tenantauth.requests import RoleRequest
from tenantauth.service.errors import BadRequestError, InvalidClaimFormatError, NotFoundError


class TestRoleService:
    def test_create_lowercases_name_and_parses_claims(self, runtime):
        role = runtime.roles.create(
            RoleRequest(name="Manager", claims=["read:organisation:users", "update:own:users"])
        )
        assert role.name == "manager"
        assert [str(c) for c in role.claims] == ["read:organisation:users", "update:own:users"]

    def test_duplicate_name_rejected(self, runtime):
        runtime.roles.create(RoleRequest(name="auditor"))
        with pytest.raises(BadRequestError) as exc:
            runtime.roles.create(RoleRequest(name="Auditor"))
        assert exc.value.message == 'Role with name "auditor" already exists'

    def test_invalid_claim_rejected(self, runtime):
        with pytest.raises(InvalidClaimFormatError):
            runtime.roles.create(RoleRequest(name="broken", claims=["read:any"]))

    def test_get_by_names_keeps_order_and_dedupes(self, runtime):
        runtime.roles.create(RoleRequest(name="a"))
        runtime.roles.create(RoleRequest(name="b"))
        roles = runtime.roles.get_by_names(["b", "A", "b"])
        assert [r.name for r in roles] == ["b", "a"]

    def test_get_by_names_is_all_or_nothing(self, runtime):
        with pytest.raises(NotFoundError) as exc:
            runtime.roles.get_by_names(["user", "ghost", "phantom"])
        assert exc.value.message == "One or more roles not found: ghost, phantom"
        assert exc.value.detail == {"roles": ["ghost", "phantom"]}

    def test_ensure_is_idempotent(self, runtime):
        first = runtime.roles.ensure("viewer", ["read:any:users"])
        second = runtime.roles.ensure("viewer", ["delete:any:users"])
        assert first.id == second.id
        assert [str(c) for c in second.claims] == ["read:any:users"]

    def test_update_changes_claims_seen_by_accounts(self, runtime, make_member):
        _, account = make_member()
        role = runtime.roles.get_by_name("user")
        runtime.roles.update(role.id, RoleRequest(name="user", claims=["read:any:users"]))
        reloaded = runtime.accounts.get_by_id(account.id)
        assert [str(c) for c in reloaded.roles[0].claims] == ["read:any:users"]

    def test_delete_detaches_role_from_accounts(self, runtime, make_member):
        _, account = make_member()
        runtime.roles.delete(runtime.roles.get_by_name("user").id)
        assert runtime.accounts.get_by_id(account.id).roles == []
        with pytest.raises(NotFoundError):
            runtime.roles.get_by_name("user")
