"""Tests for action-type bitmask helpers."""

from tenantauth.service.action_types import (
    USER_REQUIRED_ACTIONS,
    ActionSet,
    ActionType,
    add,
    has,
    has_all,
    has_any,
    list_flags,
    remove,
)


class TestMaskHelpers:
    def test_flag_values(self):
        assert [int(f) for f in ActionType] == [1, 2, 4, 8, 16, 32, 64]

    def test_add_and_has(self):
        mask = add(ActionType.VALIDATE_EMAIL, ActionType.ACCEPT_TERMS)
        assert mask == 6
        assert has(mask, ActionType.VALIDATE_EMAIL)
        assert has(mask, ActionType.ACCEPT_TERMS)
        assert not has(mask, ActionType.INVITE)

    def test_remove(self):
        mask = add(ActionType.VALIDATE_EMAIL, ActionType.ACCEPT_TERMS)
        assert remove(mask, ActionType.ACCEPT_TERMS) == int(ActionType.VALIDATE_EMAIL)
        assert remove(mask, ActionType.INVITE) == mask

    def test_has_all(self):
        mask = ActionType.VALIDATE_EMAIL | ActionType.ACCEPT_PRIVACY_POLICY
        assert has_all(mask, ActionType.VALIDATE_EMAIL)
        assert has_all(mask, mask)
        assert not has_all(mask, ActionType.VALIDATE_EMAIL | ActionType.RESET_PASSWORD)

    def test_has_all_with_empty_requirement(self):
        assert has_all(0, 0)
        assert has_all(ActionType.INVITE, 0)

    def test_has_any(self):
        assert has_any(ActionType.RESET_PASSWORD, USER_REQUIRED_ACTIONS)
        assert not has_any(ActionType.INVITE, USER_REQUIRED_ACTIONS)
        assert not has_any(ActionType.INVITE, 0)

    def test_or_is_commutative_and_associative(self):
        a, b, c = ActionType.INVITE, ActionType.ACCEPT_TERMS, ActionType.CHANGE_EMAIL
        assert add(add(a, b), c) == add(a, add(b, c)) == add(add(c, b), a)

    def test_list_flags_lowest_bit_first(self):
        mask = ActionType.CHANGE_EMAIL | ActionType.INVITE | ActionType.ACCEPT_TERMS
        assert list_flags(mask) == [
            ActionType.INVITE,
            ActionType.ACCEPT_TERMS,
            ActionType.CHANGE_EMAIL,
        ]
        assert list_flags(0) == []

    def test_user_required_actions_exclude_invite(self):
        assert not has(USER_REQUIRED_ACTIONS, ActionType.INVITE)
        assert len(list_flags(USER_REQUIRED_ACTIONS)) == 6


class TestActionSet:
    def test_of_builds_mask(self):
        actions = ActionSet.of(ActionType.VALIDATE_EMAIL, ActionType.ACCEPT_TERMS)
        assert int(actions) == 6
        assert actions == 6
        assert actions.has(ActionType.ACCEPT_TERMS)
        assert actions.flags() == [ActionType.VALIDATE_EMAIL, ActionType.ACCEPT_TERMS]

    def test_with_and_without(self):
        actions = ActionSet.of(ActionType.INVITE).with_flag(ActionType.ACCEPT_TERMS)
        assert actions.without(ActionType.INVITE) == ActionSet.of(ActionType.ACCEPT_TERMS)

    def test_empty_set_is_falsy(self):
        assert not ActionSet()
        assert repr(ActionSet()) == "ActionSet(0)"
