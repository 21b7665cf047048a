from __future__ import annotations

from enum import IntFlag
from typing import Iterable, List, Type, Union

Mask = Union[int, "ActionType"]


class ActionType(IntFlag):
    """Lifecycle actions an action token can authorize, one bit each."""

    INVITE = 1
    VALIDATE_EMAIL = 2
    ACCEPT_TERMS = 4
    ACCEPT_PRIVACY_POLICY = 8
    RESET_PASSWORD = 16
    CHANGE_PASSWORD = 32
    CHANGE_EMAIL = 64


# Every action except Invite operates on an existing user.
USER_REQUIRED_ACTIONS = (
    ActionType.VALIDATE_EMAIL
    | ActionType.ACCEPT_TERMS
    | ActionType.ACCEPT_PRIVACY_POLICY
    | ActionType.RESET_PASSWORD
    | ActionType.CHANGE_PASSWORD
    | ActionType.CHANGE_EMAIL
)

ALL_ACTIONS = ActionType.INVITE | USER_REQUIRED_ACTIONS


def has(mask: Mask, flag: Mask) -> bool:
    return (int(mask) & int(flag)) == int(flag)


def add(mask: Mask, flag: Mask) -> int:
    return int(mask) | int(flag)


def remove(mask: Mask, flag: Mask) -> int:
    return int(mask) & ~int(flag)


def has_all(mask: Mask, required: Mask) -> bool:
    return (int(mask) & int(required)) == int(required)


def has_any(mask: Mask, flags: Mask) -> bool:
    return (int(mask) & int(flags)) != 0


def list_flags(mask: Mask, universe: Type[ActionType] = ActionType) -> List[ActionType]:
    """Return the members of ``universe`` set in ``mask``, lowest bit first."""
    return [flag for flag in universe if has(mask, flag)]


def flag_name(flag: ActionType) -> str:
    return flag.name.replace("_", " ").capitalize() if flag.name else str(int(flag))


class ActionSet:
    """Typed builder for action masks so call sites avoid raw arithmetic."""

    __slots__ = ("mask",)

    def __init__(self, mask: Mask = 0) -> None:
        self.mask = int(mask)

    @classmethod
    def of(cls, *flags: ActionType) -> "ActionSet":
        mask = 0
        for flag in flags:
            mask = add(mask, flag)
        return cls(mask)

    @classmethod
    def from_flags(cls, flags: Iterable[ActionType]) -> "ActionSet":
        return cls.of(*flags)

    def with_flag(self, flag: ActionType) -> "ActionSet":
        return ActionSet(add(self.mask, flag))

    def without(self, flag: ActionType) -> "ActionSet":
        return ActionSet(remove(self.mask, flag))

    def has(self, flag: ActionType) -> bool:
        return has(self.mask, flag)

    def has_all(self, required: Mask) -> bool:
        return has_all(self.mask, required)

    def has_any(self, flags: Mask) -> bool:
        return has_any(self.mask, flags)

    def flags(self) -> List[ActionType]:
        return list_flags(self.mask)

    def __int__(self) -> int:
        return self.mask

    def __index__(self) -> int:
        return self.mask

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ActionSet):
            return self.mask == other.mask
        if isinstance(other, int):
            return self.mask == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.mask)

    def __bool__(self) -> bool:
        return self.mask != 0

    def __repr__(self) -> str:
        names = "|".join(flag.name or "" for flag in self.flags()) or "0"
        return f"ActionSet({names})"
