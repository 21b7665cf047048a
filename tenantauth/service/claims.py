"""Parsing and serialization of ``action:scope:resource`` permission claims."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Iterable, List, Union

from tenantauth.service.errors import (
    InvalidClaimActionError,
    InvalidClaimFormatError,
    InvalidClaimScopeError,
)
from tenantauth.storage.models import Claim, ClaimAction, ClaimScope

ClaimLike = Union[str, Sequence[str], Mapping[str, Any], Claim, Any]

# resources managed by this package
ANY = "*"
USERS = "users"
USER_ACCOUNTS = "user-accounts"
ORGANISATIONS = "organisations"
ESTABLISHMENTS = "establishments"
ROLES = "roles"
SESSIONS = "sessions"

_ACTIONS = {action.value: action for action in ClaimAction}
_SCOPES = {scope.value: scope for scope in ClaimScope}


def _to_action(value: Any) -> ClaimAction:
    if isinstance(value, ClaimAction):
        return value
    action = _ACTIONS.get(value) if isinstance(value, str) else None
    if action is None:
        raise InvalidClaimActionError(
            f"Invalid claim action: {value}", detail={"action": str(value)}
        )
    return action


def _to_scope(value: Any) -> ClaimScope:
    if isinstance(value, ClaimScope):
        return value
    scope = _SCOPES.get(value) if isinstance(value, str) else None
    if scope is None:
        raise InvalidClaimScopeError(
            f"Invalid claim scope: {value}", detail={"scope": str(value)}
        )
    return scope


def _from_parts(action: Any, scope: Any, resource: Any) -> Claim:
    for part in (action, scope, resource):
        if part is None or (isinstance(part, str) and not part):
            raise InvalidClaimFormatError(
                "Invalid claim format, expected action:scope:resource"
            )
    return Claim(_to_action(action), _to_scope(scope), str(resource))


def parse_claim(value: ClaimLike) -> Claim:
    """Parse any accepted claim shape into a validated :class:`Claim`.

    Accepted shapes are a ``"action:scope:resource"`` string (segments past the
    third are ignored), a three item sequence, a mapping with ``action``,
    ``scope`` and ``resource`` keys, or any object exposing those attributes.
    """
    if isinstance(value, Claim):
        return value
    if isinstance(value, str):
        parts = value.split(":")
        if len(parts) < 3:
            raise InvalidClaimFormatError(
                f"Invalid claim format: {value!r}, expected action:scope:resource"
            )
        return _from_parts(parts[0], parts[1], parts[2])
    if isinstance(value, Mapping):
        return _from_parts(
            value.get("action"), value.get("scope"), value.get("resource")
        )
    if isinstance(value, Sequence):
        if len(value) != 3:
            raise InvalidClaimFormatError(
                "Invalid claim format, expected [action, scope, resource]"
            )
        return _from_parts(value[0], value[1], value[2])
    if all(hasattr(value, attr) for attr in ("action", "scope", "resource")):
        return _from_parts(value.action, value.scope, value.resource)
    raise InvalidClaimFormatError(f"Unsupported claim input: {type(value).__name__}")


def serialize_claim(value: ClaimLike) -> str:
    claim_obj = parse_claim(value)
    return f"{claim_obj.action.value}:{claim_obj.scope.value}:{claim_obj.resource}"


def parse_claims(values: Iterable[ClaimLike]) -> List[Claim]:
    return [parse_claim(value) for value in values]


def claim(action: ClaimAction, scope: ClaimScope, resource: str) -> Claim:
    return _from_parts(action, scope, resource)


ADMIN = claim(ClaimAction.ADMIN, ClaimScope.ADMIN, ANY)


def is_admin_claim(value: ClaimLike) -> bool:
    return parse_claim(value) == ADMIN
