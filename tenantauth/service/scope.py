from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from tenantauth.logging import get_logger
from tenantauth.service.claims import ADMIN, ANY, ClaimLike, parse_claims
from tenantauth.service.errors import ForbiddenError
from tenantauth.storage.models import ClaimAction, ClaimScope, UserAccount

logger = get_logger(__name__)

# most permissive first
_SCOPE_PRIORITY = (
    ClaimScope.ANY,
    ClaimScope.ORGANISATION,
    ClaimScope.ESTABLISHMENT,
    ClaimScope.OWN,
)


@dataclass(frozen=True)
class AuthScope:
    """Effective reach of the caller for one action on one resource."""

    action: ClaimAction
    scope: ClaimScope
    resource: str
    user_id: Optional[str] = None
    organisation_id: Optional[str] = None
    establishment_id: Optional[str] = None

    def restricts(self, resource: str) -> bool:
        """True when queries on ``resource`` must be narrowed to this scope."""
        if self.scope in (ClaimScope.ADMIN, ClaimScope.ANY):
            return False
        return self.resource == resource


class ScopeService:
    def authorize(
        self, account: UserAccount, required: Iterable[ClaimLike]
    ) -> AuthScope:
        """Check that ``account`` holds one of ``required`` and compute its scope.

        Holders of the admin claim pass every check with an unrestricted scope.
        """
        held = {claim for role in account.roles for claim in role.claims}
        if ADMIN in held:
            return AuthScope(ClaimAction.ADMIN, ClaimScope.ADMIN, ANY)
        wanted = parse_claims(required)
        matched = [claim for claim in wanted if claim in held]
        if not matched:
            logger.warning(
                "authorization_denied",
                user_account_id=account.id,
                required=[str(c) for c in wanted],
            )
            raise ForbiddenError(
                "Insufficient permissions",
                detail={"required": [str(c) for c in wanted]},
            )
        first = matched[0]
        scope = self.get_most_permissive_scope(account, first.action, first.resource)
        return self.get_auth_scope(account, first.action, first.resource, scope)

    def get_most_permissive_scope(
        self, account: UserAccount, action: ClaimAction, resource: str
    ) -> ClaimScope:
        scopes = {
            claim.scope
            for role in account.roles
            for claim in role.claims
            if claim.action == action and claim.resource == resource
        }
        for candidate in _SCOPE_PRIORITY:
            if candidate in scopes:
                return candidate
        raise ForbiddenError(
            f"No matching scope found for action {action.value} on resource {resource}"
        )

    def get_auth_scope(
        self,
        account: UserAccount,
        action: ClaimAction,
        resource: str,
        scope: ClaimScope,
    ) -> AuthScope:
        if scope == ClaimScope.OWN:
            return AuthScope(action, scope, resource, user_id=account.user_id)
        if scope == ClaimScope.ORGANISATION:
            return AuthScope(
                action, scope, resource, organisation_id=account.organisation_id
            )
        if scope == ClaimScope.ESTABLISHMENT:
            return AuthScope(
                action, scope, resource, establishment_id=account.establishment_id
            )
        return AuthScope(action, scope, resource)
