from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from tenantauth.logging import get_logger
from tenantauth.requests import ActionEnvelope, ActionTokenRequest
from tenantauth.service.action_types import (
    ALL_ACTIONS,
    USER_REQUIRED_ACTIONS,
    ActionType,
    Mask,
    flag_name,
    has,
    has_all,
    has_any,
    list_flags,
    remove,
)
from tenantauth.service.errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    ServerError,
)
from tenantauth.service.roles import RoleService
from tenantauth.storage.base import IdentityStore
from tenantauth.storage.common import normalize_email
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import ActionToken, Role, User, utcnow

logger = get_logger(__name__)

_TOKEN_ATTEMPTS = 100


class ActionTokenService:
    """Single-use tokens authorizing a set of lifecycle actions for an email.

    A token is *valid* while it exists, has not expired and its email matches
    the caller's. Expired tokens are deleted the first time they are presented.
    Redemption flows call :meth:`validate` then :meth:`revoke`; :meth:`consume`
    does both in one store operation.
    """

    def __init__(
        self,
        store: IdentityStore,
        roles: RoleService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.roles = roles
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _generate_token(self) -> str:
        for _ in range(_TOKEN_ATTEMPTS):
            token = secrets.token_hex(32)
            if self.store.get_action_token(token) is None:
                return token
        raise ServerError("Failed to generate a unique token")

    def _resolve_roles(self, names: List[str]) -> List[Role]:
        try:
            return self.roles.get_by_names(names)
        except NotFoundError as exc:
            raise BadRequestError(exc.message, detail=exc.detail) from exc

    def create(self, request: ActionTokenRequest) -> ActionToken:
        mask = int(request.type)
        if not mask or remove(mask, ALL_ACTIONS):
            raise BadRequestError(
                f"Unknown action type {mask}", detail={"type": mask}
            )
        if not request.email and not request.user_id:
            raise BadRequestError("An email or a user is required to create an action token")

        user: Optional[User] = None
        if request.user_id:
            user = self.store.get_user(request.user_id)
            if user is None:
                raise BadRequestError(
                    f"User with id {request.user_id} not found",
                    detail={"user_id": request.user_id},
                )

        if has(mask, ActionType.INVITE) and has_any(mask, USER_REQUIRED_ACTIONS):
            raise BadRequestError(
                "Invite action tokens cannot be combined with user actions"
            )
        if has_any(mask, USER_REQUIRED_ACTIONS) and user is None:
            required = [
                flag_name(flag)
                for flag in list_flags(mask)
                if has(USER_REQUIRED_ACTIONS, flag)
            ]
            raise BadRequestError(
                f"A user is required for {', '.join(required)} action tokens"
            )

        roles = self._resolve_roles(request.roles) if request.roles else []
        now = self._now()
        expires_at = now + timedelta(hours=request.expires_in) if request.expires_in else None
        email = normalize_email(request.email or (user.email if user else ""))

        token = ActionToken(
            token=self._generate_token(),
            type=mask,
            email=email,
            user_id=user.id if user else None,
            organisation_id=request.organisation_id,
            establishment_id=request.establishment_id,
            roles=roles,
            created_at=now,
            expires_at=expires_at,
        )
        try:
            created = self.store.create_action_token(token)
        except ConstraintViolation as exc:
            raise BadRequestError(exc.message, detail=exc.detail) from exc
        logger.info(
            "action_token_created",
            type=mask,
            user_id=token.user_id,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return created

    def find_by_token(self, token: str) -> Optional[ActionToken]:
        return self.store.get_action_token(token)

    def find_by_email(self, email: str) -> List[ActionToken]:
        return self.store.list_action_tokens(email=email)

    def _check(
        self, token: Optional[ActionToken], envelope: ActionEnvelope, required: Mask
    ) -> ActionToken:
        if token is None:
            raise ForbiddenError("Invalid action token")
        if normalize_email(token.email) != normalize_email(envelope.email):
            logger.warning("action_token_email_mismatch", type=token.type)
            raise ForbiddenError("Invalid action token")
        if not has_all(token.type, required):
            raise ForbiddenError("Token does not contain all required actions")
        if token.is_expired(self._now()):
            self.store.delete_action_token(token.token)
            logger.info("action_token_expired", type=token.type)
            raise ForbiddenError("Action token has expired")
        return token

    def validate(self, envelope: ActionEnvelope, required: Mask) -> ActionToken:
        """Return the token when it grants ``required`` to ``envelope.email``."""
        return self._check(self.find_by_token(envelope.token), envelope, required)

    def consume(self, envelope: ActionEnvelope, required: Mask) -> ActionToken:
        """Validate and delete the token so it cannot be redeemed twice."""
        token = self.store.take_action_token(envelope.token)
        try:
            return self._check(token, envelope, required)
        except ForbiddenError:
            # a token rejected for email or action mismatch stays redeemable
            if token is not None and not token.is_expired(self._now()):
                self.store.create_action_token(token)
            raise

    def revoke(self, token: str) -> None:
        if not self.store.delete_action_token(token):
            raise NotFoundError("Action token not found")
        logger.info("action_token_revoked")

    def purge(self) -> int:
        count = self.store.delete_expired_action_tokens(self._now())
        logger.info("action_tokens_purged", count=count)
        return count
