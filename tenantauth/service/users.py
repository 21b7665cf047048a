from __future__ import annotations

import secrets
from datetime import datetime
from typing import Callable, Optional

from tenantauth.logging import get_logger
from tenantauth.requests import UserCreateRequest, UserUpdateRequest
from tenantauth.service.credentials import CredentialService
from tenantauth.service.errors import BadRequestError, NotFoundError, ServiceError
from tenantauth.service.string_utils import capitalize, normalize
from tenantauth.storage.base import IdentityStore
from tenantauth.storage.common import generate_uuid, normalize_email
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import CredentialType, Page, User, utcnow

logger = get_logger(__name__)

_USERNAME_ATTEMPTS = 100


def _random_suffix() -> str:
    return str(100000 + secrets.randbelow(900000))


def _first_name(value: Optional[str]) -> Optional[str]:
    return capitalize(value) if value else value


def _last_name(value: Optional[str]) -> Optional[str]:
    return value.upper() if value else value


class UserService:
    def __init__(
        self,
        store: IdentityStore,
        credentials: CredentialService,
        *,
        clock: Callable[[], datetime] = utcnow,
        suffix_factory: Callable[[], str] = _random_suffix,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self._clock = clock
        self._suffix_factory = suffix_factory

    def _now(self) -> datetime:
        return self._clock()

    def generate_username(
        self,
        email: str,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> str:
        """Build ``base#NNNNNN`` from the username, the full name or the email local part."""
        if username:
            base = normalize(username)
        elif first_name and last_name:
            base = normalize(f"{first_name}{last_name}")
        else:
            base = normalize(email.split("@")[0])
        for _ in range(_USERNAME_ATTEMPTS):
            candidate = f"{base}#{self._suffix_factory()}"
            if self.store.get_user_by_username(candidate) is None:
                return candidate
        raise BadRequestError("Unable to generate a unique username. Please try again.")

    def create(self, request: UserCreateRequest) -> User:
        """Create the user and its credentials; the user is removed if a credential fails."""
        email = normalize_email(request.email)
        if self.exists(email):
            logger.warning("user_create_duplicate_email")
            raise BadRequestError("A user with the same email already exists")
        now = self._now()
        user = User(
            id=generate_uuid(),
            email=email,
            username=self.generate_username(
                email, request.username, request.first_name, request.last_name
            ),
            first_name=_first_name(request.first_name),
            last_name=_last_name(request.last_name),
            phone=request.phone,
            profile_picture=request.profile_picture,
            enabled=request.enabled,
            email_validated=request.email_validated,
            accepted_terms=request.accepted_terms,
            accepted_privacy_policy=request.accepted_privacy_policy,
            created_at=now,
            updated_at=now,
        )
        try:
            user = self.store.create_user(user)
        except ConstraintViolation as exc:
            raise BadRequestError("A user with the same email already exists") from exc

        try:
            for credential in request.credentials:
                if credential.type == CredentialType.PASSWORD:
                    self.credentials.create_password(user.id, credential.password or "")
                elif credential.type == CredentialType.GOOGLE:
                    self.credentials.create_google(user.id, credential.google_id or "")
        except ServiceError:
            self.store.delete_user(user.id)
            logger.warning("user_create_rolled_back", user_id=user.id)
            raise
        logger.info("user_created", user_id=user.id, username=user.username)
        return user

    def _apply(self, user: User, changes: dict) -> User:
        if "email" in changes and changes["email"] is not None:
            email = normalize_email(changes["email"])
            if email != user.email:
                other = self.store.get_user_by_email(email)
                if other and other.id != user.id:
                    raise BadRequestError("A user with the same email already exists")
            user.email = email
        if "username" in changes and changes["username"]:
            username = changes["username"]
            other = self.store.get_user_by_username(username)
            if other and other.id != user.id:
                raise BadRequestError(f'Username "{username}" is already taken')
            user.username = username
        if "first_name" in changes:
            user.first_name = _first_name(changes["first_name"])
        if "last_name" in changes:
            user.last_name = _last_name(changes["last_name"])
        for name in (
            "phone",
            "profile_picture",
            "enabled",
            "email_validated",
            "accepted_terms",
            "accepted_privacy_policy",
        ):
            if name in changes and (
                changes[name] is not None or name in ("phone", "profile_picture")
            ):
                setattr(user, name, changes[name])
        user.updated_at = self._now()
        try:
            return self.store.update_user(user)
        except ConstraintViolation as exc:
            raise BadRequestError(exc.message, detail=exc.detail) from exc

    def update(self, user_id: str, request: UserUpdateRequest) -> User:
        """Replace the profile fields; ``None`` clears optional ones."""
        user = self.get_by_id(user_id)
        updated = self._apply(user, request.model_dump())
        logger.info("user_updated", user_id=user_id)
        return updated

    def patch(self, user_id: str, request: UserUpdateRequest) -> User:
        """Apply only the fields explicitly set on ``request``."""
        user = self.get_by_id(user_id)
        updated = self._apply(user, request.model_dump(exclude_unset=True))
        logger.info("user_patched", user_id=user_id)
        return updated

    def set_flags(
        self,
        user_id: str,
        *,
        email_validated: Optional[bool] = None,
        accepted_terms: Optional[bool] = None,
        accepted_privacy_policy: Optional[bool] = None,
    ) -> User:
        user = self.get_by_id(user_id)
        if email_validated is not None:
            user.email_validated = email_validated
        if accepted_terms is not None:
            user.accepted_terms = accepted_terms
        if accepted_privacy_policy is not None:
            user.accepted_privacy_policy = accepted_privacy_policy
        user.updated_at = self._now()
        return self.store.update_user(user)

    def save(self, user: User) -> User:
        user.updated_at = self._now()
        return self.store.update_user(user)

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def get_by_id(self, user_id: str) -> User:
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFoundError(
                f"User with ID {user_id} not found", detail={"user_id": user_id}
            )
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(normalize_email(email))

    def exists(self, email: str) -> bool:
        return self.find_by_email(email) is not None

    def search(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        username: Optional[str] = None,
        enabled: Optional[bool] = None,
        page: int = 1,
        size: int = 20,
    ) -> Page[User]:
        contents, total = self.store.search_users(
            user_id=user_id,
            email=email,
            username=username,
            enabled=enabled,
            page=page,
            size=size,
        )
        return Page(contents=contents, total=total, page=page, size=size)

    def enable(self, user_id: str) -> User:
        user = self.get_by_id(user_id)
        user.enabled = True
        user.updated_at = self._now()
        user = self.store.update_user(user)
        logger.info("user_enabled", user_id=user_id)
        return user

    def disable(self, user_id: str) -> User:
        """Disable the user and every account, and drop their sessions."""
        user = self.get_by_id(user_id)
        now = self._now()
        for account in self.store.list_user_accounts(user_id=user_id):
            if account.enabled:
                account.enabled = False
                account.updated_at = now
                self.store.update_user_account(account)
        revoked = self.store.delete_sessions(user_id=user_id)
        user.enabled = False
        user.updated_at = now
        user = self.store.update_user(user)
        logger.info("user_disabled", user_id=user_id, revoked_sessions=revoked)
        return user

    def delete(self, user_id: str) -> None:
        self.get_by_id(user_id)
        self.store.delete_user(user_id)
        logger.info("user_deleted", user_id=user_id)
