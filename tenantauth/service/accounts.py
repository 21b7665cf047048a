from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.requests import UserAccountRequest, UserAccountUpdateRequest
from tenantauth.service.claims import USER_ACCOUNTS
from tenantauth.service.errors import BadRequestError, NotFoundError
from tenantauth.service.roles import RoleService
from tenantauth.service.scope import AuthScope
from tenantauth.service.tenants import (
    EstablishmentService,
    OrganisationService,
    disable_accounts,
)
from tenantauth.service.users import UserService
from tenantauth.storage.base import IdentityStore
from tenantauth.storage.common import generate_uuid
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import Page, UserAccount, utcnow

logger = get_logger(__name__)

_DUPLICATE = (
    "User account already exists for this user in this organisation and "
    "establishment combination"
)


class UserAccountService:
    """Bindings of a user to an (organisation, establishment) pair with roles.

    Lookups accept an optional :class:`AuthScope`; when it restricts
    ``user-accounts`` the results are narrowed to the caller's own user,
    organisation or establishment.
    """

    def __init__(
        self,
        store: IdentityStore,
        users: UserService,
        organisations: OrganisationService,
        establishments: EstablishmentService,
        roles: RoleService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.users = users
        self.organisations = organisations
        self.establishments = establishments
        self.roles = roles
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _resolve_tenant(
        self, organisation_id: Optional[str], establishment_id: Optional[str]
    ) -> Tuple[Optional[str], Optional[str]]:
        organisation = (
            self.organisations.get_by_id(organisation_id) if organisation_id else None
        )
        if not establishment_id:
            return (organisation.id if organisation else None), None
        establishment = self.establishments.get_by_id(establishment_id)
        if organisation and establishment.organisation_id != organisation.id:
            raise BadRequestError(
                f"Establishment {establishment.id} does not belong to organisation "
                f"{organisation.id}",
                detail={
                    "establishment_id": establishment.id,
                    "organisation_id": organisation.id,
                },
            )
        return establishment.organisation_id, establishment.id

    def create(self, request: UserAccountRequest) -> UserAccount:
        user = self.users.get_by_id(request.user_id)
        organisation_id, establishment_id = self._resolve_tenant(
            request.organisation_id, request.establishment_id
        )
        if self.store.find_user_account(user.id, organisation_id, establishment_id):
            raise BadRequestError(_DUPLICATE)
        roles = self.roles.get_by_names(request.roles) if request.roles else []
        now = self._now()
        account = UserAccount(
            id=generate_uuid(),
            user_id=user.id,
            organisation_id=organisation_id,
            establishment_id=establishment_id,
            roles=roles,
            enabled=request.enabled,
            created_at=now,
            updated_at=now,
        )
        try:
            saved = self.store.create_user_account(account)
        except ConstraintViolation as exc:
            raise BadRequestError(_DUPLICATE) from exc
        logger.info(
            "user_account_created",
            user_account_id=saved.id,
            user_id=user.id,
            organisation_id=organisation_id,
            establishment_id=establishment_id,
            roles=saved.role_names,
        )
        return saved

    def update(self, account_id: str, request: UserAccountUpdateRequest) -> UserAccount:
        """Move the account to another tenant and/or replace its roles."""
        account = self.get_by_id(account_id)
        fields = request.model_fields_set
        if "organisation_id" in fields or "establishment_id" in fields:
            organisation_id = (
                request.organisation_id
                if "organisation_id" in fields
                else account.organisation_id
            )
            establishment_id = (
                request.establishment_id
                if "establishment_id" in fields
                else account.establishment_id
            )
            organisation_id, establishment_id = self._resolve_tenant(
                organisation_id, establishment_id
            )
            existing = self.store.find_user_account(
                account.user_id, organisation_id, establishment_id
            )
            if existing and existing.id != account.id:
                raise BadRequestError(_DUPLICATE)
            account.organisation_id = organisation_id
            account.establishment_id = establishment_id
        if request.roles is not None:
            account.roles = self.roles.get_by_names(request.roles)
        if request.enabled is not None:
            account.enabled = request.enabled
        account.updated_at = self._now()
        try:
            saved = self.store.update_user_account(account)
        except ConstraintViolation as exc:
            raise BadRequestError(_DUPLICATE) from exc
        logger.info("user_account_updated", user_account_id=account_id)
        return saved

    def _visible(self, account: UserAccount, scope: Optional[AuthScope]) -> bool:
        if scope is None or not scope.restricts(USER_ACCOUNTS):
            return True
        if scope.user_id:
            return account.user_id == scope.user_id
        if scope.organisation_id:
            return account.organisation_id == scope.organisation_id
        if scope.establishment_id:
            return account.establishment_id == scope.establishment_id
        return False

    def find_by_id(
        self, account_id: str, scope: Optional[AuthScope] = None
    ) -> Optional[UserAccount]:
        account = self.store.get_user_account(account_id)
        if account is None or not self._visible(account, scope):
            return None
        return account

    def get_by_id(self, account_id: str, scope: Optional[AuthScope] = None) -> UserAccount:
        account = self.find_by_id(account_id, scope)
        if account is None:
            raise NotFoundError(
                f"User account with ID {account_id} not found",
                detail={"user_account_id": account_id},
            )
        return account

    def find_by_user_id(
        self, user_id: str, scope: Optional[AuthScope] = None
    ) -> List[UserAccount]:
        return [
            account
            for account in self.store.list_user_accounts(user_id=user_id)
            if self._visible(account, scope)
        ]

    def find_by_user_and_tenant(
        self,
        user_id: str,
        organisation_id: Optional[str] = None,
        establishment_id: Optional[str] = None,
    ) -> Optional[UserAccount]:
        return self.store.find_user_account(user_id, organisation_id, establishment_id)

    def search(
        self,
        *,
        account_id: Optional[str] = None,
        user_id: Optional[str] = None,
        organisation_id: Optional[str] = None,
        establishment_id: Optional[str] = None,
        role: Optional[str] = None,
        page: int = 1,
        size: int = 20,
        scope: Optional[AuthScope] = None,
    ) -> Page[UserAccount]:
        if scope is not None and scope.restricts(USER_ACCOUNTS):
            narrowed = {
                "user_id": (user_id, scope.user_id),
                "organisation_id": (organisation_id, scope.organisation_id),
                "establishment_id": (establishment_id, scope.establishment_id),
            }
            for requested, bound in narrowed.values():
                if bound and requested and requested != bound:
                    return Page(contents=[], total=0, page=page, size=size)
            user_id = scope.user_id or user_id
            organisation_id = scope.organisation_id or organisation_id
            establishment_id = scope.establishment_id or establishment_id
            if not (scope.user_id or scope.organisation_id or scope.establishment_id):
                return Page(contents=[], total=0, page=page, size=size)
        contents, total = self.store.search_user_accounts(
            account_id=account_id,
            user_id=user_id,
            organisation_id=organisation_id,
            establishment_id=establishment_id,
            role=role.lower() if role else None,
            page=page,
            size=size,
        )
        return Page(contents=contents, total=total, page=page, size=size)

    def enable(self, account_id: str) -> UserAccount:
        account = self.get_by_id(account_id)
        account.enabled = True
        account.updated_at = self._now()
        saved = self.store.update_user_account(account)
        logger.info("user_account_enabled", user_account_id=account_id)
        return saved

    def disable(self, account_id: str) -> UserAccount:
        """Disable the account and end its session.

        The user is disabled as well once none of its accounts remains enabled.
        """
        account = self.get_by_id(account_id)
        disable_accounts(self.store, [account], self._now())
        logger.info("user_account_disabled", user_account_id=account_id)
        return self.get_by_id(account_id)

    def delete(self, account_id: str) -> None:
        self.get_by_id(account_id)
        self.store.delete_user_account(account_id)
        logger.info("user_account_deleted", user_account_id=account_id)
