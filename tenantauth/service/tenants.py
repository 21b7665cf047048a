from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from tenantauth.logging import get_logger
from tenantauth.requests import (
    EstablishmentRequest,
    EstablishmentUpdateRequest,
    OrganisationRequest,
    OrganisationUpdateRequest,
)
from tenantauth.service.errors import BadRequestError, NotFoundError
from tenantauth.storage.base import IdentityStore
from tenantauth.storage.common import generate_uuid
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    Establishment,
    Organisation,
    Page,
    UserAccount,
    utcnow,
)

logger = get_logger(__name__)


def disable_accounts(
    store: IdentityStore, accounts: Iterable[UserAccount], now: datetime
) -> int:
    """Disable accounts, drop their sessions and disable users left with no enabled account."""
    affected_users = set()
    count = 0
    for account in accounts:
        store.delete_sessions(user_account_id=account.id)
        if account.enabled:
            account.enabled = False
            account.updated_at = now
            store.update_user_account(account)
            count += 1
        affected_users.add(account.user_id)
    for user_id in affected_users:
        remaining = store.list_user_accounts(user_id=user_id)
        if any(a.enabled for a in remaining):
            continue
        user = store.get_user(user_id)
        if user and user.enabled:
            user.enabled = False
            user.updated_at = now
            store.update_user(user)
            logger.info("user_disabled_no_enabled_account", user_id=user_id)
    return count


class OrganisationService:
    def __init__(
        self, store: IdentityStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _duplicate(self, name: str) -> BadRequestError:
        return BadRequestError(f'Organisation with name "{name}" already exists')

    def create(self, request: OrganisationRequest) -> Organisation:
        name = request.name.strip()
        if self.find_by_name(name):
            raise self._duplicate(name)
        now = self._now()
        organisation = Organisation(
            id=generate_uuid(),
            name=name,
            enabled=request.enabled,
            created_at=now,
            updated_at=now,
        )
        try:
            saved = self.store.create_organisation(organisation)
        except ConstraintViolation as exc:
            raise self._duplicate(name) from exc
        logger.info("organisation_created", organisation_id=saved.id, name=name)
        return saved

    def get_by_id(self, organisation_id: str) -> Organisation:
        organisation = self.find_by_id(organisation_id)
        if organisation is None:
            raise NotFoundError(
                f"Organisation with ID {organisation_id} not found",
                detail={"organisation_id": organisation_id},
            )
        return organisation

    def find_by_id(self, organisation_id: str) -> Optional[Organisation]:
        return self.store.get_organisation(organisation_id)

    def find_by_name(self, name: str) -> Optional[Organisation]:
        return self.store.get_organisation_by_name(name.strip())

    def exists(self, organisation_id: str) -> bool:
        return self.find_by_id(organisation_id) is not None

    def search(
        self,
        *,
        organisation_id: Optional[str] = None,
        name: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Page[Organisation]:
        contents, total = self.store.search_organisations(
            organisation_id=organisation_id, name=name, page=page, size=size
        )
        return Page(contents=contents, total=total, page=page, size=size)

    def update(self, organisation_id: str, request: OrganisationUpdateRequest) -> Organisation:
        organisation = self.get_by_id(organisation_id)
        if request.name is not None:
            name = request.name.strip()
            if name != organisation.name:
                clash = self.find_by_name(name)
                if clash and clash.id != organisation.id:
                    raise self._duplicate(name)
            organisation.name = name
        organisation.updated_at = self._now()
        try:
            saved = self.store.update_organisation(organisation)
        except ConstraintViolation as exc:
            raise self._duplicate(organisation.name) from exc
        logger.info("organisation_updated", organisation_id=organisation_id)
        return saved

    def enable(self, organisation_id: str) -> Organisation:
        organisation = self.get_by_id(organisation_id)
        if not organisation.enabled:
            organisation.enabled = True
            organisation.updated_at = self._now()
            organisation = self.store.update_organisation(organisation)
            logger.info("organisation_enabled", organisation_id=organisation_id)
        return organisation

    def disable(self, organisation_id: str) -> Organisation:
        """Disable the organisation with its establishments and accounts."""
        organisation = self.get_by_id(organisation_id)
        now = self._now()
        for establishment in self.store.list_establishments(organisation_id):
            if establishment.enabled:
                establishment.enabled = False
                establishment.updated_at = now
                self.store.update_establishment(establishment)
        accounts = self.store.list_user_accounts(organisation_id=organisation_id)
        disabled = disable_accounts(self.store, accounts, now)
        if organisation.enabled:
            organisation.enabled = False
            organisation.updated_at = now
            organisation = self.store.update_organisation(organisation)
        logger.info(
            "organisation_disabled",
            organisation_id=organisation_id,
            disabled_accounts=disabled,
        )
        return organisation

    def delete(self, organisation_id: str) -> None:
        """Delete the organisation. Establishments, accounts and sessions go with it."""
        self.get_by_id(organisation_id)
        self.store.delete_organisation(organisation_id)
        logger.info("organisation_deleted", organisation_id=organisation_id)


class EstablishmentService:
    def __init__(
        self,
        store: IdentityStore,
        organisations: OrganisationService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.organisations = organisations
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _duplicate(self, name: str, organisation_id: str) -> BadRequestError:
        return BadRequestError(
            f'Establishment with name "{name}" already exists in this organisation',
            detail={"organisation_id": organisation_id},
        )

    def create(self, request: EstablishmentRequest) -> Establishment:
        organisation = self.organisations.get_by_id(request.organisation_id)
        name = request.name.strip()
        if self.find_by_name_and_organisation(name, organisation.id):
            raise self._duplicate(name, organisation.id)
        now = self._now()
        establishment = Establishment(
            id=generate_uuid(),
            name=name,
            organisation_id=organisation.id,
            enabled=request.enabled,
            created_at=now,
            updated_at=now,
        )
        try:
            saved = self.store.create_establishment(establishment)
        except ConstraintViolation as exc:
            raise self._duplicate(name, organisation.id) from exc
        logger.info(
            "establishment_created",
            establishment_id=saved.id,
            organisation_id=organisation.id,
            name=name,
        )
        return saved

    def get_by_id(self, establishment_id: str) -> Establishment:
        establishment = self.find_by_id(establishment_id)
        if establishment is None:
            raise NotFoundError(
                f"Establishment with ID {establishment_id} not found",
                detail={"establishment_id": establishment_id},
            )
        return establishment

    def find_by_id(self, establishment_id: str) -> Optional[Establishment]:
        return self.store.get_establishment(establishment_id)

    def find_by_name_and_organisation(
        self, name: str, organisation_id: str
    ) -> Optional[Establishment]:
        return self.store.get_establishment_by_name(name.strip(), organisation_id)

    def exists(self, establishment_id: str) -> bool:
        return self.find_by_id(establishment_id) is not None

    def find_by_organisation(self, organisation_id: str) -> List[Establishment]:
        return self.store.list_establishments(organisation_id)

    def search(
        self,
        *,
        establishment_id: Optional[str] = None,
        name: Optional[str] = None,
        organisation_id: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Page[Establishment]:
        contents, total = self.store.search_establishments(
            establishment_id=establishment_id,
            name=name,
            organisation_id=organisation_id,
            page=page,
            size=size,
        )
        return Page(contents=contents, total=total, page=page, size=size)

    def update(
        self, establishment_id: str, request: EstablishmentUpdateRequest
    ) -> Establishment:
        """Rename or move the establishment. Bound accounts move with it."""
        establishment = self.get_by_id(establishment_id)
        if request.organisation_id:
            establishment.organisation_id = self.organisations.get_by_id(
                request.organisation_id
            ).id
        if request.name is not None:
            establishment.name = request.name.strip()
        clash = self.find_by_name_and_organisation(
            establishment.name, establishment.organisation_id
        )
        if clash and clash.id != establishment.id:
            raise self._duplicate(establishment.name, establishment.organisation_id)
        establishment.updated_at = self._now()
        try:
            saved = self.store.update_establishment(establishment)
        except ConstraintViolation as exc:
            raise self._duplicate(
                establishment.name, establishment.organisation_id
            ) from exc
        logger.info("establishment_updated", establishment_id=establishment_id)
        return saved

    def enable(self, establishment_id: str) -> Establishment:
        establishment = self.get_by_id(establishment_id)
        if not establishment.enabled:
            establishment.enabled = True
            establishment.updated_at = self._now()
            establishment = self.store.update_establishment(establishment)
            logger.info("establishment_enabled", establishment_id=establishment_id)
        return establishment

    def disable(self, establishment_id: str) -> Establishment:
        establishment = self.get_by_id(establishment_id)
        now = self._now()
        accounts = self.store.list_user_accounts(establishment_id=establishment_id)
        disabled = disable_accounts(self.store, accounts, now)
        if establishment.enabled:
            establishment.enabled = False
            establishment.updated_at = now
            establishment = self.store.update_establishment(establishment)
        logger.info(
            "establishment_disabled",
            establishment_id=establishment_id,
            disabled_accounts=disabled,
        )
        return establishment

    def delete(self, establishment_id: str) -> None:
        self.get_by_id(establishment_id)
        self.store.delete_establishment(establishment_id)
        logger.info("establishment_deleted", establishment_id=establishment_id)


def seed(
    organisations: OrganisationService,
    establishments: EstablishmentService,
    organisation_names: Sequence[str],
    establishment_pairs: Sequence[Tuple[str, str]],
) -> Tuple[int, int]:
    """Create the configured organisations and establishments that do not exist yet.

    Organisations named only in ``establishment_pairs`` are created too.
    Returns the number of organisations and establishments created.
    """
    created_orgs = 0
    created_ests = 0
    wanted = list(organisation_names) + [org for org, _ in establishment_pairs]
    by_name = {}
    for name in wanted:
        organisation = organisations.find_by_name(name)
        if organisation is None:
            organisation = organisations.create(OrganisationRequest(name=name))
            created_orgs += 1
        by_name[name] = organisation
    for org_name, est_name in establishment_pairs:
        organisation = by_name[org_name]
        if establishments.find_by_name_and_organisation(est_name, organisation.id) is None:
            establishments.create(
                EstablishmentRequest(name=est_name, organisation_id=organisation.id)
            )
            created_ests += 1
    if created_orgs or created_ests:
        logger.info(
            "tenants_seeded", organisations=created_orgs, establishments=created_ests
        )
    return created_orgs, created_ests
