from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Sequence, Tuple

from tenantauth.storage.models import (
    ActionToken,
    Credential,
    CredentialType,
    Establishment,
    Organisation,
    Role,
    Session,
    User,
    UserAccount,
)


class IdentityStore(Protocol):
    """Persistence contract implemented by ``MemoryStore`` and ``PostgresStore``.

    Search methods return ``(items, total)`` where ``total`` counts every match
    before pagination. Uniqueness and foreign-key problems surface as
    ``ConstraintViolation``.
    """

    # users
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_user(self, user: User) -> User: ...

    def delete_user(self, user_id: str) -> bool: ...

    def search_users(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        username: Optional[str] = None,
        enabled: Optional[bool] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[User], int]: ...

    # credentials
    def get_credential(
        self, user_id: str, credential_type: CredentialType
    ) -> Optional[Credential]: ...

    def get_credential_by_google_id(self, google_id: str) -> Optional[Credential]: ...

    def list_credentials(self, user_id: str) -> List[Credential]: ...

    def save_credential(self, credential: Credential) -> Credential: ...

    def delete_credential(self, user_id: str, credential_type: CredentialType) -> bool: ...

    def delete_credentials(self, user_id: str) -> int: ...

    # roles
    def create_role(self, role: Role) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def get_roles_by_names(self, names: Sequence[str]) -> List[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def update_role(self, role: Role) -> Role: ...

    def delete_role(self, role_id: str) -> bool: ...

    # organisations
    def create_organisation(self, organisation: Organisation) -> Organisation: ...

    def get_organisation(self, organisation_id: str) -> Optional[Organisation]: ...

    def get_organisation_by_name(self, name: str) -> Optional[Organisation]: ...

    def update_organisation(self, organisation: Organisation) -> Organisation: ...

    def delete_organisation(self, organisation_id: str) -> bool: ...

    def search_organisations(
        self,
        *,
        organisation_id: Optional[str] = None,
        name: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Organisation], int]: ...

    # establishments
    def create_establishment(self, establishment: Establishment) -> Establishment: ...

    def get_establishment(self, establishment_id: str) -> Optional[Establishment]: ...

    def get_establishment_by_name(
        self, name: str, organisation_id: str
    ) -> Optional[Establishment]: ...

    def update_establishment(self, establishment: Establishment) -> Establishment:
        """Save the establishment and move its accounts into its organisation."""
        ...

    def delete_establishment(self, establishment_id: str) -> bool: ...

    def list_establishments(self, organisation_id: str) -> List[Establishment]: ...

    def search_establishments(
        self,
        *,
        establishment_id: Optional[str] = None,
        name: Optional[str] = None,
        organisation_id: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Establishment], int]: ...

    # user accounts
    def create_user_account(self, account: UserAccount) -> UserAccount: ...

    def get_user_account(self, account_id: str) -> Optional[UserAccount]: ...

    def find_user_account(
        self,
        user_id: str,
        organisation_id: Optional[str],
        establishment_id: Optional[str],
    ) -> Optional[UserAccount]: ...

    def update_user_account(self, account: UserAccount) -> UserAccount: ...

    def delete_user_account(self, account_id: str) -> bool: ...

    def list_user_accounts(
        self,
        *,
        user_id: Optional[str] = None,
        organisation_id: Optional[str] = None,
        establishment_id: Optional[str] = None,
    ) -> List[UserAccount]: ...

    def search_user_accounts(
        self,
        *,
        account_id: Optional[str] = None,
        user_id: Optional[str] = None,
        organisation_id: Optional[str] = None,
        establishment_id: Optional[str] = None,
        role: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[UserAccount], int]: ...

    # action tokens
    def create_action_token(self, token: ActionToken) -> ActionToken: ...

    def get_action_token(self, token: str) -> Optional[ActionToken]: ...

    def take_action_token(self, token: str) -> Optional[ActionToken]: ...

    def delete_action_token(self, token: str) -> bool: ...

    def delete_expired_action_tokens(self, now: datetime) -> int: ...

    def list_action_tokens(self, *, email: Optional[str] = None) -> List[ActionToken]: ...

    # sessions
    def replace_sessions(self, session: Session) -> int: ...

    def get_session(self, token: str) -> Optional[Session]: ...

    def delete_session(self, token: str) -> bool: ...

    def delete_sessions(
        self,
        *,
        user_account_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def search_sessions(
        self,
        *,
        user_account_id: Optional[str] = None,
        user_id: Optional[str] = None,
        active_at: Optional[datetime] = None,
        expired_at: Optional[datetime] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Session], int]: ...
