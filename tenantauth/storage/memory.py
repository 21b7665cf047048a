from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tenantauth.logging import get_logger
from tenantauth.storage.common import (
    claims_from_strings,
    claims_to_strings,
    ilike,
    normalize_email,
    paginate,
    sort_by_name,
)
from tenantauth.storage.errors import ConstraintViolation
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


class MemoryStore:
    """Thread-safe in-memory store, optionally persisted as JSON under ``fs_root``."""

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[Tuple[str, str], Credential] = {}
        self.roles: Dict[str, Role] = {}
        self.organisations: Dict[str, Organisation] = {}
        self.establishments: Dict[str, Establishment] = {}
        self.user_accounts: Dict[str, UserAccount] = {}
        self.action_tokens: Dict[str, ActionToken] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so cascading helpers can re-enter while the caller holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users
    def create_user(self, user: User) -> User:
        with self._data_lock:
            user = replace(user, email=normalize_email(user.email))
            self._check_user_unique(user)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def _check_user_unique(self, user: User) -> None:
        for existing in self.users.values():
            if existing.id == user.id:
                continue
            if existing.email == user.email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username == user.username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username == username), None
            )
            return replace(user) if user else None

    def update_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            user = replace(user, email=normalize_email(user.email))
            self._check_user_unique(user)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for key in [k for k in self.credentials if k[0] == user_id]:
                self.credentials.pop(key, None)
            for account_id in [
                a.id for a in self.user_accounts.values() if a.user_id == user_id
            ]:
                self._drop_account(account_id)
            for token in [
                t.token for t in self.action_tokens.values() if t.user_id == user_id
            ]:
                self.action_tokens.pop(token, None)
            for token in [s.token for s in self.sessions.values() if s.user_id == user_id]:
                self.sessions.pop(token, None)
            self._persist_state()
            return True

    def search_users(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        username: Optional[str] = None,
        enabled: Optional[bool] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[User], int]:
        with self._data_lock:
            matches = [
                replace(u)
                for u in self.users.values()
                if (user_id is None or u.id == user_id)
                and ilike(u.email, email)
                and ilike(u.username, username)
                and (enabled is None or u.enabled == enabled)
            ]
        matches.sort(key=lambda u: u.email)
        return paginate(matches, page, size)

    # credentials
    def get_credential(
        self, user_id: str, credential_type: CredentialType
    ) -> Optional[Credential]:
        with self._data_lock:
            cred = self.credentials.get((user_id, CredentialType(credential_type).value))
            return replace(cred) if cred else None

    def get_credential_by_google_id(self, google_id: str) -> Optional[Credential]:
        with self._data_lock:
            cred = next(
                (
                    c
                    for c in self.credentials.values()
                    if c.type == CredentialType.GOOGLE and c.google_id == google_id
                ),
                None,
            )
            return replace(cred) if cred else None

    def list_credentials(self, user_id: str) -> List[Credential]:
        with self._data_lock:
            return [replace(c) for c in self.credentials.values() if c.user_id == user_id]

    def save_credential(self, credential: Credential) -> Credential:
        with self._data_lock:
            if credential.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credential", {"user_id": credential.user_id}
                )
            if credential.type == CredentialType.GOOGLE:
                for existing in self.credentials.values():
                    if (
                        existing.type == CredentialType.GOOGLE
                        and existing.google_id == credential.google_id
                        and existing.user_id != credential.user_id
                    ):
                        raise ConstraintViolation(
                            "google id already linked", {"field": "google_id"}
                        )
            key = (credential.user_id, CredentialType(credential.type).value)
            self.credentials[key] = replace(credential)
            self._persist_state()
            return replace(credential)

    def delete_credential(self, user_id: str, credential_type: CredentialType) -> bool:
        with self._data_lock:
            removed = self.credentials.pop(
                (user_id, CredentialType(credential_type).value), None
            )
            if removed:
                self._persist_state()
            return removed is not None

    def delete_credentials(self, user_id: str) -> int:
        with self._data_lock:
            keys = [k for k in self.credentials if k[0] == user_id]
            for key in keys:
                self.credentials.pop(key, None)
            if keys:
                self._persist_state()
            return len(keys)

    # roles
    def create_role(self, role: Role) -> Role:
        with self._data_lock:
            if any(r.name == role.name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            self.roles[role.id] = self._copy_role(role)
            self._persist_state()
            return self._copy_role(role)

    @staticmethod
    def _copy_role(role: Role) -> Role:
        return replace(role, claims=list(role.claims))

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return self._copy_role(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return self._copy_role(role) if role else None

    def get_roles_by_names(self, names: Sequence[str]) -> List[Role]:
        wanted = set(names)
        with self._data_lock:
            return [self._copy_role(r) for r in self.roles.values() if r.name in wanted]

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            roles = [self._copy_role(r) for r in self.roles.values()]
        return sort_by_name(roles, lambda r: r.name)

    def update_role(self, role: Role) -> Role:
        with self._data_lock:
            if role.id not in self.roles:
                raise ConstraintViolation("role not found", {"role_id": role.id})
            if any(r.name == role.name and r.id != role.id for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            self.roles[role.id] = self._copy_role(role)
            self._persist_state()
            return self._copy_role(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            for account in self.user_accounts.values():
                account.roles = [r for r in account.roles if r.id != role_id]
            for token in self.action_tokens.values():
                token.roles = [r for r in token.roles if r.id != role_id]
            self._persist_state()
            return True

    # organisations
    def create_organisation(self, organisation: Organisation) -> Organisation:
        with self._data_lock:
            self._check_organisation_unique(organisation)
            self.organisations[organisation.id] = replace(organisation)
            self._persist_state()
            return replace(organisation)

    def _check_organisation_unique(self, organisation: Organisation) -> None:
        if any(
            o.name == organisation.name and o.id != organisation.id
            for o in self.organisations.values()
        ):
            raise ConstraintViolation(
                "organisation name already exists", {"field": "name"}
            )

    def get_organisation(self, organisation_id: str) -> Optional[Organisation]:
        with self._data_lock:
            org = self.organisations.get(organisation_id)
            return replace(org) if org else None

    def get_organisation_by_name(self, name: str) -> Optional[Organisation]:
        with self._data_lock:
            org = next((o for o in self.organisations.values() if o.name == name), None)
            return replace(org) if org else None

    def update_organisation(self, organisation: Organisation) -> Organisation:
        with self._data_lock:
            if organisation.id not in self.organisations:
                raise ConstraintViolation(
                    "organisation not found", {"organisation_id": organisation.id}
                )
            self._check_organisation_unique(organisation)
            self.organisations[organisation.id] = replace(organisation)
            self._persist_state()
            return replace(organisation)

    def delete_organisation(self, organisation_id: str) -> bool:
        with self._data_lock:
            if self.organisations.pop(organisation_id, None) is None:
                return False
            for est_id in [
                e.id
                for e in self.establishments.values()
                if e.organisation_id == organisation_id
            ]:
                self._drop_establishment(est_id)
            for account_id in [
                a.id
                for a in self.user_accounts.values()
                if a.organisation_id == organisation_id
            ]:
                self._drop_account(account_id)
            self._persist_state()
            return True

    def search_organisations(
        self,
        *,
        organisation_id: Optional[str] = None,
        name: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Organisation], int]:
        with self._data_lock:
            matches = [
                replace(o)
                for o in self.organisations.values()
                if (organisation_id is None or o.id == organisation_id)
                and ilike(o.name, name)
            ]
        return paginate(sort_by_name(matches, lambda o: o.name), page, size)

    # establishments
    def create_establishment(self, establishment: Establishment) -> Establishment:
        with self._data_lock:
            if establishment.organisation_id not in self.organisations:
                raise ConstraintViolation(
                    "organisation not found",
                    {"organisation_id": establishment.organisation_id},
                )
            self._check_establishment_unique(establishment)
            self.establishments[establishment.id] = replace(establishment)
            self._persist_state()
            return replace(establishment)

    def _check_establishment_unique(self, establishment: Establishment) -> None:
        if any(
            e.name == establishment.name
            and e.organisation_id == establishment.organisation_id
            and e.id != establishment.id
            for e in self.establishments.values()
        ):
            raise ConstraintViolation(
                "establishment name already exists in organisation",
                {"field": "name", "organisation_id": establishment.organisation_id},
            )

    def get_establishment(self, establishment_id: str) -> Optional[Establishment]:
        with self._data_lock:
            est = self.establishments.get(establishment_id)
            return replace(est) if est else None

    def get_establishment_by_name(
        self, name: str, organisation_id: str
    ) -> Optional[Establishment]:
        with self._data_lock:
            est = next(
                (
                    e
                    for e in self.establishments.values()
                    if e.name == name and e.organisation_id == organisation_id
                ),
                None,
            )
            return replace(est) if est else None

    def update_establishment(self, establishment: Establishment) -> Establishment:
        with self._data_lock:
            if establishment.id not in self.establishments:
                raise ConstraintViolation(
                    "establishment not found", {"establishment_id": establishment.id}
                )
            if establishment.organisation_id not in self.organisations:
                raise ConstraintViolation(
                    "organisation not found",
                    {"organisation_id": establishment.organisation_id},
                )
            self._check_establishment_unique(establishment)
            self.establishments[establishment.id] = replace(establishment)
            # accounts follow their establishment into its organisation
            for account in self.user_accounts.values():
                if (
                    account.establishment_id == establishment.id
                    and account.organisation_id != establishment.organisation_id
                ):
                    account.organisation_id = establishment.organisation_id
                    account.updated_at = establishment.updated_at
            self._persist_state()
            return replace(establishment)

    def delete_establishment(self, establishment_id: str) -> bool:
        with self._data_lock:
            if establishment_id not in self.establishments:
                return False
            self._drop_establishment(establishment_id)
            self._persist_state()
            return True

    def _drop_establishment(self, establishment_id: str) -> None:
        self.establishments.pop(establishment_id, None)
        for account_id in [
            a.id
            for a in self.user_accounts.values()
            if a.establishment_id == establishment_id
        ]:
            self._drop_account(account_id)

    def list_establishments(self, organisation_id: str) -> List[Establishment]:
        with self._data_lock:
            matches = [
                replace(e)
                for e in self.establishments.values()
                if e.organisation_id == organisation_id
            ]
        return sort_by_name(matches, lambda e: e.name)

    def search_establishments(
        self,
        *,
        establishment_id: Optional[str] = None,
        name: Optional[str] = None,
        organisation_id: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Establishment], int]:
        with self._data_lock:
            matches = [
                replace(e)
                for e in self.establishments.values()
                if (establishment_id is None or e.id == establishment_id)
                and (organisation_id is None or e.organisation_id == organisation_id)
                and ilike(e.name, name)
            ]
        return paginate(sort_by_name(matches, lambda e: e.name), page, size)

    # user accounts
    def _hydrate_account(self, account: UserAccount) -> UserAccount:
        """Copy an account with its roles re-read from the role table."""
        roles = [
            self._copy_role(self.roles[r.id]) for r in account.roles if r.id in self.roles
        ]
        return replace(account, roles=roles)

    def _check_account_refs(self, account: UserAccount) -> None:
        if account.user_id not in self.users:
            raise ConstraintViolation("user not found", {"user_id": account.user_id})
        if account.organisation_id and account.organisation_id not in self.organisations:
            raise ConstraintViolation(
                "organisation not found", {"organisation_id": account.organisation_id}
            )
        if account.establishment_id and account.establishment_id not in self.establishments:
            raise ConstraintViolation(
                "establishment not found",
                {"establishment_id": account.establishment_id},
            )
        for other in self.user_accounts.values():
            if (
                other.id != account.id
                and other.user_id == account.user_id
                and other.organisation_id == account.organisation_id
                and other.establishment_id == account.establishment_id
            ):
                raise ConstraintViolation(
                    "user account already exists for this tenant",
                    {"user_id": account.user_id},
                )

    def create_user_account(self, account: UserAccount) -> UserAccount:
        with self._data_lock:
            self._check_account_refs(account)
            self.user_accounts[account.id] = replace(account, roles=list(account.roles))
            self._persist_state()
            return self._hydrate_account(self.user_accounts[account.id])

    def get_user_account(self, account_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            account = self.user_accounts.get(account_id)
            return self._hydrate_account(account) if account else None

    def find_user_account(
        self,
        user_id: str,
        organisation_id: Optional[str],
        establishment_id: Optional[str],
    ) -> Optional[UserAccount]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.user_accounts.values()
                    if a.user_id == user_id
                    and a.organisation_id == organisation_id
                    and a.establishment_id == establishment_id
                ),
                None,
            )
            return self._hydrate_account(account) if account else None

    def update_user_account(self, account: UserAccount) -> UserAccount:
        with self._data_lock:
            if account.id not in self.user_accounts:
                raise ConstraintViolation(
                    "user account not found", {"user_account_id": account.id}
                )
            self._check_account_refs(account)
            self.user_accounts[account.id] = replace(account, roles=list(account.roles))
            self._persist_state()
            return self._hydrate_account(self.user_accounts[account.id])

    def delete_user_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.user_accounts:
                return False
            self._drop_account(account_id)
            self._persist_state()
            return True

    def _drop_account(self, account_id: str) -> None:
        self.user_accounts.pop(account_id, None)
        for token in [
            s.token for s in self.sessions.values() if s.user_account_id == account_id
        ]:
            self.sessions.pop(token, None)

    def list_user_accounts(
        self,
        *,
        user_id: Optional[str] = None,
        organisation_id: Optional[str] = None,
        establishment_id: Optional[str] = None,
    ) -> List[UserAccount]:
        with self._data_lock:
            accounts = [
                self._hydrate_account(a)
                for a in self.user_accounts.values()
                if (user_id is None or a.user_id == user_id)
                and (organisation_id is None or a.organisation_id == organisation_id)
                and (establishment_id is None or a.establishment_id == establishment_id)
            ]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

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
    ) -> Tuple[List[UserAccount], int]:
        with self._data_lock:
            matches = [
                self._hydrate_account(a)
                for a in self.user_accounts.values()
                if (account_id is None or a.id == account_id)
                and (user_id is None or a.user_id == user_id)
                and (organisation_id is None or a.organisation_id == organisation_id)
                and (establishment_id is None or a.establishment_id == establishment_id)
            ]
        if role:
            matches = [a for a in matches if role in a.role_names]
        matches.sort(key=lambda a: a.created_at)
        return paginate(matches, page, size)

    # action tokens
    def create_action_token(self, token: ActionToken) -> ActionToken:
        with self._data_lock:
            if token.token in self.action_tokens:
                raise ConstraintViolation("action token already exists", {"field": "token"})
            if token.user_id and token.user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": token.user_id})
            self.action_tokens[token.token] = replace(token, roles=list(token.roles))
            self._persist_state()
            return self._hydrate_token(self.action_tokens[token.token])

    def _hydrate_token(self, token: ActionToken) -> ActionToken:
        roles = [
            self._copy_role(self.roles[r.id]) for r in token.roles if r.id in self.roles
        ]
        return replace(token, roles=roles)

    def get_action_token(self, token: str) -> Optional[ActionToken]:
        with self._data_lock:
            record = self.action_tokens.get(token)
            return self._hydrate_token(record) if record else None

    def take_action_token(self, token: str) -> Optional[ActionToken]:
        with self._data_lock:
            record = self.action_tokens.pop(token, None)
            if record is None:
                return None
            self._persist_state()
            return self._hydrate_token(record)

    def delete_action_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.action_tokens.pop(token, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_expired_action_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [t.token for t in self.action_tokens.values() if t.is_expired(now)]
            for token in expired:
                self.action_tokens.pop(token, None)
            if expired:
                self._persist_state()
            return len(expired)

    def list_action_tokens(self, *, email: Optional[str] = None) -> List[ActionToken]:
        with self._data_lock:
            tokens = [
                self._hydrate_token(t)
                for t in self.action_tokens.values()
                if email is None or t.email == normalize_email(email)
            ]
        tokens.sort(key=lambda t: t.created_at)
        return tokens

    # sessions
    def replace_sessions(self, session: Session) -> int:
        with self._data_lock:
            if session.user_account_id not in self.user_accounts:
                raise ConstraintViolation(
                    "user account not found",
                    {"user_account_id": session.user_account_id},
                )
            stale = [
                s.token
                for s in self.sessions.values()
                if s.user_account_id == session.user_account_id
            ]
            for token in stale:
                self.sessions.pop(token, None)
            self.sessions[session.token] = replace(session)
            self._persist_state()
            return len(stale)

    def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(token)
            return replace(session) if session else None

    def delete_session(self, token: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(token, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_sessions(
        self,
        *,
        user_account_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        if user_account_id is None and user_id is None:
            raise ValueError("delete_sessions requires user_account_id or user_id")
        with self._data_lock:
            stale = [
                s.token
                for s in self.sessions.values()
                if (user_account_id is None or s.user_account_id == user_account_id)
                and (user_id is None or s.user_id == user_id)
            ]
            for token in stale:
                self.sessions.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [s.token for s in self.sessions.values() if not s.is_active(now)]
            for token in stale:
                self.sessions.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    def search_sessions(
        self,
        *,
        user_account_id: Optional[str] = None,
        user_id: Optional[str] = None,
        active_at: Optional[datetime] = None,
        expired_at: Optional[datetime] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Session], int]:
        with self._data_lock:
            matches = [
                replace(s)
                for s in self.sessions.values()
                if (user_account_id is None or s.user_account_id == user_account_id)
                and (user_id is None or s.user_id == user_id)
                and (active_at is None or s.expiration_date > active_at)
                and (expired_at is None or s.expiration_date <= expired_at)
            ]
        matches.sort(key=lambda s: s.login_date, reverse=True)
        return paginate(matches, page, size)

    # persistence
    @staticmethod
    def _state_path(root: Path) -> Path:
        state_dir = root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_role(self, role: Role) -> dict:
        return {
            "id": role.id,
            "name": role.name,
            "description": role.description,
            "claims": claims_to_strings(role.claims),
        }

    def _deserialize_role(self, data: dict) -> Role:
        return Role(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            claims=claims_from_strings(data.get("claims")),
        )

    def _serialize_record(self, obj: Any, *, datetimes: Sequence[str]) -> dict:
        data = dict(obj.__dict__)
        for key in datetimes:
            data[key] = self._serialize_datetime(data.get(key))
        if "roles" in data:
            data["roles"] = [r.id for r in data["roles"]]
        if isinstance(data.get("type"), CredentialType):
            data["type"] = data["type"].value
        return data

    def _restore_record(self, data: dict, *, datetimes: Sequence[str]) -> dict:
        restored = dict(data)
        for key in datetimes:
            restored[key] = self._deserialize_datetime(restored.get(key))
        if "roles" in restored:
            restored["roles"] = [
                self.roles[role_id] for role_id in restored["roles"] if role_id in self.roles
            ]
        return restored

    _STAMPS = ("created_at", "updated_at")

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [
                self._serialize_record(u, datetimes=self._STAMPS)
                for u in self.users.values()
            ],
            "credentials": [
                self._serialize_record(c, datetimes=self._STAMPS)
                for c in self.credentials.values()
            ],
            "roles": [self._serialize_role(r) for r in self.roles.values()],
            "organisations": [
                self._serialize_record(o, datetimes=self._STAMPS)
                for o in self.organisations.values()
            ],
            "establishments": [
                self._serialize_record(e, datetimes=self._STAMPS)
                for e in self.establishments.values()
            ],
            "user_accounts": [
                self._serialize_record(a, datetimes=self._STAMPS)
                for a in self.user_accounts.values()
            ],
            "action_tokens": [
                self._serialize_record(t, datetimes=("created_at", "expires_at"))
                for t in self.action_tokens.values()
            ],
            "sessions": [
                self._serialize_record(s, datetimes=("login_date", "expiration_date"))
                for s in self.sessions.values()
            ],
        }
        path = self._state_path(self.fs_root)
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        if self.fs_root is None:
            return False
        path = self._state_path(self.fs_root)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.roles = {r["id"]: self._deserialize_role(r) for r in data.get("roles", [])}
        self.users = {
            u["id"]: User(**self._restore_record(u, datetimes=self._STAMPS))
            for u in data.get("users", [])
        }
        self.credentials = {}
        for raw in data.get("credentials", []):
            restored = self._restore_record(raw, datetimes=self._STAMPS)
            restored["type"] = CredentialType(restored["type"])
            cred = Credential(**restored)
            self.credentials[(cred.user_id, cred.type.value)] = cred
        self.organisations = {
            o["id"]: Organisation(**self._restore_record(o, datetimes=self._STAMPS))
            for o in data.get("organisations", [])
        }
        self.establishments = {
            e["id"]: Establishment(**self._restore_record(e, datetimes=self._STAMPS))
            for e in data.get("establishments", [])
        }
        self.user_accounts = {
            a["id"]: UserAccount(**self._restore_record(a, datetimes=self._STAMPS))
            for a in data.get("user_accounts", [])
        }
        self.action_tokens = {
            t["token"]: ActionToken(
                **self._restore_record(t, datetimes=("created_at", "expires_at"))
            )
            for t in data.get("action_tokens", [])
        }
        self.sessions = {
            s["token"]: Session(
                **self._restore_record(s, datetimes=("login_date", "expiration_date"))
            )
            for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            action_tokens=len(self.action_tokens),
        )
        return True
