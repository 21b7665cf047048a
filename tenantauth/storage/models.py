from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, List, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClaimAction(str, Enum):
    """Verbs a claim can grant. ``ADMIN`` implicitly grants every action."""

    ADMIN = "admin"
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    ENABLE = "enable"
    DISABLE = "disable"
    EXECUTE = "execute"
    DELETE = "delete"


class ClaimScope(str, Enum):
    """Reach of a claim. ``ADMIN`` implicitly grants every scope."""

    ADMIN = "admin"
    ANY = "any"
    ORGANISATION = "organisation"
    ESTABLISHMENT = "establishment"
    OWN = "own"


class CredentialType(str, Enum):
    PASSWORD = "password"
    GOOGLE = "google"


@dataclass(frozen=True)
class Claim:
    action: ClaimAction
    scope: ClaimScope
    resource: str

    def __str__(self) -> str:
        return f"{self.action.value}:{self.scope.value}:{self.resource}"


@dataclass
class User:
    id: str
    email: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    profile_picture: Optional[str] = None
    enabled: bool = True
    email_validated: bool = False
    accepted_terms: bool = False
    accepted_privacy_policy: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Credential:
    id: str
    user_id: str
    type: CredentialType
    password: Optional[str] = None
    google_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    claims: List[Claim] = field(default_factory=list)


@dataclass
class Organisation:
    id: str
    name: str
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Establishment:
    id: str
    name: str
    organisation_id: str
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UserAccount:
    id: str
    user_id: str
    organisation_id: Optional[str] = None
    establishment_id: Optional[str] = None
    roles: List[Role] = field(default_factory=list)
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def role_names(self) -> List[str]:
        return [role.name for role in self.roles]


@dataclass
class ActionToken:
    token: str
    type: int
    email: str
    user_id: Optional[str] = None
    organisation_id: Optional[str] = None
    establishment_id: Optional[str] = None
    roles: List[Role] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


@dataclass
class Session:
    token: str
    user_account_id: str
    user_id: str
    login_date: datetime
    expiration_date: datetime

    def is_active(self, now: datetime) -> bool:
        return self.expiration_date > now


@dataclass
class Page(Generic[T]):
    contents: List[T]
    total: int
    page: int
    size: int

    @property
    def pages(self) -> int:
        if self.size <= 0:
            return 0
        return math.ceil(self.total / self.size)
