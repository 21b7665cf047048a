"""Request models accepted by the identity services.

Flows that redeem an action token embed an :class:`ActionEnvelope` as their
``action`` field instead of repeating the token and email fields.
"""

from __future__ import annotations

import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantauth.storage.models import CredentialType

_EMAIL_LOCAL_PART = re.compile(r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]+$")


def _validate_email(value: str) -> str:
    normalized = value.strip().lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    if "." not in domain or domain.startswith(".") or domain.endswith("."):
        raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _clean_role_names(value: Optional[List[str]]) -> Optional[List[str]]:
    if value is None:
        return None
    return [name.strip().lower() for name in value if name and name.strip()]


class ActionEnvelope(BaseModel):
    """Token string and target email identifying an action token."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(..., min_length=1, max_length=256)
    email: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _validate_email(value)


class CredentialRequest(BaseModel):
    type: CredentialType
    password: Optional[str] = None
    google_id: Optional[str] = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def _check_secret(self):
        if self.type == CredentialType.PASSWORD:
            if not self.password:
                raise ValueError("password credential requires a password")
            _validate_password_strength(self.password)
        if self.type == CredentialType.GOOGLE and not self.google_id:
            raise ValueError("google credential requires a google_id")
        return self


class UserProfile(BaseModel):
    username: Optional[str] = Field(default=None, max_length=64)
    first_name: Optional[str] = Field(default=None, max_length=128)
    last_name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=32)
    profile_picture: Optional[str] = Field(default=None, max_length=2048)


class UserCreateRequest(UserProfile):
    email: str
    enabled: bool = True
    email_validated: bool = False
    accepted_terms: bool = False
    accepted_privacy_policy: bool = False
    credentials: List[CredentialRequest] = Field(default_factory=list)

    @field_validator("email")
    @classmethod
    def _validate_user_email(cls, value: str) -> str:
        return _validate_email(value)


class UserUpdateRequest(UserProfile):
    """Partial update: only fields that are set are applied."""

    email: Optional[str] = None
    enabled: Optional[bool] = None
    email_validated: Optional[bool] = None
    accepted_terms: Optional[bool] = None
    accepted_privacy_policy: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class SignUpRequest(UserProfile):
    email: str
    password: str
    enabled: bool = True
    accepted_terms: bool = False
    accepted_privacy_policy: bool = False

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SignInRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_target_email(cls, value: str) -> str:
        return _validate_email(value)


class RoleRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=512)
    claims: List[str] = Field(default_factory=list)


class OrganisationRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    enabled: bool = True


class EstablishmentRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    organisation_id: str
    enabled: bool = True


class OrganisationUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)


class EstablishmentUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    organisation_id: Optional[str] = None


class UserAccountRequest(BaseModel):
    user_id: str
    organisation_id: Optional[str] = None
    establishment_id: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    enabled: bool = True

    @field_validator("roles")
    @classmethod
    def _normalize_roles(cls, value):
        return _clean_role_names(value)


class UserAccountUpdateRequest(BaseModel):
    """Fields left unset keep their current value; ``roles`` replaces the set."""

    organisation_id: Optional[str] = None
    establishment_id: Optional[str] = None
    roles: Optional[List[str]] = None
    enabled: Optional[bool] = None

    @field_validator("roles")
    @classmethod
    def _normalize_roles(cls, value):
        return _clean_role_names(value)


class ActionTokenRequest(BaseModel):
    """Parameters for a new action token; ``expires_in`` is in hours."""

    type: int = Field(..., gt=0)
    email: Optional[str] = None
    user_id: Optional[str] = None
    organisation_id: Optional[str] = None
    establishment_id: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    expires_in: Optional[int] = Field(default=None, gt=0)

    @field_validator("roles")
    @classmethod
    def _normalize_roles(cls, value):
        return _clean_role_names(value)

    @field_validator("email")
    @classmethod
    def _validate_token_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class InvitationRequest(BaseModel):
    """Invite by email; organisation and establishment are given by name."""

    email: str
    organisation: Optional[str] = None
    establishment: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    expires_in: Optional[int] = Field(default=None, gt=0)

    @field_validator("roles")
    @classmethod
    def _normalize_roles(cls, value):
        return _clean_role_names(value)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)


class AcceptInvitationRequest(UserProfile):
    action: ActionEnvelope
    password: Optional[str] = None
    google_id: Optional[str] = None

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class AcceptEmailValidationRequest(BaseModel):
    action: ActionEnvelope


class AcceptTermsRequest(BaseModel):
    action: ActionEnvelope
    accepted_terms: bool = False


class AcceptPrivacyPolicyRequest(BaseModel):
    action: ActionEnvelope
    accepted_privacy_policy: bool = False


class AcceptPasswordRequest(BaseModel):
    """Body of reset-password and change-password redemptions."""

    action: ActionEnvelope
    password: Optional[str] = None

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value else value
