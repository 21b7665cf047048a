from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tenantauth.logging import get_correlation_id
from tenantauth.service.jwt import AuthResponse

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error payload with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: str
    user_account_id: str
    email: str
    username: str
    roles: list[str] = Field(default_factory=list)
    organisation_id: Optional[str] = None
    establishment_id: Optional[str] = None

    @classmethod
    def from_auth(cls, response: AuthResponse) -> "TokenResponse":
        return cls(
            access_token=response.jwt.access_token,
            expires_in=response.jwt.expires_in,
            user_id=response.user.id,
            user_account_id=response.user_account.id,
            email=response.user.email,
            username=response.user.username,
            roles=response.user_account.role_names,
            organisation_id=response.user_account.organisation_id,
            establishment_id=response.user_account.establishment_id,
        )
