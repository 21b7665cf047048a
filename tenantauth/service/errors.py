from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Identity-core failure carrying the HTTP status and envelope code it maps to.

    ``detail`` holds structured context (ids, field names) and is always a dict.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail) if detail else {}
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status_code={self.status_code})"


class BadRequestError(ServiceError):
    """Input rejected by validation or a business rule."""


class AuthenticationError(ServiceError):
    """No usable identity: bad credentials, or an unknown, expired or revoked token."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """The resource already exists in a form that cannot coexist with the request."""

    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class InvalidClaimError(BadRequestError):
    """A permission claim could not be parsed."""


class InvalidClaimFormatError(InvalidClaimError):
    pass


class InvalidClaimActionError(InvalidClaimError):
    pass


class InvalidClaimScopeError(InvalidClaimError):
    pass
