"""Bearer token transport between HTTP requests and :class:`RequestContext`.

The token travels in the ``Authorization: Bearer`` header or in an HTTP-only
cookie; the header wins when both are present.
"""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request, Response

from tenantauth.config import Settings
from tenantauth.logging import set_correlation_id
from tenantauth.service.errors import AuthenticationError
from tenantauth.service.jwt import JwtService, RequestContext

REQUEST_ID_HEADER = "X-Request-ID"


def register_request_id_middleware(app: FastAPI) -> None:
    """Bind the inbound ``X-Request-ID`` (or a new one) to logs and envelopes."""

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        request_id = set_correlation_id(request.headers.get(REQUEST_ID_HEADER))
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def extract_token(request: Request, cookie_name: str) -> Optional[str]:
    return _extract_bearer(request.headers.get("authorization")) or (
        request.cookies.get(cookie_name) or None
    )


def load_context(
    request: Request, jwt: JwtService, settings: Settings, *, required: bool = True
) -> RequestContext:
    """Build the request context from the inbound token.

    With ``required=False`` a request without a token yields an empty context;
    a token that is present but invalid always fails.
    """
    token = extract_token(request, settings.auth_cookie_name)
    if token is None:
        if required:
            raise AuthenticationError("Authentication required")
        return RequestContext()
    return jwt.load_identity_from_token(token)


def apply_token(response: Response, ctx: RequestContext, settings: Settings) -> None:
    """Set the auth cookie for a fresh token, or delete it after sign-out."""
    if ctx.clear_token:
        response.delete_cookie(
            settings.auth_cookie_name,
            path="/",
            secure=settings.auth_cookie_secure,
            httponly=True,
            samesite="lax",
        )
        return
    if ctx.jwt is not None:
        response.set_cookie(
            settings.auth_cookie_name,
            ctx.jwt.access_token,
            max_age=ctx.jwt.expires_in,
            httponly=True,
            secure=settings.auth_cookie_secure,
            samesite="lax",
            path="/",
        )
