from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.credentials import CredentialService
from tenantauth.service.errors import AuthenticationError, BadRequestError
from tenantauth.service.sessions import SessionService
from tenantauth.storage.base import IdentityStore
from tenantauth.storage.models import User, UserAccount, utcnow

logger = get_logger(__name__)


@dataclass
class JwtToken:
    access_token: str
    expires_in: int  # seconds


@dataclass
class AuthResponse:
    jwt: JwtToken
    user_account: UserAccount
    user: User


@dataclass
class RequestContext:
    """Identity bound to a single inbound request.

    Created empty by the transport layer, filled by
    :meth:`JwtService.authenticate` or :meth:`JwtService.load_identity_from_token`
    and passed explicitly to whatever needs the caller's identity.
    """

    token: Optional[str] = None
    account: Optional[UserAccount] = None
    user: Optional[User] = None
    jwt: Optional[JwtToken] = None
    clear_token: bool = False
    claims: dict = field(default_factory=dict)

    def bind(
        self,
        token: str,
        account: UserAccount,
        user: User,
        *,
        jwt: Optional[JwtToken] = None,
        claims: Optional[dict] = None,
    ) -> None:
        self.token = token
        self.account = account
        self.user = user
        self.jwt = jwt
        self.claims = claims or {}
        self.clear_token = False

    def clear(self) -> None:
        self.token = None
        self.account = None
        self.user = None
        self.jwt = None
        self.claims = {}
        self.clear_token = True

    def is_authenticated(self) -> bool:
        return self.account is not None and self.user is not None

    def require_authenticated(self) -> UserAccount:
        if self.account is None or self.user is None:
            raise AuthenticationError("Authentication required")
        return self.account

    def _role_names(self) -> set[str]:
        return set(self.account.role_names) if self.account else set()

    def has_any_role(self, names: Iterable[str]) -> bool:
        held = self._role_names()
        return any(name.lower() in held for name in names)

    def has_all_roles(self, names: Iterable[str]) -> bool:
        held = self._role_names()
        return all(name.lower() in held for name in names)


class JwtService:
    """HS256 access tokens backed by a server-side session per account."""

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        credentials: CredentialService,
        sessions: SessionService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.sessions = sessions
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    # encoding
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp():
            return None
        if not payload.get("sub"):
            return None
        return payload

    def sign(self, account: UserAccount, user: User) -> JwtToken:
        ttl = self.settings.jwt_ttl_seconds
        issued_at = int(self._now().timestamp())
        payload = {
            "sub": account.id,
            "user_id": user.id,
            "email": user.email,
            "username": user.username,
            "roles": account.role_names,
            "organisation_id": account.organisation_id,
            "establishment_id": account.establishment_id,
            "iat": issued_at,
            "exp": issued_at + ttl,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "jti": secrets.token_hex(16),
        }
        return JwtToken(access_token=self._encode_jwt(payload), expires_in=ttl)

    # flows
    async def authenticate(
        self,
        account: UserAccount,
        password: str,
        ctx: Optional[RequestContext] = None,
    ) -> JwtToken:
        """Check the password of the account's user and open a fresh session."""
        user = self.store.get_user(account.user_id)
        if not account.enabled or user is None or not user.enabled:
            logger.warning("authenticate_disabled_account", user_account_id=account.id)
            raise BadRequestError("User account is disabled")
        verified = await asyncio.to_thread(
            self.credentials.verify_password, user.id, password
        )
        if not verified:
            logger.warning("authenticate_invalid_credentials", user_id=user.id)
            raise AuthenticationError("Invalid credentials")
        token = self.sign(account, user)
        self.sessions.create(token.access_token, account.id, user.id)
        if ctx is not None:
            ctx.bind(token.access_token, account, user, jwt=token)
        logger.info("user_authenticated", user_id=user.id, user_account_id=account.id)
        return token

    def verify(self, token: str) -> dict[str, Any]:
        payload = self._decode_jwt(token)
        if payload is None:
            raise AuthenticationError("Invalid or expired token")
        return payload

    def load_identity_from_token(
        self, token: str, ctx: Optional[RequestContext] = None
    ) -> RequestContext:
        """Resolve a bearer token to its live session, account and user."""
        payload = self.verify(token)
        session = self.sessions.find_by_token(token)
        if session is None:
            raise AuthenticationError("Session not found")
        if not self.sessions.is_active(session):
            raise AuthenticationError("Session has expired")
        if session.user_account_id != payload["sub"]:
            raise AuthenticationError("Invalid or expired token")
        account = self.store.get_user_account(session.user_account_id)
        if account is None:
            raise AuthenticationError("User account not found")
        user = self.store.get_user(account.user_id)
        if user is None or not user.enabled or not account.enabled:
            raise AuthenticationError("User account is disabled")
        ctx = ctx if ctx is not None else RequestContext()
        ctx.bind(token, account, user, claims=payload)
        return ctx

    def logout(self, ctx: RequestContext) -> None:
        if ctx.token:
            if self.store.delete_session(ctx.token):
                logger.info(
                    "user_logged_out",
                    user_account_id=ctx.account.id if ctx.account else None,
                )
            else:
                logger.info("logout_session_missing")
        ctx.clear()
