from __future__ import annotations

import os
import re
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Tuple

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantauth.logging import get_logger
from tenantauth.service.action_types import ActionType
from tenantauth.service.string_utils import route, split_list

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_expires_in(value: str | int) -> int:
    """Convert a duration such as ``"1h"``, ``"30m"`` or ``"3600"`` to seconds."""
    if isinstance(value, int):
        if value <= 0:
            raise ValueError("duration must be positive")
        return value
    match = _DURATION_RE.match(value or "")
    if not match:
        raise ValueError(f"invalid duration: {value!r} (expected e.g. 30s, 15m, 1h, 7d)")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError("duration must be positive")
    return amount * _DURATION_UNITS[match.group(2).lower()]


@dataclass(frozen=True)
class ActionSettings:
    """Per action-type link route and validity window."""

    route: str
    validity_hours: int


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity core."""

    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/tenantauth", "SHARED_FS_ROOT")
    test_mode: bool = env_field(False, "TEST_MODE")

    # JWT
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_expires_in: str = env_field(
        "1h", "JWT_EXPIRES_IN", description="Access token and session lifetime"
    )
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantauth-clients", "JWT_AUDIENCE")
    auth_cookie_name: str = env_field("access_token", "AUTH_COOKIE_NAME")
    auth_cookie_secure: bool = env_field(True, "AUTH_COOKIE_SECURE")

    # Admin bootstrap
    admin_email: str = env_field("admin@devlab.io", "ADMIN_EMAIL")
    admin_password: Optional[str] = env_field(None, "ADMIN_PASSWORD")

    # Self-service users
    user_can_sign_up: bool = env_field(True, "USER_CAN_SIGN_UP")
    user_default_roles: List[str] = env_field(["user"], "USER_DEFAULT_ROLES")
    user_sign_up_roles: List[str] = env_field(["user"], "USER_SIGN_UP_ROLES")

    # Action tokens: validity in hours and front-end route per action type
    action_invite_validity: int = env_field(24, "ACTION_INVITE_VALIDITY")
    action_invite_route: str = env_field("auth/accept-invitation", "ACTION_INVITE_ROUTE")
    action_invite_organisation: Optional[str] = env_field(
        None, "ACTION_INVITE_ORGANISATION"
    )
    action_invite_establishment: Optional[str] = env_field(
        None, "ACTION_INVITE_ESTABLISHMENT"
    )
    action_validate_email_validity: int = env_field(24, "ACTION_VALIDATE_EMAIL_VALIDITY")
    action_validate_email_route: str = env_field(
        "auth/validate-email", "ACTION_VALIDATE_EMAIL_ROUTE"
    )
    action_accept_terms_validity: int = env_field(24, "ACTION_ACCEPT_TERMS_VALIDITY")
    action_accept_terms_route: str = env_field(
        "auth/accept-terms", "ACTION_ACCEPT_TERMS_ROUTE"
    )
    action_accept_privacy_policy_validity: int = env_field(
        24, "ACTION_ACCEPT_PRIVACY_POLICY_VALIDITY"
    )
    action_accept_privacy_policy_route: str = env_field(
        "auth/accept-privacy-policy", "ACTION_ACCEPT_PRIVACY_POLICY_ROUTE"
    )
    action_reset_password_validity: int = env_field(24, "ACTION_RESET_PASSWORD_VALIDITY")
    action_reset_password_route: str = env_field(
        "auth/reset-password", "ACTION_RESET_PASSWORD_ROUTE"
    )
    action_change_password_validity: int = env_field(
        24, "ACTION_CHANGE_PASSWORD_VALIDITY"
    )
    action_change_password_route: str = env_field(
        "auth/change-password", "ACTION_CHANGE_PASSWORD_ROUTE"
    )
    action_change_email_validity: int = env_field(24, "ACTION_CHANGE_EMAIL_VALIDITY")
    action_change_email_route: str = env_field(
        "auth/change-email", "ACTION_CHANGE_EMAIL_ROUTE"
    )

    # Tenant seeds
    tenant_organisations: List[str] = env_field([], "TENANT_ORGANISATIONS")
    tenant_establishments: List[str] = env_field(
        [], "TENANT_ESTABLISHMENTS", description="organisation:establishment pairs"
    )

    # Email delivery
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TenantAuth", "EMAIL_FROM_NAME")

    # Maintenance
    session_sweep_interval_seconds: int = env_field(
        0,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="Expired session/action token sweep interval; 0 sweeps only at startup",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "user_default_roles",
        "user_sign_up_roles",
        "tenant_organisations",
        "tenant_establishments",
        mode="before",
    )
    @classmethod
    def _split_lists(cls, value: Any) -> List[str]:
        return split_list(value)

    @field_validator("user_default_roles", "user_sign_up_roles")
    @classmethod
    def _lowercase_roles(cls, value: List[str]) -> List[str]:
        return [name.lower() for name in value]

    @field_validator("tenant_establishments")
    @classmethod
    def _validate_establishment_pairs(cls, value: List[str]) -> List[str]:
        for pair in value:
            org, sep, est = pair.partition(":")
            if not sep or not org.strip() or not est.strip():
                raise ValueError(
                    f"invalid establishment seed {pair!r}, expected organisation:establishment"
                )
        return value

    @field_validator("jwt_expires_in")
    @classmethod
    def _validate_expires_in(cls, value: str) -> str:
        parse_expires_in(value)
        return value

    @field_validator(
        "action_invite_route",
        "action_validate_email_route",
        "action_accept_terms_route",
        "action_accept_privacy_policy_route",
        "action_reset_password_route",
        "action_change_password_route",
        "action_change_email_route",
    )
    @classmethod
    def _normalize_route(cls, value: str) -> str:
        return route(value)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tenantauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # directory may be owned by another user (containers)
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated

    @property
    def jwt_ttl_seconds(self) -> int:
        return parse_expires_in(self.jwt_expires_in)

    def action_settings(self, action: ActionType) -> ActionSettings:
        """Route and validity configured for a single action type."""
        key = action.name.lower() if action.name else ""
        route_value = getattr(self, f"action_{key}_route", None)
        validity = getattr(self, f"action_{key}_validity", None)
        if route_value is None or validity is None:
            raise ValueError(f"no configuration for action type {action!r}")
        return ActionSettings(route=route_value, validity_hours=int(validity))

    def establishment_seeds(self) -> List[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        for pair in self.tenant_establishments:
            org, _, est = pair.partition(":")
            pairs.append((org.strip(), est.strip()))
        return pairs


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
