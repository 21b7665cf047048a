from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional, Union

from tenantauth.config import Settings, get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.requests import (
    CredentialRequest,
    UserAccountRequest,
    UserAccountUpdateRequest,
    UserCreateRequest,
)
from tenantauth.service.accounts import UserAccountService
from tenantauth.service.action_tokens import ActionTokenService
from tenantauth.service.auth import AuthService
from tenantauth.service.claims import ADMIN
from tenantauth.service.credentials import CredentialService
from tenantauth.service.jwt import JwtService
from tenantauth.service.notification import NotificationService
from tenantauth.service.roles import RoleService
from tenantauth.service.scope import ScopeService
from tenantauth.service.sessions import SessionService
from tenantauth.service.tenants import EstablishmentService, OrganisationService, seed
from tenantauth.service.users import UserService
from tenantauth.storage.base import IdentityStore
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import CredentialType, utcnow
from tenantauth.storage.postgres import PostgresStore

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


class Runtime:
    """Builds every identity service once and wires them together."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[IdentityStore] = None,
        notifier: Optional[NotificationService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        logger.info(
            "runtime_init_started",
            use_memory_store=use_memory,
            test_mode=self.settings.test_mode,
        )

        if store is not None:
            self.store: Union[IdentityStore, MemoryStore, PostgresStore] = store
        else:
            try:
                self.store = (
                    MemoryStore(
                        fs_root=None if self.settings.test_mode else self.settings.shared_fs_root
                    )
                    if use_memory
                    else PostgresStore(self.settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if use_memory else "postgres",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise

        clock_fn = self.clock
        self.credentials = CredentialService(self.store, clock=clock_fn)
        self.roles = RoleService(self.store)
        self.sessions = SessionService(self.store, self.settings, clock=clock_fn)
        self.users = UserService(self.store, self.credentials, clock=clock_fn)
        self.organisations = OrganisationService(self.store, clock=clock_fn)
        self.establishments = EstablishmentService(
            self.store, self.organisations, clock=clock_fn
        )
        self.accounts = UserAccountService(
            self.store,
            self.users,
            self.organisations,
            self.establishments,
            self.roles,
            clock=clock_fn,
        )
        self.action_tokens = ActionTokenService(self.store, self.roles, clock=clock_fn)
        self.jwt = JwtService(
            self.store, self.settings, self.credentials, self.sessions, clock=clock_fn
        )
        self.scope = ScopeService()
        self.notifier = notifier or NotificationService(self.settings)
        self.auth = AuthService(
            self.settings,
            self.users,
            self.credentials,
            self.accounts,
            self.action_tokens,
            self.jwt,
            self.organisations,
            self.establishments,
            self.notifier,
            clock=clock_fn,
        )

        self._sweep_stop = threading.Event()
        self._sweep_thread: Optional[threading.Thread] = None
        self.sweep()

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            email_configured=self.notifier.is_configured,
            sweep_interval=self.settings.session_sweep_interval_seconds,
        )

    def sweep(self) -> tuple[int, int]:
        """Delete expired sessions and action tokens; safe to run alongside traffic."""
        sessions = self.sessions.delete_expired()
        tokens = self.action_tokens.purge()
        return sessions, tokens

    def _sweep_loop(self, interval: int) -> None:
        while not self._sweep_stop.wait(interval):
            try:
                self.sweep()
            except Exception as exc:
                logger.error(
                    "expiry_sweep_failed", error_type=type(exc).__name__, error=str(exc)
                )

    def start_sweeper(self) -> bool:
        """Start the periodic expiry sweep when an interval is configured."""
        interval = self.settings.session_sweep_interval_seconds
        if interval <= 0 or self._sweep_thread is not None:
            return False
        self._sweep_stop.clear()
        self._sweep_thread = threading.Thread(
            target=self._sweep_loop, args=(interval,), name="expiry-sweep", daemon=True
        )
        self._sweep_thread.start()
        logger.info("expiry_sweeper_started", interval=interval)
        return True

    def stop_sweeper(self) -> None:
        if self._sweep_thread is None:
            return
        self._sweep_stop.set()
        self._sweep_thread.join(timeout=5)
        self._sweep_thread = None
        logger.info("expiry_sweeper_stopped")

    def close(self) -> None:
        self.stop_sweeper()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()

    def bootstrap(self) -> dict:
        """Provision roles, configured tenants and the admin identity. Idempotent."""
        self.roles.ensure(ADMIN_ROLE, [ADMIN], "Full access to every resource")
        for name in {*self.settings.user_default_roles, *self.settings.user_sign_up_roles}:
            self.roles.ensure(name)
        organisations, establishments = seed(
            self.organisations,
            self.establishments,
            self.settings.tenant_organisations,
            self.settings.establishment_seeds(),
        )
        summary = {
            "organisations_created": organisations,
            "establishments_created": establishments,
            "admin": None,
        }
        if self.settings.admin_password:
            summary["admin"] = self._bootstrap_admin(
                self.settings.admin_email, self.settings.admin_password
            )
        logger.info("runtime_bootstrapped", **{k: v for k, v in summary.items() if k != "admin"})
        return summary

    def _bootstrap_admin(self, email: str, password: str) -> str:
        user = self.users.find_by_email(email)
        if user is None:
            user = self.users.create(
                UserCreateRequest(
                    email=email,
                    username="admin",
                    email_validated=True,
                    accepted_terms=True,
                    accepted_privacy_policy=True,
                    credentials=[
                        CredentialRequest(type=CredentialType.PASSWORD, password=password)
                    ],
                )
            )
            status = "created"
        else:
            status = "existing"
        account = self.accounts.find_by_user_and_tenant(user.id)
        if account is None:
            self.accounts.create(UserAccountRequest(user_id=user.id, roles=[ADMIN_ROLE]))
            status = "created" if status == "created" else "account_created"
        elif ADMIN_ROLE not in account.role_names:
            self.accounts.update(
                account.id,
                UserAccountUpdateRequest(roles=[*account.role_names, ADMIN_ROLE]),
            )
            status = "promoted"
        logger.info("admin_bootstrapped", user_id=user.id, status=status)
        return status


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, creating it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
            runtime.start_sweeper()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment. TEST_MODE only."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
