from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import NotFoundError
from tenantauth.storage.base import IdentityStore
from tenantauth.storage.models import Page, Session, utcnow

logger = get_logger(__name__)


class SessionService:
    """Bearer-token sessions, at most one per user account."""

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def create(self, token: str, user_account_id: str, user_id: str) -> Session:
        """Replace every session of the account with a new one for ``token``."""
        now = self._now()
        session = Session(
            token=token,
            user_account_id=user_account_id,
            user_id=user_id,
            login_date=now,
            expiration_date=now + timedelta(seconds=self.settings.jwt_ttl_seconds),
        )
        deleted = self.store.replace_sessions(session)
        logger.info(
            "session_created",
            user_account_id=user_account_id,
            replaced_sessions=deleted,
            expires_at=session.expiration_date.isoformat(),
        )
        return session

    def find_by_token(self, token: str) -> Optional[Session]:
        return self.store.get_session(token)

    def get_by_token(self, token: str) -> Session:
        session = self.find_by_token(token)
        if session is None:
            raise NotFoundError("Session not found")
        return session

    def delete_by_token(self, token: str) -> None:
        if not self.store.delete_session(token):
            raise NotFoundError("Session not found")
        logger.info("session_deleted")

    def is_active(self, session: Session) -> bool:
        return session.is_active(self._now())

    def find_by_user_account_id(self, user_account_id: str) -> List[Session]:
        sessions, _ = self.store.search_sessions(
            user_account_id=user_account_id, size=500
        )
        return sessions

    def find_active_by_user_account_id(self, user_account_id: str) -> Optional[Session]:
        sessions, _ = self.store.search_sessions(
            user_account_id=user_account_id, active_at=self._now(), size=1
        )
        return sessions[0] if sessions else None

    def find_by_user_id(self, user_id: str) -> List[Session]:
        sessions, _ = self.store.search_sessions(user_id=user_id, size=500)
        return sessions

    def search(
        self,
        *,
        user_account_id: Optional[str] = None,
        user_id: Optional[str] = None,
        active: Optional[bool] = None,
        page: int = 1,
        size: int = 20,
    ) -> Page[Session]:
        now = self._now()
        contents, total = self.store.search_sessions(
            user_account_id=user_account_id,
            user_id=user_id,
            active_at=now if active is True else None,
            expired_at=now if active is False else None,
            page=page,
            size=size,
        )
        return Page(contents=contents, total=total, page=page, size=size)

    def delete_expired(self) -> int:
        count = self.store.delete_expired_sessions(self._now())
        if count:
            logger.info("expired_sessions_deleted", count=count)
        return count

    def delete_all_by_user_account(self, user_account_id: str) -> int:
        count = self.store.delete_sessions(user_account_id=user_account_id)
        logger.info(
            "user_account_sessions_deleted", user_account_id=user_account_id, count=count
        )
        return count

    def delete_all_by_user_id(self, user_id: str) -> int:
        count = self.store.delete_sessions(user_id=user_id)
        logger.info("user_sessions_deleted", user_id=user_id, count=count)
        return count
