from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger
from tenantauth.service.errors import ConflictError, NotFoundError
from tenantauth.storage.base import IdentityStore
from tenantauth.storage.common import generate_uuid
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import Credential, CredentialType, utcnow

logger = get_logger(__name__)


class CredentialService:
    """Password and Google credentials, at most one of each type per user."""

    def __init__(
        self,
        store: IdentityStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self._clock = clock
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def _now(self) -> datetime:
        return self._clock()

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _save(self, credential: Credential) -> Credential:
        try:
            return self.store.save_credential(credential)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

    def find_by_user_id(self, user_id: str) -> List[Credential]:
        return self.store.list_credentials(user_id)

    def find_password(self, user_id: str) -> Optional[Credential]:
        return self.store.get_credential(user_id, CredentialType.PASSWORD)

    def find_google(self, user_id: str) -> Optional[Credential]:
        return self.store.get_credential(user_id, CredentialType.GOOGLE)

    def find_by_google_id(self, google_id: str) -> Optional[Credential]:
        return self.store.get_credential_by_google_id(google_id)

    def has_password(self, user_id: str) -> bool:
        return self.find_password(user_id) is not None

    def has_google(self, user_id: str) -> bool:
        return self.find_google(user_id) is not None

    def create_password(self, user_id: str, password: str) -> Credential:
        if self.has_password(user_id):
            raise ConflictError(
                "User already has a password credential", detail={"user_id": user_id}
            )
        now = self._now()
        credential = Credential(
            id=generate_uuid(),
            user_id=user_id,
            type=CredentialType.PASSWORD,
            password=self.hash_password(password),
            created_at=now,
            updated_at=now,
        )
        saved = self._save(credential)
        logger.info("password_credential_created", user_id=user_id)
        return saved

    def update_password(self, user_id: str, password: str) -> Credential:
        credential = self.find_password(user_id)
        if credential is None:
            raise NotFoundError(
                "Password credential not found", detail={"user_id": user_id}
            )
        credential.password = self.hash_password(password)
        credential.updated_at = self._now()
        saved = self._save(credential)
        logger.info("password_credential_updated", user_id=user_id)
        return saved

    def set_password(self, user_id: str, password: str) -> Credential:
        """Create the password credential, or replace its hash if one exists."""
        if self.has_password(user_id):
            return self.update_password(user_id, password)
        return self.create_password(user_id, password)

    def verify_password(self, user_id: str, password: str) -> bool:
        credential = self.find_password(user_id)
        if credential is None or not credential.password:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        try:
            return self._pwd_hasher.verify(credential.password, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def create_google(self, user_id: str, google_id: str) -> Credential:
        if self.has_google(user_id):
            raise ConflictError(
                "User already has a google credential", detail={"user_id": user_id}
            )
        linked = self.find_by_google_id(google_id)
        if linked is not None and linked.user_id != user_id:
            raise ConflictError("Google account is already linked to another user")
        now = self._now()
        credential = Credential(
            id=generate_uuid(),
            user_id=user_id,
            type=CredentialType.GOOGLE,
            google_id=google_id,
            created_at=now,
            updated_at=now,
        )
        saved = self._save(credential)
        logger.info("google_credential_created", user_id=user_id)
        return saved

    def delete_password(self, user_id: str) -> bool:
        return self.store.delete_credential(user_id, CredentialType.PASSWORD)

    def delete_google(self, user_id: str) -> bool:
        return self.store.delete_credential(user_id, CredentialType.GOOGLE)

    def delete_all(self, user_id: str) -> int:
        return self.store.delete_credentials(user_id)
