from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol, runtime_checkable

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from assetauth.logging import get_logger
from assetauth.service.errors import ConflictError
from assetauth.storage.models import CredentialRecord

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def find_by_user_id(self, user_id: str) -> Optional[CredentialRecord]: ...


@runtime_checkable
class WritableCredentialStore(CredentialStore, Protocol):
    def save_credentials(
        self, user_id: str, password_hash: str, role: str = "user"
    ) -> CredentialRecord: ...


class MemoryCredentialStore:
    """Process-local credential records keyed by user id."""

    def __init__(self) -> None:
        self._records: Dict[str, CredentialRecord] = {}
        self._data_lock = threading.RLock()

    def find_by_user_id(self, user_id: str) -> Optional[CredentialRecord]:
        with self._data_lock:
            return self._records.get(user_id)

    def save_credentials(
        self, user_id: str, password_hash: str, role: str = "user"
    ) -> CredentialRecord:
        with self._data_lock:
            if user_id in self._records:
                raise ConflictError(
                    "user already exists", detail={"user_id": user_id}
                )
            record = CredentialRecord(
                user_id=user_id, password_hash=password_hash, role=role
            )
            self._records[user_id] = record
            return record


class PasswordMatcher:
    """argon2id hashing and constant-time verification."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the user is unknown so both paths cost one hash
        self._dummy_hash = self._hasher.hash("assetauth-timing-equalizer")

    def hash(self, raw: str) -> str:
        return self._hasher.hash(raw)

    def matches(self, raw: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, raw)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid")
            return False

    def burn(self, raw: str) -> None:
        """Spend one verification on a fixed hash and discard the result."""
        self.matches(raw, self._dummy_hash)
