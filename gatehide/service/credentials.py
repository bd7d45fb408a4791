from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatehide.logging import get_logger
from gatehide.storage.models import NAMESPACE_PROBE_ORDER, Identity, Namespace

if TYPE_CHECKING:
    from gatehide.service.auth import AuthStore

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialVerifier:
    """Checks email/password pairs against both identity namespaces."""

    def __init__(self, store: "AuthStore") -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, namespace: Namespace, identity_id: int, password: str) -> None:
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(namespace, identity_id, pwd_hash, algo)

    def _burn_dummy_verify(self, password: str) -> None:
        # Misses cost one argon2 verify too, so a lookup miss is not faster than a wrong password
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def verify_password(self, namespace: Namespace, identity_id: int, password: str) -> bool:
        record = self.store.get_password_record(namespace, identity_id)
        if not record:
            logger.warning(
                "password_record_missing", namespace=namespace.value, identity_id=identity_id
            )
            self._burn_dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch",
                namespace=namespace.value,
                identity_id=identity_id,
                algo=algo,
            )
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def lookup_all(self, email: str) -> list[Identity]:
        """Return the identity for ``email`` in every namespace that has one.

        Always queries every namespace so callers cannot tell from timing
        which namespace (if any) matched.
        """
        normalized = normalize_email(email)
        found = []
        for namespace in NAMESPACE_PROBE_ORDER:
            identity = self.store.get_identity_by_email(namespace, normalized)
            if identity:
                found.append(identity)
        return found

    def authenticate(self, email: str, password: str) -> Optional[Identity]:
        """Return the first identity, in probe order, whose password matches."""
        normalized = normalize_email(email)
        for namespace in NAMESPACE_PROBE_ORDER:
            identity = self.store.get_identity_by_email(namespace, normalized)
            if not identity:
                self._burn_dummy_verify(password)
                continue
            if self.verify_password(namespace, identity.id, password):
                return identity
        logger.info("credentials_rejected")
        return None
