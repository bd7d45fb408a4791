from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from gatehide.config import Settings
from gatehide.logging import get_logger
from gatehide.service.credentials import CredentialVerifier, normalize_email
from gatehide.service.errors import (
    EmailNotFoundError,
    InvalidResetTokenError,
    PasswordMismatchError,
    WeakPasswordError,
)
from gatehide.service.notifications import (
    NotificationDispatcher,
    dispatch_best_effort,
    password_reset_notification,
)
from gatehide.storage.models import Identity, PasswordResetToken

if TYPE_CHECKING:
    from gatehide.service.auth import AuthStore

logger = get_logger(__name__)

RESET_TOKEN_BYTES = 32


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def check_new_password(new_password: str, confirm_password: str, min_length: int) -> None:
    """Raise the input-validation error a caller can correct, if any."""
    if not hmac.compare_digest(new_password.encode(), confirm_password.encode()):
        raise PasswordMismatchError("passwords do not match")
    if len(new_password) < min_length:
        raise WeakPasswordError(
            f"password must be at least {min_length} characters",
            detail={"min_length": min_length},
        )


@dataclass(frozen=True)
class IssuedResetToken:
    """Plaintext token as delivered to the user; only its hash is stored."""

    token: str
    expires_at: datetime
    identity: Identity


class PasswordResetFlow:
    """Single-use, time-limited password reset tokens.

    Per identity: none -> issued/unused -> used (terminal), or expired
    (terminal). Issuing a new token marks every earlier unused one as used,
    so at most one token per identity is ever redeemable.
    """

    def __init__(
        self,
        store: "AuthStore",
        credentials: CredentialVerifier,
        settings: Settings,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.settings = settings
        self.notifier = notifier

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def initiate(self, email: str) -> IssuedResetToken:
        matches = self.credentials.lookup_all(email)
        if not matches:
            logger.info("password_reset_unknown_email")
            raise EmailNotFoundError("no account found for that email")
        identity = matches[0]
        now = self._now()
        self.store.invalidate_reset_tokens(identity.namespace, identity.id, now)

        token = secrets.token_bytes(RESET_TOKEN_BYTES).hex()
        expires_at = now + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.create_reset_token(
            identity.namespace, identity.id, hash_reset_token(token), expires_at
        )
        logger.info(
            "password_reset_requested",
            identity_id=identity.id,
            namespace=identity.namespace.value,
            expires_at=expires_at.isoformat(),
        )
        dispatch_best_effort(
            self.notifier,
            identity.email,
            password_reset_notification(
                self.settings, user_name=identity.name, email=identity.email, token=token
            ),
            kind="password_reset",
        )
        return IssuedResetToken(token=token, expires_at=expires_at, identity=identity)

    def validate(self, token: str) -> PasswordResetToken:
        if not token:
            raise InvalidResetTokenError("invalid or expired reset token")
        record = self.store.get_reset_token(hash_reset_token(token))
        if not record or not record.is_valid(self._now()):
            raise InvalidResetTokenError("invalid or expired reset token")
        return record

    def complete(
        self, token: str, email: str, new_password: str, confirm_password: str
    ) -> Identity:
        check_new_password(new_password, confirm_password, self.settings.min_password_length)
        record = self.validate(token)

        # The token only works for the account it was issued to
        identity = self.store.get_identity_by_email(record.namespace, normalize_email(email))
        if not identity or identity.id != record.identity_id:
            logger.warning(
                "password_reset_email_mismatch",
                identity_id=record.identity_id,
                namespace=record.namespace.value,
            )
            raise InvalidResetTokenError("invalid or expired reset token")

        now = self._now()
        if not self.store.mark_reset_token_used(record.token, now):
            raise InvalidResetTokenError("invalid or expired reset token")
        self.credentials.set_password(identity.namespace, identity.id, new_password)
        self.store.invalidate_reset_tokens(identity.namespace, identity.id, now)
        logger.info(
            "password_reset_completed",
            identity_id=identity.id,
            namespace=identity.namespace.value,
        )
        return identity

    def sweep(self) -> int:
        removed = self.store.delete_expired_reset_tokens(self._now())
        if removed:
            logger.info("reset_tokens_swept", removed=removed)
        return removed
