from __future__ import annotations

import hashlib
import hmac
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from gatehide.config import Settings
from gatehide.logging import get_logger
from gatehide.service.credentials import CredentialVerifier, normalize_email
from gatehide.service.errors import (
    EmailConflictError,
    EmailUnchangedError,
    ValidationError,
    VerificationCodeInvalidError,
)
from gatehide.service.notifications import (
    NotificationDispatcher,
    dispatch_best_effort,
    email_verification_notification,
)
from gatehide.storage.models import Identity

if TYPE_CHECKING:
    from gatehide.service.auth import AuthStore

logger = get_logger(__name__)


class EmailChangeFlow:
    """Numeric one-time codes that confirm ownership of a new email address.

    Only a keyed hash of each code is stored. A code is consumed by deleting
    its row, so it can succeed at most once.
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

    def _generate_code(self) -> str:
        return "".join(
            secrets.choice(string.digits)
            for _ in range(self.settings.verification_code_length)
        )

    def hash_code(self, identity: Identity, new_email: str, code: str) -> str:
        """Hash a code bound to its identity and target address."""
        message = f"{identity.namespace.value}:{identity.id}:{new_email}:{code}"
        return hmac.new(
            self.settings.jwt_secret.encode(), message.encode(), hashlib.sha256
        ).hexdigest()

    def request_change(self, identity: Identity, new_email: str) -> str:
        target = normalize_email(new_email)
        if not target or "@" not in target:
            raise ValidationError("invalid email address", detail={"field": "new_email"})
        if target == normalize_email(identity.email):
            raise EmailUnchangedError("new email is the same as the current email")
        if self.credentials.lookup_all(target):
            raise EmailConflictError("email is already in use")

        code = self._generate_code()
        expires_at = self._now() + timedelta(
            minutes=self.settings.email_verification_ttl_minutes
        )
        self.store.store_verification_code(
            identity.namespace,
            identity.id,
            target,
            self.hash_code(identity, target, code),
            expires_at,
        )
        logger.info(
            "email_change_code_issued",
            identity_id=identity.id,
            namespace=identity.namespace.value,
            expires_at=expires_at.isoformat(),
        )
        dispatch_best_effort(
            self.notifier,
            target,
            email_verification_notification(
                self.settings,
                user_name=identity.name,
                current_email=identity.email,
                new_email=target,
                code=code,
            ),
            kind="email_verification",
        )
        return code

    def confirm(self, identity: Identity, new_email: str, code: str) -> bool:
        target = normalize_email(new_email)
        record = self.store.find_verification_code(
            identity.namespace,
            identity.id,
            target,
            self.hash_code(identity, target, (code or "").strip()),
        )
        if not record:
            logger.info(
                "email_change_code_rejected",
                identity_id=identity.id,
                namespace=identity.namespace.value,
            )
            raise VerificationCodeInvalidError("invalid or expired verification code")
        if self._now() >= record.expires_at:
            self.store.delete_verification_code(record.id)
            raise VerificationCodeInvalidError("invalid or expired verification code")
        if not self.store.delete_verification_code(record.id):
            # Another request consumed it first
            raise VerificationCodeInvalidError("invalid or expired verification code")
        logger.info(
            "email_change_code_accepted",
            identity_id=identity.id,
            namespace=identity.namespace.value,
        )
        return True

    def sweep(self) -> int:
        removed = self.store.delete_expired_verification_codes(self._now())
        if removed:
            logger.info("verification_codes_swept", removed=removed)
        return removed
