from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

from gatehide.logging import get_logger
from gatehide.service.errors import SessionNotFoundError
from gatehide.storage.models import Namespace, UserSession

if TYPE_CHECKING:
    from gatehide.service.auth import AuthStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class ActiveSession:
    """A listed session plus whether it carries the caller's own token."""

    session: UserSession
    is_current: bool


class SessionRegistry:
    """Per-device session records bound to issued bearer tokens.

    A session is Active until revoked (Inactive, terminal) or until its
    ``expires_at`` passes (Expired, terminal). Expired rows stay in the store
    until ``sweep`` deletes them.
    """

    def __init__(self, store: "AuthStore") -> None:
        self.store = store

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_session(
        self,
        identity_id: int,
        namespace: Namespace,
        token: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> UserSession:
        sess = self.store.create_session(
            identity_id,
            namespace,
            token,
            expires_at,
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(
            "session_created",
            session_id=sess.id,
            identity_id=identity_id,
            namespace=namespace.value,
            expires_at=expires_at.isoformat(),
        )
        return sess

    def find_by_token(self, token: str) -> Optional[UserSession]:
        return self.store.get_session_by_token(token)

    def list_active(
        self, namespace: Namespace, identity_id: int, current_token: Optional[str] = None
    ) -> List[ActiveSession]:
        rows = self.store.list_active_sessions(namespace, identity_id, self._now())
        return [
            ActiveSession(
                session=row,
                is_current=bool(current_token)
                and hmac.compare_digest(row.session_token, current_token),
            )
            for row in rows
        ]

    def touch(self, session_id: int) -> None:
        try:
            self.store.touch_session(session_id, self._now())
        except Exception as exc:
            logger.warning("session_touch_failed", session_id=session_id, error=str(exc))

    def rotate(
        self, sess: UserSession, new_token: str, expires_at: datetime
    ) -> Optional[UserSession]:
        """Move a session onto a refreshed token and that token's expiry."""
        rotated = self.store.rotate_session_token(sess.id, new_token, expires_at)
        if rotated:
            logger.info("session_rotated", session_id=sess.id)
        return rotated

    def revoke_one(self, session_id: int, namespace: Namespace, identity_id: int) -> None:
        sess = self.store.get_session(session_id)
        # Missing, foreign and already-inactive sessions look the same to the caller
        if (
            not sess
            or sess.namespace != namespace
            or sess.identity_id != identity_id
            or not sess.is_valid(self._now())
        ):
            raise SessionNotFoundError("session not found")
        if not self.store.deactivate_session(session_id):
            raise SessionNotFoundError("session not found")
        logger.info(
            "session_revoked",
            session_id=session_id,
            identity_id=identity_id,
            namespace=namespace.value,
        )

    def revoke_all_others(
        self, namespace: Namespace, identity_id: int, current_token: str
    ) -> int:
        count = self.store.deactivate_identity_sessions(
            namespace, identity_id, except_token=current_token
        )
        logger.info(
            "sessions_revoked_others",
            identity_id=identity_id,
            namespace=namespace.value,
            count=count,
        )
        return count

    def revoke_all(self, namespace: Namespace, identity_id: int) -> int:
        count = self.store.deactivate_identity_sessions(namespace, identity_id)
        logger.info(
            "sessions_revoked_all",
            identity_id=identity_id,
            namespace=namespace.value,
            count=count,
        )
        return count

    def sweep(self) -> int:
        removed = self.store.delete_expired_sessions(self._now())
        if removed:
            logger.info("sessions_swept", removed=removed)
        return removed
