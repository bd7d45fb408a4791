from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Namespace(str, Enum):
    """Disjoint identity collections; an id is only unique within its namespace."""

    USER = "user"
    ADMIN = "admin"


# Login and reset probe namespaces in this order
NAMESPACE_PROBE_ORDER = (Namespace.USER, Namespace.ADMIN)


@dataclass
class Identity:
    id: int
    namespace: Namespace
    email: str
    name: str
    mobile: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UserSession:
    id: int
    identity_id: int
    namespace: Namespace
    session_token: str
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    last_activity_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)


@dataclass
class PasswordResetToken:
    id: int
    identity_id: int
    namespace: Namespace
    token: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.used_at is None and (now or utcnow()) < self.expires_at


@dataclass
class EmailVerificationCode:
    id: int
    identity_id: int
    namespace: Namespace
    email: str
    code_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
