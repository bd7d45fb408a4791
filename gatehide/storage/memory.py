from __future__ import annotations

import hmac
import json
import threading
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from gatehide.logging import get_logger
from gatehide.storage.errors import ConstraintViolation
from gatehide.storage.models import (
    EmailVerificationCode,
    Identity,
    Namespace,
    PasswordResetToken,
    UserSession,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    When ``fs_root`` is given, every mutation is snapshotted to
    ``<fs_root>/state/memory_store.json`` and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[Namespace, Dict[int, Identity]] = {
            ns: {} for ns in Namespace
        }
        self.credentials: Dict[tuple[Namespace, int], tuple[str, str]] = {}
        self.sessions: Dict[int, UserSession] = {}
        self.reset_tokens: Dict[int, PasswordResetToken] = {}
        self.verification_codes: Dict[int, EmailVerificationCode] = {}
        self._seq: Dict[str, int] = {}
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _next_id(self, table: str) -> int:
        with self._data_lock:
            value = self._seq.get(table, 0) + 1
            self._seq[table] = value
            return value

    # identities
    def create_identity(
        self,
        namespace: Namespace,
        email: str,
        name: str,
        *,
        mobile: Optional[str] = None,
    ) -> Identity:
        with self._data_lock:
            table = self.identities[namespace]
            if any(existing.email == email for existing in table.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email", "namespace": namespace.value}
                )
            identity = Identity(
                id=self._next_id(f"identity:{namespace.value}"),
                namespace=namespace,
                email=email,
                name=name,
                mobile=mobile,
            )
            table[identity.id] = identity
            self._persist_state()
            return identity

    def get_identity(self, namespace: Namespace, identity_id: int) -> Optional[Identity]:
        with self._data_lock:
            return self.identities[namespace].get(identity_id)

    def get_identity_by_email(self, namespace: Namespace, email: str) -> Optional[Identity]:
        with self._data_lock:
            return next(
                (i for i in self.identities[namespace].values() if i.email == email), None
            )

    def update_last_login(
        self, namespace: Namespace, identity_id: int, at: datetime
    ) -> None:
        with self._data_lock:
            identity = self.identities[namespace].get(identity_id)
            if not identity:
                return
            identity.last_login_at = at
            self._persist_state()

    def update_email(
        self, namespace: Namespace, identity_id: int, email: str
    ) -> Optional[Identity]:
        with self._data_lock:
            table = self.identities[namespace]
            identity = table.get(identity_id)
            if not identity:
                return None
            if any(i.email == email and i.id != identity_id for i in table.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email", "namespace": namespace.value}
                )
            identity.email = email
            identity.updated_at = utcnow()
            self._persist_state()
            return identity

    def save_password(
        self, namespace: Namespace, identity_id: int, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if identity_id not in self.identities[namespace]:
                raise ConstraintViolation(
                    "identity not found for credentials",
                    {"identity_id": identity_id, "namespace": namespace.value},
                )
            self.credentials[(namespace, identity_id)] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(
        self, namespace: Namespace, identity_id: int
    ) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get((namespace, identity_id))

    # sessions
    def create_session(
        self,
        identity_id: int,
        namespace: Namespace,
        session_token: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> UserSession:
        with self._data_lock:
            if identity_id not in self.identities[namespace]:
                raise ConstraintViolation(
                    "identity does not exist",
                    {"identity_id": identity_id, "namespace": namespace.value},
                )
            if any(s.session_token == session_token for s in self.sessions.values()):
                raise ConstraintViolation("session token already registered")
            now = utcnow()
            sess = UserSession(
                id=self._next_id("session"),
                identity_id=identity_id,
                namespace=namespace,
                session_token=session_token,
                expires_at=expires_at,
                device_info=device_info,
                ip_address=ip_address,
                user_agent=user_agent,
                last_activity_at=now,
                created_at=now,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: int) -> Optional[UserSession]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_session_by_token(self, session_token: str) -> Optional[UserSession]:
        with self._data_lock:
            return next(
                (s for s in self.sessions.values() if s.session_token == session_token),
                None,
            )

    def list_active_sessions(
        self, namespace: Namespace, identity_id: int, now: datetime
    ) -> List[UserSession]:
        with self._data_lock:
            rows = [
                s
                for s in self.sessions.values()
                if s.namespace == namespace
                and s.identity_id == identity_id
                and s.is_valid(now)
            ]
            return sorted(rows, key=lambda s: (s.last_activity_at, s.id), reverse=True)

    def touch_session(self, session_id: int, at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return
            sess.last_activity_at = at
            self._persist_state()

    def rotate_session_token(
        self, session_id: int, session_token: str, expires_at: datetime
    ) -> Optional[UserSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return None
            sess.session_token = session_token
            sess.expires_at = expires_at
            sess.last_activity_at = utcnow()
            self._persist_state()
            return sess

    def deactivate_session(self, session_id: int) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            self._persist_state()
            return True

    def deactivate_identity_sessions(
        self,
        namespace: Namespace,
        identity_id: int,
        *,
        except_token: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.namespace != namespace or sess.identity_id != identity_id:
                    continue
                if except_token is not None and hmac.compare_digest(
                    sess.session_token, except_token
                ):
                    continue
                if sess.is_active:
                    sess.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.expires_at < now]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # password reset tokens
    def create_reset_token(
        self,
        namespace: Namespace,
        identity_id: int,
        token_hash: str,
        expires_at: datetime,
    ) -> PasswordResetToken:
        with self._data_lock:
            if any(t.token == token_hash for t in self.reset_tokens.values()):
                raise ConstraintViolation("reset token already exists")
            record = PasswordResetToken(
                id=self._next_id("reset_token"),
                identity_id=identity_id,
                namespace=namespace,
                token=token_hash,
                expires_at=expires_at,
            )
            self.reset_tokens[record.id] = record
            self._persist_state()
            return record

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            return next(
                (t for t in self.reset_tokens.values() if t.token == token_hash), None
            )

    def mark_reset_token_used(self, token_hash: str, at: datetime) -> bool:
        with self._data_lock:
            record = self.get_reset_token(token_hash)
            if not record or record.used_at is not None:
                return False
            record.used_at = at
            self._persist_state()
            return True

    def invalidate_reset_tokens(
        self, namespace: Namespace, identity_id: int, at: datetime
    ) -> int:
        with self._data_lock:
            count = 0
            for record in self.reset_tokens.values():
                if (
                    record.namespace == namespace
                    and record.identity_id == identity_id
                    and record.used_at is None
                ):
                    record.used_at = at
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [rid for rid, t in self.reset_tokens.items() if t.expires_at < now]
            for rid in stale:
                self.reset_tokens.pop(rid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # email verification codes
    def store_verification_code(
        self,
        namespace: Namespace,
        identity_id: int,
        email: str,
        code_hash: str,
        expires_at: datetime,
    ) -> EmailVerificationCode:
        with self._data_lock:
            stale = [
                cid
                for cid, c in self.verification_codes.items()
                if c.namespace == namespace
                and c.identity_id == identity_id
                and c.email == email
            ]
            for cid in stale:
                self.verification_codes.pop(cid, None)
            record = EmailVerificationCode(
                id=self._next_id("verification_code"),
                identity_id=identity_id,
                namespace=namespace,
                email=email,
                code_hash=code_hash,
                expires_at=expires_at,
            )
            self.verification_codes[record.id] = record
            self._persist_state()
            return record

    def find_verification_code(
        self, namespace: Namespace, identity_id: int, email: str, code_hash: str
    ) -> Optional[EmailVerificationCode]:
        with self._data_lock:
            matches = [
                c
                for c in self.verification_codes.values()
                if c.namespace == namespace
                and c.identity_id == identity_id
                and c.email == email
                and hmac.compare_digest(c.code_hash, code_hash)
            ]
            if not matches:
                return None
            return max(matches, key=lambda c: (c.created_at, c.id))

    def delete_verification_code(self, code_id: int) -> bool:
        with self._data_lock:
            removed = self.verification_codes.pop(code_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_expired_verification_codes(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                cid for cid, c in self.verification_codes.items() if c.expires_at < now
            ]
            for cid in stale:
                self.verification_codes.pop(cid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # snapshot persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(record: Any) -> dict:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, Namespace):
                data[key] = value.value
        return data

    @staticmethod
    def _deserialize(cls, raw: dict, datetime_fields: tuple[str, ...]):
        data = dict(raw)
        data["namespace"] = Namespace(data["namespace"])
        for key in datetime_fields:
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "seq": self._seq,
            "identities": [
                self._serialize(i) for table in self.identities.values() for i in table.values()
            ],
            "credentials": [
                {
                    "namespace": ns.value,
                    "identity_id": identity_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for (ns, identity_id), creds in self.credentials.items()
            ],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "reset_tokens": [self._serialize(t) for t in self.reset_tokens.values()],
            "verification_codes": [
                self._serialize(c) for c in self.verification_codes.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self._seq = {k: int(v) for k, v in data.get("seq", {}).items()}
        for raw in data.get("identities", []):
            identity = self._deserialize(
                Identity, raw, ("last_login_at", "created_at", "updated_at")
            )
            self.identities[identity.namespace][identity.id] = identity
        self.credentials = {
            (Namespace(entry["namespace"]), int(entry["identity_id"])): (
                entry["password_hash"],
                entry.get("password_algo", ""),
            )
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s.id: s
            for s in (
                self._deserialize(
                    UserSession, raw, ("expires_at", "last_activity_at", "created_at")
                )
                for raw in data.get("sessions", [])
            )
        }
        self.reset_tokens = {
            t.id: t
            for t in (
                self._deserialize(
                    PasswordResetToken, raw, ("expires_at", "used_at", "created_at")
                )
                for raw in data.get("reset_tokens", [])
            )
        }
        self.verification_codes = {
            c.id: c
            for c in (
                self._deserialize(EmailVerificationCode, raw, ("expires_at", "created_at"))
                for raw in data.get("verification_codes", [])
            )
        }
        self.logger.info(
            "memory_store_state_loaded",
            identities=sum(len(t) for t in self.identities.values()),
            sessions=len(self.sessions),
        )
        return True
