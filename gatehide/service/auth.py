from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from gatehide.config import Settings
from gatehide.logging import get_logger
from gatehide.service.credentials import CredentialVerifier, normalize_email
from gatehide.service.email_change import EmailChangeFlow
from gatehide.service.errors import (
    ConflictError,
    EmailConflictError,
    IdentityNotFoundError,
    IncorrectPasswordError,
    InvalidCredentialsError,
    InvalidTokenError,
    MalformedTokenError,
    ValidationError,
)
from gatehide.service.notifications import (
    NotificationDispatcher,
    dispatch_best_effort,
    password_changed_notification,
)
from gatehide.service.password_reset import (
    IssuedResetToken,
    PasswordResetFlow,
    check_new_password,
)
from gatehide.service.sessions import ActiveSession, SessionRegistry
from gatehide.service.tokens import IssuedToken, TokenClaims, TokenIssuer
from gatehide.storage.errors import ConstraintViolation
from gatehide.storage.models import (
    EmailVerificationCode,
    Identity,
    Namespace,
    PasswordResetToken,
    UserSession,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_identity(
        self,
        namespace: Namespace,
        email: str,
        name: str,
        *,
        mobile: Optional[str] = None,
    ) -> Identity: ...

    def get_identity(self, namespace: Namespace, identity_id: int) -> Optional[Identity]: ...

    def get_identity_by_email(self, namespace: Namespace, email: str) -> Optional[Identity]: ...

    def update_last_login(self, namespace: Namespace, identity_id: int, at: datetime) -> None: ...

    def update_email(
        self, namespace: Namespace, identity_id: int, email: str
    ) -> Optional[Identity]: ...

    def save_password(
        self, namespace: Namespace, identity_id: int, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(
        self, namespace: Namespace, identity_id: int
    ) -> Optional[tuple[str, str]]: ...

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
    ) -> UserSession: ...

    def get_session(self, session_id: int) -> Optional[UserSession]: ...

    def get_session_by_token(self, session_token: str) -> Optional[UserSession]: ...

    def list_active_sessions(
        self, namespace: Namespace, identity_id: int, now: datetime
    ) -> List[UserSession]: ...

    def touch_session(self, session_id: int, at: datetime) -> None: ...

    def rotate_session_token(
        self, session_id: int, session_token: str, expires_at: datetime
    ) -> Optional[UserSession]: ...

    def deactivate_session(self, session_id: int) -> bool: ...

    def deactivate_identity_sessions(
        self,
        namespace: Namespace,
        identity_id: int,
        *,
        except_token: Optional[str] = None,
    ) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def create_reset_token(
        self, namespace: Namespace, identity_id: int, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def mark_reset_token_used(self, token_hash: str, at: datetime) -> bool: ...

    def invalidate_reset_tokens(
        self, namespace: Namespace, identity_id: int, at: datetime
    ) -> int: ...

    def delete_expired_reset_tokens(self, now: datetime) -> int: ...

    def store_verification_code(
        self,
        namespace: Namespace,
        identity_id: int,
        email: str,
        code_hash: str,
        expires_at: datetime,
    ) -> EmailVerificationCode: ...

    def find_verification_code(
        self, namespace: Namespace, identity_id: int, email: str, code_hash: str
    ) -> Optional[EmailVerificationCode]: ...

    def delete_verification_code(self, code_id: int) -> bool: ...

    def delete_expired_verification_codes(self, now: datetime) -> int: ...


@dataclass(frozen=True)
class AuthContext:
    """The caller's resolved identity, threaded explicitly through handlers."""

    identity_id: int
    namespace: Namespace
    email: str
    name: str
    token: str
    session_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.namespace is Namespace.ADMIN


@dataclass(frozen=True)
class LoginResult:
    token: str
    namespace: Namespace
    identity: Identity
    expires_at: datetime
    session_id: Optional[int] = None


class BasicAuth(Protocol):
    """Stateless login and token handling."""

    async def login(
        self, email: str, password: str, *, remember: bool = False
    ) -> LoginResult: ...

    async def validate_token(self, token: str) -> TokenClaims: ...

    async def refresh_token(self, token: str, *, remember: bool = False) -> IssuedToken: ...


class SessionAwareAuth(BasicAuth, Protocol):
    """Login bound to a server-side session that can be listed and revoked."""

    async def login_with_session(
        self,
        email: str,
        password: str,
        *,
        remember: bool = False,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult: ...

    async def authenticate(self, authorization: Optional[str]) -> AuthContext: ...

    async def list_sessions(self, ctx: AuthContext) -> List[ActiveSession]: ...

    async def revoke_session(self, ctx: AuthContext, session_id: int) -> None: ...

    async def revoke_other_sessions(self, ctx: AuthContext) -> int: ...

    async def revoke_all_sessions(self, ctx: AuthContext) -> int: ...


class AuthService:
    """Login, token lifecycle, sessions, password reset and email change.

    Satisfies both ``BasicAuth`` and ``SessionAwareAuth``. Every collaborator
    is passed in already built; see ``Runtime`` for the production wiring.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        tokens: TokenIssuer,
        credentials: CredentialVerifier,
        sessions: SessionRegistry,
        password_reset: PasswordResetFlow,
        email_change: EmailChangeFlow,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.tokens = tokens
        self.credentials = credentials
        self.sessions = sessions
        self.password_reset = password_reset
        self.email_change = email_change
        self.notifier = notifier
        self.logger = logger

    @classmethod
    def build(
        cls,
        store: AuthStore,
        settings: Settings,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> "AuthService":
        credentials = CredentialVerifier(store)
        return cls(
            store,
            settings,
            tokens=TokenIssuer(settings),
            credentials=credentials,
            sessions=SessionRegistry(store),
            password_reset=PasswordResetFlow(store, credentials, settings, notifier),
            email_change=EmailChangeFlow(store, credentials, settings, notifier),
            notifier=notifier,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # login and tokens
    def _record_login(self, identity: Identity) -> None:
        try:
            self.store.update_last_login(identity.namespace, identity.id, self._now())
        except Exception as exc:
            self.logger.warning(
                "last_login_update_failed",
                identity_id=identity.id,
                namespace=identity.namespace.value,
                error=str(exc),
            )

    def _check_credentials(self, email: str, password: str) -> Identity:
        identity = self.credentials.authenticate(email, password)
        if not identity:
            raise InvalidCredentialsError("invalid email or password")
        return identity

    async def login(
        self, email: str, password: str, *, remember: bool = False
    ) -> LoginResult:
        return self._login(email, password, remember=remember, session_bound=False)

    def _login(
        self, email: str, password: str, *, remember: bool, session_bound: bool
    ) -> LoginResult:
        identity = self._check_credentials(email, password)
        issued = self.tokens.issue(
            identity.id,
            identity.namespace,
            identity.email,
            identity.name,
            remember=remember,
            session_bound=session_bound,
        )
        self._record_login(identity)
        self.logger.info(
            "login_succeeded",
            identity_id=identity.id,
            namespace=identity.namespace.value,
            remember=remember,
        )
        return LoginResult(
            token=issued.token,
            namespace=identity.namespace,
            identity=identity,
            expires_at=issued.expires_at,
        )

    async def login_with_session(
        self,
        email: str,
        password: str,
        *,
        remember: bool = False,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        result = self._login(email, password, remember=remember, session_bound=True)
        sess = self.sessions.create_session(
            result.identity.id,
            result.namespace,
            result.token,
            result.expires_at,
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return LoginResult(
            token=result.token,
            namespace=result.namespace,
            identity=result.identity,
            expires_at=result.expires_at,
            session_id=sess.id,
        )

    async def validate_token(self, token: str) -> TokenClaims:
        return self.tokens.validate(token)

    async def refresh_token(self, token: str, *, remember: bool = False) -> IssuedToken:
        """Issue a replacement token; a bound session moves to the new token."""
        claims = self.tokens.validate(token)
        sess = self.sessions.find_by_token(token)
        if claims.session_bound and not sess:
            # Superseded by an earlier refresh, or its session is gone
            raise InvalidTokenError("token is no longer bound to a session")
        if sess and not sess.is_valid(self._now()):
            raise InvalidTokenError("session has been revoked")
        issued = self.tokens.refresh(token, remember=remember)
        if sess:
            if not self.sessions.rotate(sess, issued.token, issued.expires_at):
                raise InvalidTokenError("session has been revoked")
        self.logger.info(
            "token_refreshed",
            identity_id=issued.claims.identity_id,
            namespace=issued.claims.namespace.value,
            session_bound=sess is not None,
        )
        return issued

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self.extract_bearer(authorization)
        if not token:
            raise MalformedTokenError("missing bearer token")
        claims = self.tokens.validate(token)
        sess = self.sessions.find_by_token(token)
        if (
            not sess
            or sess.namespace != claims.namespace
            or sess.identity_id != claims.identity_id
            or not sess.is_valid(self._now())
        ):
            raise InvalidTokenError("session is not active")
        self.sessions.touch(sess.id)
        return AuthContext(
            identity_id=claims.identity_id,
            namespace=claims.namespace,
            email=claims.email,
            name=claims.name,
            token=token,
            session_id=sess.id,
        )

    async def logout(self, ctx: AuthContext) -> None:
        if ctx.session_id is None:
            return
        if self.store.deactivate_session(ctx.session_id):
            self.logger.info(
                "logout",
                identity_id=ctx.identity_id,
                namespace=ctx.namespace.value,
                session_id=ctx.session_id,
            )

    # sessions
    async def list_sessions(self, ctx: AuthContext) -> List[ActiveSession]:
        return self.sessions.list_active(ctx.namespace, ctx.identity_id, ctx.token)

    async def revoke_session(self, ctx: AuthContext, session_id: int) -> None:
        self.sessions.revoke_one(session_id, ctx.namespace, ctx.identity_id)

    async def revoke_other_sessions(self, ctx: AuthContext) -> int:
        return self.sessions.revoke_all_others(ctx.namespace, ctx.identity_id, ctx.token)

    async def revoke_all_sessions(self, ctx: AuthContext) -> int:
        return self.sessions.revoke_all(ctx.namespace, ctx.identity_id)

    # identities
    async def get_identity(self, ctx: AuthContext) -> Identity:
        identity = self.store.get_identity(ctx.namespace, ctx.identity_id)
        if not identity:
            raise IdentityNotFoundError("account not found")
        return identity

    async def check_email_exists(self, email: str) -> bool:
        return bool(self.credentials.lookup_all(email))

    async def create_identity(
        self,
        namespace: Namespace,
        email: str,
        name: str,
        password: str,
        *,
        mobile: Optional[str] = None,
    ) -> Identity:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("invalid email address", detail={"field": "email"})
        check_new_password(password, password, self.settings.min_password_length)
        # Emails are unique across both namespaces so login resolves one identity
        if self.credentials.lookup_all(normalized):
            raise EmailConflictError("email is already in use")
        try:
            identity = self.store.create_identity(namespace, normalized, name, mobile=mobile)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        self.credentials.set_password(namespace, identity.id, password)
        self.logger.info(
            "identity_created", identity_id=identity.id, namespace=namespace.value
        )
        return identity

    async def change_password(
        self,
        ctx: AuthContext,
        current_password: str,
        new_password: str,
        confirm_password: str,
    ) -> int:
        """Replace the caller's password and sign out their other devices.

        Returns the number of other sessions revoked.
        """
        check_new_password(new_password, confirm_password, self.settings.min_password_length)
        identity = await self.get_identity(ctx)
        if not self.credentials.verify_password(identity.namespace, identity.id, current_password):
            raise IncorrectPasswordError("current password is incorrect")
        self.credentials.set_password(identity.namespace, identity.id, new_password)
        self.store.invalidate_reset_tokens(identity.namespace, identity.id, self._now())
        revoked = self.sessions.revoke_all_others(identity.namespace, identity.id, ctx.token)
        self.logger.info(
            "password_changed",
            identity_id=identity.id,
            namespace=identity.namespace.value,
            sessions_revoked=revoked,
        )
        await asyncio.to_thread(
            dispatch_best_effort,
            self.notifier,
            identity.email,
            password_changed_notification(self.settings, user_name=identity.name),
            kind="password_changed",
        )
        return revoked

    # password reset
    async def forgot_password(self, email: str) -> IssuedResetToken:
        return await asyncio.to_thread(self.password_reset.initiate, email)

    async def validate_reset_token(self, token: str) -> bool:
        self.password_reset.validate(token)
        return True

    async def reset_password(
        self, token: str, email: str, new_password: str, confirm_password: str
    ) -> Identity:
        identity = self.password_reset.complete(token, email, new_password, confirm_password)
        # Anyone holding an old token loses access once the password is reset
        self.sessions.revoke_all(identity.namespace, identity.id)
        return identity

    # email change
    async def send_email_verification(self, ctx: AuthContext, new_email: str) -> str:
        identity = await self.get_identity(ctx)
        return await asyncio.to_thread(self.email_change.request_change, identity, new_email)

    async def verify_email_code(self, ctx: AuthContext, new_email: str, code: str) -> bool:
        """Consume the code and move the caller's account to ``new_email``."""
        identity = await self.get_identity(ctx)
        owners = self.credentials.lookup_all(new_email)
        if any(o.namespace != identity.namespace or o.id != identity.id for o in owners):
            raise EmailConflictError("email is already in use")
        self.email_change.confirm(identity, new_email, code)
        try:
            updated = self.store.update_email(
                identity.namespace, identity.id, normalize_email(new_email)
            )
        except ConstraintViolation:
            raise EmailConflictError("email is already in use")
        if not updated:
            raise IdentityNotFoundError("account not found")
        self.logger.info(
            "email_changed", identity_id=identity.id, namespace=identity.namespace.value
        )
        return True

    # maintenance
    def sweep(self) -> dict[str, int]:
        """Purge expired sessions, reset tokens and verification codes."""
        return {
            "sessions": self.sessions.sweep(),
            "reset_tokens": self.password_reset.sweep(),
            "verification_codes": self.email_change.sweep(),
        }


__all__ = [
    "AuthStore",
    "AuthContext",
    "LoginResult",
    "BasicAuth",
    "SessionAwareAuth",
    "AuthService",
]
