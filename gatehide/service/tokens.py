from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from gatehide.config import Settings
from gatehide.logging import get_logger
from gatehide.service.errors import (
    ExpiredTokenError,
    InvalidTokenError,
    MalformedTokenError,
)
from gatehide.storage.models import Namespace

logger = get_logger(__name__)

# Only HS256 is ever accepted; any other header alg is rejected before the
# signature is looked at.
ALLOWED_ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("user_id", "user_type", "email", "name", "iat", "nbf", "exp", "iss", "sub")


@dataclass(frozen=True)
class TokenClaims:
    identity_id: int
    namespace: Namespace
    email: str
    name: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    issuer: str
    subject: str
    token_id: Optional[str] = None
    auth_time: Optional[datetime] = None
    session_bound: bool = False


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    claims: TokenClaims


def _from_ts(value: int) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenIssuer:
    """Creates, validates and reissues HS256 bearer tokens.

    Two lifetimes exist: ``jwt_expiration_hours`` for ordinary logins and
    ``remember_me_ttl_days`` when the caller asked to be remembered. Tokens
    are stateless; pairing with a session row happens in the auth service.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._leeway = timedelta(seconds=settings.jwt_leeway_seconds)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def ttl_for(self, remember: bool) -> timedelta:
        if remember:
            return timedelta(days=self.settings.remember_me_ttl_days)
        return timedelta(hours=self.settings.jwt_expiration_hours)

    def issue(
        self,
        identity_id: int,
        namespace: Namespace,
        email: str,
        name: str,
        *,
        remember: bool = False,
        auth_time: Optional[datetime] = None,
        session_bound: bool = False,
    ) -> IssuedToken:
        now = self._now()
        iat = int(now.timestamp())
        exp = int((now + self.ttl_for(remember)).timestamp())
        payload: dict[str, Any] = {
            "user_id": identity_id,
            "user_type": namespace.value,
            "email": email,
            "name": name,
            "iat": iat,
            "nbf": iat,
            "exp": exp,
            "iss": self.settings.jwt_issuer,
            "sub": str(identity_id),
            # Two tokens minted in the same second must still differ
            "jti": uuid.uuid4().hex,
            "auth_time": int(auth_time.timestamp()) if auth_time else iat,
        }
        if session_bound:
            # Refreshing this token requires its live session row
            payload["sess"] = True
        token = self._encode_jwt(payload)
        claims = self._claims_from_payload(payload)
        return IssuedToken(token=token, expires_at=claims.expires_at, claims=claims)

    def validate(self, token: str) -> TokenClaims:
        payload = self._decode_jwt(token)
        claims = self._claims_from_payload(payload)
        now = self._now()
        if now >= claims.expires_at + self._leeway:
            raise ExpiredTokenError("token has expired")
        if now + self._leeway < claims.not_before:
            raise InvalidTokenError("token is not yet valid")
        return claims

    def refresh(self, token: str, *, remember: bool = False) -> IssuedToken:
        """Mint a brand-new token for the same identity.

        The original login time travels along in ``auth_time`` so the
        cumulative lifetime can be capped by ``refresh_max_lifetime_days``.
        """
        claims = self.validate(token)
        auth_time = claims.auth_time or claims.issued_at
        max_days = self.settings.refresh_max_lifetime_days
        if max_days and self._now() >= auth_time + timedelta(days=max_days):
            logger.info(
                "token_refresh_lifetime_exceeded",
                identity_id=claims.identity_id,
                namespace=claims.namespace.value,
            )
            raise ExpiredTokenError(
                "login is too old to refresh; sign in again",
                detail={"max_lifetime_days": max_days},
            )
        return self.issue(
            claims.identity_id,
            claims.namespace,
            claims.email,
            claims.name,
            remember=remember,
            auth_time=auth_time,
            session_bound=claims.session_bound,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": ALLOWED_ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise MalformedTokenError("token is empty")
        if not token.isascii():
            raise MalformedTokenError("token contains non-ASCII characters")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedTokenError("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise MalformedTokenError("token header is not valid JSON")
        if not isinstance(header, dict):
            raise MalformedTokenError("token header is not an object")
        if header.get("alg") != ALLOWED_ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidTokenError("unexpected signing algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("token payload is not valid JSON")
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload is not an object")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("token issuer mismatch")
        return payload

    def _claims_from_payload(self, payload: dict[str, Any]) -> TokenClaims:
        missing = [key for key in _REQUIRED_CLAIMS if key not in payload]
        if missing:
            raise MalformedTokenError(
                "token is missing required claims", detail={"missing": missing}
            )
        try:
            namespace = Namespace(payload["user_type"])
            auth_time = payload.get("auth_time")
            return TokenClaims(
                identity_id=int(payload["user_id"]),
                namespace=namespace,
                email=str(payload["email"]),
                name=str(payload["name"]),
                issued_at=_from_ts(payload["iat"]),
                not_before=_from_ts(payload["nbf"]),
                expires_at=_from_ts(payload["exp"]),
                issuer=str(payload["iss"]),
                subject=str(payload["sub"]),
                token_id=payload.get("jti"),
                auth_time=_from_ts(auth_time) if auth_time is not None else None,
                session_bound=bool(payload.get("sess", False)),
            )
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise MalformedTokenError(
                "token claims have unexpected types", detail={"error": str(exc)}
            )
