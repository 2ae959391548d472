# sso_portal/auth/tokens.py
"""
Session tokens issued after a successful SAML handshake.

Both tokens are HS256 JWTs:
- access token: 24h by default, sent as "Authorization: Bearer <token>"
- refresh token: 30 days by default, exchanged for a new pair

The pair shares a random session id (sid). Logout revokes the sid in the
store; every validation reads the store, so revocation applies to all
requests immediately.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from sso_portal.auth.errors import Unauthenticated
from sso_portal.storage.users import LocalIdentity, UserStore

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class SessionToken:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class SessionIssuer:
    """Mints, validates, refreshes and revokes session tokens."""

    def __init__(
        self,
        store: UserStore,
        secret: str,
        access_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(days=30),
        issuer: str = "sso-portal",
    ):
        self.store = store
        self._secret = secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.issuer = issuer

    def issue(self, identity: LocalIdentity) -> SessionToken:
        now = datetime.now(timezone.utc)
        sid = secrets.token_urlsafe(24)
        expires_at = now + self.access_ttl
        refresh_expires_at = now + self.refresh_ttl

        access = self._encode(identity, ACCESS, sid, now, expires_at)
        refresh = self._encode(identity, REFRESH, sid, now, refresh_expires_at)

        logger.info(f"Issued session for user {identity.id}")
        return SessionToken(
            access_token=access,
            refresh_token=refresh,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def validate(self, access_token: str) -> LocalIdentity:
        """Return the identity behind an access token, or raise Unauthenticated."""
        claims = self._decode(access_token, ACCESS)
        return self._identity_for(claims)

    def revoke(self, access_token: str) -> None:
        """Invalidate the token's session, including its refresh token."""
        claims = self._decode(access_token, ACCESS)
        self._revoke_session(claims)
        logger.info(f"Revoked session for user {claims['sub']}")

    def refresh(self, refresh_token: str) -> SessionToken:
        """Exchange a refresh token for a new pair. The old session is revoked."""
        claims = self._decode(refresh_token, REFRESH)
        identity = self._identity_for(claims)
        self._revoke_session(claims)
        return self.issue(identity)

    def _encode(self, identity, token_type, sid, issued_at, expires_at) -> str:
        payload = {
            "sub": str(identity.id),
            "email": identity.email,
            "typ": token_type,
            "sid": sid,
            "jti": secrets.token_urlsafe(16),
            "iss": self.issuer,
            "iat": issued_at,
            "exp": expires_at,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def _decode(self, token: str, token_type: str) -> dict:
        if not token:
            raise Unauthenticated("No token supplied")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={"require": ["exp", "iat", "sub", "sid", "typ"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise Unauthenticated("Token expired") from e
        except jwt.InvalidTokenError as e:
            raise Unauthenticated(f"Invalid token: {e}") from e

        if claims["typ"] != token_type:
            raise Unauthenticated(f"Expected {token_type} token, got {claims['typ']}")
        if self.store.is_session_revoked(claims["sid"]):
            raise Unauthenticated("Session has been revoked")
        return claims

    def _identity_for(self, claims: dict) -> LocalIdentity:
        try:
            user_id = int(claims["sub"])
        except ValueError as e:
            raise Unauthenticated("Malformed subject") from e
        identity = self.store.get(user_id)
        if identity is None or not identity.is_active:
            raise Unauthenticated("Unknown or inactive user")
        return identity

    def _revoke_session(self, claims: dict) -> None:
        # Keep the entry as long as any token of the pair could still be valid
        expires_at = datetime.fromtimestamp(claims["iat"], tz=timezone.utc) + self.refresh_ttl
        self.store.revoke_session(claims["sid"], expires_at)
