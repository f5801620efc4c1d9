"""
Credential primitives: password hashing and signed tokens.

PasswordHasher
--------------
PBKDF2-HMAC-SHA256 with a fresh 16-byte salt per hash.  Stored format is
``hex(salt) + ":" + hex(derived_key)``.  Verification re-derives with the
stored salt and compares digests with ``hmac.compare_digest`` so the time
taken does not depend on how many leading bytes match.

TokenIssuer
-----------
HS256 JWTs (PyJWT).  Access and refresh tokens are signed with *different*
secrets, so leaking the access secret does not allow minting refresh
tokens.  Access tokens carry a snapshot of the user's permissions taken at
issuance; permission changes become visible on the next refresh, not on
the next request.  Every verification failure collapses to a single
``INVALID_TOKEN`` error so callers cannot learn why a token was rejected.
"""
import enum
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable

import jwt

from app.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

DEFAULT_ITERATIONS = 100_000
SALT_BYTES = 16
KEY_BYTES = 32  # 256-bit derived key


class PasswordHasher:
    def __init__(self, iterations: int = DEFAULT_ITERATIONS) -> None:
        if iterations < 1:
            raise ValueError("iterations must be positive")
        self.iterations = iterations

    def _derive(self, password: str, salt: bytes) -> bytes:
        return hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), salt, self.iterations, dklen=KEY_BYTES
        )

    def hash(self, password: str) -> str:
        """Return ``salt:hash`` (both hex) for *password*."""
        salt = secrets.token_bytes(SALT_BYTES)
        return f"{salt.hex()}:{self._derive(password, salt).hex()}"

    def verify(self, password: str, stored_hash: str) -> bool:
        """
        Return True when *password* matches *stored_hash*.

        A malformed stored value (missing separator, bad hex, wrong key
        length) yields False rather than an exception.
        """
        if not isinstance(stored_hash, str):
            return False
        salt_hex, sep, key_hex = stored_hash.partition(":")
        if not sep or not salt_hex or not key_hex:
            return False
        try:
            salt = bytes.fromhex(salt_hex)
            expected = bytes.fromhex(key_hex)
        except ValueError:
            return False
        if len(expected) != KEY_BYTES:
            return False
        return hmac.compare_digest(self._derive(password, salt), expected)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

class TokenKind(str, enum.Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPayload:
    user_id: int
    kind: TokenKind
    email: str | None = None
    role: str | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)
    expires_at: datetime | None = None


class TokenIssuer:
    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
        algorithm: str = "HS256",
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token secrets must not be empty")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {
            TokenKind.ACCESS: access_secret,
            TokenKind.REFRESH: refresh_secret,
        }
        self._ttls = {TokenKind.ACCESS: access_ttl, TokenKind.REFRESH: refresh_ttl}
        self._algorithm = algorithm

    def _sign(self, kind: TokenKind, claims: dict) -> str:
        now = datetime.now(timezone.utc)
        to_encode = dict(claims)
        to_encode.update(
            {
                "type": kind.value,
                "iat": now,
                "exp": now + self._ttls[kind],
                "jti": secrets.token_hex(8),
            }
        )
        return jwt.encode(to_encode, self._secrets[kind], algorithm=self._algorithm)

    def issue_access(
        self, user_id: int, email: str, role: str, permissions: Iterable[str]
    ) -> str:
        return self._sign(
            TokenKind.ACCESS,
            {
                "sub": str(user_id),
                "email": email,
                "role": role,
                "permissions": sorted(set(permissions)),
            },
        )

    def issue_refresh(self, user_id: int) -> str:
        return self._sign(TokenKind.REFRESH, {"sub": str(user_id)})

    def verify(self, token: str, kind: TokenKind) -> TokenPayload:
        """
        Verify signature, expiry and token type.

        Raises:
            AuthenticationError: ``INVALID_TOKEN`` for any failure.
        """
        try:
            claims = jwt.decode(
                token,
                self._secrets[kind],
                algorithms=[self._algorithm],
                options={"require": ["exp", "sub", "type"]},
            )
            if claims.get("type") != kind.value:
                raise jwt.InvalidTokenError("token type mismatch")
            user_id = int(claims["sub"])
            permissions = claims.get("permissions", [])
            if not isinstance(permissions, list):
                raise jwt.InvalidTokenError("malformed permissions claim")
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            logger.warning("Token verification failed (%s token)", kind.value)
            logger.debug("Token rejected: %s", type(exc).__name__)
            raise AuthenticationError("Invalid token", "INVALID_TOKEN") from None

        return TokenPayload(
            user_id=user_id,
            kind=kind,
            email=claims.get("email"),
            role=claims.get("role"),
            permissions=frozenset(permissions),
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )
