import logging
import secrets
import string
from typing import Protocol

import redis.asyncio as redis

from app.exceptions import BusinessError

logger = logging.getLogger(__name__)

KEY_PREFIX = "captcha:"


class CaptchaStore(Protocol):
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def delete(self, key: str) -> None: ...


class RedisCaptchaStore:
    """
    Captcha store backed by Redis key expiry.

    Read failures are treated as a miss, so an unavailable Redis makes
    every captcha look expired (fail closed) instead of letting requests
    through unchecked.
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._redis: redis.Redis | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection pool.  Called once at application startup."""
        self._redis = redis.from_url(
            self._url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        try:
            await self._redis.ping()
            logger.info("Redis connected: %s", self._url)
        except Exception as exc:  # pragma: no cover
            logger.warning("Redis ping failed, captcha verification will fail: %s", exc)

    async def disconnect(self) -> None:
        """Close the connection pool.  Called once at application shutdown."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Store operations
    # ------------------------------------------------------------------

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if not self._redis:
            raise RuntimeError("captcha store is not connected")
        await self._redis.set(KEY_PREFIX + key, value, ex=ttl_seconds)

    async def get(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            return await self._redis.get(KEY_PREFIX + key)
        except Exception as exc:
            logger.warning("Captcha GET failed: %s", exc)
            return None

    async def delete(self, key: str) -> None:
        if not self._redis:
            return
        try:
            await self._redis.delete(KEY_PREFIX + key)
        except Exception as exc:
            logger.warning("Captcha DELETE failed: %s", exc)


def generate_captcha(length: int = 4) -> str:
    """Return a random lowercase ASCII code of *length* letters."""
    return "".join(secrets.choice(string.ascii_lowercase) for _ in range(length))


class CaptchaService:
    """Issues one-time captcha codes and verifies them against the store."""

    def __init__(self, store: CaptchaStore, ttl_seconds: int = 300, length: int = 4) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._length = length

    async def issue(self) -> dict:
        key = secrets.token_urlsafe(16)
        code = generate_captcha(self._length)
        await self._store.set(key, code, self._ttl)
        return {"key": key, "captcha": code, "expires_in": self._ttl}

    async def verify(self, key: str, answer: str) -> None:
        """
        Consume the captcha stored under *key* and compare it with *answer*.

        The stored value is deleted as soon as it has been read, whether the
        answer matches or not, so every code can be tried exactly once.

        Raises:
            BusinessError: ``CAPTCHA_EXPIRED`` when nothing is stored under
                *key*; ``CAPTCHA_INVALID`` on a mismatch.
        """
        stored = await self._store.get(key)
        if stored is None:
            raise BusinessError("Captcha expired or not found", "CAPTCHA_EXPIRED")
        await self._store.delete(key)
        expected = stored.lower().encode("utf-8")
        given = (answer or "").strip().lower().encode("utf-8")
        if not secrets.compare_digest(expected, given):
            raise BusinessError("Captcha is incorrect", "CAPTCHA_INVALID")
