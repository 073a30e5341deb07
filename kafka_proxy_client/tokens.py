"""Bearer token value type and renewal cache."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

_LOGGER = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600
MIN_TOKEN_LIFETIME = 60
EXPIRY_MARGIN = 30

_NEVER = datetime.max.replace(tzinfo=UTC)


@dataclass(frozen=True)
class AccessToken:
    """Bearer credential with the instant it should stop being used."""

    token: str = field(repr=False)
    expires_at: datetime

    @classmethod
    def from_lifetime(
        cls,
        token: str,
        expires_in: int = DEFAULT_EXPIRES_IN,
        *,
        now: datetime | None = None,
    ) -> AccessToken:
        """Build a token from a server-declared lifetime in seconds.

        The usable lifetime is shortened by EXPIRY_MARGIN but never drops
        below MIN_TOKEN_LIFETIME.
        """
        issued_at = now if now is not None else datetime.now(tz=UTC)
        lifetime = max(MIN_TOKEN_LIFETIME, expires_in - EXPIRY_MARGIN)
        return cls(token=token, expires_at=issued_at + timedelta(seconds=lifetime))

    @classmethod
    def static(cls, token: str) -> AccessToken:
        """Wrap an externally supplied token whose lifetime is unknown."""
        return cls(token=token, expires_at=_NEVER)

    def is_expired(self, now: datetime | None = None) -> bool:
        current = now if now is not None else datetime.now(tz=UTC)
        return current >= self.expires_at

    @property
    def authorization(self) -> str:
        return f"Bearer {self.token}"


def bearer_header(token: AccessToken | str) -> dict[str, str]:
    """Return an Authorization header for a token or raw token string."""
    if isinstance(token, AccessToken):
        return {"Authorization": token.authorization}
    return {"Authorization": f"Bearer {token}"}


class TokenCache:
    """Hand out a valid token, acquiring a fresh one once it expires.

    Usage:
        cache = TokenCache(auth_client.acquire_token)
        token = await cache.get()
    """

    def __init__(
        self,
        acquire: Callable[[], Awaitable[AccessToken]],
        *,
        token: AccessToken | None = None,
    ) -> None:
        self._acquire = acquire
        self._token = token
        self._lock = asyncio.Lock()

    @property
    def current(self) -> AccessToken | None:
        return self._token

    async def get(self) -> AccessToken:
        """Return the cached token, renewing it if it has expired."""
        async with self._lock:
            if self._token is None or self._token.is_expired():
                _LOGGER.debug("Acquiring access token")
                self._token = await self._acquire()
                _LOGGER.info("Access token valid until %s", self._token.expires_at)
            return self._token

    def invalidate(self) -> None:
        """Drop the cached token so the next get() acquires a new one."""
        self._token = None
