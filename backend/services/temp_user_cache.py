"""
Pending Signup Cache
====================
Time-boxed store for signups awaiting OTP confirmation, keyed by email.
Entries expire individually; ``evict_expired`` sweeps them explicitly.

Standalone utility for the signup flow that sits in front of checkout;
nothing in the payment pipeline reads or writes it.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Generic, Optional, TypeVar

import structlog

from config import settings

V = TypeVar("V")


class ExpiringStore(Generic[V]):

    def __init__(
        self,
        ttl: timedelta = timedelta(seconds=settings.SIGNUP_CACHE_TTL_SECONDS),
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[V, datetime]] = {}
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="signup_cache")

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    async def set(self, email: str, value: V, ttl: Optional[timedelta] = None) -> None:
        async with self._lock:
            self._entries[self._key(email)] = (value, self._clock() + (ttl or self.ttl))

    async def get(self, email: str) -> Optional[V]:
        key = self._key(email)
        async with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            value, expires = entry
            if self._clock() >= expires:
                del self._entries[key]
                return None
            return value

    async def pop(self, email: str) -> Optional[V]:
        key = self._key(email)
        async with self._lock:
            entry = self._entries.pop(key, None)
        if not entry or self._clock() >= entry[1]:
            return None
        return entry[0]

    async def evict_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [k for k, (_, expires) in self._entries.items() if now >= expires]
            for key in expired:
                del self._entries[key]
        if expired:
            self._logger.info("signup_cache_evicted", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
