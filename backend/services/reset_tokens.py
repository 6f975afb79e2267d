"""
Password-Set Tokens
===================
One-time tokens mailed to buyers whose account was created by a purchase.
Only the HMAC hash and expiry are persisted on the user; the raw token is
returned once for the email link.
"""

import asyncio
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlencode

import structlog

from config import settings
from repositories.interfaces import IUserRepository
from schemas.payment_models import User


class ResetTokenService:

    def __init__(
        self,
        users: IUserRepository,
        secret: str = settings.RESET_TOKEN_SECRET,
        ttl: timedelta = timedelta(minutes=settings.RESET_TOKEN_TTL_MINUTES),
        frontend_url: str = settings.FRONTEND_URL,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.users = users
        self._secret = secret.encode()
        self.ttl = ttl
        self.frontend_url = frontend_url.rstrip("/")
        self._clock = clock
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="reset_tokens")

    def _hash_token(self, raw_token: str) -> str:
        return hmac.new(self._secret, raw_token.encode(), hashlib.sha256).hexdigest()

    async def issue(self, user: User) -> Optional[str]:
        """
        Mint a token for ``user`` and persist its hash.

        Returns None while an unexpired token already exists, so duplicate
        triggers never invalidate a link that was already mailed.
        """
        async with self._lock:
            current = await self.users.get_by_email(user.email) or user
            now = self._clock()
            if (
                current.reset_token_hash
                and current.reset_token_expires_at
                and current.reset_token_expires_at > now
            ):
                self._logger.info("reset_token_suppressed", user_id=current.user_id)
                return None

            raw_token = secrets.token_hex(32)
            updated = current.model_copy(update={
                "reset_token_hash": self._hash_token(raw_token),
                "reset_token_expires_at": now + self.ttl,
            })
            await self.users.save(updated)

        self._logger.info("reset_token_issued", user_id=updated.user_id,
                          expires_at=updated.reset_token_expires_at.isoformat())
        return raw_token

    async def verify(self, email: str, raw_token: str) -> bool:
        user = await self.users.get_by_email(email)
        if not user or not user.reset_token_hash or not user.reset_token_expires_at:
            return False
        if user.reset_token_expires_at <= self._clock():
            return False
        return hmac.compare_digest(user.reset_token_hash, self._hash_token(raw_token or ""))

    async def consume(self, email: str, raw_token: str) -> bool:
        """Verify and clear the token so the link works once."""
        async with self._lock:
            if not await self.verify(email, raw_token):
                return False
            user = await self.users.get_by_email(email)
            await self.users.save(user.model_copy(update={
                "reset_token_hash": None,
                "reset_token_expires_at": None,
            }))
        self._logger.info("reset_token_consumed", user_id=user.user_id)
        return True

    def build_set_password_link(self, raw_token: str, email: str) -> str:
        return f"{self.frontend_url}/set-password?{urlencode({'token': raw_token, 'email': email})}"
