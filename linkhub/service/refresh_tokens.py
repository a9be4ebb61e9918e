from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from linkhub.logging import get_logger
from linkhub.service.errors import AuthenticationError
from linkhub.storage.errors import ConstraintViolation
from linkhub.storage.models import RefreshToken, utcnow
from linkhub.storage.repository import AuthRepository

logger = get_logger(__name__)

_TOKEN_BYTES = 48


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RefreshTokenStore:
    """Opaque, single-use refresh tokens.

    Only the SHA-256 of a token is stored. ``consume`` removes the record in
    the same atomic step that reads it, so of two concurrent refreshes with one
    token exactly one succeeds.
    """

    def __init__(
        self,
        repository: AuthRepository,
        *,
        ttl_days: int = 7,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.ttl = timedelta(days=ttl_days)
        self._clock = clock or utcnow

    def issue(self, user_id: str) -> Tuple[str, datetime]:
        now = self._clock()
        expires_at = now + self.ttl
        for _ in range(3):
            token = secrets.token_urlsafe(_TOKEN_BYTES)
            record = RefreshToken(
                token_hash=hash_refresh_token(token),
                user_id=user_id,
                created_at=now,
                expires_at=expires_at,
            )
            try:
                self.repository.save_refresh_token(record)
            except ConstraintViolation:
                continue
            return token, expires_at
        raise RuntimeError("could not allocate a unique refresh token")

    def consume(self, token: str) -> str:
        """Invalidate ``token`` and return its user id.

        Unknown, already used and expired tokens all fail the same way.
        """
        if not token:
            raise AuthenticationError("invalid or expired refresh token")
        record = self.repository.pop_refresh_token(hash_refresh_token(token))
        if record is None:
            raise AuthenticationError("invalid or expired refresh token")
        if record.expires_at <= self._clock():
            logger.info("refresh_token_expired", user_id=record.user_id)
            raise AuthenticationError("invalid or expired refresh token")
        return record.user_id

    def revoke(self, token: str) -> bool:
        if not token:
            return False
        return self.repository.delete_refresh_token(hash_refresh_token(token))

    def revoke_all(self, user_id: str) -> int:
        revoked = 0
        for record in self.repository.list_refresh_tokens(user_id):
            if self.repository.delete_refresh_token(record.token_hash):
                revoked += 1
        if revoked:
            logger.info("refresh_tokens_revoked", user_id=user_id, count=revoked)
        return revoked
