"""
Bearer token storage. Only the SHA-256 digest of a token is ever persisted.
"""

import logging
from datetime import timedelta

from sqlalchemy import select, update

from ..config import TOKEN_TTL_DAYS
from ..db import Storage
from ..models.token import ApiToken
from ..utils.crypto import generate_token, hash_token
from ..utils.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


class TokenStore:
    def __init__(self, storage: Storage, ttl: timedelta = timedelta(days=TOKEN_TTL_DAYS), clock: Clock = utcnow):
        self.storage = storage
        self.ttl = ttl
        self.clock = clock

    def issue(self, user_id: int) -> str:
        """Create a token for ``user_id`` and return the plaintext once."""
        token = generate_token()
        now = self.clock()
        with self.storage.transaction() as s:
            s.add(ApiToken(
                user_id=user_id,
                token_hash=hash_token(token),
                created_at=now,
                expires_at=now + self.ttl,
            ))
        return token

    def is_live(self, token_hash: str) -> bool:
        """True for an unexpired, unrevoked token digest."""
        with self.storage.session() as s:
            found = s.execute(
                select(ApiToken.id).where(
                    ApiToken.token_hash == token_hash,
                    ApiToken.expires_at > self.clock(),
                    ApiToken.revoked_at.is_(None),
                )
            ).first()
            return found is not None

    def revoke(self, token_hash: str, reason: str) -> bool:
        """Revoke a token; a token already revoked keeps its first reason."""
        with self.storage.transaction() as s:
            result = s.execute(
                update(ApiToken)
                .where(ApiToken.token_hash == token_hash, ApiToken.revoked_at.is_(None))
                .values(revoked_at=self.clock(), revoked_reason=reason[:100])
            )
        if result.rowcount:
            logger.info(f"token {token_hash[:16]}... revoked: {reason}")
        return result.rowcount > 0

