"""
Request admission limits.

``ApiRateLimiter`` counts requests per (identifier, endpoint) in fixed
windows. ``LoginAttemptLimiter`` locks a (ip, username) pair out after
repeated failed logins.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from ..config import (
    LOGIN_BLOCK_SECONDS,
    LOGIN_MAX_ATTEMPTS,
    LOGIN_WINDOW_SECONDS,
    RATE_LIMIT_PER_WINDOW,
    RATE_LIMIT_WINDOW_SECONDS,
)
from ..db import Storage
from ..models.rate_limit import ApiRateLimit, LoginAttempt
from ..utils.timeutil import Clock, seconds_until, utcnow, window_start
from .audit import AuditLogger
from .reputation import ReputationEngine
from .tokens import TokenStore

logger = logging.getLogger(__name__)

AUTHENTICATED_LIMIT_FACTOR = 2

IDENTIFIER_IP = "ip"
IDENTIFIER_TOKEN = "token"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int = 0
    count: int = 0
    retry_after: int = 0
    identifier_type: str = IDENTIFIER_IP


ALLOW = RateLimitDecision(allowed=True)


class _LimitExceeded(Exception):
    def __init__(self, count: int):
        self.count = count


class ApiRateLimiter:
    def __init__(
        self,
        storage: Storage,
        audit: AuditLogger,
        tokens: TokenStore,
        reputation: Optional[ReputationEngine] = None,
        alerts=None,
        limit: int = RATE_LIMIT_PER_WINDOW,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        clock: Clock = utcnow,
    ):
        self.storage = storage
        self.audit = audit
        self.tokens = tokens
        self.reputation = reputation
        self.alerts = alerts
        self.limit = limit
        self.authenticated_limit = limit * AUTHENTICATED_LIMIT_FACTOR
        self.window_seconds = window_seconds
        self.clock = clock

    def effective_limit(self, base: int, ip_address: str) -> int:
        """Scale ``base`` down for addresses with a bad reputation."""
        if self.reputation is None:
            return base
        multiplier = self.reputation.get_reputation(ip_address).rate_limit_multiplier
        if multiplier <= 1.0:
            return base
        return max(1, int(base / multiplier))

    def check(
        self,
        ip_address: str,
        endpoint: str,
        token_hash: Optional[str] = None,
        method: str = "GET",
    ) -> RateLimitDecision:
        """Count one request and decide whether it may proceed.

        Storage failures let the request through.
        """
        if method.upper() == "OPTIONS":
            return ALLOW

        try:
            authenticated = bool(token_hash) and self.tokens.is_live(token_hash)
        except Exception as e:
            logger.error(f"rate limit token lookup failed: {e}")
            authenticated = False

        if authenticated:
            identifier, identifier_type = token_hash, IDENTIFIER_TOKEN
            limit = self.authenticated_limit
        else:
            identifier, identifier_type = ip_address, IDENTIFIER_IP
            limit = self.effective_limit(self.limit, ip_address)

        now = self.clock()
        start = window_start(now, self.window_seconds)
        try:
            count = self._increment(identifier, identifier_type, endpoint, start, now, limit)
        except _LimitExceeded as exceeded:
            retry_after = seconds_until(start + timedelta(seconds=self.window_seconds), now)
            self.audit.rate_limit_hit(identifier_type, limit, exceeded.count)
            if self.alerts is not None:
                self.alerts.check("RATE_LIMIT_HIT", ip_address=ip_address, endpoint=endpoint,
                                  token_hash=token_hash if authenticated else None)
            return RateLimitDecision(False, limit, exceeded.count, retry_after, identifier_type)
        except Exception as e:
            logger.error(f"rate limit check failed for {identifier_type}: {e}")
            return ALLOW

        if authenticated:
            self._track_ip_fallback(ip_address, endpoint, start, now)
        return RateLimitDecision(True, limit, count, 0, identifier_type)

    def _increment(
        self,
        identifier: str,
        identifier_type: str,
        endpoint: str,
        start: datetime,
        now: datetime,
        limit: Optional[int],
    ) -> int:
        key = {"identifier": identifier, "identifier_type": identifier_type, "endpoint": endpoint}

        def apply(row: Optional[ApiRateLimit]) -> int:
            if row is None:
                s.add(ApiRateLimit(window_start=start, request_count=1, last_request_at=now, **key))
                return 1
            if row.window_start != start:
                row.window_start = start
                row.request_count = 1
            else:
                if limit is not None and row.request_count + 1 > limit:
                    raise _LimitExceeded(row.request_count + 1)
                row.request_count += 1
            row.last_request_at = now
            return row.request_count

        for attempt in range(2):
            with self.storage.session() as s:
                try:
                    count = self.storage.with_row_lock(s, ApiRateLimit, key, apply)
                    s.commit()
                    return count
                except IntegrityError:
                    s.rollback()
                    if attempt:
                        raise
        return 0

    def _track_ip_fallback(self, ip_address: str, endpoint: str, start: datetime, now: datetime) -> None:
        """Keep the address counter moving for authenticated traffic too."""
        try:
            self._increment(ip_address, IDENTIFIER_IP, endpoint, start, now, limit=None)
        except Exception as e:
            logger.error(f"ip fallback tracking failed: {e}")

    def purge_stale(self) -> int:
        """Drop counters whose window ended more than one window ago."""
        cutoff = self.clock() - timedelta(seconds=2 * self.window_seconds)
        with self.storage.transaction() as s:
            result = s.execute(delete(ApiRateLimit).where(ApiRateLimit.window_start < cutoff))
        return result.rowcount


class LoginAttemptLimiter:
    def __init__(
        self,
        storage: Storage,
        max_attempts: int = LOGIN_MAX_ATTEMPTS,
        window_seconds: int = LOGIN_WINDOW_SECONDS,
        block_seconds: int = LOGIN_BLOCK_SECONDS,
        clock: Clock = utcnow,
    ):
        self.storage = storage
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self.block = timedelta(seconds=block_seconds)
        self.clock = clock

    def check(self, ip_address: str, username: str) -> RateLimitDecision:
        """Reject while a block is active; lookup failures allow the attempt."""
        now = self.clock()
        try:
            with self.storage.session() as s:
                row = s.query(LoginAttempt).filter_by(ip_address=ip_address, username=username).first()
                blocked_until = row.blocked_until if row else None
                attempts = row.attempts if row else 0
        except Exception as e:
            logger.error(f"login attempt lookup failed: {e}")
            return ALLOW
        if blocked_until is not None and blocked_until > now:
            return RateLimitDecision(False, self.max_attempts, attempts, seconds_until(blocked_until, now), "login")
        return RateLimitDecision(True, self.max_attempts, attempts, 0, "login")

    def record_failure(self, ip_address: str, username: str) -> RateLimitDecision:
        """Count a failed login; the attempt that reaches the maximum sets the block."""
        now = self.clock()
        key = {"ip_address": ip_address, "username": username}

        def apply(row: Optional[LoginAttempt]) -> Tuple[int, Optional[datetime]]:
            if row is None:
                row = LoginAttempt(attempts=0, last_attempt=now, **key)
                s.add(row)
            if row.attempts and now - row.last_attempt <= self.window:
                row.attempts += 1
            else:
                row.attempts = 1
            row.last_attempt = now
            row.blocked_until = now + self.block if row.attempts >= self.max_attempts else None
            return row.attempts, row.blocked_until

        try:
            for attempt in range(2):
                with self.storage.session() as s:
                    try:
                        attempts, blocked_until = self.storage.with_row_lock(s, LoginAttempt, key, apply)
                        s.commit()
                        break
                    except IntegrityError:
                        s.rollback()
                        if attempt:
                            raise
        except Exception as e:
            logger.error(f"recording failed login failed: {e}")
            return ALLOW

        if blocked_until is not None:
            logger.warning(f"login blocked for {username} from {ip_address} after {attempts} attempts")
            return RateLimitDecision(False, self.max_attempts, attempts, seconds_until(blocked_until, now), "login")
        return RateLimitDecision(True, self.max_attempts, attempts, 0, "login")

    def reset(self, ip_address: str, username: str) -> None:
        try:
            with self.storage.transaction() as s:
                s.execute(delete(LoginAttempt).where(
                    LoginAttempt.ip_address == ip_address, LoginAttempt.username == username
                ))
        except Exception as e:
            logger.error(f"login attempt reset failed: {e}")
