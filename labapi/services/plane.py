"""Wiring of the security components around one storage handle."""

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional, Union

from .. import config
from ..auth.guard import TokenAuthGuard
from ..db import Storage
from ..utils.timeutil import Clock, utcnow
from .alerts import AlertEngine, AlertNotification
from .audit import AuditLogger, SecurityLogFile
from .blocklist import IpBlocklist
from .cache import MemoryCache
from .maintenance import MaintenanceScheduler
from .ratelimit import ApiRateLimiter, LoginAttemptLimiter
from .reputation import DECAY_AFTER_HOURS, ReputationEngine
from .tokens import TokenStore


@dataclass
class SecurityPlane:
    storage: Storage
    audit: AuditLogger
    blocklist: IpBlocklist
    tokens: TokenStore
    reputation: ReputationEngine
    alerts: AlertEngine
    api_limiter: ApiRateLimiter
    login_limiter: LoginAttemptLimiter
    guard: TokenAuthGuard
    maintenance: MaintenanceScheduler


def build_security_plane(
    storage: Optional[Storage] = None,
    clock: Clock = utcnow,
    log_file: Union[str, Path] = config.SECURITY_LOG_FILE,
    rate_limit: int = config.RATE_LIMIT_PER_WINDOW,
    rate_limit_window: int = config.RATE_LIMIT_WINDOW_SECONDS,
    token_ttl_days: int = config.TOKEN_TTL_DAYS,
    notifier: Optional[Callable[[AlertNotification], None]] = None,
) -> SecurityPlane:
    storage = storage or Storage()
    security_log = SecurityLogFile(log_file, config.SECURITY_LOG_MAX_BYTES, config.SECURITY_LOG_BACKUP_COUNT)
    audit = AuditLogger(storage, security_log, clock=clock)
    blocklist = IpBlocklist(storage, clock=clock)
    tokens = TokenStore(storage, ttl=timedelta(days=token_ttl_days), clock=clock)
    reputation = ReputationEngine(storage, audit, blocklist, cache=MemoryCache(ttl_seconds=60), clock=clock)
    alerts = AlertEngine(
        storage, audit, blocklist, tokens,
        reputation=reputation, rule_cache=MemoryCache(), notifier=notifier, clock=clock,
    )
    api_limiter = ApiRateLimiter(
        storage, audit, tokens,
        reputation=reputation, alerts=alerts, limit=rate_limit, window_seconds=rate_limit_window, clock=clock,
    )
    login_limiter = LoginAttemptLimiter(
        storage,
        max_attempts=config.LOGIN_MAX_ATTEMPTS,
        window_seconds=config.LOGIN_WINDOW_SECONDS,
        block_seconds=config.LOGIN_BLOCK_SECONDS,
        clock=clock,
    )
    guard = TokenAuthGuard(storage, audit, tokens, alerts, clock=clock)

    maintenance = MaintenanceScheduler(clock=clock)
    maintenance.register("reputation_decay", DECAY_AFTER_HOURS * 3600, reputation.apply_decay)
    maintenance.register("reputation_cleanup", 24 * 3600, reputation.cleanup_old_records)
    maintenance.register("rate_limit_purge", 3600, api_limiter.purge_stale)

    return SecurityPlane(
        storage=storage,
        audit=audit,
        blocklist=blocklist,
        tokens=tokens,
        reputation=reputation,
        alerts=alerts,
        api_limiter=api_limiter,
        login_limiter=login_limiter,
        guard=guard,
        maintenance=maintenance,
    )
