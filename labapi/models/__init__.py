from .user import User
from .token import ApiToken
from .rate_limit import ApiRateLimit, LoginAttempt
from .alert import AlertRule, AlertMetric, AlertState, AlertEvent, BlockedIp
from .reputation import IpReputation
from .audit_log import AuditLog

__all__ = [
    "User",
    "ApiToken",
    "ApiRateLimit",
    "LoginAttempt",
    "AlertRule",
    "AlertMetric",
    "AlertState",
    "AlertEvent",
    "BlockedIp",
    "IpReputation",
    "AuditLog",
]
