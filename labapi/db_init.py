import logging
from threading import Lock
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select

from . import config
from .auth.passwords import hash_password
from .db import Base, Storage, engine
from .models.alert import AlertRule
from .models.user import User

logger = logging.getLogger(__name__)

DEFAULT_ALERT_RULES: List[Dict[str, Any]] = [
    {
        "rule_name": "LOGIN_BRUTE_FORCE",
        "rule_type": "IP_BASED",
        "event_type": "LOGIN_FAIL",
        "threshold_warning": 5,
        "threshold_critical": 10,
        "time_window_seconds": 300,
        "cooldown_seconds": 600,
        "auto_action": {"block_ip": True, "duration_seconds": 3600},
        "description": "Repeated failed logins from one address",
    },
    {
        "rule_name": "TOKEN_INVALID_FLOOD",
        "rule_type": "IP_BASED",
        "event_type": "TOKEN_INVALID",
        "threshold_warning": 10,
        "threshold_critical": 25,
        "time_window_seconds": 300,
        "cooldown_seconds": 600,
        "auto_action": {"block_ip": True, "duration_seconds": 1800},
        "description": "Unknown or expired tokens presented from one address",
    },
    {
        "rule_name": "TOKEN_MULTI_IP",
        "rule_type": "USER_BASED",
        "event_type": "TOKEN_MULTI_IP",
        "threshold_warning": 1,
        "threshold_critical": 3,
        "time_window_seconds": 3600,
        "cooldown_seconds": 900,
        "auto_action": {"flag_user": True},
        "description": "Session binding violations for one user",
    },
    {
        "rule_name": "REPEATED_403",
        "rule_type": "USER_BASED",
        "event_type": "REPEATED_403",
        "threshold_warning": 5,
        "threshold_critical": 15,
        "time_window_seconds": 600,
        "cooldown_seconds": 900,
        "auto_action": {"flag_user": True, "revoke_token": True},
        "description": "A user repeatedly hitting endpoints outside their role",
    },
    {
        "rule_name": "RATE_LIMIT_ABUSE",
        "rule_type": "IP_BASED",
        "event_type": "RATE_LIMIT_HIT",
        "threshold_warning": 3,
        "threshold_critical": 10,
        "time_window_seconds": 600,
        "cooldown_seconds": 900,
        "auto_action": {"block_ip": True, "duration_seconds": 900},
        "description": "An address that keeps exceeding the API rate limit",
    },
    {
        "rule_name": "ADMIN_ENDPOINT_PROBE",
        "rule_type": "ENDPOINT_BASED",
        "event_type": None,
        "scope": "/api/admin/*",
        "threshold_warning": 20,
        "threshold_critical": 50,
        "time_window_seconds": 300,
        "cooldown_seconds": 900,
        "auto_action": None,
        "description": "Bursts of security events on administrative endpoints",
    },
]

_initialized = False
_init_lock = Lock()


def seed_alert_rules(storage: Storage, rules: Optional[List[Dict[str, Any]]] = None) -> int:
    """Insert the default rule set into an empty ``alert_rules`` table."""
    with storage.transaction() as s:
        if s.execute(select(func.count(AlertRule.id))).scalar():
            return 0
        for rule in rules or DEFAULT_ALERT_RULES:
            s.add(AlertRule(enabled=True, **rule))
    logger.info("Seeded default alert rules")
    return len(rules or DEFAULT_ALERT_RULES)


def seed_bootstrap_admin(storage: Storage, username: Optional[str], password: Optional[str]) -> bool:
    if not username or not password:
        return False
    with storage.transaction() as s:
        if s.execute(select(User.id).where(User.username == username)).first():
            return False
        s.add(User(name="Administrator", username=username, password_hash=hash_password(password), role="admin"))
    logger.info(f"Bootstrap admin '{username}' created")
    return True


def init_schema_and_seed(storage: Optional[Storage] = None, bind=None) -> None:
    """Create missing tables and seed defaults once per process."""
    global _initialized
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return
        from . import models  # noqa: F401
        storage = storage or Storage()
        Base.metadata.create_all(bind=bind or storage.session_factory.kw.get("bind") or engine)
        seed_alert_rules(storage)
        seed_bootstrap_admin(storage, config.BOOTSTRAP_ADMIN_USERNAME, config.BOOTSTRAP_ADMIN_PASSWORD)
        _initialized = True
