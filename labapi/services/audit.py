"""
Security audit trail.

Every record is written to the ``audit_logs`` table. When that write fails the
record goes to the rotating security log file instead, and WARNING/CRITICAL
records are always mirrored there so they survive a database outage.
"""

import json
import logging
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..config import SECURITY_LOG_BACKUP_COUNT, SECURITY_LOG_FILE, SECURITY_LOG_MAX_BYTES
from ..context import get_request_context
from ..db import Storage
from ..models.audit_log import AuditLog
from ..utils.crypto import hash_token, truncate_hash
from ..utils.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAIL = "LOGIN_FAIL"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    TOKEN_CREATED = "TOKEN_CREATED"
    TOKEN_VALID = "TOKEN_VALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    TOKEN_REPLAY = "TOKEN_REPLAY"
    RATE_LIMIT_HIT = "RATE_LIMIT_HIT"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    DB_ERROR = "DB_ERROR"
    EXCEPTION = "EXCEPTION"
    SUSPICIOUS_IP = "SUSPICIOUS_IP"
    SUSPICIOUS_USER = "SUSPICIOUS_USER"
    ALERT_FIRED = "ALERT_FIRED"
    IP_PREEMPTIVE_BLOCK = "IP_PREEMPTIVE_BLOCK"
    LOGOUT = "LOGOUT"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class Status(str, Enum):
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"


class SecurityLogFile:
    """Append-only plaintext security log rotated by size."""

    def __init__(
        self,
        path: Union[str, Path] = SECURITY_LOG_FILE,
        max_bytes: int = SECURITY_LOG_MAX_BYTES,
        backup_count: int = SECURITY_LOG_BACKUP_COUNT,
    ):
        self.path = Path(path).resolve()
        self._logger = logging.getLogger(f"labapi.security_log:{self.path}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        if not self._logger.handlers:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                self.path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8", delay=True
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)

    def write(self, line: str) -> None:
        self._logger.info(line)


def sanitize_context(value: Any) -> Any:
    """Strip passwords and raw tokens from audit metadata, recursively."""
    if isinstance(value, BaseException):
        return {"message": str(value), "type": type(value).__name__}
    if isinstance(value, dict):
        clean: Dict[str, Any] = {}
        for key, item in value.items():
            lowered = str(key).lower()
            if "password" in lowered:
                continue
            if lowered == "token":
                if item:
                    clean["token_hash"] = hash_token(str(item))[:16]
                continue
            if lowered == "authorization":
                clean[key] = "[REDACTED]"
                continue
            if lowered == "token_hash" and isinstance(item, str) and len(item) > 32:
                clean[key] = truncate_hash(item)
                continue
            clean[key] = sanitize_context(item)
        return clean
    if isinstance(value, (list, tuple)):
        return [sanitize_context(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    return value


def _value(v) -> str:
    return v.value if isinstance(v, Enum) else str(v)


class AuditLogger:
    def __init__(self, storage: Storage, log_file: Optional[SecurityLogFile] = None, clock: Clock = utcnow):
        self.storage = storage
        self.log_file = log_file or SecurityLogFile()
        self.clock = clock

    def log(
        self,
        event_type: Union[EventType, str],
        severity: Union[Severity, str] = Severity.INFO,
        status: Union[Status, str] = Status.SUCCESS,
        user_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        endpoint: Optional[str] = None,
        http_method: Optional[str] = None,
    ) -> str:
        """Record one audit event and return its request id."""
        ctx = get_request_context()
        severity = Severity(_value(severity))
        record = {
            "timestamp": self.clock(),
            "event_type": EventType(_value(event_type)).value,
            "user_id": user_id,
            "ip_address": ip_address or ctx.ip_address,
            "user_agent": (user_agent if user_agent is not None else ctx.user_agent)[:255],
            "endpoint": endpoint or ctx.endpoint,
            "http_method": http_method or ctx.http_method,
            "request_id": ctx.request_id,
            "status": Status(_value(status)).value,
            "severity": severity.value,
            "metadata": sanitize_context(metadata or {}),
        }

        stored = self._write_to_database(record)
        if not stored or severity in (Severity.WARNING, Severity.CRITICAL):
            self._write_to_file(record)
        return record["request_id"]

    def _write_to_database(self, record: Dict[str, Any]) -> bool:
        try:
            with self.storage.transaction() as s:
                s.add(AuditLog(
                    timestamp=record["timestamp"],
                    event_type=record["event_type"],
                    user_id=record["user_id"],
                    ip_address=record["ip_address"],
                    user_agent=record["user_agent"],
                    endpoint=record["endpoint"],
                    http_method=record["http_method"],
                    request_id=record["request_id"],
                    status=record["status"],
                    severity=record["severity"],
                    meta=json.dumps(record["metadata"], default=str),
                ))
            return True
        except Exception as e:
            logger.error(f"audit write to database failed: {e}")
            return False

    def _write_to_file(self, record: Dict[str, Any]) -> None:
        line = (
            f"[{record['timestamp'].isoformat()}Z] [{record['severity']}] [{record['event_type']}] "
            f"[{record['status']}] IP:{record['ip_address']} | UA:{record['user_agent'][:100]} | "
            f"Endpoint:{record['endpoint']} | Method:{record['http_method']} | "
            f"RequestID:{record['request_id']} | UserID:{record['user_id'] or '-'} | "
            f"Metadata:{json.dumps(record['metadata'], default=str)}"
        )
        self.log_file.write(line)

    # Convenience helpers

    def login_success(self, user_id: int, username: str):
        return self.log(EventType.LOGIN_SUCCESS, Severity.INFO, Status.SUCCESS, user_id, {"username": username})

    def login_fail(self, username: str, reason: str = "invalid_credentials"):
        return self.log(EventType.LOGIN_FAIL, Severity.WARNING, Status.FAIL, None,
                        {"username": username, "reason": reason})

    def token_created(self, user_id: int, token_hash: str):
        return self.log(EventType.TOKEN_CREATED, Severity.INFO, Status.SUCCESS, user_id, {"token_hash": token_hash})

    def token_revoked(self, user_id: Optional[int], token_hash: str, reason: Optional[str]):
        return self.log(EventType.TOKEN_REVOKED, Severity.WARNING, Status.FAIL, user_id,
                        {"token_hash": token_hash, "revoked_reason": reason})

    def token_replay(self, user_id: Optional[int], token_hash: str, reason: str, details: Dict[str, Any]):
        return self.log(EventType.TOKEN_REPLAY, Severity.CRITICAL, Status.FAIL, user_id,
                        {"token_hash": token_hash, "reason": reason, **details})

    def rate_limit_hit(self, identifier_type: str, limit: int, count: int, user_id: Optional[int] = None):
        return self.log(EventType.RATE_LIMIT_HIT, Severity.WARNING, Status.FAIL, user_id,
                        {"identifier_type": identifier_type, "limit": limit, "count": count})

    def unauthorized(self, reason: str, token_hash: Optional[str] = None):
        meta: Dict[str, Any] = {"reason": reason}
        if token_hash:
            meta["token_hash"] = token_hash
        return self.log(EventType.UNAUTHORIZED, Severity.WARNING, Status.FAIL, None, meta)

    def forbidden(self, user_id: Optional[int], reason: str, **details):
        return self.log(EventType.FORBIDDEN, Severity.WARNING, Status.FAIL, user_id, {"reason": reason, **details})

    def db_error(self, error: BaseException, operation: str):
        return self.log(EventType.DB_ERROR, Severity.CRITICAL, Status.FAIL, None,
                        {"operation": operation, "error": error})

    def exception(self, error: BaseException, user_id: Optional[int] = None):
        return self.log(EventType.EXCEPTION, Severity.CRITICAL, Status.FAIL, user_id, {"error": error})

    def suspicious_user(self, user_id: int, reason: str, **details):
        return self.log(EventType.SUSPICIOUS_USER, Severity.CRITICAL, Status.FAIL, user_id, {"reason": reason, **details})

    def logout(self, user_id: int):
        return self.log(EventType.LOGOUT, Severity.INFO, Status.SUCCESS, user_id)

    def password_change(self, user_id: int):
        return self.log(EventType.PASSWORD_CHANGE, Severity.INFO, Status.SUCCESS, user_id)
