"""
Rule-driven alert engine.

Each security signal is counted per (rule, source) in fixed windows sized by
the rule. Reaching a threshold fires an alert unless the pair is still in its
cooldown. CRITICAL alerts may run the rule's auto-actions: block the source
IP, revoke the token, flag the user.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from ..config import ALERT_CLEANUP_INTERVAL_SECONDS
from ..context import DEFAULT_IP, get_request_context
from ..db import Storage
from ..models.alert import AlertEvent, AlertMetric, AlertRule, AlertState
from ..utils.crypto import hash_token, truncate_hash
from ..utils.timeutil import Clock, utcnow, window_start
from .audit import AuditLogger, EventType, SecurityLogFile, Severity, Status, sanitize_context
from .blocklist import IpBlocklist
from .cache import MemoryCache
from .reputation import ReputationEngine
from .tokens import TokenStore

logger = logging.getLogger(__name__)

RULES_CACHE_KEY = "alert_rules"
DEFAULT_BLOCK_SECONDS = 3600
WARNING = Severity.WARNING.value
CRITICAL = Severity.CRITICAL.value


class SecuritySignal(str, Enum):
    LOGIN_FAIL = "LOGIN_FAIL"
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_MULTI_IP = "TOKEN_MULTI_IP"
    REPEATED_403 = "REPEATED_403"
    RATE_LIMIT_HIT = "RATE_LIMIT_HIT"


class RuleType(str, Enum):
    IP_BASED = "IP_BASED"
    TOKEN_BASED = "TOKEN_BASED"
    USER_BASED = "USER_BASED"
    ENDPOINT_BASED = "ENDPOINT_BASED"
    GENERIC = "GENERIC"


_SOURCE_TYPES = {
    RuleType.TOKEN_BASED.value: "TOKEN",
    RuleType.USER_BASED.value: "USER",
    RuleType.ENDPOINT_BASED.value: "ENDPOINT",
}


def scope_pattern(scope: str) -> "re.Pattern[str]":
    """Compile a glob such as ``/api/admin/*`` into an anchored regex."""
    return re.compile("^" + re.escape(scope).replace(r"\*", ".*") + "$")


@dataclass(frozen=True)
class Rule:
    id: int
    name: str
    rule_type: str
    threshold_warning: int
    threshold_critical: int
    time_window_seconds: int
    cooldown_seconds: int
    event_type: Optional[str] = None
    scope: Optional[str] = None
    auto_action: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, row: AlertRule) -> "Rule":
        return cls(
            id=row.id,
            name=row.rule_name,
            rule_type=row.rule_type,
            threshold_warning=row.threshold_warning,
            threshold_critical=row.threshold_critical,
            time_window_seconds=row.time_window_seconds,
            cooldown_seconds=row.cooldown_seconds,
            event_type=row.event_type,
            scope=row.scope,
            auto_action=dict(row.auto_action or {}),
        )

    def matches(self, signal: str, endpoint: str) -> bool:
        if self.event_type and self.event_type != signal:
            return False
        if self.rule_type == RuleType.ENDPOINT_BASED.value and self.scope:
            return scope_pattern(self.scope).match(endpoint or "") is not None
        return True

    def severity_for(self, count: int) -> Optional[str]:
        if count >= self.threshold_critical:
            return CRITICAL
        if count >= self.threshold_warning:
            return WARNING
        return None


@dataclass(frozen=True)
class AlertNotification:
    subject: str
    body: str


@dataclass
class FiredAlert:
    alert_id: int
    rule_name: str
    severity: str
    source_type: str
    source_value: Optional[str]
    trigger_count: int
    time_window_seconds: int
    fired_at: datetime
    escalated: bool
    metadata: Dict[str, Any]
    suggested_action: str
    actions_taken: List[str] = field(default_factory=list)
    notification: Optional[AlertNotification] = None


def source_hash(
    rule: Rule,
    ip_address: Optional[str],
    token_hash: Optional[str],
    user_id: Optional[int],
    endpoint: Optional[str],
) -> Optional[str]:
    """Key a rule's counter by its source; None when the source is absent."""
    if rule.rule_type == RuleType.IP_BASED.value:
        return hash_token(f"ip:{ip_address}")
    if rule.rule_type == RuleType.TOKEN_BASED.value:
        return hash_token(f"token:{token_hash}") if token_hash else None
    if rule.rule_type == RuleType.USER_BASED.value:
        return hash_token(f"user:{user_id}") if user_id else None
    if rule.rule_type == RuleType.ENDPOINT_BASED.value:
        return hash_token(f"endpoint:{endpoint}")
    return hash_token(f"{ip_address}|{token_hash or ''}|{user_id or ''}")


def describe_source(
    rule: Rule,
    ip_address: Optional[str],
    token_hash: Optional[str],
    user_id: Optional[int],
    endpoint: Optional[str],
) -> Tuple[str, Optional[str]]:
    source_type = _SOURCE_TYPES.get(rule.rule_type, "IP")
    if source_type == "TOKEN":
        return source_type, truncate_hash(token_hash)
    if source_type == "USER":
        return source_type, str(user_id)
    if source_type == "ENDPOINT":
        return source_type, endpoint
    return source_type, ip_address


def suggested_action(rule: Rule, severity: str) -> str:
    if severity != CRITICAL:
        return "Review and monitor"
    if rule.auto_action.get("block_ip"):
        return "IP has been automatically blocked"
    if rule.auto_action.get("revoke_token"):
        return "Token has been automatically revoked"
    return "Immediate manual review required"


def build_notification(alert: FiredAlert) -> AlertNotification:
    subject = f"[{alert.severity}] Security alert: {alert.rule_name}"
    body = "\n".join([
        f"Rule: {alert.rule_name}",
        f"Severity: {alert.severity}",
        f"Source: {alert.source_type} {alert.source_value}",
        f"Trigger count: {alert.trigger_count} within {alert.time_window_seconds}s",
        f"Endpoint: {alert.metadata.get('endpoint')}",
        f"Request ID: {alert.metadata.get('request_id')}",
        f"Alert ID: {alert.alert_id}",
        f"Fired at: {alert.fired_at.isoformat()}Z",
        f"Action: {alert.suggested_action}",
    ])
    return AlertNotification(subject=subject, body=body)


class AlertEngine:
    def __init__(
        self,
        storage: Storage,
        audit: AuditLogger,
        blocklist: IpBlocklist,
        tokens: TokenStore,
        reputation: Optional[ReputationEngine] = None,
        rule_cache: Optional[MemoryCache] = None,
        log_file: Optional[SecurityLogFile] = None,
        notifier: Optional[Callable[[AlertNotification], None]] = None,
        cleanup_interval: int = ALERT_CLEANUP_INTERVAL_SECONDS,
        clock: Clock = utcnow,
    ):
        self.storage = storage
        self.audit = audit
        self.blocklist = blocklist
        self.tokens = tokens
        self.reputation = reputation
        self.rule_cache = rule_cache if rule_cache is not None else MemoryCache()
        self.log_file = log_file or audit.log_file
        self.notifier = notifier
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self._last_cleanup: Optional[datetime] = None
        self._cleanup_lock = threading.Lock()

    # Rules

    def get_rules(self) -> List[Rule]:
        rules = self.rule_cache.get(RULES_CACHE_KEY)
        if rules is None:
            with self.storage.session() as s:
                rows = s.execute(
                    select(AlertRule).where(AlertRule.enabled.is_(True)).order_by(AlertRule.id)
                ).scalars().all()
                rules = [Rule.from_model(row) for row in rows]
            self.rule_cache.put(RULES_CACHE_KEY, rules)
        return rules

    def clear_cache(self) -> None:
        self.rule_cache.clear()

    # Evaluation

    def check(
        self,
        signal,
        ip_address: Optional[str] = None,
        token_hash: Optional[str] = None,
        user_id: Optional[int] = None,
        endpoint: Optional[str] = None,
        http_method: Optional[str] = None,
        **extra,
    ) -> List[FiredAlert]:
        """Count ``signal`` against every matching rule and fire what crosses a threshold.

        Never raises: a failing rule is logged and skipped.
        """
        signal = signal.value if isinstance(signal, Enum) else str(signal)
        ctx = get_request_context()
        ip_address = ip_address or ctx.ip_address
        endpoint = endpoint or ctx.endpoint
        http_method = http_method or ctx.http_method

        try:
            rules = self.get_rules()
        except Exception as e:
            logger.error(f"alert rules unavailable: {e}")
            return []

        fired: List[FiredAlert] = []
        for rule in rules:
            if not rule.matches(signal, endpoint):
                continue
            key = source_hash(rule, ip_address, token_hash, user_id, endpoint)
            if key is None:
                continue
            try:
                count = self._increment_metric(rule, key)
                severity = rule.severity_for(count)
                if severity is None:
                    continue
                alert = self._fire(rule, severity, key, count, signal, ip_address, token_hash, user_id,
                                   endpoint, http_method, ctx.request_id, extra)
            except Exception as e:
                logger.error(f"alert rule {rule.name} evaluation failed: {e}")
                continue
            if alert is not None:
                fired.append(alert)

        self.cleanup()
        return fired

    def _increment_metric(self, rule: Rule, key: str) -> int:
        now = self.clock()
        start = window_start(now, rule.time_window_seconds)
        metric_key = {"rule_id": rule.id, "source_hash": key, "window_start": start}

        def apply(row: Optional[AlertMetric]) -> int:
            if row is None:
                s.add(AlertMetric(count=1, last_updated=now, **metric_key))
                return 1
            row.count += 1
            row.last_updated = now
            return row.count

        for attempt in range(2):
            with self.storage.session() as s:
                try:
                    count = self.storage.with_row_lock(s, AlertMetric, metric_key, apply)
                    s.commit()
                    return count
                except IntegrityError:
                    s.rollback()
                    if attempt:
                        raise
        return 0

    def _fire(
        self,
        rule: Rule,
        severity: str,
        key: str,
        count: int,
        signal: str,
        ip_address: Optional[str],
        token_hash: Optional[str],
        user_id: Optional[int],
        endpoint: Optional[str],
        http_method: Optional[str],
        request_id: Optional[str],
        extra: Dict[str, Any],
    ) -> Optional[FiredAlert]:
        now = self.clock()
        state_key = hash_token(f"{rule.id}|{key}")
        source_type, source_value = describe_source(rule, ip_address, token_hash, user_id, endpoint)
        metadata: Dict[str, Any] = {
            "signal": signal,
            "trigger_count": count,
            "time_window": rule.time_window_seconds,
            "endpoint": endpoint,
            "http_method": http_method,
            "request_id": request_id,
            "ip": ip_address,
        }
        if token_hash:
            metadata["token_hash"] = truncate_hash(token_hash)
        if user_id:
            metadata["user_id"] = user_id
        metadata.update(sanitize_context(extra))

        def apply(state: Optional[AlertState]) -> Optional[Tuple[int, bool]]:
            if state is not None and state.cooldown_until is not None and state.cooldown_until > now:
                return None
            if state is None:
                state = AlertState(rule_id=rule.id, source_hash=state_key, fire_count=0, escalated=False)
                s.add(state)
            state.fire_count += 1
            state.escalated = bool(state.escalated or (state.fire_count > 1 and severity == CRITICAL))
            state.last_fired_at = now
            state.cooldown_until = now + timedelta(seconds=rule.cooldown_seconds)
            event = AlertEvent(
                rule_id=rule.id,
                rule_name=rule.name,
                severity=severity,
                source_type=source_type,
                source_value=source_value,
                trigger_count=count,
                time_window_seconds=rule.time_window_seconds,
                meta={**metadata, "fire_count": state.fire_count, "escalated": state.escalated},
                fired_at=now,
            )
            s.add(event)
            s.flush()
            return event.id, state.escalated

        result = None
        for attempt in range(2):
            with self.storage.session() as s:
                try:
                    result = self.storage.with_row_lock(
                        s, AlertState, {"rule_id": rule.id, "source_hash": state_key}, apply
                    )
                    s.commit()
                    break
                except IntegrityError:
                    s.rollback()
                    if attempt:
                        raise
        if result is None:
            logger.debug(f"alert {rule.name} suppressed by cooldown")
            return None

        alert_id, escalated = result
        alert = FiredAlert(
            alert_id=alert_id,
            rule_name=rule.name,
            severity=severity,
            source_type=source_type,
            source_value=source_value,
            trigger_count=count,
            time_window_seconds=rule.time_window_seconds,
            fired_at=now,
            escalated=escalated,
            metadata=metadata,
            suggested_action=suggested_action(rule, severity),
        )
        if severity == CRITICAL:
            alert.actions_taken = self._run_auto_actions(rule, alert_id, ip_address, token_hash, user_id)
        if self.reputation is not None:
            self.reputation.record_incident(
                ip_address, severity, rule.name, auto_blocked="block_ip" in alert.actions_taken
            )
        self._output(alert)
        self.audit.log(
            EventType.ALERT_FIRED,
            Severity.CRITICAL if severity == CRITICAL else Severity.WARNING,
            Status.FAIL,
            user_id,
            {
                "alert_id": alert_id,
                "rule": rule.name,
                "severity": severity,
                "source_type": source_type,
                "trigger_count": count,
                "actions": alert.actions_taken,
            },
            ip_address=ip_address,
        )
        return alert

    def _run_auto_actions(
        self,
        rule: Rule,
        alert_id: int,
        ip_address: Optional[str],
        token_hash: Optional[str],
        user_id: Optional[int],
    ) -> List[str]:
        action = rule.auto_action
        taken: List[str] = []
        if action.get("block_ip") and ip_address and ip_address != DEFAULT_IP:
            duration = int(action.get("duration_seconds", DEFAULT_BLOCK_SECONDS))
            if self.reputation is not None:
                duration = int(duration * self.reputation.get_reputation(ip_address).block_multiplier)
            try:
                self.blocklist.block(ip_address, duration, reason=f"alert:{rule.name}", alert_id=alert_id)
                taken.append("block_ip")
            except Exception as e:
                logger.error(f"auto-block of {ip_address} failed: {e}")
        if action.get("revoke_token") and token_hash:
            try:
                self.tokens.revoke(token_hash, f"alert:{rule.name}")
                taken.append("revoke_token")
            except Exception as e:
                logger.error(f"auto-revoke failed: {e}")
        if action.get("flag_user") and user_id:
            self.audit.suspicious_user(user_id, f"alert:{rule.name}", alert_id=alert_id)
            taken.append("flag_user")
        return taken

    def _output(self, alert: FiredAlert) -> None:
        self.log_file.write(
            f"[ALERT] [{alert.fired_at.isoformat()}Z] [{alert.severity}] Rule: {alert.rule_name} | "
            f"Source: {alert.source_type}:{alert.source_value} | "
            f"Count: {alert.trigger_count}/{alert.time_window_seconds}s | "
            f"Endpoint: {alert.metadata.get('endpoint')} | AlertID: {alert.alert_id} | "
            f"Action: {alert.suggested_action}"
        )
        if alert.severity != CRITICAL:
            return
        alert.notification = build_notification(alert)
        if self.notifier is None:
            logger.warning(f"critical alert notification prepared: {alert.notification.subject}")
            return
        try:
            self.notifier(alert.notification)
        except Exception as e:
            logger.error(f"alert notifier failed: {e}")

    # Upkeep and queries

    def cleanup(self, force: bool = False) -> Optional[Dict[str, int]]:
        """Purge expired metrics and auto-unblock blocks, at most once per interval."""
        now = self.clock()
        with self._cleanup_lock:
            if (
                not force
                and self._last_cleanup is not None
                and (now - self._last_cleanup).total_seconds() < self.cleanup_interval
            ):
                return None
            self._last_cleanup = now

        try:
            longest = max((rule.time_window_seconds for rule in self.get_rules()), default=DEFAULT_BLOCK_SECONDS)
            cutoff = now - timedelta(seconds=2 * longest)
            with self.storage.transaction() as s:
                metrics = s.execute(delete(AlertMetric).where(AlertMetric.window_start < cutoff)).rowcount
            blocks = self.blocklist.purge_expired()
        except Exception as e:
            logger.error(f"alert cleanup failed: {e}")
            return None
        return {"metrics": metrics, "blocks": blocks}

    def is_ip_blocked(self, ip_address: str) -> bool:
        return self.blocklist.is_blocked(ip_address)

    def recent_alerts(self, limit: int = 50, severity: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.storage.session() as s:
            stmt = select(AlertEvent).order_by(AlertEvent.fired_at.desc(), AlertEvent.id.desc()).limit(limit)
            if severity:
                stmt = stmt.where(AlertEvent.severity == severity.upper())
            return [row.to_dict() for row in s.execute(stmt).scalars().all()]
