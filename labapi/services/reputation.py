"""
IP reputation scoring.

Every incident raises an address's score by ``ceil(base * escalation)``,
where incidents arriving in quick succession weigh up to three times as much.
Scores decay once an address has been quiet for a day, and the status label
is a pure function of the score.
"""

import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from ..config import REPUTATION_RETENTION_DAYS
from ..context import DEFAULT_IP
from ..db import Storage
from ..models.reputation import IpReputation
from ..utils.timeutil import Clock, utcnow
from .audit import AuditLogger, EventType, Severity, Status
from .blocklist import IpBlocklist
from .cache import MemoryCache

logger = logging.getLogger(__name__)

SCORE_WARNING = 1
SCORE_CRITICAL = 3
SCORE_AUTO_BLOCK = 5
SCORE_MIN = -100
SCORE_MAX = 1000

THRESHOLD_SUSPICIOUS = 10
THRESHOLD_MALICIOUS = 51
THRESHOLD_PREEMPTIVE_BLOCK = 30

PREEMPTIVE_BLOCK_SECONDS = 3600
ESCALATION_WINDOW_HOURS = 24
ESCALATION_MAX_MULTIPLIER = 3.0
DECAY_AFTER_HOURS = 24
DECAY_PERCENT = 10
DECAY_MIN = 1
ALERT_HISTORY_LIMIT = 50

# hours used when an address has no previous incident
_NO_PRIOR_INCIDENT_HOURS = 999


class ReputationStatus(str, Enum):
    NORMAL = "NORMAL"
    SUSPICIOUS = "SUSPICIOUS"
    MALICIOUS = "MALICIOUS"


def clamp(n: int, lo: int = SCORE_MIN, hi: int = SCORE_MAX) -> int:
    return max(lo, min(hi, n))


def calculate_status(score: int) -> ReputationStatus:
    if score >= THRESHOLD_MALICIOUS:
        return ReputationStatus.MALICIOUS
    if score >= THRESHOLD_SUSPICIOUS:
        return ReputationStatus.SUSPICIOUS
    return ReputationStatus.NORMAL


def escalation_multiplier(hours_since_last: float) -> float:
    """1.0 for incidents a day or more apart, rising linearly to 3.0 when back to back."""
    if hours_since_last >= ESCALATION_WINDOW_HOURS:
        return 1.0
    ratio = 1 - max(hours_since_last, 0) / ESCALATION_WINDOW_HOURS
    return 1.0 + ratio * (ESCALATION_MAX_MULTIPLIER - 1.0)


def block_duration_multiplier(score: int) -> float:
    if score < 20:
        return 1.0
    if score < 40:
        return 1.5
    if score < 60:
        return 2.0
    if score < 80:
        return 3.0
    return 5.0


def rate_limit_multiplier(score: int) -> float:
    """Divisor applied to the base request limit for an address."""
    if score <= 0:
        return 0.9
    if score < 20:
        return 1.0
    if score < 40:
        return 1.5
    if score < 60:
        return 2.0
    return 3.0


def decay_amount(score: int) -> int:
    """ceil(score * 10%) in integer arithmetic."""
    return -(-score * DECAY_PERCENT // 100)


def incident_score(severity: str, auto_blocked: bool, hours_since_last: Optional[float]) -> int:
    base = SCORE_CRITICAL if severity == Severity.CRITICAL.value else SCORE_WARNING
    if auto_blocked:
        base += SCORE_AUTO_BLOCK
    if hours_since_last is None:
        return base
    return math.ceil(base * escalation_multiplier(hours_since_last))


@dataclass(frozen=True)
class ReputationSnapshot:
    ip_address: str
    score: int
    status: ReputationStatus
    block_multiplier: float
    rate_limit_multiplier: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip_address": self.ip_address,
            "score": self.score,
            "status": self.status.value,
            "block_multiplier": self.block_multiplier,
            "rate_limit_multiplier": self.rate_limit_multiplier,
        }


@dataclass(frozen=True)
class IncidentOutcome:
    ip_address: str
    previous_score: int
    score: int
    status: ReputationStatus
    preemptive_block_seconds: Optional[int] = None


def _snapshot(ip_address: str, score: int) -> ReputationSnapshot:
    return ReputationSnapshot(
        ip_address=ip_address,
        score=score,
        status=calculate_status(score),
        block_multiplier=block_duration_multiplier(score),
        rate_limit_multiplier=rate_limit_multiplier(score),
    )


class ReputationEngine:
    def __init__(
        self,
        storage: Storage,
        audit: AuditLogger,
        blocklist: IpBlocklist,
        cache: Optional[MemoryCache] = None,
        retention_days: int = REPUTATION_RETENTION_DAYS,
        clock: Clock = utcnow,
    ):
        self.storage = storage
        self.audit = audit
        self.blocklist = blocklist
        self.cache = cache if cache is not None else MemoryCache()
        self.retention_days = retention_days
        self.clock = clock

    def record_incident(
        self,
        ip_address: Optional[str],
        severity: str,
        alert_type: str,
        auto_blocked: bool = False,
    ) -> Optional[IncidentOutcome]:
        """Raise an address's score for one security incident.

        Returns None for the neutral address or when the store is unavailable.
        """
        if not ip_address or ip_address == DEFAULT_IP:
            return None
        severity = severity.value if isinstance(severity, Enum) else str(severity)

        try:
            outcome = self._apply_incident(ip_address, severity, alert_type, auto_blocked)
        except IntegrityError:
            # first incident raced with another request; the row exists now
            try:
                outcome = self._apply_incident(ip_address, severity, alert_type, auto_blocked)
            except Exception as e:
                logger.error(f"reputation update failed for {ip_address}: {e}")
                return None
        except Exception as e:
            logger.error(f"reputation update failed for {ip_address}: {e}")
            return None

        self.cache.put(ip_address, _snapshot(ip_address, outcome.score))

        if outcome.score >= THRESHOLD_PREEMPTIVE_BLOCK and not auto_blocked:
            duration = int(PREEMPTIVE_BLOCK_SECONDS * block_duration_multiplier(outcome.score))
            try:
                self.blocklist.block(ip_address, duration, reason=f"REPUTATION_BASED: score={outcome.score}")
            except Exception as e:
                logger.error(f"preemptive block failed for {ip_address}: {e}")
                return outcome
            self.audit.log(
                EventType.IP_PREEMPTIVE_BLOCK, Severity.WARNING, Status.SUCCESS, None,
                {"score": outcome.score, "status": outcome.status.value, "duration_seconds": duration},
                ip_address=ip_address,
            )
            outcome = IncidentOutcome(
                ip_address, outcome.previous_score, outcome.score, outcome.status, preemptive_block_seconds=duration
            )
        return outcome

    def _apply_incident(self, ip_address: str, severity: str, alert_type: str, auto_blocked: bool) -> IncidentOutcome:
        now = self.clock()
        is_critical = severity == Severity.CRITICAL.value
        history_entry = {"type": alert_type, "severity": severity, "at": now.isoformat() + "Z"}

        def apply(row: Optional[IpReputation]) -> IncidentOutcome:
            if row is None:
                score = clamp(incident_score(severity, auto_blocked, None))
                s.add(IpReputation(
                    ip_address=ip_address,
                    reputation_score=score,
                    status=calculate_status(score).value,
                    first_seen=now,
                    last_seen=now,
                    last_incident_at=now,
                    total_alerts=1,
                    critical_alerts=1 if is_critical else 0,
                    auto_block_count=1 if auto_blocked else 0,
                    meta={
                        "first_alert_type": alert_type,
                        "first_alert_severity": severity,
                        "alert_history": [history_entry],
                    },
                ))
                return IncidentOutcome(ip_address, 0, score, calculate_status(score))

            hours = _NO_PRIOR_INCIDENT_HOURS
            if row.last_incident_at is not None:
                hours = (now - row.last_incident_at).total_seconds() / 3600
            previous = row.reputation_score
            score = clamp(previous + incident_score(severity, auto_blocked, hours))
            meta = dict(row.meta or {})
            history = list(meta.get("alert_history", [])) + [history_entry]
            meta.update({
                "alert_history": history[-ALERT_HISTORY_LIMIT:],
                "last_alert_type": alert_type,
                "last_alert_severity": severity,
                "last_alert_at": history_entry["at"],
            })
            row.reputation_score = score
            row.status = calculate_status(score).value
            row.last_seen = now
            row.last_incident_at = now
            row.total_alerts += 1
            if is_critical:
                row.critical_alerts += 1
            if auto_blocked:
                row.auto_block_count += 1
            row.meta = meta
            return IncidentOutcome(ip_address, previous, score, calculate_status(score))

        with self.storage.session() as s:
            outcome = self.storage.with_row_lock(s, IpReputation, {"ip_address": ip_address}, apply)
            s.commit()
        return outcome

    def get_reputation(self, ip_address: Optional[str]) -> ReputationSnapshot:
        """Score, status and penalty multipliers for an address; unknown is neutral."""
        if not ip_address or ip_address == DEFAULT_IP:
            return _snapshot(ip_address or DEFAULT_IP, 0)
        cached = self.cache.get(ip_address)
        if cached is not None:
            return cached
        try:
            with self.storage.session() as s:
                score = s.execute(
                    select(IpReputation.reputation_score).where(IpReputation.ip_address == ip_address)
                ).scalar()
        except Exception as e:
            logger.error(f"reputation lookup failed for {ip_address}: {e}")
            return _snapshot(ip_address, 0)
        snapshot = _snapshot(ip_address, score or 0)
        self.cache.put(ip_address, snapshot)
        return snapshot

    def apply_decay(self) -> int:
        """Reduce the score of every address quiet for a day; returns rows decayed.

        Candidates are read without locks, then each row is decayed in its
        own transaction under its row lock.
        """
        now = self.clock()
        cutoff = now - timedelta(hours=DECAY_AFTER_HOURS)
        with self.storage.session() as s:
            candidates = s.execute(
                select(IpReputation.ip_address)
                .where(IpReputation.reputation_score >= DECAY_MIN, IpReputation.last_incident_at < cutoff)
            ).scalars().all()

        def decay(row: Optional[IpReputation]) -> bool:
            if row is None or row.reputation_score < DECAY_MIN:
                return False
            amount = max(DECAY_MIN, decay_amount(row.reputation_score))
            row.reputation_score = max(SCORE_MIN, row.reputation_score - amount)
            row.status = calculate_status(row.reputation_score).value
            row.last_decay_at = now
            return True

        decayed = 0
        for ip_address in candidates:
            with self.storage.session() as s:
                changed = self.storage.with_row_lock(
                    s, IpReputation, {"ip_address": ip_address}, decay,
                    IpReputation.last_incident_at < cutoff,
                )
                s.commit()
            if changed:
                self.cache.invalidate(ip_address)
                decayed += 1
        if decayed:
            logger.info(f"reputation decay applied to {decayed} addresses")
        return decayed

    def cleanup_old_records(self, days_old: Optional[int] = None) -> int:
        """Delete long-idle, harmless rows; returns rows removed."""
        cutoff = self.clock() - timedelta(days=days_old or self.retention_days)
        with self.storage.transaction() as s:
            result = s.execute(
                delete(IpReputation).where(
                    IpReputation.last_seen < cutoff,
                    IpReputation.reputation_score <= 0,
                    IpReputation.total_alerts <= 1,
                )
            )
        self.cache.clear()
        return result.rowcount

    def get_top_malicious(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self.storage.session() as s:
            rows = s.execute(
                select(IpReputation)
                .where(IpReputation.reputation_score > 0)
                .order_by(IpReputation.reputation_score.desc(), IpReputation.last_incident_at.desc())
                .limit(limit)
            ).scalars().all()
            return [row.to_dict() for row in rows]

    def clear_cache(self) -> None:
        self.cache.clear()
