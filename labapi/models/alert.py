"""
Alert rules, counters, cooldown state, fired events and IP blocks
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, JSON, Index, UniqueConstraint

from ..db import Base
from ..utils.timeutil import utcnow


class AlertRule(Base):
    __tablename__ = "alert_rules"

    id = Column(Integer, primary_key=True, index=True)
    rule_name = Column(String(100), nullable=False, unique=True)
    rule_type = Column(String(20), nullable=False)  # IP_BASED | TOKEN_BASED | USER_BASED | ENDPOINT_BASED | GENERIC
    event_type = Column(String(50), nullable=True)  # NULL counts every security signal
    threshold_warning = Column(Integer, nullable=False)
    threshold_critical = Column(Integer, nullable=False)
    time_window_seconds = Column(Integer, nullable=False)
    cooldown_seconds = Column(Integer, nullable=False, default=300)
    scope = Column(String(255), nullable=True)  # glob, e.g. /api/admin/*
    auto_action = Column(JSON, nullable=True)  # {"block_ip": true, "duration_seconds": 3600, ...}
    enabled = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class AlertMetric(Base):
    __tablename__ = "alert_metrics"
    __table_args__ = (
        UniqueConstraint("rule_id", "source_hash", "window_start", name="uq_alert_metrics_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    rule_id = Column(Integer, ForeignKey("alert_rules.id", ondelete="CASCADE"), nullable=False)
    source_hash = Column(String(64), nullable=False)
    window_start = Column(DateTime, nullable=False, index=True)
    count = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, nullable=False)


class AlertState(Base):
    __tablename__ = "alert_state"
    __table_args__ = (
        UniqueConstraint("rule_id", "source_hash", name="uq_alert_state_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    rule_id = Column(Integer, ForeignKey("alert_rules.id", ondelete="CASCADE"), nullable=False)
    source_hash = Column(String(64), nullable=False)
    last_fired_at = Column(DateTime, nullable=True)
    fire_count = Column(Integer, nullable=False, default=0)
    escalated = Column(Boolean, nullable=False, default=False)
    cooldown_until = Column(DateTime, nullable=True)


class AlertEvent(Base):
    __tablename__ = "alert_events"
    __table_args__ = (
        Index("idx_alert_events_rule_fired", "rule_id", "fired_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    rule_id = Column(Integer, nullable=False)
    rule_name = Column(String(100), nullable=False)
    severity = Column(String(10), nullable=False, index=True)  # WARNING | CRITICAL
    source_type = Column(String(10), nullable=False)  # IP | TOKEN | USER | ENDPOINT
    source_value = Column(String(255), nullable=True)
    trigger_count = Column(Integer, nullable=False)
    time_window_seconds = Column(Integer, nullable=False)
    meta = Column("metadata", JSON, nullable=True)
    fired_at = Column(DateTime, nullable=False, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "severity": self.severity,
            "source_type": self.source_type,
            "source_value": self.source_value,
            "trigger_count": self.trigger_count,
            "time_window_seconds": self.time_window_seconds,
            "metadata": self.meta or {},
            "fired_at": self.fired_at.isoformat() + "Z" if self.fired_at else None,
        }


class BlockedIp(Base):
    __tablename__ = "blocked_ips"

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), nullable=False, unique=True, index=True)
    blocked_at = Column(DateTime, nullable=False)
    blocked_until = Column(DateTime, nullable=False, index=True)
    reason = Column(String(255), nullable=True)
    auto_unblock = Column(Boolean, nullable=False, default=True)
    alert_id = Column(Integer, nullable=True)

    def to_dict(self):
        return {
            "ip_address": self.ip_address,
            "blocked_at": self.blocked_at.isoformat() + "Z",
            "blocked_until": self.blocked_until.isoformat() + "Z",
            "reason": self.reason,
            "auto_unblock": self.auto_unblock,
            "alert_id": self.alert_id,
        }
