"""
Unit tests for IP reputation scoring
"""

from datetime import timedelta

from sqlalchemy import select

from labapi.models.reputation import IpReputation
from labapi.services.reputation import (
    ALERT_HISTORY_LIMIT,
    SCORE_MAX,
    ReputationStatus,
    block_duration_multiplier,
    calculate_status,
    decay_amount,
    escalation_multiplier,
    rate_limit_multiplier,
)

IP = "203.0.113.50"


def test_status_boundaries():
    """Status changes exactly at 9->10 and 50->51"""
    assert calculate_status(0) == ReputationStatus.NORMAL
    assert calculate_status(9) == ReputationStatus.NORMAL
    assert calculate_status(10) == ReputationStatus.SUSPICIOUS
    assert calculate_status(50) == ReputationStatus.SUSPICIOUS, "50 must still be SUSPICIOUS"
    assert calculate_status(51) == ReputationStatus.MALICIOUS
    assert calculate_status(-100) == ReputationStatus.NORMAL


def test_escalation_curve():
    assert escalation_multiplier(0) == 3.0
    assert escalation_multiplier(12) == 2.0
    assert escalation_multiplier(24) == 1.0
    assert escalation_multiplier(999) == 1.0


def test_step_multipliers():
    assert [block_duration_multiplier(s) for s in (0, 19, 20, 39, 40, 59, 60, 79, 80)] == [
        1.0, 1.0, 1.5, 1.5, 2.0, 2.0, 3.0, 3.0, 5.0
    ]
    assert [rate_limit_multiplier(s) for s in (-5, 0, 1, 19, 20, 40, 60)] == [
        0.9, 0.9, 1.0, 1.0, 1.5, 2.0, 3.0
    ]


def test_decay_amount_is_ten_percent_rounded_up():
    assert decay_amount(30) == 3
    assert decay_amount(12) == 2
    assert decay_amount(5) == 1


def test_spaced_warnings_stay_below_block_threshold(plane, clock):
    """Three WARNING incidents a day apart add 1 each and never block"""
    outcomes = []
    for _ in range(3):
        outcomes.append(plane.reputation.record_incident(IP, "WARNING", "TEST"))
        clock.advance(hours=25)

    assert [o.score for o in outcomes] == [1, 2, 3]
    assert all(o.preemptive_block_seconds is None for o in outcomes)
    assert not plane.blocklist.is_blocked(IP)


def test_back_to_back_criticals_trigger_preemptive_block(plane, clock):
    """Back-to-back CRITICAL incidents compound at 3x until the score reaches 30"""
    outcomes = [plane.reputation.record_incident(IP, "CRITICAL", "TEST") for _ in range(4)]

    assert [o.score for o in outcomes] == [3, 12, 21, 30]
    assert outcomes[2].preemptive_block_seconds is None
    assert outcomes[3].preemptive_block_seconds == 5400, "score 30 blocks for 3600s * 1.5"
    assert plane.blocklist.blocked_until(IP) == clock() + timedelta(seconds=5400)


def test_auto_blocked_incident_adds_bonus_without_preemptive_block(plane):
    first = plane.reputation.record_incident(IP, "CRITICAL", "TEST", auto_blocked=True)
    second = plane.reputation.record_incident(IP, "CRITICAL", "TEST", auto_blocked=True)

    assert first.score == 8
    assert second.score == 8 + 24
    assert second.preemptive_block_seconds is None
    assert not plane.blocklist.is_blocked(IP)


def test_score_is_monotonic_without_decay(plane, clock):
    previous = 0
    for i, severity in enumerate(["WARNING", "CRITICAL", "WARNING", "WARNING", "CRITICAL"]):
        clock.advance(hours=i * 5)
        outcome = plane.reputation.record_incident(IP, severity, "TEST")
        assert outcome.score >= previous, f"score dropped from {previous} to {outcome.score}"
        previous = outcome.score


def test_score_is_clamped(plane, storage):
    for _ in range(60):
        plane.reputation.record_incident(IP, "CRITICAL", "TEST", auto_blocked=True)
    assert plane.reputation.get_reputation(IP).score == SCORE_MAX


def test_alert_history_is_bounded(plane, storage):
    for _ in range(ALERT_HISTORY_LIMIT + 5):
        plane.reputation.record_incident(IP, "WARNING", "TEST")
    with storage.session() as s:
        row = s.execute(select(IpReputation).where(IpReputation.ip_address == IP)).scalar_one()
    assert len(row.meta["alert_history"]) == ALERT_HISTORY_LIMIT
    assert row.meta["first_alert_type"] == "TEST"
    assert row.total_alerts == ALERT_HISTORY_LIMIT + 5


def test_neutral_address_is_ignored(plane):
    assert plane.reputation.record_incident("0.0.0.0", "CRITICAL", "TEST") is None
    snapshot = plane.reputation.get_reputation("0.0.0.0")
    assert snapshot.score == 0
    assert snapshot.status == ReputationStatus.NORMAL


def test_decay_invalidates_cached_lookup(plane, clock):
    for _ in range(4):
        plane.reputation.record_incident(IP, "CRITICAL", "TEST")
    assert plane.reputation.get_reputation(IP).score == 30

    clock.advance(hours=23)
    assert plane.reputation.apply_decay() == 0, "no decay within 24h of the last incident"

    clock.advance(hours=2)
    assert plane.reputation.apply_decay() == 1
    snapshot = plane.reputation.get_reputation(IP)
    assert snapshot.score == 27, f"expected 30 - ceil(3.0) = 27, got {snapshot.score}"
    assert snapshot.status == ReputationStatus.SUSPICIOUS


def test_decay_locks_one_address_at_a_time(plane, storage, clock, monkeypatch):
    other = "203.0.113.51"
    plane.reputation.record_incident(IP, "CRITICAL", "TEST")
    plane.reputation.record_incident(other, "CRITICAL", "TEST")
    clock.advance(hours=25)

    locked_keys = []
    original = storage.with_row_lock

    def spy(session, model, key, fn, *criteria):
        locked_keys.append((model, dict(key)))
        return original(session, model, key, fn, *criteria)

    monkeypatch.setattr(storage, "with_row_lock", spy)

    assert plane.reputation.apply_decay() == 2
    assert sorted(locked_keys, key=lambda k: k[1]["ip_address"]) == [
        (IpReputation, {"ip_address": IP}),
        (IpReputation, {"ip_address": other}),
    ]
    assert plane.reputation.get_reputation(other).score == 2


def test_cleanup_removes_only_idle_harmless_rows(plane, storage, clock):
    plane.reputation.record_incident("203.0.113.1", "WARNING", "TEST")
    plane.reputation.record_incident("203.0.113.2", "CRITICAL", "TEST")
    with storage.transaction() as s:
        s.execute(
            IpReputation.__table__.update()
            .where(IpReputation.ip_address == "203.0.113.1")
            .values(reputation_score=0)
        )

    clock.advance(days=366)
    assert plane.reputation.cleanup_old_records() == 1

    top = plane.reputation.get_top_malicious()
    assert [row["ip_address"] for row in top] == ["203.0.113.2"]
