"""
Tests for bearer token validation, session binding and role checks
"""

import pytest
from sqlalchemy import func, select

from labapi.auth.guard import SESSION_EXPIRED, TokenAuthGuard
from labapi.auth.passwords import hash_password, verify_password
from labapi.errors import Forbidden, InternalError, Unauthorized
from labapi.models.alert import AlertEvent
from labapi.models.audit_log import AuditLog
from labapi.models.token import ApiToken
from labapi.utils.crypto import hash_token

CLIENT_IP = "198.51.100.7"
USER_AGENT = "lab-client/1.0"


def bearer(token):
    return f"Bearer {token}"


def count_rows(storage, model, *criteria):
    with storage.session() as s:
        return s.execute(select(func.count()).select_from(model).where(*criteria)).scalar()


@pytest.fixture
def issued(plane, make_user):
    user_id = make_user(username="alice", role="user", email="alice@lab.test")
    return user_id, plane.guard.issue_token(user_id)


def test_valid_token_resolves_user(plane, issued):
    user_id, token = issued
    user = plane.guard.validate(bearer(token), CLIENT_IP, USER_AGENT)

    assert user.id == user_id
    assert user.username == "alice"
    assert user.role == "user"
    assert "token_hash" not in user.to_dict()


def test_only_digest_is_persisted(plane, storage, issued):
    _, token = issued
    with storage.session() as s:
        row = s.execute(select(ApiToken)).scalar_one()
    assert row.token_hash == hash_token(token)
    assert token not in (row.token_hash, row.last_ip, row.last_user_agent)
    assert count_rows(storage, AuditLog, AuditLog.event_type == "TOKEN_CREATED") == 1


def test_single_character_change_is_rejected(plane, issued):
    _, token = issued
    tampered = token[:-1] + ("0" if token[-1] != "0" else "1")

    with pytest.raises(Unauthorized) as exc:
        plane.guard.validate(bearer(tampered), CLIENT_IP, USER_AGENT)
    assert exc.value.detail == "Invalid or expired token"


def test_first_use_binds_session(plane, storage, issued):
    _, token = issued
    plane.guard.validate(bearer(token), CLIENT_IP, USER_AGENT)

    with storage.session() as s:
        row = s.execute(select(ApiToken)).scalar_one()
    assert row.last_ip == CLIENT_IP
    assert row.last_user_agent == USER_AGENT
    assert row.last_used_at is not None


def test_user_agent_change_revokes_token(plane, storage, issued):
    _, token = issued
    plane.guard.validate(bearer(token), CLIENT_IP, USER_AGENT)

    with pytest.raises(Unauthorized) as exc:
        plane.guard.validate(bearer(token), CLIENT_IP, "other-agent/2.0")
    assert exc.value.detail == SESSION_EXPIRED

    with pytest.raises(Unauthorized) as exc:
        plane.guard.validate(bearer(token), CLIENT_IP, USER_AGENT)
    assert exc.value.detail == SESSION_EXPIRED, "revocation is permanent"

    with storage.session() as s:
        row = s.execute(select(ApiToken)).scalar_one()
    assert row.revoked_reason == "ua_mismatch"
    assert count_rows(storage, AuditLog, AuditLog.event_type == "TOKEN_REPLAY") == 1
    assert count_rows(storage, AuditLog, AuditLog.event_type == "TOKEN_REVOKED") == 1


def test_same_subnet_move_is_allowed(plane, issued):
    _, token = issued
    plane.guard.validate(bearer(token), "198.51.100.7", USER_AGENT)
    user = plane.guard.validate(bearer(token), "198.51.100.200", USER_AGENT)
    assert user.username == "alice"


def test_different_subnet_revokes_token(plane, storage, issued):
    _, token = issued
    plane.guard.validate(bearer(token), "198.51.100.7", USER_AGENT)

    with pytest.raises(Unauthorized):
        plane.guard.validate(bearer(token), "203.0.113.7", USER_AGENT)

    with storage.session() as s:
        row = s.execute(select(ApiToken)).scalar_one()
    assert row.revoked_reason == "ip_mismatch"
    assert row.revoked_at is not None


def test_replay_feeds_multi_ip_rule(plane, storage, issued, add_rule):
    add_rule("MULTI_IP", rule_type="USER_BASED", event_type="TOKEN_MULTI_IP", threshold_warning=1)
    user_id, token = issued
    plane.guard.validate(bearer(token), "198.51.100.7", USER_AGENT)

    with pytest.raises(Unauthorized):
        plane.guard.validate(bearer(token), "203.0.113.7", USER_AGENT)

    events = plane.alerts.recent_alerts()
    assert len(events) == 1
    assert events[0]["source_value"] == str(user_id)


def test_expired_token_is_invalid(plane, clock, issued):
    _, token = issued
    clock.advance(days=31)

    with pytest.raises(Unauthorized) as exc:
        plane.guard.validate(bearer(token), CLIENT_IP, USER_AGENT)
    assert exc.value.detail == "Invalid or expired token"


def test_logout_revocation(plane, issued):
    _, token = issued
    assert plane.guard.revoke(hash_token(token), "logout")
    assert not plane.guard.revoke(hash_token(token), "again"), "first revocation wins"

    with pytest.raises(Unauthorized) as exc:
        plane.guard.validate(bearer(token), CLIENT_IP, USER_AGENT)
    assert exc.value.detail == SESSION_EXPIRED


def test_invalid_token_feeds_alerts(plane, storage, add_rule):
    add_rule("TOKEN_FLOOD", event_type="TOKEN_INVALID", threshold_warning=2)

    for _ in range(2):
        with pytest.raises(Unauthorized):
            plane.guard.validate(bearer("ab" * 32), CLIENT_IP, USER_AGENT)

    assert count_rows(storage, AlertEvent, AlertEvent.rule_name == "TOKEN_FLOOD") == 1
    assert count_rows(storage, AuditLog, AuditLog.event_type == "UNAUTHORIZED") == 2


def test_missing_header_is_audited(plane, storage):
    with pytest.raises(Unauthorized) as exc:
        plane.guard.validate(None, CLIENT_IP, USER_AGENT)
    assert exc.value.detail == "Authorization header missing"
    assert count_rows(storage, AuditLog, AuditLog.event_type == "UNAUTHORIZED") == 1


def test_require_role(plane, storage, issued, make_user):
    _, token = issued
    with pytest.raises(Forbidden) as exc:
        plane.guard.require_role(bearer(token), ["admin"], CLIENT_IP, USER_AGENT)
    assert exc.value.detail == "Access denied. Required role: admin"
    assert count_rows(storage, AuditLog, AuditLog.event_type == "FORBIDDEN") == 1

    user = plane.guard.require_role(bearer(token), ["Admin", "User"], CLIENT_IP, USER_AGENT)
    assert user.username == "alice"


def test_storage_failure_fails_closed(plane, broken_storage, issued, clock):
    _, token = issued
    guard = TokenAuthGuard(broken_storage, plane.audit, plane.tokens, clock=clock)

    with pytest.raises(InternalError) as exc:
        guard.validate(bearer(token), CLIENT_IP, USER_AGENT)
    assert exc.value.status_code == 500


def test_password_hashing():
    hashed = hash_password("s3cret-pass", rounds=4)
    assert hashed.startswith("$2b$")
    assert verify_password("s3cret-pass", hashed)
    assert not verify_password("wrong", hashed)
    assert verify_password("s3cret-pass", "$2y$" + hashed[4:]), "$2y$ hashes verify too"
    assert not verify_password("s3cret-pass", "not-a-hash")
