"""
Tests for the security audit trail and its log file fallback
"""

import json

from sqlalchemy import select

from labapi.context import RequestContext, reset_request_context, set_request_context
from labapi.models.audit_log import AuditLog
from labapi.services.audit import (
    AuditLogger,
    EventType,
    SecurityLogFile,
    Severity,
    Status,
    sanitize_context,
)
from labapi.utils.crypto import hash_token


def test_sanitize_context_strips_secrets():
    raw_token = "c" * 64
    cleaned = sanitize_context({
        "password": "hunter2",
        "new_password": "hunter3",
        "token": raw_token,
        "Authorization": "Bearer " + raw_token,
        "token_hash": hash_token(raw_token),
        "nested": {"old_password": "x", "kept": 1},
        "items": [{"password": "y"}],
        "error": ValueError("boom"),
        "severity": Severity.WARNING,
    })

    assert cleaned == {
        "token_hash": hash_token(raw_token)[:16] + "...",
        "Authorization": "[REDACTED]",
        "nested": {"kept": 1},
        "items": [{}],
        "error": {"message": "boom", "type": "ValueError"},
        "severity": "WARNING",
    }


def test_raw_token_becomes_short_digest():
    raw_token = "d" * 64
    assert sanitize_context({"token": raw_token}) == {"token_hash": hash_token(raw_token)[:16]}


def test_event_is_written_to_database_with_request_context(plane, storage, log_path, clock):
    ctx = RequestContext(
        request_id="req-123", ip_address="198.51.100.30", user_agent="probe/1",
        endpoint="/api/auth/login", http_method="POST",
    )
    token = set_request_context(ctx)
    try:
        request_id = plane.audit.login_success(7, "alice")
    finally:
        reset_request_context(token)

    assert request_id == "req-123"
    with storage.session() as s:
        row = s.execute(select(AuditLog)).scalar_one()
    assert row.event_type == "LOGIN_SUCCESS"
    assert row.severity == "INFO" and row.status == "SUCCESS"
    assert row.ip_address == "198.51.100.30"
    assert row.endpoint == "/api/auth/login" and row.http_method == "POST"
    assert row.timestamp == clock()
    assert json.loads(row.meta) == {"username": "alice"}
    assert not log_path.exists(), "INFO events stay out of the file while the database works"


def test_warning_events_are_mirrored_to_file(plane, storage, log_path):
    plane.audit.login_fail("mallory", "invalid_password")

    with storage.session() as s:
        assert s.execute(select(AuditLog.event_type)).scalar_one() == "LOGIN_FAIL"
    line = log_path.read_text().strip()
    assert line.startswith("[2026-03-02T09:00:30Z] [WARNING] [LOGIN_FAIL] [FAIL] IP:")
    assert '"username": "mallory"' in line


def test_database_failure_falls_back_to_file(broken_storage, log_path, clock):
    audit = AuditLogger(broken_storage, SecurityLogFile(log_path), clock=clock)

    audit.log(EventType.LOGOUT, Severity.INFO, Status.SUCCESS, 5, {"password": "x"})
    audit.forbidden(5, "ip_blocked")

    lines = log_path.read_text().strip().splitlines()
    assert len(lines) == 2, "each event is written once even when it is also a warning"
    assert "[INFO] [LOGOUT] [SUCCESS]" in lines[0]
    assert "UserID:5" in lines[0]
    assert "password" not in lines[0]
    assert "[WARNING] [FORBIDDEN] [FAIL]" in lines[1]


def test_security_log_rotates_by_size(tmp_path):
    path = tmp_path / "rotating.log"
    log_file = SecurityLogFile(path, max_bytes=256, backup_count=2)

    for i in range(40):
        log_file.write(f"line {i:03d} " + "x" * 40)

    assert path.exists()
    assert (tmp_path / "rotating.log.1").exists()
    assert (tmp_path / "rotating.log.2").exists()
    assert not (tmp_path / "rotating.log.3").exists(), "backup count is respected"
    assert "line 039" in path.read_text()
