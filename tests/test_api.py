"""
Integration tests for the HTTP surface: admission order, auth endpoints and admin API
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from labapi.main import create_app
from labapi.models.audit_log import AuditLog
from labapi.models.rate_limit import LoginAttempt
from labapi.services.plane import build_security_plane

PASSWORD = "correct-horse"


def login(client, headers, username="alice", password=PASSWORD, **kw):
    return client.post("/api/auth/login", json={"username": username, "password": password}, headers=headers(**kw))


@pytest.fixture
def alice(make_user):
    return make_user(username="alice", password=PASSWORD, role="user")


@pytest.fixture
def admin(make_user):
    return make_user(username="root", password=PASSWORD, role="admin")


def test_index_is_public_and_tagged(client, headers):
    response = client.get("/api/", headers=headers())
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["data"]["status"] == "running"
    assert "auth" in data["data"]["available_modules"]
    assert len(response.headers["X-Request-ID"]) == 36
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_each_request_gets_its_own_id(client, headers):
    first = client.get("/api/", headers=headers()).headers["X-Request-ID"]
    second = client.get("/api/", headers=headers()).headers["X-Request-ID"]
    assert first != second


def test_login_issues_distinct_tokens(client, headers, alice):
    first = login(client, headers)
    second = login(client, headers)

    assert first.status_code == 200
    body = first.json()
    assert body["message"] == "Login successful"
    assert body["data"]["user"]["username"] == "alice"
    assert "password_hash" not in body["data"]["user"]
    assert body["data"]["token"] != second.json()["data"]["token"]


def test_me_and_session_binding(client, headers, alice):
    token = login(client, headers).json()["data"]["token"]

    me = client.get("/api/auth/me", headers=headers(token))
    assert me.status_code == 200
    assert me.json()["data"]["username"] == "alice"

    hijacked = client.get("/api/auth/me", headers=headers(token, ua="curl/8.0"))
    assert hijacked.status_code == 401
    assert hijacked.json() == {"success": False, "message": "Session expired. Please log in again."}

    again = client.get("/api/auth/me", headers=headers(token))
    assert again.status_code == 401, "the original client is logged out too"


def test_missing_authorization_header(client, headers):
    response = client.get("/api/auth/me", headers=headers())
    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Authorization header missing"}


def test_logout_revokes_token(client, headers, alice):
    token = login(client, headers).json()["data"]["token"]

    assert client.post("/api/auth/logout", headers=headers(token)).status_code == 200
    assert client.get("/api/auth/me", headers=headers(token)).status_code == 401


def test_wrong_password(client, headers, alice):
    response = login(client, headers, password="nope")
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid username or password"
    assert login(client, headers, username="nobody").status_code == 401


def test_login_lockout_after_five_failures(client, headers, alice, clock):
    codes = [login(client, headers, password="nope").status_code for _ in range(5)]
    assert codes == [401] * 5

    locked = login(client, headers)
    assert locked.status_code == 429, "correct credentials are refused while locked"
    assert locked.headers["Retry-After"] == "600"
    assert "10 minute" in locked.json()["message"]

    other_ip = login(client, headers, ip="198.51.100.99")
    assert other_ip.status_code == 200, "lockout is scoped to the client address"

    clock.advance(seconds=601)
    assert login(client, headers).status_code == 200


def test_successful_login_resets_failures(client, headers, alice):
    for _ in range(4):
        login(client, headers, password="nope")
    assert login(client, headers).status_code == 200
    for _ in range(4):
        assert login(client, headers, password="nope").status_code == 401


def test_invalid_body(client, headers):
    bad_json = client.post(
        "/api/auth/login", content=b"{not json", headers=headers(**{"Content-Type": "application/json"})
    )
    assert bad_json.status_code == 400
    assert bad_json.json() == {"success": False, "message": "Invalid request format"}

    missing = client.post("/api/auth/login", json={"username": "alice"}, headers=headers())
    assert missing.status_code == 400
    assert missing.json()["message"] == "Missing required fields: password"


def test_change_password(client, headers, alice):
    token = login(client, headers).json()["data"]["token"]

    wrong = client.post(
        "/api/auth/change-password", json={"old_password": "bad", "new_password": "brand-new"},
        headers=headers(token),
    )
    assert wrong.status_code == 400
    assert wrong.json()["message"] == "Old password is incorrect"

    short = client.post(
        "/api/auth/change-password", json={"old_password": PASSWORD, "new_password": "abc"},
        headers=headers(token),
    )
    assert short.status_code == 400

    ok = client.post(
        "/api/auth/change-password", json={"old_password": PASSWORD, "new_password": "brand-new"},
        headers=headers(token),
    )
    assert ok.status_code == 200
    assert login(client, headers, password="brand-new").status_code == 200
    assert login(client, headers).status_code == 401


def test_payload_too_large(plane, headers):
    app = create_app(plane=plane, trust_proxy=True, max_payload_bytes=64, init_schema=False)
    with TestClient(app) as client:
        response = client.post("/api/auth/login", content=b"x" * 65, headers=headers())
    assert response.status_code == 413
    assert response.json()["success"] is False
    assert "X-Request-ID" in response.headers


def test_chunked_payload_over_cap_is_rejected(plane, storage, headers):
    app = create_app(plane=plane, trust_proxy=True, max_payload_bytes=64, init_schema=False)
    body = b'{"username": "' + b"m" * 500 + b'", "password": "x"}'

    def chunks():
        for i in range(0, len(body), 32):
            yield body[i:i + 32]

    with TestClient(app) as client:
        response = client.post(
            "/api/auth/login", content=chunks(), headers=headers(**{"Content-Type": "application/json"})
        )

    assert response.status_code == 413
    assert response.json() == {"success": False, "message": "Payload too large"}
    with storage.session() as s:
        login_fails = select(func.count()).select_from(AuditLog).where(AuditLog.event_type == "LOGIN_FAIL")
        assert s.execute(login_fails).scalar() == 0, "the route never ran"


def test_chunked_payload_within_cap_reaches_route(client, headers, alice):
    def chunks():
        yield b'{"username": "alice", '
        yield b'"password": "correct-horse"}'

    response = client.post(
        "/api/auth/login", content=chunks(), headers=headers(**{"Content-Type": "application/json"})
    )
    assert response.status_code == 200
    assert response.json()["data"]["user"]["username"] == "alice"


def test_whitespace_username_is_missing(client, headers, storage):
    response = client.post("/api/auth/login", json={"username": "   ", "password": "x"}, headers=headers())
    assert response.status_code == 400
    assert response.json()["message"] == "Missing required fields: username"
    with storage.session() as s:
        assert s.execute(select(func.count()).select_from(LoginAttempt)).scalar() == 0
        assert s.execute(
            select(func.count()).select_from(AuditLog).where(AuditLog.event_type == "LOGIN_FAIL")
        ).scalar() == 0


def test_rate_limit_returns_429(storage, clock, log_path, headers):
    plane = build_security_plane(storage, clock=clock, log_file=log_path, rate_limit=3)
    app = create_app(plane=plane, trust_proxy=True, init_schema=False)
    with TestClient(app) as client:
        codes = [client.get("/api/", headers=headers()).status_code for _ in range(3)]
        refused = client.get("/api/", headers=headers())
        other = client.get("/api/", headers=headers(ip="198.51.100.44"))

    assert codes == [200, 200, 200]
    assert refused.status_code == 429
    assert refused.json()["message"] == "Too many requests. Please slow down."
    assert refused.headers["Retry-After"] == "30"
    assert other.status_code == 200


def test_blocked_ip_is_refused_before_anything_else(client, headers, plane):
    plane.blocklist.block("198.51.100.7", 600, reason="test")

    response = client.get("/api/", headers=headers())
    assert response.status_code == 403
    assert response.json() == {"success": False, "message": "Access denied"}
    assert client.get("/api/", headers=headers(ip="198.51.100.8")).status_code == 200


def test_unexpected_error_is_shielded(app, headers, plane):
    def explode():
        raise RuntimeError("secret connection string")

    app.add_api_route("/api/explode", explode)
    with TestClient(app) as client:
        response = client.get("/api/explode", headers=headers())

    assert response.status_code == 500
    assert "secret" not in response.text
    assert response.json()["message"] == "An internal error occurred. Please try again later."
    assert "X-Request-ID" in response.headers


def test_admin_endpoints_require_admin(client, headers, alice, admin):
    user_token = login(client, headers).json()["data"]["token"]
    denied = client.get("/api/admin/security/alerts", headers=headers(user_token))
    assert denied.status_code == 403
    assert denied.json()["message"] == "Access denied. Required role: admin"

    admin_token = login(client, headers, username="root").json()["data"]["token"]
    allowed = client.get("/api/admin/security/alerts", headers=headers(admin_token))
    assert allowed.status_code == 200
    assert allowed.json() == {"success": True, "data": []}


def test_admin_block_management(client, headers, admin, plane):
    token = login(client, headers, username="root").json()["data"]["token"]
    plane.blocklist.block("203.0.113.66", 600, reason="manual")

    listed = client.get("/api/admin/security/blocked-ips", headers=headers(token)).json()["data"]
    assert [b["ip_address"] for b in listed] == ["203.0.113.66"]

    assert client.delete("/api/admin/security/blocked-ips/203.0.113.66", headers=headers(token)).status_code == 200
    assert client.delete("/api/admin/security/blocked-ips/203.0.113.66", headers=headers(token)).status_code == 404
    assert not plane.blocklist.is_blocked("203.0.113.66")


def test_admin_reputation_and_maintenance(client, headers, admin, plane):
    token = login(client, headers, username="root").json()["data"]["token"]
    plane.reputation.record_incident("203.0.113.70", "CRITICAL", "TEST")

    rep = client.get("/api/admin/security/reputation/203.0.113.70", headers=headers(token)).json()["data"]
    assert rep["score"] == 3 and rep["status"] == "NORMAL"

    top = client.get("/api/admin/security/reputation/top", headers=headers(token)).json()["data"]
    assert top[0]["ip_address"] == "203.0.113.70"

    run = client.post("/api/admin/security/maintenance/run", headers=headers(token))
    assert run.status_code == 200
    assert set(run.json()["data"]) >= {"reputation_decay", "reputation_cleanup", "rate_limit_purge", "alert_cleanup"}
