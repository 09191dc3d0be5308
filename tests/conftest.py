# tests/conftest.py
import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from labapi import models  # noqa: F401
from labapi.auth.passwords import hash_password
from labapi.db import Base, Storage
from labapi.main import create_app
from labapi.models.alert import AlertRule
from labapi.models.user import User
from labapi.services.plane import build_security_plane

START = datetime(2026, 3, 2, 9, 0, 30)
CLIENT_IP = "198.51.100.7"
USER_AGENT = "lab-client/1.0"


class FrozenClock:
    """Injected clock that only moves when a test says so"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def storage(engine):
    return Storage(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))


@pytest.fixture
def broken_storage(tmp_path):
    """Storage whose every session fails to connect"""
    eng = create_engine(f"sqlite:///{tmp_path}/missing-dir/unreachable.db")
    yield Storage(sessionmaker(bind=eng))
    eng.dispose()


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / "security.log"


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def plane(storage, clock, log_path, notifications):
    return build_security_plane(storage, clock=clock, log_file=log_path, notifier=notifications.append)


@pytest.fixture
def make_user(storage):
    def _make(username="alice", password="correct-horse", role="user", **fields):
        with storage.transaction() as s:
            user = User(
                name=fields.pop("name", username.title()),
                username=username,
                password_hash=hash_password(password),
                role=role,
                **fields,
            )
            s.add(user)
            s.flush()
            return user.id
    return _make


@pytest.fixture
def add_rule(storage, plane):
    def _add(rule_name="TEST_RULE", rule_type="IP_BASED", threshold_warning=1, threshold_critical=5,
             time_window_seconds=3600, cooldown_seconds=300, **fields):
        with storage.transaction() as s:
            s.add(AlertRule(
                rule_name=rule_name,
                rule_type=rule_type,
                threshold_warning=threshold_warning,
                threshold_critical=threshold_critical,
                time_window_seconds=time_window_seconds,
                cooldown_seconds=cooldown_seconds,
                enabled=True,
                **fields,
            ))
        plane.alerts.clear_cache()
    return _add


def _headers(token=None, ip=CLIENT_IP, ua=USER_AGENT, **extra):
    h = {"X-Forwarded-For": ip, "User-Agent": ua, **extra}
    if token:
        h["Authorization"] = f"Bearer {token}"
    return h


@pytest.fixture
def headers():
    """Request headers builder: client address, user agent and optional bearer token"""
    return _headers


@pytest.fixture
def app(plane):
    return create_app(plane=plane, trust_proxy=True, init_schema=False)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
