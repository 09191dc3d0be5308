"""
Rate limit counters and login lockout records
"""

from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint

from ..db import Base


class ApiRateLimit(Base):
    __tablename__ = "api_rate_limits"
    __table_args__ = (
        UniqueConstraint("identifier", "identifier_type", "endpoint", name="uq_api_rate_limits_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    identifier = Column(String(128), nullable=False)  # client ip or token digest
    identifier_type = Column(String(10), nullable=False)  # ip | token
    endpoint = Column(String(255), nullable=False)
    window_start = Column(DateTime, nullable=False, index=True)
    request_count = Column(Integer, nullable=False, default=0)
    last_request_at = Column(DateTime, nullable=False)


class LoginAttempt(Base):
    __tablename__ = "login_attempts"
    __table_args__ = (
        UniqueConstraint("ip_address", "username", name="uq_login_attempts_ip_username"),
    )

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), nullable=False)
    username = Column(String(100), nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    last_attempt = Column(DateTime, nullable=False)
    blocked_until = Column(DateTime, nullable=True)
