"""
Security Audit Log Model
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Index

from ..db import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_event_time", "event_type", "timestamp"),
    )

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    user_id = Column(Integer, nullable=True, index=True)
    ip_address = Column(String(45), nullable=True, index=True)
    user_agent = Column(String(255), nullable=True)
    endpoint = Column(String(255), nullable=True)
    http_method = Column(String(10), nullable=True)
    request_id = Column(String(36), nullable=True, index=True)
    status = Column(String(10), nullable=False)  # SUCCESS | FAIL
    severity = Column(String(10), nullable=False)  # INFO | WARNING | CRITICAL
    meta = Column("metadata", Text, nullable=True)  # sanitized JSON
