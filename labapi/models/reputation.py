from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from ..db import Base


class IpReputation(Base):
    __tablename__ = "ip_reputation"
    __table_args__ = (
        Index("idx_ip_reputation_score", "reputation_score"),
        Index("idx_ip_reputation_last_incident", "last_incident_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), nullable=False, unique=True, index=True)
    reputation_score = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="NORMAL")
    first_seen = Column(DateTime, nullable=False)
    last_seen = Column(DateTime, nullable=False)
    last_incident_at = Column(DateTime, nullable=True)
    last_decay_at = Column(DateTime, nullable=True)
    total_alerts = Column(Integer, nullable=False, default=0)
    critical_alerts = Column(Integer, nullable=False, default=0)
    auto_block_count = Column(Integer, nullable=False, default=0)
    meta = Column("metadata", JSON, nullable=True)  # alert_history + last/first alert info

    def to_dict(self):
        return {
            "ip_address": self.ip_address,
            "reputation_score": self.reputation_score,
            "status": self.status,
            "total_alerts": self.total_alerts,
            "critical_alerts": self.critical_alerts,
            "auto_block_count": self.auto_block_count,
            "last_incident_at": self.last_incident_at.isoformat() + "Z" if self.last_incident_at else None,
            "first_seen": self.first_seen.isoformat() + "Z",
        }
