"""
IP block list consulted on every request.

Blocks only ever extend: a new block for an already blocked address keeps
whichever expiry is later.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from ..db import Storage
from ..models.alert import BlockedIp
from ..utils.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


class IpBlocklist:
    def __init__(self, storage: Storage, clock: Clock = utcnow):
        self.storage = storage
        self.clock = clock

    def block(
        self,
        ip_address: str,
        duration_seconds: int,
        reason: str,
        alert_id: Optional[int] = None,
        auto_unblock: bool = True,
    ) -> datetime:
        """Block ``ip_address`` and return the effective expiry."""
        now = self.clock()
        until = now + timedelta(seconds=int(duration_seconds))

        def apply(row: Optional[BlockedIp]) -> datetime:
            if row is None:
                s.add(BlockedIp(
                    ip_address=ip_address,
                    blocked_at=now,
                    blocked_until=until,
                    reason=reason,
                    auto_unblock=auto_unblock,
                    alert_id=alert_id,
                ))
                return until
            row.blocked_until = max(row.blocked_until, until)
            row.blocked_at = now
            row.reason = reason
            if alert_id is not None:
                row.alert_id = alert_id
            return row.blocked_until

        for attempt in range(2):
            with self.storage.session() as s:
                try:
                    effective = self.storage.with_row_lock(s, BlockedIp, {"ip_address": ip_address}, apply)
                    s.commit()
                    logger.warning(f"IP {ip_address} blocked until {effective.isoformat()}Z: {reason}")
                    return effective
                except IntegrityError:
                    # concurrent insert of the same address; retry as an update
                    s.rollback()
                    if attempt:
                        raise
        return until

    def blocked_until(self, ip_address: str) -> Optional[datetime]:
        with self.storage.session() as s:
            row = s.execute(
                select(BlockedIp).where(BlockedIp.ip_address == ip_address, BlockedIp.blocked_until > self.clock())
            ).scalars().first()
            return row.blocked_until if row else None

    def is_blocked(self, ip_address: str) -> bool:
        """Lookup failures count as not blocked."""
        try:
            return self.blocked_until(ip_address) is not None
        except Exception as e:
            logger.error(f"blocked-ip lookup failed for {ip_address}: {e}")
            return False

    def unblock(self, ip_address: str) -> bool:
        with self.storage.transaction() as s:
            result = s.execute(delete(BlockedIp).where(BlockedIp.ip_address == ip_address))
            return result.rowcount > 0

    def purge_expired(self) -> int:
        with self.storage.transaction() as s:
            result = s.execute(
                delete(BlockedIp).where(BlockedIp.auto_unblock.is_(True), BlockedIp.blocked_until < self.clock())
            )
            return result.rowcount

    def list_active(self) -> List[dict]:
        with self.storage.session() as s:
            rows = s.execute(
                select(BlockedIp).where(BlockedIp.blocked_until > self.clock()).order_by(BlockedIp.blocked_until.desc())
            ).scalars().all()
            return [row.to_dict() for row in rows]
