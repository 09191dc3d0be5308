"""
Admin Security API endpoints for alerts, IP blocks and reputation
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..auth.deps import get_security, require_role
from ..auth.guard import AuthenticatedUser
from ..errors import ApiError
from ..services.plane import SecurityPlane

logger = logging.getLogger(__name__)

require_admin = require_role("admin")

router = APIRouter(prefix="/admin/security", tags=["admin"], dependencies=[Depends(require_admin)])


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found"


@router.get("/alerts")
def list_alerts(
    limit: int = Query(50, ge=1, le=500),
    severity: Optional[str] = Query(None, description="WARNING or CRITICAL"),
    plane: SecurityPlane = Depends(get_security),
):
    """Most recent fired alerts, newest first"""
    return {"success": True, "data": plane.alerts.recent_alerts(limit, severity)}


@router.get("/blocked-ips")
def list_blocked_ips(plane: SecurityPlane = Depends(get_security)):
    return {"success": True, "data": plane.blocklist.list_active()}


@router.delete("/blocked-ips/{ip_address}")
def unblock_ip(
    ip_address: str,
    admin: AuthenticatedUser = Depends(require_admin),
    plane: SecurityPlane = Depends(get_security),
):
    if not plane.blocklist.unblock(ip_address):
        raise NotFound(f"{ip_address} is not blocked")
    logger.info(f"admin {admin.id} unblocked {ip_address}")
    return {"success": True, "message": f"{ip_address} unblocked"}


@router.get("/reputation/top")
def top_malicious(limit: int = Query(20, ge=1, le=200), plane: SecurityPlane = Depends(get_security)):
    return {"success": True, "data": plane.reputation.get_top_malicious(limit)}


@router.get("/reputation/{ip_address}")
def reputation_for(ip_address: str, plane: SecurityPlane = Depends(get_security)):
    return {"success": True, "data": plane.reputation.get_reputation(ip_address).to_dict()}


@router.post("/rules/clear-cache")
def clear_rule_cache(plane: SecurityPlane = Depends(get_security)):
    """Reload alert rules on the next evaluation"""
    plane.alerts.clear_cache()
    plane.reputation.clear_cache()
    return {"success": True, "message": "Security caches cleared"}


@router.post("/maintenance/run")
def run_maintenance(plane: SecurityPlane = Depends(get_security)):
    """Run every maintenance task now, ignoring their intervals"""
    results = plane.maintenance.run_pending(force=True)
    results["alert_cleanup"] = plane.alerts.cleanup(force=True)
    return {"success": True, "data": results}
