"""
Index endpoint - no authentication required
"""

from datetime import datetime, timezone

from fastapi import APIRouter

from .. import __version__
from ..config import API_NAME

router = APIRouter()

AVAILABLE_MODULES = ["auth", "admin/security"]


@router.get("/")
def index():
    return {
        "success": True,
        "data": {
            "api_name": API_NAME,
            "version": __version__,
            "status": "running",
            "server_time": datetime.now(timezone.utc).isoformat(),
            "available_modules": AVAILABLE_MODULES,
        },
        "message": "API is running",
    }
