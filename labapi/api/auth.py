"""
Authentication endpoints: login, logout, current user and password change
"""

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select

from ..auth.deps import current_user, get_security
from ..auth.guard import AuthenticatedUser
from ..auth.passwords import hash_password, verify_password
from ..config import MIN_PASSWORD_LENGTH
from ..context import get_request_context
from ..errors import BadRequest, TooManyRequests, Unauthorized
from ..models.user import User
from ..services.alerts import SecuritySignal
from ..services.audit import EventType, Severity, Status
from ..services.plane import SecurityPlane
from .validation import require_fields

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    old_password: Optional[str] = None
    new_password: Optional[str] = None


def _find_user(plane: SecurityPlane, username: str) -> Optional[User]:
    with plane.storage.session() as s:
        return s.execute(select(User).where(User.username == username)).scalars().first()


@router.post("/login")
def login(body: LoginRequest, plane: SecurityPlane = Depends(get_security)):
    require_fields(body, "username", "password")
    ctx = get_request_context()
    username = body.username.strip()

    decision = plane.login_limiter.check(ctx.ip_address, username)
    if not decision.allowed:
        plane.audit.rate_limit_hit("login", decision.limit, decision.count)
        minutes = math.ceil(decision.retry_after / 60)
        raise TooManyRequests(
            decision.retry_after,
            f"Too many login attempts. Please try again in {minutes} minute(s).",
        )

    user = _find_user(plane, username)
    if user is None or not verify_password(body.password, user.password_hash):
        plane.login_limiter.record_failure(ctx.ip_address, username)
        plane.audit.login_fail(username, "unknown_user" if user is None else "invalid_password")
        plane.alerts.check(SecuritySignal.LOGIN_FAIL)
        raise Unauthorized("Invalid username or password")

    plane.login_limiter.reset(ctx.ip_address, username)
    token = plane.guard.issue_token(user.id)
    plane.audit.login_success(user.id, user.username)
    logger.info(f"login succeeded for user {user.id}")
    return {
        "success": True,
        "data": {"token": token, "user": user.to_dict()},
        "message": "Login successful",
    }


@router.post("/logout")
def logout(user: AuthenticatedUser = Depends(current_user), plane: SecurityPlane = Depends(get_security)):
    plane.guard.revoke(user.token_hash, "logout")
    plane.audit.logout(user.id)
    return {"success": True, "message": "Logout successful"}


@router.get("/me")
def me(user: AuthenticatedUser = Depends(current_user)):
    return {"success": True, "data": user.to_dict(), "message": "Token valid"}


@router.post("/change-password")
def change_password(
    body: ChangePasswordRequest,
    user: AuthenticatedUser = Depends(current_user),
    plane: SecurityPlane = Depends(get_security),
):
    require_fields(body, "old_password", "new_password")
    if len(body.new_password) < MIN_PASSWORD_LENGTH:
        raise BadRequest(f"New password must be at least {MIN_PASSWORD_LENGTH} characters")

    with plane.storage.transaction() as s:
        row = s.get(User, user.id)
        verified = row is not None and verify_password(body.old_password, row.password_hash)
        if verified:
            row.password_hash = hash_password(body.new_password)

    if not verified:
        plane.audit.log(EventType.INVALID_CREDENTIALS, Severity.WARNING, Status.FAIL, user.id,
                        {"reason": "old_password_mismatch"})
        raise BadRequest("Old password is incorrect")

    plane.audit.password_change(user.id)
    return {"success": True, "message": "Password changed successfully"}
