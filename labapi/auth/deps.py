from fastapi import Depends, Request

from ..context import get_request_context
from ..services.plane import SecurityPlane
from .guard import AuthenticatedUser


def get_security(request: Request) -> SecurityPlane:
    return request.app.state.security


def current_user(request: Request, plane: SecurityPlane = Depends(get_security)) -> AuthenticatedUser:
    ctx = get_request_context()
    return plane.guard.validate(request.headers.get("authorization"), ctx.ip_address, ctx.user_agent)


def require_role(*roles: str):
    """Dependency factory: caller must hold one of ``roles``."""
    def _inner(request: Request, plane: SecurityPlane = Depends(get_security)) -> AuthenticatedUser:
        ctx = get_request_context()
        return plane.guard.require_role(request.headers.get("authorization"), roles, ctx.ip_address, ctx.user_agent)
    return _inner
