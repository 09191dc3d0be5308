"""
Bearer token authentication with session binding.

A token is bound to the user agent and network prefix of its first use. A
later request from a different user agent, or from outside the /24 (IPv4) or
/64 (IPv6) of the last use, revokes the token on the spot.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, Optional

from ..context import get_request_context
from ..db import Storage
from ..errors import Forbidden, InternalError, Unauthorized
from ..models.token import ApiToken
from ..security import is_same_subnet
from ..services.alerts import AlertEngine, SecuritySignal
from ..services.audit import AuditLogger
from ..services.tokens import TokenStore
from ..utils.crypto import hash_token, is_well_formed_token, truncate_hash
from ..utils.timeutil import Clock, utcnow

log = logging.getLogger(__name__)

SESSION_EXPIRED = "Session expired. Please log in again."
UA_MISMATCH = "ua_mismatch"
IP_MISMATCH = "ip_mismatch"


@dataclass(frozen=True)
class AuthenticatedUser:
    id: int
    name: str
    email: Optional[str]
    username: str
    photo_url: Optional[str]
    gender: Optional[str]
    phone: Optional[str]
    department: Optional[str]
    role: str
    token_hash: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("token_hash")
        return data


def extract_bearer(authorization: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer`` header or raise 401."""
    if not authorization or not authorization.strip():
        raise Unauthorized("Authorization header missing")
    parts = authorization.strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise Unauthorized("Invalid authorization format")
    token = parts[1].strip()
    if not token:
        raise Unauthorized("Token is required")
    if not is_well_formed_token(token):
        raise Unauthorized("Invalid token format")
    return token


class _Rejection(Exception):
    """Outcome of a lookup that must be audited once the session is closed."""

    def __init__(self, kind: str, user_id: Optional[int] = None, reason: Optional[str] = None, **details):
        self.kind = kind
        self.user_id = user_id
        self.reason = reason
        self.details = details


class TokenAuthGuard:
    def __init__(
        self,
        storage: Storage,
        audit: AuditLogger,
        tokens: TokenStore,
        alerts: Optional[AlertEngine] = None,
        clock: Clock = utcnow,
    ):
        self.storage = storage
        self.audit = audit
        self.tokens = tokens
        self.alerts = alerts
        self.clock = clock

    def issue_token(self, user_id: int) -> str:
        token = self.tokens.issue(user_id)
        self.audit.token_created(user_id, hash_token(token))
        return token

    def revoke(self, token_hash: str, reason: str) -> bool:
        return self.tokens.revoke(token_hash, reason)

    def validate(
        self,
        authorization: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthenticatedUser:
        """Resolve the caller behind ``authorization`` or raise.

        Storage errors deny the request with a 500.
        """
        ctx = get_request_context()
        ip_address = ip_address or ctx.ip_address
        user_agent = ctx.user_agent if user_agent is None else user_agent

        try:
            token = extract_bearer(authorization)
        except Unauthorized as exc:
            self.audit.unauthorized(exc.detail)
            raise

        token_hash = hash_token(token)
        try:
            user = self._lookup_and_bind(token_hash, ip_address, user_agent)
        except _Rejection as rejection:
            self._reject(rejection, token_hash, ip_address, user_agent)
        except Exception as e:
            log.error(f"AUTH: token validation failed on storage error: {e}")
            self.audit.db_error(e, "token_validation")
            raise InternalError()
        return user

    def _lookup_and_bind(self, token_hash: str, ip_address: str, user_agent: str) -> AuthenticatedUser:
        now = self.clock()

        def apply(row: Optional[ApiToken]) -> AuthenticatedUser:
            if row is None:
                raise _Rejection("invalid")
            if row.revoked_at is not None:
                raise _Rejection("revoked", row.user_id, row.revoked_reason)

            mismatch = None
            if row.last_user_agent is not None and row.last_user_agent != user_agent:
                mismatch = UA_MISMATCH
            elif row.last_ip and not is_same_subnet(row.last_ip, ip_address):
                mismatch = IP_MISMATCH
            if mismatch:
                previous = {"previous_ip": row.last_ip, "previous_user_agent": row.last_user_agent}
                row.revoked_at = now
                row.revoked_reason = mismatch
                s.commit()
                raise _Rejection("replay", row.user_id, mismatch, **previous)

            row.last_ip = ip_address
            row.last_user_agent = user_agent
            row.last_used_at = now
            u = row.user
            return AuthenticatedUser(
                id=u.id,
                name=u.name,
                email=u.email,
                username=u.username,
                photo_url=u.photo_url,
                gender=u.gender,
                phone=u.phone,
                department=u.department,
                role=u.role,
                token_hash=token_hash,
            )

        with self.storage.session() as s:
            user = self.storage.with_row_lock(
                s, ApiToken, {"token_hash": token_hash}, apply, ApiToken.expires_at > now
            )
            s.commit()
        return user

    def _reject(self, rejection: _Rejection, token_hash: str, ip_address: str, user_agent: str):
        if rejection.kind == "invalid":
            self.audit.unauthorized("invalid_or_expired_token", token_hash)
            if self.alerts is not None:
                self.alerts.check(SecuritySignal.TOKEN_INVALID, ip_address=ip_address)
            raise Unauthorized("Invalid or expired token")

        if rejection.kind == "revoked":
            self.audit.token_revoked(rejection.user_id, token_hash, rejection.reason)
            raise Unauthorized(SESSION_EXPIRED)

        log.warning(f"AUTH: token {truncate_hash(token_hash)} revoked on {rejection.reason}")
        self.audit.token_replay(
            rejection.user_id, token_hash, rejection.reason,
            {"current_ip": ip_address, "current_user_agent": user_agent, **rejection.details},
        )
        if self.alerts is not None:
            self.alerts.check(
                SecuritySignal.TOKEN_MULTI_IP,
                ip_address=ip_address, token_hash=token_hash, user_id=rejection.user_id,
            )
        raise Unauthorized(SESSION_EXPIRED)

    def require_role(
        self,
        authorization: Optional[str],
        roles: Iterable[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthenticatedUser:
        user = self.validate(authorization, ip_address, user_agent)
        allowed = [r.lower() for r in roles]
        if allowed and user.role.lower() not in allowed:
            self.audit.forbidden(user.id, "insufficient_role", required_roles=allowed, role=user.role)
            if self.alerts is not None:
                self.alerts.check(
                    SecuritySignal.REPEATED_403,
                    ip_address=ip_address, token_hash=user.token_hash, user_id=user.id,
                )
            raise Forbidden(f"Access denied. Required role: {', '.join(allowed)}")
        return user
