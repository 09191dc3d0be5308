import logging
import time
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .config import MAX_PAYLOAD_BYTES, TRUST_PROXY
from .context import RequestContext, new_request_id, reset_request_context, set_request_context
from .errors import GENERIC_ERROR_MESSAGE, error_response
from .security import get_client_ip, get_security_headers, get_user_agent, sanitize_endpoint
from .utils.crypto import hash_token, is_well_formed_token

logger = logging.getLogger(__name__)


def _bearer_digest(authorization: Optional[str]) -> Optional[str]:
    """Digest of a well-formed bearer token, for rate-limit keying only."""
    if not authorization:
        return None
    parts = authorization.strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not is_well_formed_token(parts[1].strip()):
        return None
    return hash_token(parts[1].strip())


class SecurityMiddleware(BaseHTTPMiddleware):
    """Request boundary: correlation id, payload cap, IP blocks, rate limits, error shield.

    The security plane is read from ``app.state.security``.
    """

    def __init__(self, app: ASGIApp, trust_proxy: bool = TRUST_PROXY, max_payload_bytes: int = MAX_PAYLOAD_BYTES):
        super().__init__(app)
        self.trust_proxy = trust_proxy
        self.max_payload_bytes = max_payload_bytes

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        ctx = RequestContext(
            request_id=new_request_id(),
            ip_address=get_client_ip(request, self.trust_proxy),
            user_agent=get_user_agent(request),
            endpoint=sanitize_endpoint(request.url.path),
            http_method=request.method.upper(),
        )
        token = set_request_context(ctx)
        plane = request.app.state.security
        start_time = time.time()

        try:
            response = await self._check_payload(request)
            if response is None and ctx.http_method != "OPTIONS":
                response = await run_in_threadpool(self._admit, plane, ctx, request.headers.get("authorization"))
            if response is None:
                response = await call_next(request)
        except Exception as exc:
            logger.exception(f"unhandled error on {ctx.http_method} {ctx.endpoint}")
            await run_in_threadpool(plane.audit.exception, exc)
            response = error_response(500, GENERIC_ERROR_MESSAGE)

        response.headers["X-Request-ID"] = ctx.request_id
        for name, value in get_security_headers().items():
            response.headers.setdefault(name, value)

        logger.info(
            f"{ctx.http_method} {ctx.endpoint} {response.status_code}",
            extra={
                "status": response.status_code,
                "client_ip": ctx.ip_address,
                "latency_ms": round((time.time() - start_time) * 1000, 2),
            },
        )

        try:
            await run_in_threadpool(plane.maintenance.run_pending)
        finally:
            reset_request_context(token)
        return response

    async def _check_payload(self, request: Request) -> Optional[Response]:
        length = request.headers.get("content-length")
        if not length:
            return await self._check_streamed_payload(request)
        try:
            too_large = int(length) > self.max_payload_bytes
        except ValueError:
            return error_response(400, "Invalid Content-Length header")
        if too_large:
            return error_response(413, "Payload too large")
        return None

    async def _check_streamed_payload(self, request: Request) -> Optional[Response]:
        """Measure a body sent without Content-Length, stopping past the cap."""
        chunks = []
        size = 0
        async for chunk in request.stream():
            size += len(chunk)
            if size > self.max_payload_bytes:
                return error_response(413, "Payload too large")
            chunks.append(chunk)
        # replayed to the route by BaseHTTPMiddleware's cached request
        request._body = b"".join(chunks)
        return None

    @staticmethod
    def _admit(plane, ctx: RequestContext, authorization: Optional[str]) -> Optional[Response]:
        if plane.blocklist.is_blocked(ctx.ip_address):
            plane.audit.forbidden(None, "ip_blocked")
            return error_response(403, "Access denied")

        decision = plane.api_limiter.check(
            ctx.ip_address, ctx.endpoint, _bearer_digest(authorization), ctx.http_method
        )
        if not decision.allowed:
            return error_response(
                429,
                "Too many requests. Please slow down.",
                headers={"Retry-After": str(decision.retry_after)},
            )
        return None
