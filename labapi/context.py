"""Per-request context shared with every security component."""

import contextvars
import uuid
from dataclasses import dataclass
from typing import Optional

DEFAULT_IP = "0.0.0.0"


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    ip_address: str = DEFAULT_IP
    user_agent: str = ""
    endpoint: str = "/"
    http_method: str = "GET"


request_context_var: contextvars.ContextVar[Optional[RequestContext]] = contextvars.ContextVar(
    "request_context", default=None
)


def new_request_id() -> str:
    return str(uuid.uuid4())


def get_request_context() -> RequestContext:
    """Return the current request context, creating one outside of requests.

    Background callers (maintenance, scripts) get a context with a fresh
    request id so audit records can still be correlated.
    """
    ctx = request_context_var.get()
    if ctx is None:
        ctx = RequestContext(request_id=new_request_id())
        request_context_var.set(ctx)
    return ctx


def get_request_id() -> Optional[str]:
    ctx = request_context_var.get()
    return ctx.request_id if ctx else None


def set_request_context(ctx: RequestContext) -> contextvars.Token:
    return request_context_var.set(ctx)


def reset_request_context(token: contextvars.Token) -> None:
    request_context_var.reset(token)
