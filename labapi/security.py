"""
Request origin helpers: client address, user agent, endpoint and subnet checks
"""
import ipaddress
import re
from typing import Dict, Optional

from .context import DEFAULT_IP

MAX_USER_AGENT_LENGTH = 255
MAX_ENDPOINT_LENGTH = 255

_ENDPOINT_UNSAFE = re.compile(r"[^a-zA-Z0-9/\-_.]")
_PROXY_HEADERS = ("cf-connecting-ip", "x-forwarded-for", "x-real-ip")


def _valid_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def get_client_ip(request, trust_proxy: bool = False) -> str:
    """Extract client IP from request, honouring proxy headers only if trusted"""
    if trust_proxy:
        for header in _PROXY_HEADERS:
            raw = request.headers.get(header)
            if not raw:
                continue
            for candidate in raw.split(","):
                ip = _valid_ip(candidate)
                if ip:
                    return ip

    # Fallback to direct client IP
    peer = _valid_ip(request.client.host) if request.client else None
    return peer or DEFAULT_IP


def get_user_agent(request) -> str:
    return (request.headers.get("user-agent") or "").strip()[:MAX_USER_AGENT_LENGTH]


def sanitize_endpoint(path: Optional[str]) -> str:
    """Reduce a request path to a safe counter key."""
    cleaned = _ENDPOINT_UNSAFE.sub("", path or "")[:MAX_ENDPOINT_LENGTH]
    return cleaned or "/"


def is_same_subnet(ip1: Optional[str], ip2: Optional[str]) -> bool:
    """True when both addresses share a /24 (IPv4) or /64 (IPv6) prefix.

    Identical values always match; mixed address families never do.
    """
    if ip1 == ip2:
        return True
    try:
        a = ipaddress.ip_address(ip1 or "")
        b = ipaddress.ip_address(ip2 or "")
    except ValueError:
        return False
    if a.version != b.version:
        return False
    prefix = 24 if a.version == 4 else 64
    return b in ipaddress.ip_network(f"{a}/{prefix}", strict=False)


def get_security_headers() -> Dict[str, str]:
    """Get security headers"""
    return {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
    }
