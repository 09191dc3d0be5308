import hashlib
import re
import secrets
from typing import Optional

TOKEN_BYTES = 32
TOKEN_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


def hash_token(s: str) -> str:
    return hashlib.sha256(s.encode()).hexdigest()


def generate_token() -> str:
    """Return a fresh 256-bit token as 64 hex characters."""
    return secrets.token_hex(TOKEN_BYTES)


def is_well_formed_token(token: Optional[str]) -> bool:
    return bool(token) and TOKEN_PATTERN.match(token) is not None


def truncate_hash(value: Optional[str], length: int = 16) -> Optional[str]:
    """Shorten a digest for display; never store or log the full value."""
    if not value:
        return value
    return value[:length] + "..."
