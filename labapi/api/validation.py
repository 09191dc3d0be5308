from typing import Optional

from pydantic import BaseModel

from ..errors import BadRequest


def require_fields(body: Optional[BaseModel], *fields: str) -> None:
    """Reject a request body lacking any of ``fields`` (blank or whitespace-only strings count as missing)."""
    if body is None:
        raise BadRequest("Request body is required")
    missing = [name for name in fields if _is_blank(getattr(body, name, None))]
    if missing:
        raise BadRequest(f"Missing required fields: {', '.join(missing)}")


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())
