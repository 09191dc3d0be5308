"""
Error types raised by the security components and the handlers that render
them as ``{"success": false, "message": ...}``.
"""

import logging
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An internal error occurred. Please try again later."


class ApiError(HTTPException):
    status_code = 500
    default_message = GENERIC_ERROR_MESSAGE

    def __init__(self, message: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(status_code=self.status_code, detail=message or self.default_message, headers=headers)


class BadRequest(ApiError):
    status_code = 400
    default_message = "Invalid request"


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Access denied"


class TooManyRequests(ApiError):
    status_code = 429
    default_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message, headers={"Retry-After": str(retry_after)})


class InternalError(ApiError):
    status_code = 500


def error_response(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse({"success": False, "message": message}, status_code=status_code, headers=headers)


def register_error_handlers(app: FastAPI):
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return error_response(exc.status_code, message, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        logger.info("request validation failed on %s: %s", request.url.path, exc.errors())
        return error_response(400, "Invalid request format")
