import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api.admin_security import router as admin_security_router
from .api.auth import router as auth_router
from .api.health import router as health_router
from .config import API_NAME, API_PREFIX, CORS_ORIGINS, MAX_PAYLOAD_BYTES, TRUST_PROXY
from .db_init import init_schema_and_seed
from .errors import register_error_handlers
from .logging_config import setup_logging
from .middleware import SecurityMiddleware
from .services.plane import SecurityPlane, build_security_plane

logger = logging.getLogger(__name__)


def create_app(
    plane: Optional[SecurityPlane] = None,
    trust_proxy: bool = TRUST_PROXY,
    max_payload_bytes: int = MAX_PAYLOAD_BYTES,
    init_schema: bool = True,
) -> FastAPI:
    plane = plane or build_security_plane()

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        if init_schema:
            init_schema_and_seed(plane.storage)
        logger.info(f"{API_NAME} {__version__} starting up")
        yield
        logger.info(f"{API_NAME} shutting down")

    app = FastAPI(title=API_NAME, version=__version__, lifespan=lifespan)
    app.state.security = plane

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    # must stay outermost so preflight responses carry X-Request-ID
    app.add_middleware(SecurityMiddleware, trust_proxy=trust_proxy, max_payload_bytes=max_payload_bytes)

    register_error_handlers(app)

    app.include_router(health_router, prefix=API_PREFIX)
    app.include_router(auth_router, prefix=API_PREFIX)
    app.include_router(admin_security_router, prefix=API_PREFIX)
    return app


def build_default_app() -> FastAPI:
    setup_logging()
    return create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("labapi.main:build_default_app", factory=True, host="0.0.0.0", port=8000)
