from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tenantguard.api.error_handling import register_exception_handlers
from tenantguard.api.routes import router
from tenantguard.config import Settings, get_settings
from tenantguard.logging import get_logger, set_correlation_id
from tenantguard.service.context import AuthContainer, build_container

logger = get_logger(__name__)

__version__ = "0.1.0"


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(
    container: Optional[AuthContainer] = None, settings: Optional[Settings] = None
) -> FastAPI:
    """Build the HTTP app around an explicit auth container.

    With no container one is built from ``settings`` (or the environment).
    """
    if container is None:
        container = build_container(settings or get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("auth_service_started", guard=container.settings.auth_guard.value)
        yield
        try:
            await container.close()
            logger.info("auth_service_stopped")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="tenantguard", version=__version__, lifespan=lifespan)
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(container.settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-Tenant-ID",
            "session_id",
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID", "API-Version", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs and the response with the caller's X-Request-ID or a fresh one."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("API-Version", __version__)
        if request.url.path.startswith("/v1/"):
            # auth responses carry tokens; never cache them
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router, prefix="/v1")

    @app.get("/healthz")
    async def health():
        return {"status": "healthy", "version": __version__}

    return app
