# src/tracas_guard/main.py
"""Application factory and command-line entry point."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from tracas_guard.api.middleware import SecurityMiddleware, error_response
from tracas_guard.api.v1 import admin_router, auth_router
from tracas_guard.core.errors import SecurityError
from tracas_guard.core.settings import Settings, get_settings
from tracas_guard.services.orchestrator import SecurityOrchestrator

logger = logging.getLogger(__name__)

SESSION_COOKIE = "tracas_session"


def create_app(
    settings: Settings | None = None,
    *,
    guard: SecurityOrchestrator | None = None,
    **collaborators: Any,
) -> FastAPI:
    """Build the API with the security pipeline installed.

    Args:
        settings: Configuration; read from the environment when omitted.
        guard: A prebuilt orchestrator. When omitted one is created from
            ``settings`` and ``collaborators`` (identity store, geo resolver,
            audit sink, redis client, session factory, clock).

    Returns:
        The FastAPI application. The orchestrator is available as
        ``app.state.guard``.
    """
    settings = settings or (guard.settings if guard is not None else get_settings())
    guard = guard or SecurityOrchestrator(settings, **collaborators)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await guard.start()
        try:
            yield
        finally:
            await guard.stop()

    app = FastAPI(
        title=settings.app_name,
        description="Request-security and trust layer",
        version=settings.app_version,
        debug=settings.debug and not settings.is_production,
        lifespan=lifespan,
    )
    app.state.guard = guard

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.secret_key,
        session_cookie=SESSION_COOKIE,
        max_age=settings.two_factor_session_ttl_seconds,
        same_site="strict",
        https_only=settings.is_production,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origin_allow_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            settings.csrf_header_name,
            settings.device_header_name,
            "X-Access-Token",
            "X-Refresh-Token",
        ],
        expose_headers=["X-New-Token", "X-New-Refresh-Token", settings.csrf_header_name],
    )
    # Added last so it runs first: nothing reaches CORS, sessions or routes unscreened.
    app.add_middleware(SecurityMiddleware, guard=guard)

    @app.exception_handler(SecurityError)
    async def handle_security_error(_request: Request, exc: SecurityError) -> JSONResponse:
        return error_response(exc)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        message = "Internal server error."
        if settings.debug and not settings.is_production:
            message = str(exc)
        return JSONResponse(
            {"success": False, "message": message, "code": "INTERNAL_ERROR"},
            status_code=500,
        )

    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint to verify the service is running."""
        return {"status": "ok"}

    return app


def main() -> None:
    """Run the API under uvicorn with settings from the environment."""
    import uvicorn

    from tracas_guard.core.logging import configure_logging

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
