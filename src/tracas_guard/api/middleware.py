"""ASGI middleware running the pre-route security stages."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from starlette.concurrency import run_in_threadpool
from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from tracas_guard.core.errors import PayloadTooLargeError, SecurityError
from tracas_guard.core.settings import Settings
from tracas_guard.services.orchestrator import GuardedRequest, SecurityOrchestrator

logger = logging.getLogger(__name__)

UNKNOWN_ADDRESS = "unknown"


def security_headers(settings: Settings, path: str) -> dict[str, str]:
    """Hardening headers added to every response."""
    if not settings.security_headers_enabled:
        return {}
    headers = {
        "X-Frame-Options": "DENY",
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Permissions-Policy": "camera=(), microphone=(), geolocation=(self), payment=()",
    }
    if path.startswith("/api/"):
        headers["Cache-Control"] = "no-store, no-cache, must-revalidate, proxy-revalidate"
        headers["Pragma"] = "no-cache"
    if settings.is_production:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"
    return headers


def error_response(error: SecurityError, extra_headers: Mapping[str, str] | None = None) -> JSONResponse:
    """Render a rejection as ``{success: false, message, code}``."""
    headers = dict(extra_headers or {})
    headers.update(error.headers)
    return JSONResponse(error.to_payload(), status_code=error.status_code, headers=headers)


def client_address(request: Request) -> str:
    return request.client.host if request.client else UNKNOWN_ADDRESS


class SecurityMiddleware:
    """Ban check, header validation, rate limit, WAF and CSRF before any route runs."""

    def __init__(self, app: ASGIApp, guard: SecurityOrchestrator) -> None:
        self.app = app
        self.guard = guard

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        limit = self.guard.settings.max_body_bytes
        body = await self._read_body(receive, limit)
        if body is None:
            logger.info("Rejected %s %s: body exceeds %d bytes", request.method, request.url.path, limit)
            response = error_response(
                PayloadTooLargeError(), security_headers(self.guard.settings, request.url.path)
            )
            await response(scope, receive, send)
            return
        guarded = GuardedRequest(
            address=client_address(request),
            method=request.method,
            path=request.url.path,
            query_string=scope.get("query_string", b"").decode("latin-1"),
            headers=request.headers,
            cookies=request.cookies,
            body=body.decode("utf-8", errors="replace"),
        )
        hardening = security_headers(self.guard.settings, guarded.path)

        try:
            # Screening is CPU bound; keep it off the event loop.
            decision = await run_in_threadpool(self.guard.screen, guarded)
        except SecurityError as err:
            logger.info(
                "Rejected %s %s from %s: %s", guarded.method, guarded.path, guarded.address, err.code
            )
            response = error_response(err, hardening)
            await response(scope, receive, send)
            return

        extra = dict(hardening)
        if decision is not None:
            extra.update(decision.headers())

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in extra.items():
                    if name not in headers:
                        headers[name] = value
            await send(message)

        await self.app(scope, self._replay(body, receive), send_with_headers)

    @staticmethod
    async def _read_body(receive: Receive, limit: int) -> bytes | None:
        """Buffer the request body, or return None once it grows past ``limit`` bytes."""
        chunks: list[bytes] = []
        size = 0
        while True:
            message = await receive()
            if message["type"] != "http.request":
                break
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > limit:
                return None
            chunks.append(chunk)
            if not message.get("more_body", False):
                break
        return b"".join(chunks)

    @staticmethod
    def _replay(body: bytes, receive: Receive) -> Receive:
        delivered = False

        async def replay() -> Message:
            nonlocal delivered
            if not delivered:
                delivered = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return replay
