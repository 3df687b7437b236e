from __future__ import annotations

import logging
import secrets
import time
from typing import Iterable, Mapping

from fastapi import Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.datastructures import MutableHeaders
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .errors import BodyTooLarge
from .logging_utils import AccessLog
from .rate_limit import FixedWindowRateLimiter

access_logger = logging.getLogger("mascot_backend.access")

# Helmet's defaults, minus Content-Security-Policy and with a cross-origin
# resource policy so uploaded images can be embedded from other sites.
SECURITY_HEADERS: dict[str, str] = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "cross-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


class SecurityHeadersMiddleware:
    def __init__(self, app: ASGIApp, headers: Mapping[str, str] | None = None):
        self.app = app
        self.headers = dict(SECURITY_HEADERS if headers is None else headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in self.headers.items():
                    headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_headers)


def _is_json(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


class JsonBodyLimitMiddleware:
    """Caps JSON request bodies, by declared length and while streaming."""

    def __init__(self, app: ASGIApp, max_bytes: int):
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        headers = {k.lower(): v for k, v in scope["headers"]}
        if not _is_json(headers.get(b"content-type", b"").decode("latin-1")):
            await self.app(scope, receive, send)
            return

        declared = headers.get(b"content-length")
        if declared is not None and declared.isdigit():
            if int(declared) > self.max_bytes:
                too_large = BodyTooLarge()
                response = JSONResponse(
                    status_code=too_large.status_code, content=too_large.detail
                )
                await response(scope, receive, send)
                return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    raise BodyTooLarge()
            return message

        await self.app(scope, limited_receive, send)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One access line per request: token, method, url, status, latency."""

    def __init__(
        self,
        app: ASGIApp,
        skip_paths: Iterable[str] = ("/health",),
        access_log: AccessLog | None = None,
    ):
        super().__init__(app)
        self.skip_paths = set(skip_paths)
        self.access_log = access_log

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.skip_paths:
            return await call_next(request)

        token = secrets.token_hex(4)[:7]
        url = request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"
        started = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            access_logger.info(
                "%s %s %s %s - %.3f ms", token, request.method, url, status, elapsed_ms
            )
            if self.access_log is not None:
                self.access_log.record_request(
                    request_id=token,
                    method=request.method,
                    url=url,
                    status=status,
                    elapsed_ms=elapsed_ms,
                    client=request.client.host if request.client else None,
                )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Gate the configured path prefixes, each with its own counters."""

    def __init__(
        self,
        app: ASGIApp,
        limiter: FixedWindowRateLimiter,
        groups: Mapping[str, str],
    ):
        super().__init__(app)
        self.limiter = limiter
        self.groups = dict(groups)

    def _group_for(self, path: str) -> str | None:
        for prefix, group in self.groups.items():
            if path == prefix or path.startswith(prefix + "/"):
                return group
        return None

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        group = self._group_for(request.url.path)
        if group is None:
            return await call_next(request)

        client_key = request.client.host if request.client else "unknown"
        decision = self.limiter.hit(group, client_key)
        if not decision.allowed:
            access_logger.warning(
                "Rate limit exceeded for %s on %s", client_key, request.url.path
            )
            return PlainTextResponse(
                RATE_LIMIT_MESSAGE, status_code=429, headers=decision.headers()
            )

        response = await call_next(request)
        response.headers.update(decision.headers())
        return response
