from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel

from .chat import handle_chat, handle_ping
from .config import ServerConfig
from .errors import (
    ApiError,
    err_internal,
    err_invalid_json,
    err_no_file,
    err_not_found,
    err_upload_failed,
)
from .logging_utils import AccessLog
from .middleware import (
    JsonBodyLimitMiddleware,
    RateLimitMiddleware,
    RequestLogMiddleware,
    SecurityHeadersMiddleware,
)
from .rate_limit import FixedWindowRateLimiter
from .storage import LocalUploadStorage, UploadStorage
from .upstream import UpstreamClient
from .uploads import (
    UPLOAD_FIELD,
    MascotUploadReader,
    StoredAsset,
    UploadedFile,
    build_stored_name,
)

logger = logging.getLogger(__name__)

RATE_LIMITED_GROUPS = {"/chat": "chat", "/mascot/upload": "upload"}


class HealthResponse(BaseModel):
    ok: bool
    service: str
    time: str


class ChatReply(BaseModel):
    reply: str


class PingResult(BaseModel):
    ok: bool
    count: int


class UploadResult(BaseModel):
    success: bool
    url: str


def _utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _is_json_request(request: Request) -> bool:
    media_type = request.headers.get("content-type", "").split(";", 1)[0]
    media_type = media_type.strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


async def _read_json_body(request: Request) -> object:
    """Decoded JSON body; anything that was not sent as JSON reads as ``{}``."""

    if not _is_json_request(request):
        return {}
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except ValueError as exc:
        logger.info("Rejected malformed JSON body: %s", exc)
        raise err_invalid_json() from exc


def create_app(
    cfg: ServerConfig | None = None,
    *,
    upstream: UpstreamClient | None = None,
    storage: UploadStorage | None = None,
    rate_limiter: FixedWindowRateLimiter | None = None,
    access_log: AccessLog | None = None,
) -> FastAPI:
    """Build the HTTP application.

    Every collaborator defaults to one derived from ``cfg``; tests pass fakes
    (an upstream with a stubbed client, in-memory storage, a limiter with a
    controllable clock) to keep each app isolated.
    """

    if cfg is None:
        cfg = ServerConfig.load()
    if upstream is None:
        upstream = UpstreamClient(cfg)
    if storage is None:
        storage = LocalUploadStorage(cfg.upload_dir)
    if rate_limiter is None:
        rate_limiter = FixedWindowRateLimiter.from_config(cfg)
    if access_log is None and cfg.access_log_path:
        access_log = AccessLog(cfg.access_log_path, cfg.max_log_bytes)
    read_upload = MascotUploadReader(cfg.max_upload_bytes, field_name=UPLOAD_FIELD)

    app = FastAPI(title="Mascot Backend", version="0.1")
    app.state.cfg = cfg
    app.state.upstream = upstream
    app.state.storage = storage
    app.state.rate_limiter = rate_limiter

    # Added innermost first: the last middleware registered wraps the others.
    app.add_middleware(
        RateLimitMiddleware, limiter=rate_limiter, groups=RATE_LIMITED_GROUPS
    )
    app.add_middleware(
        RequestLogMiddleware, skip_paths=("/health",), access_log=access_log
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_middleware(JsonBodyLimitMiddleware, max_bytes=cfg.max_json_bytes)
    app.add_middleware(SecurityHeadersMiddleware)

    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError):
        return JSONResponse(
            status_code=exc.status_code, content=exc.detail, headers=exc.headers
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error on %s %s", request.method, request.url.path, exc_info=exc
        )
        error = err_internal()
        return JSONResponse(status_code=error.status_code, content=error.detail)

    @app.on_event("startup")
    async def _startup():  # pragma: no cover
        if not cfg.has_credential:
            logger.warning(
                "OPENAI_API_KEY is not set; /chat and /openai/ping will fail."
            )
        logger.info(
            "Serving %s (uploads in %s, %d requests per %d ms)",
            cfg.service_name,
            cfg.upload_dir,
            cfg.rate_limit_max,
            cfg.rate_limit_window_ms,
        )

    @app.on_event("shutdown")
    async def _shutdown():  # pragma: no cover
        await upstream.aclose()

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "OK"

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(ok=True, service=cfg.service_name, time=_utc_timestamp())

    @app.get("/openai/ping", response_model=PingResult)
    async def openai_ping():
        status, payload = await handle_ping(upstream)
        return JSONResponse(status_code=status, content=payload)

    @app.get("/chat")
    async def chat_usage():
        return JSONResponse(
            status_code=405,
            content={"error": "Use POST /chat", "example": {"message": "Hello"}},
        )

    @app.post("/chat", response_model=ChatReply)
    async def chat(request: Request):
        body = await _read_json_body(request)
        status, payload = await handle_chat(body, upstream)
        return JSONResponse(status_code=status, content=payload)

    @app.post("/mascot/upload", response_model=UploadResult)
    async def upload_mascot(upload: Optional[UploadedFile] = Depends(read_upload)):
        if upload is None:
            raise err_no_file(UPLOAD_FIELD)
        name = build_stored_name(upload.original_name)
        try:
            url = await asyncio.to_thread(storage.put, name, upload.data)
        except Exception as exc:  # noqa: BLE001
            logger.error("Upload write failed for %s: %s", name, exc)
            raise err_upload_failed() from exc
        asset = StoredAsset(file_name=name, url=url)
        return UploadResult(success=True, url=asset.url)

    @app.api_route("/uploads/{name}", methods=["GET", "HEAD"])
    async def serve_upload(name: str):
        path = await asyncio.to_thread(storage.path_for, name)
        if path is not None:
            return FileResponse(path)
        data = await asyncio.to_thread(storage.get, name)
        if data is None:
            raise err_not_found()
        media_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        return Response(content=data, media_type=media_type)

    return app


app = create_app()


def main():  # pragma: no cover
    import uvicorn

    cfg: ServerConfig = app.state.cfg
    uvicorn.run(app, host=cfg.host, port=cfg.port, server_header=False)


if __name__ == "__main__":  # pragma: no cover
    main()
