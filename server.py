from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from logshare_backend.binary import resolve_tool_path
from logshare_backend.config import Settings, load_settings, setup_logging
from logshare_backend.converter import HtmlConverter
from logshare_backend.errors import (
    GenerationFailed,
    InvalidIdentifier,
    LogShareError,
    PathEscape,
    RateLimited,
    SessionNotFound,
    UploadRejected,
)
from logshare_backend.fingerprint import GenerationFingerprint, initialize_generation_marker
from logshare_backend.ratelimit import (
    PROXY_HEADERS,
    FixedWindowRateLimiter,
    RateLimitResult,
    client_key,
    run_sweeper,
)
from logshare_backend.regeneration import RegenerationOrchestrator
from logshare_backend.security import generate_session_id, normalize_session_id
from logshare_backend.validation import validate_jsonl_upload
from logshare_backend.workspace import SessionStore


logger = logging.getLogger("logshare.server")

# The converter's HTML ships inline scripts and styles.
CONTENT_SECURITY_POLICY = (
    "default-src 'self'; script-src 'self' 'unsafe-inline'; style-src 'self' 'unsafe-inline'; "
    "font-src 'self'; img-src 'self' data:; connect-src 'self'; object-src 'none'; "
    "frame-src 'none'; base-uri 'self'; form-action 'self'"
)


INTERNAL_ERROR_HTML = "<h1>Internal server error</h1>"


class UploadResponse(BaseModel):
    success: bool = True
    id: str
    url: str


def _rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    reset = datetime.fromtimestamp(result.reset_at, tz=timezone.utc)
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": reset.isoformat().replace("+00:00", "Z"),
    }


def _json_error(message: str, status_code: int, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code, headers=headers)


def _html_error(body: str, status_code: int, headers: Optional[dict[str, str]] = None) -> HTMLResponse:
    return HTMLResponse(body, status_code=status_code, headers=headers)


def _check_rate_limit(request: Request, limiter: FixedWindowRateLimiter) -> RateLimitResult:
    settings: Settings = request.app.state.settings
    result = limiter.check(client_key(request, trust_proxy_headers=settings.trust_proxy_headers))
    if not result.allowed:
        raise RateLimited(limiter.name, result)
    return result


async def upload_rate_limit(request: Request) -> RateLimitResult:
    return _check_rate_limit(request, request.app.state.upload_limiter)


async def view_rate_limit(request: Request) -> RateLimitResult:
    return _check_rate_limit(request, request.app.state.view_limiter)


def _require_localhost(request: Request) -> None:
    # Administrative endpoints; restrict to local use. Behind a reverse proxy
    # the peer is the proxy itself, so anything carrying forwarding headers is
    # treated as remote.
    if any(name in request.headers for name in PROXY_HEADERS):
        raise HTTPException(status_code=403, detail="Forbidden")
    host = getattr(request.client, "host", "") if request.client else ""
    if host not in {"127.0.0.1", "::1", "localhost"}:
        raise HTTPException(status_code=403, detail="Forbidden")


router = APIRouter()


@router.post("/api/upload")
async def upload(
    request: Request,
    file: Optional[UploadFile] = File(None),
    limit: RateLimitResult = Depends(upload_rate_limit),
) -> JSONResponse:
    headers = _rate_limit_headers(limit)

    settings: Settings = request.app.state.settings
    store: SessionStore = request.app.state.store
    orchestrator: RegenerationOrchestrator = request.app.state.orchestrator

    if file is None:
        return _json_error("No file uploaded", 400, headers)

    # Read one byte past the limit so oversized uploads are detectable.
    data = await file.read(settings.max_file_size_bytes + 1)
    try:
        # Parsing every line is CPU bound; keep it off the event loop.
        await run_in_threadpool(
            validate_jsonl_upload, file.filename, data, settings.max_file_size_bytes, settings.max_jsonl_lines
        )
    except UploadRejected as e:
        return _json_error(e.message, e.status_code, headers)

    session_id = generate_session_id()
    try:
        store.put(session_id, data)
        await orchestrator.ensure_fresh(session_id, force=True)
    except GenerationFailed as e:
        logger.error("Upload %s: %s", session_id, e)
        return _json_error("Failed to generate HTML view. Please try again.", 500, headers)
    except OSError:
        logger.exception("Upload %s: failed to store session", session_id)
        return _json_error("Failed to process upload. Please try again.", 500, headers)

    url = f"{settings.base_url}/view/{session_id}"
    logger.info("Stored session %s", session_id)
    return JSONResponse(UploadResponse(id=session_id, url=url).model_dump(), headers=headers)


@router.get("/view/{session_id}")
async def view(
    session_id: str,
    request: Request,
    limit: RateLimitResult = Depends(view_rate_limit),
) -> Response:
    headers = _rate_limit_headers(limit)

    try:
        sid = normalize_session_id(session_id)
    except InvalidIdentifier:
        return _html_error("<h1>Invalid session ID</h1>", 400, headers)

    store: SessionStore = request.app.state.store
    orchestrator: RegenerationOrchestrator = request.app.state.orchestrator
    fingerprint: GenerationFingerprint = request.app.state.fingerprint

    if not store.exists(sid):
        return _html_error("<h1>Session not found</h1>", 404, headers)

    try:
        await orchestrator.ensure_fresh(sid)
        body = store.read_output(sid)
    except GenerationFailed as e:
        logger.error("View %s: %s", sid, e)
        return _html_error("<h1>Error generating HTML</h1><p>Please try again later.</p>", 500, headers)
    except SessionNotFound:
        return _html_error("<h1>Session not found</h1>", 404, headers)
    except (OSError, PathEscape):
        logger.exception("View %s: failed to serve session", sid)
        return _html_error(INTERNAL_ERROR_HTML, 500, headers)

    headers["Cache-Control"] = "public, max-age=3600"
    headers["ETag"] = f'"{fingerprint.get()[:16]}"'
    return HTMLResponse(body, headers=headers)


@router.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})


@router.post("/api/admin/generation/invalidate")
async def invalidate_generation(request: Request) -> JSONResponse:
    """Forget the memoized fingerprint, e.g. after deploying a new converter."""
    _require_localhost(request)
    fingerprint: GenerationFingerprint = request.app.state.fingerprint
    store: SessionStore = request.app.state.store
    fingerprint.invalidate()
    value = initialize_generation_marker(fingerprint, store.generation_marker_path)
    return JSONResponse({"ok": True, "generation_hash": value})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        # Anything failing here (converter missing, unreadable config) stops
        # startup: no session can be served without a fingerprint.
        store = SessionStore(settings.storage_path)
        store.ensure_root()
        tool_path = resolve_tool_path(settings.tool_path)
        fingerprint = GenerationFingerprint(tool_path, store.generation_config_path)
        initialize_generation_marker(fingerprint, store.generation_marker_path)
        converter = HtmlConverter(tool_path, settings.tool_timeout_seconds)

        app.state.store = store
        app.state.fingerprint = fingerprint
        app.state.orchestrator = RegenerationOrchestrator(store, fingerprint, converter)
        logger.info("Serving sessions from %s with converter %s", store.root, tool_path)

        task = asyncio.create_task(
            run_sweeper([app.state.upload_limiter, app.state.view_limiter], settings.sweep_interval_seconds)
        )
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    app = FastAPI(title="logshare", lifespan=lifespan)
    app.state.settings = settings
    app.state.upload_limiter = FixedWindowRateLimiter("upload", settings.upload_window_ms, settings.upload_max)
    app.state.view_limiter = FixedWindowRateLimiter("view", settings.view_window_ms, settings.view_max)

    @app.middleware("http")
    async def _security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> Response:
        if exc.status_code == 404:
            return _html_error("<h1>404 - Not Found</h1>", 404)
        return await http_exception_handler(request, exc)

    @app.exception_handler(RateLimited)
    async def _rate_limited(request: Request, exc: RateLimited) -> Response:
        headers = _rate_limit_headers(exc.result)
        if exc.limiter == "view":
            return _html_error(f"<h1>{exc}</h1>", 429, headers)
        return _json_error(str(exc), 429, headers)

    @app.exception_handler(LogShareError)
    async def _internal_error(request: Request, exc: LogShareError) -> JSONResponse:
        logger.error("Unhandled %s on %s: %s", type(exc).__name__, request.url.path, exc)
        if request.url.path.startswith("/view/"):
            return _html_error(INTERNAL_ERROR_HTML, exc.status_code)
        return _json_error("Internal server error", exc.status_code)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    uvicorn.run("server:app", host=app.state.settings.host, port=app.state.settings.port, reload=False)
