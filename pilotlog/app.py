from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse

from pilotlog.api.error_handling import _error_response, register_exception_handlers
from pilotlog.api.routes import router
from pilotlog.logging import get_logger, set_correlation_id
from pilotlog.service.csrf import check_request_origin
from pilotlog.service.runtime import get_runtime

__version__ = "0.1.0"

logger = get_logger(__name__)

# Reachable over plain HTTP so load balancers can probe before TLS is in place
_HTTPS_EXEMPT_PATHS = {"/healthz"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="pilotlog auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def enforce_same_origin(request: Request, call_next):
    """Reject cross-origin state-changing requests before any handler runs."""
    runtime = get_runtime()
    result = check_request_origin(
        request.method,
        request.headers,
        public_app_url=runtime.settings.app_base_url,
        path=request.url.path,
    )
    if not result.ok:
        return _error_response(403, result.error, code="forbidden")
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, private")
    if request.headers.get("x-forwarded-proto", request.url.scheme) == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation ID for structured logs.

    Taken from ``X-Request-ID`` when the client sends one, otherwise
    generated, and echoed back in the response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def redirect_to_https(request: Request, call_next):
    runtime = get_runtime()
    if not runtime.settings.force_https or request.url.path in _HTTPS_EXEMPT_PATHS:
        return await call_next(request)
    proto = request.headers.get("x-forwarded-proto", request.url.scheme)
    if proto.split(",")[0].strip().lower() == "http":
        target = request.url.replace(scheme="https")
        return RedirectResponse(str(target), status_code=308)
    return await call_next(request)


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "version": __version__}


def create_app() -> FastAPI:
    return app
