"""
api/main.py -- FastAPI application entry point for Threatwatch.

Exposes ThreatIntelService over HTTP for the surrounding application and
runs the recurring KEV sync / inventory scan in the same process.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the object graph (engine -> stores -> feed clients ->
service -> scheduler) once and tears it down symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.threat_intel import router as threat_intel_router
from cmdb.schema import make_engine
from core.config import get_settings
from intel.factory import build_service

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("threatwatch.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired CVE cache entries every 6 hours.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        removed = await asyncio.to_thread(app.state.service.purge_expired_cache)
        logger.info("Purged %d expired cache entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Everything before yield runs on startup; everything after on shutdown.

    Startup order: engine, then the service graph, then background tasks
    (they reference app.state.service).
    """
    logger.info("Threatwatch API starting up")
    settings = get_settings()
    app.state.engine = make_engine(settings.database_url)
    app.state.service, app.state.scheduler = build_service(settings, app.state.engine)
    logger.info("Service initialized (breach source: %s)", settings.breach_source)
    if settings.scheduler_enabled:
        app.state.scheduler.start()
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    await app.state.scheduler.stop()
    app.state.engine.dispose()
    logger.info("Threatwatch API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Threatwatch API",
    description="Threat intelligence correlation for assets and vendors. Data from NVD and CISA KEV.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack -- each add_middleware() wraps the previous ones, so the
# last registration is the outermost layer: SlowAPI, then CORS, then TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(threat_intel_router, prefix="/api/v1", tags=["Threat Intelligence"])


# ---------------------------------------------------------------------------
# Exception handlers -- every error uses the same ErrorResponse envelope.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and a Retry-After header."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump().

    Registered on the Starlette base class so routing 404s and 405s get the
    same envelope.

    A dict detail is used as the error field directly; str(dict) would give a
    Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected errors are logged server-side; the client gets a generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint -- no rate limit; monitors must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    components = {"app": "ok", "database": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=__version__, components=components)
