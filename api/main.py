"""
api/main.py -- FastAPI application entry point for hubgate.

hubgate sits between the browser client and the GitHub REST API. It keeps the
user's token in an encrypted session cookie, gates every upstream call on it,
and serves upstream reads through a conditional, revalidating response cache.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware    -- preflight and CORS headers for GET/OPTIONS
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan builds the shared collaborators once and stores them on app.state:
session store, upstream client, cache store, gateway and credential gate.
Settings are loaded at import time so a missing or short
SECRET_COOKIE_PASSWORD stops the process before it accepts a connection.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.orgs import router as orgs_router
from api.routes.v1.repos import router as repos_router
from api.routes.v1.session import router as session_router
from auth.gate import CredentialGate
from auth.session import SessionStore
from cache.store import CacheStore
from core.config import get_settings
from core.errors import GatewayError, InvalidCredential
from core.gateway import Gateway
from core.upstream import GitHubClient

VERSION = "0.1.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("hubgate.api")

# Header names the browser may send and read on cached resources.
CONDITIONAL_HEADERS = ["Content-Type", "If-None-Match", "If-Modified-Since"]
VALIDATOR_HEADERS = ["ETag", "Last-Modified", "Cache-Control", "X-Cache"]


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the process-wide collaborators on startup, release them on shutdown.

    The CacheStore is created here and passed to the Gateway explicitly; it is
    the only shared mutable state in the process.
    """
    settings = get_settings()
    logger.info("hubgate starting up (environment=%s)", settings.environment)

    session_store = SessionStore(settings)
    upstream = GitHubClient(settings)
    store = CacheStore(stripes=settings.cache_lock_stripes)
    gateway = Gateway(
        store,
        upstream,
        upstream_timeout=settings.upstream_timeout,
        flight_wait_timeout=settings.flight_wait_timeout,
        refresh_workers=settings.refresh_workers,
    )
    app.state.session_store = session_store
    app.state.upstream = upstream
    app.state.cache = store
    app.state.gateway = gateway
    app.state.gate = CredentialGate(session_store, upstream, timeout=settings.upstream_timeout)
    logger.info("Gateway initialized (upstream=%s)", settings.github_api_url)

    yield

    gateway.shutdown()
    upstream.close()
    logger.info("hubgate shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="hubgate",
    description="Session-gated, conditionally cached gateway to the GitHub REST API.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=CONDITIONAL_HEADERS,
    expose_headers=VALIDATOR_HEADERS,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Logs method, path, status and latency. Never logs headers or cookies: the
# session cookie carries the encrypted credential.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        ms,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(session_router, prefix="/api", tags=["Session"])
app.include_router(orgs_router, prefix="/api", tags=["Organizations"])
app.include_router(repos_router, prefix="/api", tags=["Repositories"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly. Only safe messages are rendered; upstream detail stays in
# the logs.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
    )


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render a GatewayError; drop the session when upstream rejected its credential."""
    response = _error_response(exc.status_code, exc.code, exc.message)
    if isinstance(exc, InvalidCredential):
        request.app.state.gate.revoke(response)
    return response


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Synchronous: SlowAPIMiddleware may call it directly, outside the event loop.
    """
    response = _error_response(429, "rate_limited", "Too many requests.")
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed path, query or body -> 400, before any cache or upstream work."""
    return _error_response(400, "validation_error", "Request validation failed.")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The exception goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version and the current number of cache entries."""
    return HealthResponse(version=VERSION, cache_entries=len(request.app.state.cache))
