"""
api/main.py -- FastAPI application entry point for Keygate.

Exposes the session resolver, auth controller, and user manager over HTTP
with the default route set in api/routes/v1/auth.py.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware -- adds CORS headers for allowed browser origins
  2. log_requests   -- one access log line per request with latency

Rate limits are applied per route by the @limiter.limit decorator; the
limiter itself is attached to app.state.

Lifespan handles startup (store, schema check, cache) and shutdown (close
cache, dispose engine) symmetrically.
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
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.resolver import SessionResolver
from auth.schema import ensure_schema
from auth.store import AdminStore
from cache.store import SessionCache
from core.config import get_settings

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keygate.api")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first, then the schema check, so tables exist before any
         request resolves a token.
      2. A throwaway SessionResolver validates TOKEN_NAME and
         TOKEN_EXPIRE_SECONDS; AdminError aborts startup instead of failing
         every request later.
      3. Cache last. An unreachable Redis only logs a warning.
    """
    settings = get_settings()
    if settings.debug:
        logging.getLogger("keygate").setLevel(logging.DEBUG)

    logger.info("Keygate API starting up")
    store = AdminStore(settings.database_url)
    if settings.check_tables:
        ensure_schema(store, settings.token_expire_seconds)

    SessionResolver(store, token_name=settings.token_name, expiration=settings.token_expire_seconds)

    cache = SessionCache.from_url(settings.redis_url)
    if cache.enabled and not cache.ping():
        logger.warning("Session cache unreachable -- lookups will hit the database")

    app.state.settings = settings
    app.state.store = store
    app.state.cache = cache
    # None selects DefaultPolicy (root manages users).
    app.state.policy = None
    logger.info(
        "Auth initialized (db=%s, cache=%s, token_name=%s)",
        store.dbtype,
        cache.enabled,
        settings.token_name,
    )

    yield

    cache.close()
    store.close()
    logger.info("Keygate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Keygate API",
    description="Username/password and passwordless session authentication with user management.",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

# slowapi looks for app.state.limiter by convention.
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Auth outcomes travel in the {"errno", "data"} envelope with status 200/401/403.
# These handlers cover everything outside it (rate limits, malformed JSON,
# unknown routes, crashes) with the ErrorResponse envelope.
# ---------------------------------------------------------------------------


def _error_response(status: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status, content=body.model_dump())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After so clients know when the login budget refills."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "unknown")
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "validation_error", "Request body is not valid JSON of the expected shape.", str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Registered on the Starlette base class so router-level 404/405 get the envelope too.

    Route handlers may pass a ready-made ErrorDetail dict as detail; it is
    used as-is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined here rather than in a router so it stays reachable regardless of
# router registration. Not rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and whether the session cache answers."""
    cache = getattr(request.app.state, "cache", None)
    return HealthResponse(version=API_VERSION, cache=bool(cache is not None and cache.enabled and cache.ping()))
