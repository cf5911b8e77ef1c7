"""
api/main.py -- FastAPI application entry point for Thalexa.

Run with:      uvicorn asgi:app --reload
               python main.py

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- enforces per-route rate limits from core.limiter
  3. SessionMiddleware     -- signed cookie holding authlib's OAuth state

Lifespan builds every shared object (user store, session codec, identity
resolver, OAuth registry) and puts it on app.state. Routes read them from
there, so tests can wire in-memory replacements through a patched lifespan.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import StorageError
from auth.oauth import create_oauth
from auth.resolver import IdentityResolver
from auth.sessions import DatabaseSessionStore, InMemorySessionStore, SessionCodec, SessionStore
from auth.store import UserStore
from core.config import Settings, get_settings
from core.limiter import limiter

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("thalexa.api")

_PURGE_INTERVAL_SECONDS = 10 * 60

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop expired sessions every 10 minutes.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A storage failure is
    logged and the loop carries on.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        try:
            removed = app.state.sessions.store.purge_expired()
        except StorageError:
            logger.warning("Session purge failed on storage; retrying next cycle")
            continue
        if removed:
            logger.info("Purged %d expired sessions", removed)


def build_session_store(settings: Settings, user_store: UserStore) -> SessionStore:
    """Pick the session backend named by SESSION_BACKEND."""
    if settings.session_backend == "database":
        return DatabaseSessionStore(user_store.engine)
    return InMemorySessionStore()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Session state lives exactly as long as this context.
    """
    settings = get_settings()
    logger.info("Thalexa starting up")

    app.state.user_store = UserStore(settings.database_url, ssl_verify=settings.database_ssl_verify)
    logger.info("User store initialized")
    session_store = build_session_store(settings, app.state.user_store)
    app.state.sessions = SessionCodec(session_store, app.state.user_store, settings.session_ttl_seconds)
    app.state.resolver = IdentityResolver(app.state.user_store)
    logger.info("Sessions initialized (backend=%s)", settings.session_backend)
    app.state.oauth = create_oauth(settings)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.sessions.store.close()
    app.state.user_store.close()
    logger.info("Thalexa shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Thalexa",
    description="Google sign-in with a protected dashboard.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the existing stack, so the last one added is the
# outermost. Register innermost first.
# ---------------------------------------------------------------------------

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback. It is not where the
# login session lives; that is the opaque session_id cookie.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=_settings.secure_cookies)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


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
# Web UI router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# Browsers never see error detail: page requests are redirected to the login
# page. /api/ requests get the ErrorResponse envelope.
# ---------------------------------------------------------------------------


def _is_api_request(request: Request) -> bool:
    return request.url.path.startswith("/api/")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Return 429 with a structured error when a rate limit is exceeded.

    Page requests (the /auth/google login redirect) go back to the login
    page with a whitelisted error code instead.
    """
    if not _is_api_request(request):
        logger.warning("Rate limit exceeded on %s: %s", request.url.path, exc.detail)
        return RedirectResponse("/?error=rate_limited", status_code=302)
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
    """Return 422 with structured error when query params fail validation."""
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
async def http_exception_handler(request: Request, exc: HTTPException):
    """Structured JSON for /api/ paths; page requests go back to the login page.

    404 on a page path is kept as a plain 404 so mistyped URLs do not bounce.
    """
    if not _is_api_request(request) and exc.status_code in (401, 403):
        return RedirectResponse("/", status_code=302)
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
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    if not _is_api_request(request):
        return RedirectResponse("/", status_code=302)
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
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and database reachability."""
    db_ok = request.app.state.user_store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
