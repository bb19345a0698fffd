"""
api/main.py -- FastAPI application entry point for Authgate.

Exposes the authentication workflows in auth/ over HTTP under /api/auth.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
                              (credentials allowed so the refresh cookie flows)
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (settings, stores, services, purge task) and
shutdown (cancel purge task, dispose engines) symmetrically.

Errors: AuthService raises ServiceError subclasses. One handler renders all of
them into the ErrorResponse envelope and logs internal_cause, which is never
sent to the client.
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
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import ServiceError
from auth.mailer import Mailer
from auth.oauth import OAuthFlowCoordinator
from auth.revocation import SessionRevocationStore
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenService
from auth.two_factor import TwoFactorCodeStore
from cache.store import KeyValueCache
from core.config import Settings, get_settings

API_VERSION = "0.1.0"
PURGE_INTERVAL_SECONDS = 60 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_auth_service(
    settings: Settings,
    user_store: UserStore,
    cache: KeyValueCache,
    mailer: Mailer | None = None,
    oauth: OAuthFlowCoordinator | None = None,
) -> AuthService:
    """Assemble AuthService from its collaborators.

    Tests pass their own mailer / oauth coordinator; production uses the
    defaults built from settings.
    """
    return AuthService(
        users=user_store,
        tokens=TokenService(settings),
        revocations=SessionRevocationStore(cache),
        codes=TwoFactorCodeStore(cache, ttl=settings.confirmation_expiration),
        oauth=oauth or OAuthFlowCoordinator(settings, cache),
        mailer=mailer or Mailer(settings),
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired denylist entries, access codes and CSRF states every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            removed = await asyncio.to_thread(app.state.cache.purge_expired)
        except SQLAlchemyError:
            logger.exception("Cache purge failed")
            continue
        if removed:
            logger.info("Purged %d expired cache entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build every long-lived resource once and tear it down on shutdown.

    Startup order matters:
      1. Settings first -- every other component takes it by reference.
      2. Stores second -- the services and the purge task need them.
      3. AuthService, then the purge task.
    """
    logger.info("Authgate API starting up")
    settings = get_settings()
    app.state.settings = settings
    app.state.user_store = UserStore(settings.database_url)
    app.state.cache = KeyValueCache(settings.shared_cache_url)
    app.state.auth_service = build_auth_service(settings, app.state.user_store, app.state.cache)
    enabled = app.state.auth_service.oauth.enabled_providers
    logger.info("Auth initialized (oauth providers: %s)", ", ".join(enabled) or "none")
    if not app.state.auth_service.mailer.is_configured:
        logger.warning("EMAIL_HOST not set -- outgoing mail will only be logged")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.cache.close()
    app.state.user_store.close()
    logger.info("Authgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Authgate API",
    description="Email/password and OAuth authentication with rotating refresh tokens.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if _settings.debug else None,
    redoc_url=None,
    openapi_url="/api/openapi.json" if _settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current app, so the LAST registered middleware is
# the outermost. Register innermost first: SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

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

app.include_router(auth_router, prefix="/api", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a ServiceError. internal_cause goes to the log only."""
    if exc.status_code >= 500:
        logger.error(
            "%s %s -> %d: %s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.internal_cause or exc.message,
            exc_info=exc.__cause__,
        )
    elif exc.internal_cause:
        logger.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.internal_cause)
    return _error(exc.status_code, exc.code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with a structured error when the body or query fails validation.

    Only field locations and messages are echoed back, never the input values,
    so a rejected password does not end up in a response or a proxy log.
    """
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
        for err in exc.errors()
    )
    return _error(400, "validation_error", "Request validation failed.", problems)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "Something went wrong")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    try:
        database = "ok" if request.app.state.user_store.ping() else "error"
    except SQLAlchemyError:
        logger.exception("Health check database ping failed")
        database = "error"
    return HealthResponse(version=API_VERSION, components={"app": "ok", "database": database})
