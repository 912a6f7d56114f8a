"""
api/main.py -- FastAPI application entry point for devicegate.

Run with:  uvicorn api.main:app --reload

Middleware stack:
  TrustedHostMiddleware -- rejects requests with unexpected Host headers
  CORSMiddleware        -- credentialed CORS so the browser sends the jwt cookie
  SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  log_requests          -- one INFO line per request

Lifespan builds the component graph once: the stores, then TokenIssuer,
PermissionResolver and AuthOrchestrator, all injected explicitly. Shutdown
disposes the engines symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.access import router as access_router
from api.routes.v1.auth import router as auth_router
from auth.dependencies import DEVICE_HEADER
from auth.directory import AccessDirectory, RoleLookup
from auth.errors import AuthError
from auth.passwords import BcryptPasswordHasher
from auth.permissions import PermissionResolver
from auth.service import AuthOrchestrator
from auth.store import SessionStore
from auth.tokens import TokenConfig, TokenIssuer
from auth.verification import VerificationCodeStore
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("devicegate.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Component graph
# ---------------------------------------------------------------------------


def token_config_from(settings: Settings) -> TokenConfig:
    return TokenConfig(
        access_secret=settings.access_token_secret,
        refresh_secret=settings.refresh_token_secret,
        access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
        refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
    )


def build_orchestrator(
    sessions: SessionStore,
    directory: AccessDirectory,
    verification: VerificationCodeStore,
    token_config: TokenConfig,
    hasher: BcryptPasswordHasher | None = None,
) -> AuthOrchestrator:
    """Wire the four auth components together. Used by lifespan and tests."""
    roles = RoleLookup(directory)
    permissions = PermissionResolver(users=directory, roles=roles, operations=directory, grants=directory)
    return AuthOrchestrator(
        tokens=TokenIssuer(token_config),
        sessions=sessions,
        permissions=permissions,
        users=directory,
        roles=roles,
        verification=verification,
        hasher=hasher or BcryptPasswordHasher(),
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create stores and the orchestrator on startup; dispose engines on shutdown."""
    logger.info("devicegate API starting up")
    app.state.sessions = SessionStore(_settings.database_url)
    app.state.directory = AccessDirectory(_settings.database_url)
    app.state.directory.ensure_builtin_roles()
    app.state.verification = VerificationCodeStore(
        _settings.database_url, ttl_seconds=_settings.verify_code_ttl_seconds
    )
    app.state.auth = build_orchestrator(
        app.state.sessions,
        app.state.directory,
        app.state.verification,
        token_config_from(_settings),
    )
    logger.info("Auth initialized")

    yield

    app.state.sessions.close()
    app.state.directory.close()
    app.state.verification.close()
    logger.info("devicegate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="devicegate API",
    description="Device-scoped sessions with rotating tokens and role-based access to protected operations.",
    version=__version__,
    lifespan=lifespan,
)

# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", DEVICE_HEADER, "Platform"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

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
app.include_router(access_router, prefix="/api/v1", tags=["Access"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render orchestrator failures with their own status and code."""
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail)
        ).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
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
    """Return 422 with structured error when request body or query params fail validation."""
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
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
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
    """Catch-all handler for unexpected server errors.

    The raw exception is logged, never returned: the client receives only a
    generic message.
    """
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
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    components = {"app": "ok", "database": "ok"}
    try:
        with request.app.state.sessions.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check database probe failed")
        components["database"] = "error"
    return HealthResponse(version=__version__, components=components)
