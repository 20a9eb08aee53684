"""
api/main.py -- FastAPI application entry point for authcore.

Exposes the session-security core over HTTP: login/logout, CSRF token
issuance, password change and evaluation, and operator lockout/revocation
endpoints.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. csrf_protect          -- double-submit check on every non-safe method
  5. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every component from Settings once and hangs it on app.state;
routes and dependencies read it from there. Nothing in auth/ is a module-level
singleton.

Error boundary: every auth.errors family has exactly one handler below. All
AuthError subclasses render the same generic 401 so clients cannot tell an
expired token from a revoked one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.engine import Engine

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.csrf import CsrfGuard
from auth.dependencies import AuthGateway, client_ip
from auth.errors import (
    AccountLocked,
    AuthError,
    CsrfError,
    InvalidCredentials,
    LoginError,
    PasswordPolicyError,
    StoreUnavailable,
)
from auth.lockout import LockoutTracker
from auth.login import LoginFlow
from auth.passwords import PasswordPolicy
from auth.revocation import RevocationStore
from auth.store import CredentialStore, create_store_engine
from auth.tokens import TokenIssuer, TokenVerifier
from core.config import Settings, get_settings

VERSION = "0.1.0"
PURGE_INTERVAL_SECONDS = 6 * 60 * 60

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def build_components(app: FastAPI, settings: Settings, engine: Engine | None = None) -> None:
    """Construct every auth component from settings and attach it to app.state.

    Order matters: the verifier needs the revocation store and the credential
    store's subject lookup; LoginFlow needs everything else.
    """
    engine = engine or create_store_engine(settings.database_url, settings.store_timeout_seconds)
    credential_store = CredentialStore(engine)
    revocations = RevocationStore(
        engine,
        token_ttl_seconds=settings.token_ttl_seconds,
        cache_seconds=settings.revocation_cache_seconds,
    )
    verifier = TokenVerifier(
        settings.secret_key,
        revocations,
        subject_exists=credential_store.is_active_subject,
        fail_open=settings.revocation_fail_open,
    )
    lockout = LockoutTracker(
        credential_store,
        threshold=settings.lockout_threshold,
        duration_minutes=settings.lockout_duration_minutes,
        enabled=settings.lockout_enabled,
    )
    policy = PasswordPolicy(min_length=settings.password_min_length)

    app.state.settings = settings
    app.state.engine = engine
    app.state.credential_store = credential_store
    app.state.revocations = revocations
    app.state.lockout = lockout
    app.state.password_policy = policy
    app.state.gateway = AuthGateway(verifier)
    app.state.csrf = CsrfGuard(
        settings.csrf_secret,
        app_name=settings.app_name,
        production=settings.is_production,
        token_size=settings.csrf_token_size,
        ignored_methods=settings.csrf_ignored_methods,
        header_name=settings.csrf_header_name,
    )
    app.state.login_flow = LoginFlow(
        credential_store,
        lockout,
        TokenIssuer(settings.secret_key, ttl_seconds=settings.token_ttl_seconds),
        revocations,
        policy,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired revocation rows every 6 hours.

    Lookups already ignore expired rows, so this is storage hygiene only. A
    failed purge is logged and retried on the next cycle. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            removed = await asyncio.to_thread(app.state.revocations.purge_expired)
        except StoreUnavailable as exc:
            logger.warning("Revocation purge skipped: %s", exc)
            continue
        logger.info("Purged %d expired revocation rows", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build components on startup; cancel the purge task and dispose the engine on shutdown."""
    logger.info("authcore API starting up (environment=%s)", _settings.environment)
    build_components(app, _settings)
    logger.info(
        "Auth initialized (lockout=%s threshold=%d fail_open=%s)",
        _settings.lockout_enabled,
        _settings.lockout_threshold,
        _settings.revocation_fail_open,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.engine.dispose()
    logger.info("authcore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authcore API",
    description="Session tokens, revocation, account lockout, CSRF, and password policy.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None if _settings.is_production else "/docs",
    redoc_url=None,
)


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, **extra)).model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# CSRF middleware
#
# Exceptions raised inside http middleware functions bypass the exception
# handlers, so the rejection response is built here directly.
# ---------------------------------------------------------------------------


async def csrf_protect(request: Request, call_next):
    guard: CsrfGuard = request.app.state.csrf
    try:
        guard.protect(
            request.method,
            request.cookies.get(guard.cookie_name),
            request.headers.get(guard.header_name),
        )
    except CsrfError as exc:
        logger.warning(
            "CSRF rejected %s %s ip=%s",
            request.method,
            request.url.path,
            client_ip(request),
        )
        return _error(403, exc.code, exc.message)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() calls wrap the app outward: the last one registered sees
# the request first. csrf_protect is registered before CORSMiddleware so its
# 403s still carry CORS headers; log_requests below sits outside everything.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.middleware("http")(csrf_protect)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", _settings.csrf_header_name, "X-Admin-Key"],
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
        client_ip(request),
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Every token failure looks the same from outside. The kind was logged by AuthGateway."""
    return _error(401, AuthError.code, AuthError.message)


@app.exception_handler(LoginError)
async def login_error_handler(request: Request, exc: LoginError) -> JSONResponse:
    """401 bad_credentials, or 423 when the account was already locked."""
    if isinstance(exc, AccountLocked):
        response = _error(
            423,
            exc.code,
            f"{exc.message} {exc.retry_hint}",
            remaining_minutes=exc.remaining_minutes,
        )
        response.headers["Retry-After"] = str(exc.remaining_minutes * 60)
    else:
        response = _error(401, InvalidCredentials.code, InvalidCredentials.message)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


@app.exception_handler(CsrfError)
async def csrf_error_handler(request: Request, exc: CsrfError) -> JSONResponse:
    return _error(403, exc.code, exc.message)


@app.exception_handler(PasswordPolicyError)
async def password_policy_handler(request: Request, exc: PasswordPolicyError) -> JSONResponse:
    """400 listing every unmet rule at once."""
    return _error(
        400,
        exc.code,
        "Password does not meet requirements.",
        detail=exc.detail,
        violations=[rule.message for rule in exc.violations],
    )


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    response = _error(503, exc.code, exc.message)
    response.headers["Retry-After"] = "5"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", detail=str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Only field locations and messages are echoed, never the submitted values,
    so a rejected password does not come back in the response.
    """
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return _error(422, "validation_error", "Request validation failed.", detail=problems)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Routes raise HTTPException with a dict detail; use it as the error field as-is."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and whether the database answers."""
    db_ok = request.app.state.credential_store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
