"""
api/routes/v1/auth.py -- Session, password, and operator REST endpoints.

Routes:
  GET  /api/v1/auth/csrf-token                         -- issue a CSRF cookie/token pair
  POST /api/v1/auth/login                              -- password login; sets JWT cookie
  POST /api/v1/auth/logout                             -- revokes the current token; clears cookie
  GET  /api/v1/auth/me                                 -- current principal (requires auth)
  POST /api/v1/auth/password                           -- change password (requires auth)
  POST /api/v1/auth/password/evaluate                  -- policy checklist (public)
  GET  /api/v1/auth/credentials/{id}/lockout           -- lockout status (admin key)
  POST /api/v1/auth/credentials/{id}/unlock            -- clear lockout (admin key)
  POST /api/v1/auth/credentials/{id}/revoke-sessions   -- sign out everywhere (admin key)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] LoginFlow.login() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries a token.
  Every non-GET route here is also behind the CSRF middleware in api/main.py.

Failures are raised as auth.errors exceptions and rendered by the handlers in
api/main.py; routes never build error bodies themselves, except the admin 404s.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    CsrfTokenResponse,
    LockoutStatusResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    PasswordChangeRequest,
    PasswordEvaluateRequest,
    PasswordEvaluateResponse,
    RevokeSessionsResponse,
)
from auth.csrf import CsrfGuard
from auth.dependencies import AUTH_COOKIE_NAME, client_ip, get_current_principal, require_admin_key
from auth.errors import SubjectNotFound
from auth.lockout import LockoutTracker
from auth.login import LoginFlow, LoginResult
from auth.models import Principal
from auth.passwords import PasswordPolicy
from auth.store import CredentialStore
from core.config import Settings

# Auth policy:
# - GET  /auth/csrf-token:                public
# - POST /auth/login:                     public, rate-limited
# - POST /auth/password/evaluate:         public
# - POST /auth/logout:                    requires auth (get_current_principal)
# - GET  /auth/me:                        requires auth (get_current_principal)
# - POST /auth/password:                  requires auth (get_current_principal)
# - /auth/credentials/{id}/...:           requires X-Admin-Key (require_admin_key)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response: JSONResponse, token: str, settings: Settings) -> None:
    """Attach the session token as an httpOnly cookie.

    secure follows SECURE_COOKIES, which production forces on. max_age matches
    the token TTL so the browser drops the cookie when the token would expire.
    """
    response.set_cookie(
        key=AUTH_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.token_ttl_seconds,
        path="/",
    )


def _token_response(request: Request, result: LoginResult) -> JSONResponse:
    settings: Settings = request.app.state.settings
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=result.serialized,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=settings.token_ttl_seconds,
            subject_id=result.token.subject_id,
            username=result.credential.username,
        ).model_dump(),
    )
    set_auth_cookie(resp, result.serialized, settings)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _lockout_report(request: Request, credential_id: int) -> LockoutStatusResponse:
    store: CredentialStore = request.app.state.credential_store
    tracker: LockoutTracker = request.app.state.lockout
    credential = store.get_by_id(credential_id)
    if credential is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Credential not found."},
        )
    status = tracker.check(credential)
    return LockoutStatusResponse(
        credential_id=credential.id,
        username=credential.username,
        is_locked=status.is_locked,
        remaining_minutes=status.remaining_minutes,
        locked_until=status.locked_until,
        failed_attempts=credential.failed_login_attempts,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/csrf-token", response_model=CsrfTokenResponse)
async def csrf_token(request: Request) -> JSONResponse:
    """Issue a fresh CSRF pair: cookie on the response, token in the body.

    The client echoes csrf_token in the header named by header_name on every
    state-changing request.
    """
    guard: CsrfGuard = request.app.state.csrf
    pair = guard.generate()
    resp = JSONResponse(content=CsrfTokenResponse(csrf_token=pair.token_value, header_name=guard.header_name).model_dump())
    guard.set_cookie(resp, pair)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set JWT cookie.

    Wrong username, wrong password, and the attempt that trips the lockout all
    produce the same 401 bad_credentials. Only an account that was already
    locked when the request arrived gets 423.
    """
    flow: LoginFlow = request.app.state.login_flow
    result = flow.login(body.username, body.password, ip_address=client_ip(request))
    return _token_response(request, result)


@router.post("/auth/password/evaluate", response_model=PasswordEvaluateResponse)
async def evaluate_password(request: Request, body: PasswordEvaluateRequest) -> PasswordEvaluateResponse:
    """Report which password rules a candidate meets. Nothing is stored or logged."""
    policy: PasswordPolicy = request.app.state.password_policy
    return PasswordEvaluateResponse.from_evaluation(policy.evaluate(body.password), policy.requirements(body.password))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout")
def logout(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    """Revoke the token that made this request and clear the cookie."""
    flow: LoginFlow = request.app.state.login_flow
    flow.logout(principal)
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(AUTH_COOKIE_NAME, path="/")
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> MeResponse:
    store: CredentialStore = request.app.state.credential_store
    credential = store.get_by_id(int(principal.subject_id))
    if credential is None:
        raise SubjectNotFound("credential deleted after verification", subject_id=principal.subject_id)
    return MeResponse(
        subject_id=principal.subject_id,
        username=credential.username,
        token_id=principal.token_id,
        issued_at=principal.issued_at,
        expires_at=principal.expires_at,
    )


@router.post("/auth/password", response_model=LoginResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Change the caller's password.

    Every token issued for this subject before now stops verifying, including
    the one that made this request. The response carries a replacement token
    and resets the cookie to it.
    """
    flow: LoginFlow = request.app.state.login_flow
    result = flow.change_password(principal, body.current_password, body.new_password, ip_address=client_ip(request))
    return _token_response(request, result)


# ---------------------------------------------------------------------------
# Operator endpoints (X-Admin-Key)
# ---------------------------------------------------------------------------


@router.get(
    "/auth/credentials/{credential_id}/lockout",
    response_model=LockoutStatusResponse,
    dependencies=[Depends(require_admin_key)],
)
def lockout_status(request: Request, credential_id: int) -> LockoutStatusResponse:
    """Plain report of the lock state. A locked account is still a 200 here."""
    return _lockout_report(request, credential_id)


@router.post(
    "/auth/credentials/{credential_id}/unlock",
    response_model=LockoutStatusResponse,
    dependencies=[Depends(require_admin_key)],
)
def unlock(request: Request, credential_id: int) -> LockoutStatusResponse:
    tracker: LockoutTracker = request.app.state.lockout
    if not tracker.unlock(credential_id, actor=f"admin-api@{client_ip(request)}"):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Credential not found."},
        )
    return _lockout_report(request, credential_id)


@router.post(
    "/auth/credentials/{credential_id}/revoke-sessions",
    response_model=RevokeSessionsResponse,
    dependencies=[Depends(require_admin_key)],
)
def revoke_sessions(request: Request, credential_id: int) -> RevokeSessionsResponse:
    """Invalidate every token issued to this credential up to now."""
    flow: LoginFlow = request.app.state.login_flow
    watermark = flow.revoke_sessions(credential_id)
    if watermark is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Credential not found."},
        )
    return RevokeSessionsResponse(credential_id=credential_id, revoked_before=watermark)
