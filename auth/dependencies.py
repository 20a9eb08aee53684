"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- API clients.

AuthGateway.authenticate() turns a Request into a Principal or raises one of
the AuthError subclasses. The reason is logged here (code, subject, jti,
client IP); the boundary handler in api/main.py collapses every AuthError to
the same generic 401 so clients learn nothing about why.

get_current_principal() is the dependency routes use. require_admin_key()
gates the operator endpoints on the X-Admin-Key header.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import HTTPException, Request

from auth.errors import AuthError
from auth.models import Principal
from auth.tokens import TokenVerifier

logger = logging.getLogger("authcore.auth.gateway")

AUTH_COOKIE_NAME = "access_token"


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def extract_token(request: Request) -> str | None:
    """Return the raw token from the auth cookie or the Bearer header, or None."""
    token: str | None = request.cookies.get(AUTH_COOKIE_NAME)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


class AuthGateway:
    """Authenticates inbound requests against a TokenVerifier.

    Usage:
        gateway = AuthGateway(verifier)
        principal = gateway.authenticate(request)
    """

    def __init__(self, verifier: TokenVerifier) -> None:
        self.verifier = verifier

    def authenticate(self, request: Request) -> Principal:
        try:
            return self.verifier.verify(extract_token(request))
        except AuthError as exc:
            logger.info(
                "Authentication rejected code=%s subject=%s jti=%s path=%s ip=%s",
                exc.code,
                exc.subject_id or "-",
                exc.token_id or "-",
                request.url.path,
                client_ip(request),
            )
            raise


def get_current_principal(request: Request) -> Principal:
    """Require a valid session token. AuthError propagates to the 401 handler.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    gateway: AuthGateway = request.app.state.gateway
    principal = gateway.authenticate(request)
    request.state.principal = principal
    return principal


def require_admin_key(request: Request) -> None:
    """Require X-Admin-Key to match ADMIN_API_KEY. Raises HTTP 403 otherwise.

    An empty ADMIN_API_KEY disables every admin endpoint. The comparison is
    constant-time.
    """
    expected: str = request.app.state.settings.admin_api_key
    supplied = request.headers.get("X-Admin-Key", "")
    if not expected or not supplied or not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Admin key rejected path=%s ip=%s", request.url.path, client_ip(request))
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
