"""
auth/errors.py -- Closed set of failure types raised by the auth core.

Every failure the core can produce is one of the leaf classes below. The
boundary handler in api/main.py matches on the four families (AuthError,
LoginError, CsrfError, PasswordPolicyError) plus StoreUnavailable, and nothing
else from this package should reach a client.

Each class carries a stable `code`. For AuthError subclasses the code is for
logs only -- clients always see the same generic 401 so a caller cannot tell
an expired token from a revoked one or from an unknown subject.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime


class CoreError(Exception):
    code = "error"
    message = "Request failed."

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.message)
        self.detail = detail


# ---------------------------------------------------------------------------
# Token authentication
# ---------------------------------------------------------------------------


class AuthError(CoreError):
    """subject_id / token_id are filled in when the token got far enough to be decoded."""

    code = "unauthorized"
    message = "Not authorized."

    def __init__(self, detail: str | None = None, subject_id: str | None = None, token_id: str | None = None) -> None:
        super().__init__(detail)
        self.subject_id = subject_id
        self.token_id = token_id


class MissingToken(AuthError):
    code = "missing_token"


class InvalidToken(AuthError):
    code = "invalid_token"


class ExpiredToken(AuthError):
    code = "expired_token"


class RevokedToken(AuthError):
    code = "revoked_token"


class SubjectNotFound(AuthError):
    code = "subject_not_found"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class LoginError(CoreError):
    code = "login_failed"


class InvalidCredentials(LoginError):
    code = "bad_credentials"
    message = "Invalid username or password."


class AccountLocked(LoginError):
    code = "account_locked"
    message = "Account is temporarily locked due to too many failed login attempts."

    def __init__(self, remaining_minutes: int, locked_until: datetime | None = None) -> None:
        super().__init__()
        self.remaining_minutes = remaining_minutes
        self.locked_until = locked_until

    @property
    def retry_hint(self) -> str:
        unit = "minute" if self.remaining_minutes == 1 else "minutes"
        return f"Please try again in {self.remaining_minutes} {unit}."


# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------


class CsrfError(CoreError):
    code = "csrf_failed"


class InvalidOrMissingCsrfToken(CsrfError):
    code = "invalid_csrf_token"
    message = "Invalid or missing CSRF token."


# ---------------------------------------------------------------------------
# Password policy
# ---------------------------------------------------------------------------


class PasswordPolicyError(CoreError):
    """Raised by PasswordPolicy.enforce(). Safe to return verbatim to the caller."""

    code = "weak_password"

    def __init__(self, violations: list) -> None:
        self.violations = list(violations)
        super().__init__(". ".join(rule.message for rule in self.violations))


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class StoreUnavailable(CoreError):
    """A credential or revocation store call failed or timed out."""

    code = "service_unavailable"
    message = "Service temporarily unavailable."
