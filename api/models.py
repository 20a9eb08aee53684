"""
API request and response models for authcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import PasswordEvaluation, PasswordRule

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    password max_length caps bcrypt input; bcrypt itself only reads 72 bytes.
    """

    model_config = ConfigDict(str_strip_whitespace=False)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class PasswordEvaluateRequest(BaseModel):
    password: str = Field(default="", max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login and POST /api/v1/auth/password."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    subject_id: str
    username: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject_id: str
    username: str
    token_id: str
    issued_at: datetime
    expires_at: datetime


class PasswordRequirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    met: bool


class PasswordEvaluateResponse(BaseModel):
    """Response for POST /api/v1/auth/password/evaluate.

    requirements lists every rule in policy order with its met flag, so a UI
    can render a checklist; errors lists only the unmet messages.
    """

    model_config = ConfigDict(frozen=True)

    valid: bool
    errors: list[str]
    requirements: list[PasswordRequirement]

    @classmethod
    def from_evaluation(
        cls, evaluation: PasswordEvaluation, requirements: list[tuple[PasswordRule, bool]]
    ) -> "PasswordEvaluateResponse":
        return cls(
            valid=evaluation.valid,
            errors=evaluation.messages,
            requirements=[PasswordRequirement(code=r.code, message=r.message, met=met) for r, met in requirements],
        )


class LockoutStatusResponse(BaseModel):
    """Response for the admin lockout status and unlock endpoints."""

    model_config = ConfigDict(frozen=True)

    credential_id: int
    username: str
    is_locked: bool
    remaining_minutes: int
    locked_until: Optional[datetime] = None
    failed_attempts: int


class RevokeSessionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    credential_id: int
    revoked_before: datetime


class CsrfTokenResponse(BaseModel):
    """Response for GET /api/v1/auth/csrf-token. The cookie half is set on the response."""

    model_config = ConfigDict(frozen=True)

    csrf_token: str
    header_name: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    remaining_minutes: Optional[int] = None
    violations: Optional[list[str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
