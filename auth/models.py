"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial derived
properties). Stores and services do the work.

Timestamps are timezone-aware UTC datetimes everywhere in the domain layer.
The store converts to and from ISO 8601 strings at the persistence boundary.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass
class Credential:
    """A login identity and the lockout bookkeeping attached to it.

    password_hash is a bcrypt hash; the raw password never reaches this class.
    failed_login_attempts, locked_until and last_failed_login_at are owned by
    LockoutTracker. password_changed_at is stamped by LoginFlow.change_password().
    """

    username: str
    password_hash: str
    id: int | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    last_failed_login_at: datetime | None = None
    password_changed_at: datetime | None = None
    created_at: datetime | None = None
    last_login: datetime | None = None


@dataclass(frozen=True)
class IssuedToken:
    """The logical content of a signed session token. Never mutated."""

    subject_id: str
    token_id: str  # jti
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class Principal:
    """The verified identity attached to a request after TokenVerifier succeeds."""

    subject_id: str
    token_id: str
    issued_at: datetime
    expires_at: datetime


class RevocationReason(str, Enum):
    logout = "logout"
    password_change = "password_change"
    admin_revoke = "admin_revoke"
    security_revoke = "security_revoke"


@dataclass
class RevocationRecord:
    """One row of the revocation store.

    token_id set: a single revoked token.
    token_id None: a per-subject watermark; every token for subject_id issued
    before revoked_at is invalid.
    expires_at bounds storage: after it passes, the row can no longer match a
    live token and purge_expired() removes it.
    """

    subject_id: str
    reason: RevocationReason
    revoked_at: datetime
    expires_at: datetime
    token_id: str | None = None


@dataclass(frozen=True)
class LockoutStatus:
    is_locked: bool
    remaining_minutes: int = 0
    locked_until: datetime | None = None


@dataclass(frozen=True)
class FailedLoginResult:
    """What LockoutTracker.record_failure() did to the credential."""

    account_locked: bool
    failed_attempts: int
    attempts_remaining: int
    locked_until: datetime | None = None


@dataclass(frozen=True)
class CsrfPair:
    cookie_value: str
    token_value: str


@dataclass(frozen=True)
class PasswordRule:
    """One password requirement. code is stable and safe to send to clients."""

    code: str
    message: str


@dataclass
class PasswordEvaluation:
    valid: bool
    violations: list[PasswordRule] = field(default_factory=list)

    @property
    def messages(self) -> list[str]:
        return [rule.message for rule in self.violations]
