"""
auth/passwords.py -- Password strength policy and bcrypt hashing.

Policy: every rule is evaluated independently, never short-circuited, so a
caller can render all unmet requirements at once instead of revealing them one
at a time. Default rules, in this order:
  min_length, uppercase, lowercase, digit, special_char

evaluate() is what business logic uses. is_valid() and enforce() are thin
conveniences for validation boundaries (Pydantic validators, CLI prompts).

Passwords: bcrypt directly, no passlib wrapper. bcrypt reads only the first 72
bytes of a password; hash_password() and verify_password() both cut the UTF-8
encoding to 72 bytes before calling it, so long passwords hash and verify the
same way on every bcrypt release. The API layer caps input at 255 characters.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import bcrypt

from auth.errors import PasswordPolicyError
from auth.models import PasswordEvaluation, PasswordRule

PASSWORD_MIN_LENGTH = 8
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?`~"

_UPPERCASE_RE = re.compile(r"[A-Z]")
_LOWERCASE_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"[0-9]")
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")


@dataclass(frozen=True)
class PolicyCheck:
    """A rule paired with the predicate that decides it."""

    rule: PasswordRule
    check: Callable[[str], bool]


def default_checks(min_length: int = PASSWORD_MIN_LENGTH) -> list[PolicyCheck]:
    return [
        PolicyCheck(
            PasswordRule("min_length", f"Password must be at least {min_length} characters long"),
            lambda pw: len(pw) >= min_length,
        ),
        PolicyCheck(
            PasswordRule("uppercase", "Password must contain at least one uppercase letter"),
            lambda pw: bool(_UPPERCASE_RE.search(pw)),
        ),
        PolicyCheck(
            PasswordRule("lowercase", "Password must contain at least one lowercase letter"),
            lambda pw: bool(_LOWERCASE_RE.search(pw)),
        ),
        PolicyCheck(
            PasswordRule("digit", "Password must contain at least one digit"),
            lambda pw: bool(_DIGIT_RE.search(pw)),
        ),
        PolicyCheck(
            PasswordRule("special_char", f"Password must contain at least one special character ({SPECIAL_CHARACTERS})"),
            lambda pw: bool(_SPECIAL_RE.search(pw)),
        ),
    ]


class PasswordPolicy:
    """Stateless evaluator over an ordered list of PolicyChecks.

    Usage:
        policy = PasswordPolicy()
        result = policy.evaluate("hunter2")
        result.valid          # False
        result.violations     # [PasswordRule("min_length", ...), ...]
    """

    def __init__(self, checks: Sequence[PolicyCheck] | None = None, min_length: int = PASSWORD_MIN_LENGTH) -> None:
        self.checks = list(checks) if checks is not None else default_checks(min_length)

    @property
    def rules(self) -> list[PasswordRule]:
        return [c.rule for c in self.checks]

    def requirements(self, password: str | None) -> list[tuple[PasswordRule, bool]]:
        """Return (rule, met) for every rule, in policy order. None/"" meets nothing."""
        if not password:
            return [(c.rule, False) for c in self.checks]
        return [(c.rule, c.check(password)) for c in self.checks]

    def evaluate(self, password: str | None) -> PasswordEvaluation:
        violations = [rule for rule, met in self.requirements(password) if not met]
        return PasswordEvaluation(valid=not violations, violations=violations)

    def is_valid(self, password: str | None) -> bool:
        return self.evaluate(password).valid

    def enforce(self, password: str | None) -> None:
        """Raise PasswordPolicyError listing every unmet rule, or return None."""
        result = self.evaluate(password)
        if not result.valid:
            raise PasswordPolicyError(result.violations)


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


BCRYPT_MAX_BYTES = 72


def _bcrypt_input(plain: str) -> bytes:
    # bcrypt only reads 72 bytes; bcrypt>=5 raises instead of truncating.
    return plain.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_bcrypt_input(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed hash is treated as a mismatch rather than an error.
    """
    try:
        return bcrypt.checkpw(_bcrypt_input(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load; verify
# against it when the username does not exist so response time does not
# reveal whether an account exists.
DUMMY_HASH: str = hash_password("authcore_timing_dummy")
