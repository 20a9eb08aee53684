"""
core/secret_policy.py -- Strength checks for signing secrets (SECRET_KEY, CSRF_SECRET).

Checks, in order:
  1. Present and non-blank.
  2. Not a known weak/placeholder value, and not matching a placeholder pattern
     (e.g. "change_me", "your_secret_key_here").
  3. At least MIN_SECRET_LENGTH characters (256 bits of hex).
  4. Not a single repeated character, a two-character alternation, or a run of
     the sequential alphabet.
  5. Normalized Shannon entropy of at least MIN_ENTROPY_SCORE.

In strict environments (production, staging) findings 3-5 are errors; in any
other environment they are warnings so local development keeps working with a
short key. Findings 1-2 are always errors.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass, field

MIN_SECRET_LENGTH = 32
MIN_ENTROPY_SCORE = 0.5

STRICT_ENVIRONMENTS = frozenset({"production", "staging"})

PLACEHOLDER_PATTERNS = [
    re.compile(r"^your[_-]", re.IGNORECASE),
    re.compile(r"[_-]here$", re.IGNORECASE),
    re.compile(r"^change[_-]?this", re.IGNORECASE),
    re.compile(r"^replace[_-]?me", re.IGNORECASE),
    re.compile(r"^secret$", re.IGNORECASE),
    re.compile(r"^password$", re.IGNORECASE),
    re.compile(r"^test[_-]?secret", re.IGNORECASE),
    re.compile(r"^dev[_-]?secret", re.IGNORECASE),
    re.compile(r"^example", re.IGNORECASE),
    re.compile(r"^placeholder", re.IGNORECASE),
    re.compile(r"^default", re.IGNORECASE),
    re.compile(r"^sample", re.IGNORECASE),
    re.compile(r"super[_-]?secret", re.IGNORECASE),
    re.compile(r"jwt[_-]?secret[_-]?key", re.IGNORECASE),
    re.compile(r"your.*secret.*key", re.IGNORECASE),
    re.compile(r"change.*before.*production", re.IGNORECASE),
]

BLOCKED_VALUES = frozenset(
    {
        "your_super_secret_jwt_key_here",
        "secret",
        "password",
        "jwt_secret",
        "change_me",
        "replace_me",
        "your_secret_key",
        "my_secret_key",
        "development_secret",
        "test_secret",
        "supersecret",
        "mysecretkey",
    }
)

_SEQUENTIAL = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"


@dataclass
class SecretReport:
    """Outcome of validate_secret(). valid is False whenever errors is non-empty."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def is_strict(environment: str) -> bool:
    return environment.lower() in STRICT_ENVIRONMENTS


def entropy_score(value: str) -> float:
    """Shannon entropy of value, normalized to 0..1 against its maximum for len(value)."""
    if not value:
        return 0.0
    length = len(value)
    entropy = 0.0
    for count in Counter(value).values():
        p = count / length
        entropy -= p * math.log2(p)
    max_entropy = math.log2(min(length, 256))
    return entropy / max_entropy if max_entropy > 0 else 0.0


def is_repetitive(value: str) -> bool:
    """Return True for "aaaa", "abababab", or any run of the sequential alphabet."""
    if len(value) < 4:
        return True
    distinct = set(value)
    if len(distinct) == 1:
        return True
    if len(distinct) == 2 and len(value) > 8:
        pair = value[:2]
        if value == pair * (len(value) // 2):
            return True
    return value in _SEQUENTIAL or value.lower() in _SEQUENTIAL.lower()


def validate_secret(secret: str | None, name: str = "SECRET_KEY", environment: str = "development") -> SecretReport:
    """Check a signing secret against the rules in the module docstring."""
    report = SecretReport()
    if not secret:
        report.errors.append(f"{name} is not defined")
        return report

    strict = is_strict(environment)
    trimmed = secret.strip()
    if trimmed != secret:
        report.warnings.append(f"{name} contains leading or trailing whitespace")

    if trimmed.lower() in BLOCKED_VALUES:
        report.errors.append(f"{name} is a known weak/placeholder value")

    for pattern in PLACEHOLDER_PATTERNS:
        if pattern.search(trimmed):
            report.errors.append(f"{name} matches placeholder pattern: {pattern.pattern}")
            break

    soft = report.errors if strict else report.warnings

    if len(trimmed) < MIN_SECRET_LENGTH:
        soft.append(
            f"{name} is too short ({len(trimmed)} chars). "
            f"Minimum recommended: {MIN_SECRET_LENGTH} characters (256 bits)"
        )

    if is_repetitive(trimmed):
        soft.append(f"{name} appears to be a repetitive or sequential pattern")

    if len(trimmed) >= MIN_SECRET_LENGTH and entropy_score(trimmed) < MIN_ENTROPY_SCORE:
        soft.append(f"{name} has low entropy. Use a randomly generated secret")

    return report


GENERATION_HINT = 'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
