"""
auth/tokens.py -- Session token issuance and verification.

Security design decisions:
  JWT: python-jose with HS256. Claims are exactly {sub, jti, iat, exp}.
       sub is the credential id as a string; jti is uuid4 (122 random bits),
       so two issuances never collide in practice and a single token can be
       revoked without touching the subject's other sessions.

  Time: iat/exp are NumericDates with microsecond precision: an integer for
       a whole second, otherwise a fraction (RFC 7519 allows both). The
       IssuedToken the issuer returns is exactly what a verifier will decode,
       so a token issued after a watermark in the same second still verifies.
       Expiry is checked against the caller's `now` rather than python-jose's
       wall clock so tests and replays can use a fixed clock.

  Verification order (each step a distinct AuthError subclass, for logs):
       1. MissingToken     empty input
       2. InvalidToken     bad signature, wrong algorithm, missing claims
       3. ExpiredToken     now >= exp
       4. RevokedToken     jti revoked or iat before the subject watermark
       5. SubjectNotFound  credential gone or deactivated
       Clients never see which one fired -- see api/main.py.

  Store outages: if the revocation store (or the subject lookup) raises
       StoreUnavailable, fail_open decides. fail_open=False (default) rejects
       the token as RevokedToken / SubjectNotFound; fail_open=True accepts it
       and logs a warning on every occurrence.

Layer rule: no imports from api/ or core/. Secrets and TTLs arrive through
the constructors; nothing here reads configuration.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import ExpiredToken, InvalidToken, MissingToken, RevokedToken, StoreUnavailable, SubjectNotFound
from auth.models import IssuedToken, Principal
from auth.revocation import RevocationStore
from auth.store import utcnow

logger = logging.getLogger("authcore.auth.tokens")

ALGORITHM = "HS256"

SubjectLookup = Callable[[str], bool]


def _to_epoch(value: datetime) -> int | float:
    whole = int(value.replace(microsecond=0).timestamp())
    if not value.microsecond:
        return whole
    return whole + value.microsecond / 1_000_000


def _from_epoch(value: int | float) -> datetime:
    whole = math.floor(value)
    micros = round((value - whole) * 1_000_000)
    return datetime.fromtimestamp(whole, tz=timezone.utc) + timedelta(microseconds=micros)


def _is_numeric_date(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


class TokenIssuer:
    """Creates signed session tokens. Has no side effects beyond that."""

    def __init__(self, secret_key: str, ttl_seconds: int = 7 * 24 * 60 * 60, algorithm: str = ALGORITHM) -> None:
        self._secret_key = secret_key
        self.ttl = timedelta(seconds=ttl_seconds)
        self.algorithm = algorithm

    def issue(self, subject_id: str | int, now: datetime | None = None) -> tuple[IssuedToken, str]:
        """Return (IssuedToken, serialized JWT) for subject_id."""
        issued_at = now or utcnow()
        token = IssuedToken(
            subject_id=str(subject_id),
            token_id=str(uuid.uuid4()),
            issued_at=issued_at,
            expires_at=issued_at + self.ttl,
        )
        claims = {
            "sub": token.subject_id,
            "jti": token.token_id,
            "iat": _to_epoch(token.issued_at),
            "exp": _to_epoch(token.expires_at),
        }
        return token, jwt.encode(claims, self._secret_key, algorithm=self.algorithm)


class TokenVerifier:
    """Validates a serialized token and returns the Principal it asserts.

    Read-only: verify() never writes, so any number of requests can run it
    concurrently.
    """

    def __init__(
        self,
        secret_key: str,
        revocations: RevocationStore,
        subject_exists: SubjectLookup | None = None,
        fail_open: bool = False,
        algorithm: str = ALGORITHM,
    ) -> None:
        self._secret_key = secret_key
        self.revocations = revocations
        self.subject_exists = subject_exists
        self.fail_open = fail_open
        self.algorithm = algorithm

    def decode(self, serialized: str | None) -> IssuedToken:
        """Check the signature and claim shape only. Raises MissingToken / InvalidToken."""
        if not serialized:
            raise MissingToken("no token supplied")
        try:
            claims = jwt.decode(
                serialized,
                self._secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except JWTError as exc:
            raise InvalidToken(f"signature or format rejected: {exc.__class__.__name__}") from exc

        sub, jti, iat, exp = (claims.get(k) for k in ("sub", "jti", "iat", "exp"))
        if not isinstance(sub, str) or not isinstance(jti, str) or not sub or not jti:
            raise InvalidToken("missing sub/jti claim")
        if not _is_numeric_date(iat) or not _is_numeric_date(exp):
            raise InvalidToken("missing iat/exp claim", subject_id=sub, token_id=jti)
        return IssuedToken(subject_id=sub, token_id=jti, issued_at=_from_epoch(iat), expires_at=_from_epoch(exp))

    def verify(self, serialized: str | None, now: datetime | None = None) -> Principal:
        now = now or utcnow()
        token = self.decode(serialized)
        ids = {"subject_id": token.subject_id, "token_id": token.token_id}

        if now >= token.expires_at:
            raise ExpiredToken(f"expired at {token.expires_at.isoformat()}", **ids)

        try:
            revoked = self.revocations.is_revoked(token.token_id, token.subject_id, token.issued_at, now)
        except StoreUnavailable as exc:
            revoked = self._on_store_outage("revocation lookup", exc, token)
        if revoked:
            raise RevokedToken("token revoked", **ids)

        if self.subject_exists is not None:
            try:
                exists = self.subject_exists(token.subject_id)
            except StoreUnavailable as exc:
                exists = not self._on_store_outage("subject lookup", exc, token)
            if not exists:
                raise SubjectNotFound("subject missing or inactive", **ids)

        return Principal(
            subject_id=token.subject_id,
            token_id=token.token_id,
            issued_at=token.issued_at,
            expires_at=token.expires_at,
        )

    def _on_store_outage(self, what: str, exc: StoreUnavailable, token: IssuedToken) -> bool:
        """Return True if the token must be rejected because `what` could not run."""
        if self.fail_open:
            logger.warning(
                "%s unavailable, accepting token (fail-open) subject=%s jti=%s: %s",
                what,
                token.subject_id,
                token.token_id,
                exc,
            )
            return False
        logger.error(
            "%s unavailable, rejecting token (fail-closed) subject=%s jti=%s: %s",
            what,
            token.subject_id,
            token.token_id,
            exc,
        )
        return True
