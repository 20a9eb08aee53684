"""
auth/revocation.py -- Shared record of revoked session tokens.

Two kinds of entry:
  revoked_tokens       one row per individually revoked jti (logout, admin action)
  subject_revocations  one watermark per subject: every token for that subject
                       issued before revoked_before is invalid (password change,
                       "sign out everywhere")

Both tables live in the same SQL database as the credentials, so every process
that verifies tokens sees the same data. Rows carry expires_at = the latest
moment any token they could match is still alive; purge_expired() removes the
rest, and lookups ignore expired rows even before a purge runs.

Token iat claims keep microseconds, so a revocation at time t stores t as is.
A token is revoked exactly when its iat is earlier than t; one issued at or
after t, even within the same second, still verifies.
LoginFlow.change_password() stamps its replacement token with the returned
watermark, so the fresh token survives the revocation it follows.

Watermarks only move forward: revoke_all_for_subject() with an earlier
timestamp than the stored one leaves the stored one in place.

Caching:
  cache_seconds=0 (default): every is_revoked() reads the database, so a
      revocation is visible to the very next request on any node.
  cache_seconds>0: watermark lookups are cached per process for that long.
      Other processes may accept a revoked token for at most cache_seconds.
      Writes through this instance invalidate its own cache immediately.
  Individual jti lookups are never cached.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta

from sqlalchemy import Column, MetaData, String, Table, and_, delete, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import RevocationReason, RevocationRecord
from auth.store import from_iso, store_errors, to_iso, utcnow

logger = logging.getLogger("authcore.auth.revocation")

_MISS = object()

_metadata = MetaData()

_revoked_tokens = Table(
    "revoked_tokens",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("subject_id", String(64), nullable=False, index=True),
    Column("reason", String(32), nullable=False),
    Column("revoked_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)

_subject_revocations = Table(
    "subject_revocations",
    _metadata,
    Column("subject_id", String(64), primary_key=True),
    Column("revoked_before", String(32), nullable=False),
    Column("reason", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)


class RevocationStore:
    """Repository for revocation entries.

    Usage:
        revocations = RevocationStore(engine, token_ttl_seconds=7 * 86400)
        revocations.revoke_token(jti, subject_id, RevocationReason.logout)
        revocations.revoke_all_for_subject(subject_id, RevocationReason.password_change)
        revocations.is_revoked(jti, subject_id, issued_at)
    """

    def __init__(self, engine: Engine, token_ttl_seconds: int, cache_seconds: int = 0) -> None:
        self.engine = engine
        self.token_ttl = timedelta(seconds=token_ttl_seconds)
        self.cache_seconds = cache_seconds
        self._cache: dict[str, tuple[tuple[datetime, datetime] | None, float]] = {}
        self._cache_lock = threading.Lock()
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def revoke_token(
        self,
        token_id: str,
        subject_id: str,
        reason: RevocationReason,
        now: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        """Revoke one token. Revoking an already revoked jti is a no-op.

        expires_at should be the token's own exp; it defaults to now + TTL,
        which is never earlier than the exp of a token that is still alive.
        """
        now = now or utcnow()
        expires_at = expires_at or now + self.token_ttl
        try:
            with store_errors("revoke_token"), self.engine.begin() as conn:
                conn.execute(
                    _revoked_tokens.insert().values(
                        jti=token_id,
                        subject_id=str(subject_id),
                        reason=RevocationReason(reason).value,
                        revoked_at=to_iso(now),
                        expires_at=to_iso(expires_at),
                    )
                )
        except IntegrityError:
            logger.debug("Token %s already revoked", token_id)
            return
        logger.info("Revoked token jti=%s subject=%s reason=%s", token_id, subject_id, RevocationReason(reason).value)

    def revoke_all_for_subject(
        self,
        subject_id: str,
        reason: RevocationReason,
        now: datetime | None = None,
    ) -> datetime:
        """Invalidate every token for subject_id issued before now.

        Returns the watermark in effect after the call: now, or the stored one
        if that is already later.
        """
        subject_id = str(subject_id)
        now = now or utcnow()
        watermark = now
        values = {
            "revoked_before": to_iso(watermark),
            "reason": RevocationReason(reason).value,
            "expires_at": to_iso(watermark + self.token_ttl),
        }
        try:
            watermark = self._move_watermark(subject_id, watermark, values)
        except IntegrityError:
            # Another process inserted the first watermark concurrently; the
            # row exists now, so the conditional update path applies.
            watermark = self._move_watermark(subject_id, watermark, values)
        self._invalidate(subject_id)
        logger.warning(
            "Revoked all tokens for subject=%s issued before %s reason=%s",
            subject_id,
            watermark.isoformat(),
            values["reason"],
        )
        return watermark

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def revoked_before(self, subject_id: str, now: datetime | None = None) -> datetime | None:
        """Return the subject's live watermark, or None.

        The cache holds the stored row, not the answer, so the expiry filter
        is applied against each caller's own now.
        """
        subject_id = str(subject_id)
        now = now or utcnow()
        row = self._cached_row(subject_id)
        if row is _MISS:
            with store_errors("revoked_before"), self.engine.connect() as conn:
                row = self._read_watermark_row(conn, subject_id)
            if self.cache_seconds > 0:
                with self._cache_lock:
                    self._cache[subject_id] = (row, time.monotonic())
        if row is None:
            return None
        watermark, expires_at = row
        return watermark if expires_at > now else None

    def is_revoked(
        self,
        token_id: str,
        subject_id: str,
        issued_at: datetime,
        now: datetime | None = None,
    ) -> bool:
        """True if the jti is revoked or issued_at is before the subject's watermark.

        Raises StoreUnavailable if the database cannot be reached; the caller
        decides whether that means revoked (fail-closed) or not.
        """
        now = now or utcnow()
        with store_errors("is_revoked"), self.engine.connect() as conn:
            hit = conn.execute(
                select(_revoked_tokens.c.jti).where(
                    and_(_revoked_tokens.c.jti == token_id, _revoked_tokens.c.expires_at > to_iso(now))
                )
            ).first()
        if hit is not None:
            return True
        watermark = self.revoked_before(subject_id, now)
        return watermark is not None and issued_at < watermark

    def get_token_record(self, token_id: str) -> RevocationRecord | None:
        with store_errors("get_token_record"), self.engine.connect() as conn:
            row = conn.execute(select(_revoked_tokens).where(_revoked_tokens.c.jti == token_id)).fetchone()
        if row is None:
            return None
        return RevocationRecord(
            subject_id=row.subject_id,
            reason=RevocationReason(row.reason),
            revoked_at=from_iso(row.revoked_at),
            expires_at=from_iso(row.expires_at),
            token_id=row.jti,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete entries that can no longer match a live token. Returns rows removed."""
        cutoff = to_iso(now or utcnow())
        with store_errors("purge_expired"), self.engine.begin() as conn:
            removed = conn.execute(delete(_revoked_tokens).where(_revoked_tokens.c.expires_at <= cutoff)).rowcount
            removed += conn.execute(
                delete(_subject_revocations).where(_subject_revocations.c.expires_at <= cutoff)
            ).rowcount
        with self._cache_lock:
            self._cache.clear()
        logger.info("Purged %d expired revocation entries", removed)
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cached_row(self, subject_id: str):
        if self.cache_seconds <= 0:
            return _MISS
        with self._cache_lock:
            cached = self._cache.get(subject_id)
        if cached is None or time.monotonic() - cached[1] >= self.cache_seconds:
            return _MISS
        return cached[0]

    @staticmethod
    def _read_watermark_row(conn, subject_id: str) -> tuple[datetime, datetime] | None:
        row = conn.execute(
            select(_subject_revocations.c.revoked_before, _subject_revocations.c.expires_at).where(
                _subject_revocations.c.subject_id == subject_id
            )
        ).first()
        if row is None:
            return None
        return from_iso(row.revoked_before), from_iso(row.expires_at)

    def _invalidate(self, subject_id: str) -> None:
        with self._cache_lock:
            self._cache.pop(subject_id, None)

    def _move_watermark(self, subject_id: str, watermark: datetime, values: dict) -> datetime:
        with store_errors("revoke_all_for_subject"), self.engine.begin() as conn:
            moved = conn.execute(
                update(_subject_revocations)
                .where(
                    and_(
                        _subject_revocations.c.subject_id == subject_id,
                        _subject_revocations.c.revoked_before < values["revoked_before"],
                    )
                )
                .values(**values)
            ).rowcount
            if moved:
                return watermark
            current = conn.execute(
                select(_subject_revocations.c.revoked_before).where(_subject_revocations.c.subject_id == subject_id)
            ).scalar()
            if current is None:
                conn.execute(_subject_revocations.insert().values(subject_id=subject_id, **values))
                return watermark
        return from_iso(current)
