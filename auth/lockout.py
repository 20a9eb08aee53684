"""
auth/lockout.py -- Account lockout state machine.

States (derived from the credential row as of `now`, never stored directly):
  Active  locked_until is NULL or not in the future. Logins proceed.
  Locked  locked_until > now. LoginFlow rejects before running bcrypt.

Transitions:
  Active -> Locked   record_failure() brings failed_login_attempts to threshold.
  Locked -> Active   lazily, once now >= locked_until (no sweeper), or
                     explicitly via unlock().
  any    -> Active   record_success() resets the counter and clears the lock.

The counter is NOT reset when a lock expires. The first failure after expiry
therefore re-locks immediately; only a successful login or an admin unlock
gives the account a fresh set of attempts.

All mutations go through CredentialStore's single-transaction primitives, so
concurrent failures on the same account are all counted.

Security events (lock, success after failures, unlock) are logged at WARNING on
the "authcore.security" logger with credential id, counts, and client IP.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from auth.models import Credential, FailedLoginResult, LockoutStatus
from auth.store import CredentialStore, utcnow

logger = logging.getLogger("authcore.security")


def remaining_minutes(locked_until: datetime | None, now: datetime) -> int:
    """Whole minutes left on a lock, rounded up. 0 when unlocked or expired."""
    if locked_until is None:
        return 0
    seconds = (locked_until - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 60)


class LockoutTracker:
    """Per-credential failure counting and lock decisions.

    Usage:
        tracker = LockoutTracker(store, threshold=5, duration_minutes=15)
        status = tracker.check(credential)
        if status.is_locked: ...
        tracker.record_failure(credential.id, ip_address="203.0.113.9")
        tracker.record_success(credential)
    """

    def __init__(
        self,
        store: CredentialStore,
        threshold: int = 5,
        duration_minutes: int = 15,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.duration = timedelta(minutes=duration_minutes)
        self.enabled = enabled

    def check(self, credential: Credential | None, now: datetime | None = None) -> LockoutStatus:
        """Pure read of the lock state. Never writes."""
        if credential is None or not self.enabled:
            return LockoutStatus(is_locked=False)
        now = now or utcnow()
        if credential.locked_until is None or credential.locked_until <= now:
            return LockoutStatus(is_locked=False)
        return LockoutStatus(
            is_locked=True,
            remaining_minutes=remaining_minutes(credential.locked_until, now),
            locked_until=credential.locked_until,
        )

    def status(self, credential_id: int, now: datetime | None = None) -> LockoutStatus | None:
        """Load the credential and report its lock state. None if it does not exist."""
        credential = self.store.get_by_id(credential_id)
        if credential is None:
            return None
        return self.check(credential, now)

    def record_failure(
        self,
        credential_id: int,
        now: datetime | None = None,
        ip_address: str = "unknown",
    ) -> FailedLoginResult:
        """Count one failed login; lock the account when the threshold is reached.

        Raises LookupError if the credential does not exist.
        """
        now = now or utcnow()
        if not self.enabled:
            credential = self.store.get_by_id(credential_id)
            if credential is None:
                raise LookupError(f"credential {credential_id} not found")
            return FailedLoginResult(
                account_locked=False,
                failed_attempts=credential.failed_login_attempts,
                attempts_remaining=self.threshold,
            )

        lock_until = now + self.duration
        credential = self.store.apply_failed_attempt(credential_id, now, self.threshold, lock_until)
        if credential is None:
            raise LookupError(f"credential {credential_id} not found")

        attempts = credential.failed_login_attempts
        if attempts >= self.threshold and credential.locked_until is not None and credential.locked_until > now:
            if credential.locked_until == lock_until:
                logger.warning(
                    "Account locked after failed login attempts credential_id=%s attempts=%d locked_until=%s ip=%s",
                    credential_id,
                    attempts,
                    credential.locked_until.isoformat(),
                    ip_address,
                )
            return FailedLoginResult(
                account_locked=True,
                failed_attempts=attempts,
                attempts_remaining=0,
                locked_until=credential.locked_until,
            )
        return FailedLoginResult(
            account_locked=False,
            failed_attempts=attempts,
            attempts_remaining=max(self.threshold - attempts, 0),
        )

    def record_success(self, credential: Credential, ip_address: str = "unknown") -> None:
        """Reset the counter and clear any lock, unconditionally."""
        if not self.enabled:
            return
        self.store.reset_failed_attempts(credential.id)
        if credential.failed_login_attempts > 0:
            logger.warning(
                "Successful login after failed attempts credential_id=%s previous_failures=%d was_locked=%s ip=%s",
                credential.id,
                credential.failed_login_attempts,
                credential.locked_until is not None,
                ip_address,
            )

    def unlock(self, credential_id: int, actor: str = "admin") -> bool:
        """Administrative reset. Returns False if the credential does not exist."""
        found = self.store.reset_failed_attempts(credential_id)
        if found:
            logger.warning("Account unlocked credential_id=%s by=%s", credential_id, actor)
        return found
