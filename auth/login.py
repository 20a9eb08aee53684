"""
auth/login.py -- Login, logout, and password change use cases.

LoginFlow is the one place that composes the lockout tracker, the password
check, the token issuer, and the revocation store. Route handlers call it and
never reimplement any of its steps.

Login order matters:
  1. Unknown username   bcrypt against DUMMY_HASH, then InvalidCredentials [C1]
  2. Already locked     AccountLocked, before bcrypt runs (no CPU spent on a
                        locked account)
  3. Inactive           InvalidCredentials, failure not counted
  4. Wrong password     record_failure(), then InvalidCredentials -- even when
                        this very failure triggered the lock, so the response
                        does not reveal that the account exists and just locked
  5. Success            record_success(), last_login, issue token

Password change revokes every earlier session for the subject and returns a
fresh token stamped with the new watermark, so it is the only one that survives.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from auth.errors import AccountLocked, InvalidCredentials, SubjectNotFound
from auth.lockout import LockoutTracker
from auth.models import Credential, IssuedToken, Principal, RevocationReason
from auth.passwords import DUMMY_HASH, PasswordPolicy, hash_password, verify_password
from auth.revocation import RevocationStore
from auth.store import CredentialStore, utcnow
from auth.tokens import TokenIssuer

logger = logging.getLogger("authcore.auth.login")


@dataclass(frozen=True)
class LoginResult:
    credential: Credential
    token: IssuedToken
    serialized: str


class LoginFlow:
    def __init__(
        self,
        store: CredentialStore,
        lockout: LockoutTracker,
        issuer: TokenIssuer,
        revocations: RevocationStore,
        policy: PasswordPolicy | None = None,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.issuer = issuer
        self.revocations = revocations
        self.policy = policy or PasswordPolicy()

    def login(
        self,
        username: str,
        password: str,
        now: datetime | None = None,
        ip_address: str = "unknown",
    ) -> LoginResult:
        """Authenticate a username/password pair and issue a session token.

        Raises InvalidCredentials or AccountLocked.
        """
        now = now or utcnow()
        credential = self.store.get_by_username(username)
        if credential is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_password(password, DUMMY_HASH)
            logger.info("Login failed reason=unknown_user ip=%s", ip_address)
            raise InvalidCredentials()

        self._reject_if_locked(credential, now, ip_address)

        if not verify_password(password, credential.password_hash):
            result = self.lockout.record_failure(credential.id, now, ip_address)
            logger.info(
                "Login failed reason=bad_password credential_id=%s attempts=%d locked=%s ip=%s",
                credential.id,
                result.failed_attempts,
                result.account_locked,
                ip_address,
            )
            raise InvalidCredentials()

        if not credential.is_active:
            logger.info("Login failed reason=inactive credential_id=%s ip=%s", credential.id, ip_address)
            raise InvalidCredentials()

        self.lockout.record_success(credential, ip_address)
        self.store.update_last_login(credential.id, now)
        token, serialized = self.issuer.issue(credential.id, now)
        logger.info("Login succeeded credential_id=%s jti=%s ip=%s", credential.id, token.token_id, ip_address)
        return LoginResult(credential=credential, token=token, serialized=serialized)

    def change_password(
        self,
        principal: Principal,
        current_password: str,
        new_password: str,
        now: datetime | None = None,
        ip_address: str = "unknown",
    ) -> LoginResult:
        """Replace the password, revoke all earlier sessions, return a fresh token.

        Raises PasswordPolicyError (new password too weak), AccountLocked,
        InvalidCredentials (current password wrong), or SubjectNotFound.
        StoreUnavailable from the revocation write leaves the old password in
        place; from the password write, sessions are revoked but the old
        password still works.
        """
        now = now or utcnow()
        self.policy.enforce(new_password)

        credential = self.store.get_by_id(int(principal.subject_id))
        if credential is None or not credential.is_active:
            raise SubjectNotFound("credential vanished during password change", subject_id=principal.subject_id)

        self._reject_if_locked(credential, now, ip_address)
        if not verify_password(current_password, credential.password_hash):
            self.lockout.record_failure(credential.id, now, ip_address)
            logger.info("Password change rejected reason=bad_password credential_id=%s ip=%s", credential.id, ip_address)
            raise InvalidCredentials()

        new_hash = hash_password(new_password)
        # Watermark first: a stored new hash always has its revocation behind it.
        watermark = self.revocations.revoke_all_for_subject(principal.subject_id, RevocationReason.password_change, now)
        self.store.update_password(credential.id, new_hash, now)
        token, serialized = self.issuer.issue(credential.id, watermark)
        logger.info("Password changed credential_id=%s ip=%s", credential.id, ip_address)
        return LoginResult(credential=credential, token=token, serialized=serialized)

    def logout(self, principal: Principal, now: datetime | None = None) -> None:
        """Revoke the token that authenticated this request."""
        self.revocations.revoke_token(
            principal.token_id,
            principal.subject_id,
            RevocationReason.logout,
            now=now,
            expires_at=principal.expires_at,
        )

    def revoke_sessions(
        self,
        credential_id: int,
        reason: RevocationReason = RevocationReason.admin_revoke,
        now: datetime | None = None,
    ) -> datetime | None:
        """Sign a credential out everywhere. Returns the watermark, or None if not found."""
        if self.store.get_by_id(credential_id) is None:
            return None
        return self.revocations.revoke_all_for_subject(str(credential_id), reason, now)

    def _reject_if_locked(self, credential: Credential, now: datetime, ip_address: str) -> None:
        status = self.lockout.check(credential, now)
        if status.is_locked:
            logger.info(
                "Login rejected reason=locked credential_id=%s remaining_minutes=%d ip=%s",
                credential.id,
                status.remaining_minutes,
                ip_address,
            )
            raise AccountLocked(status.remaining_minutes, status.locked_until)
