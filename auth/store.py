"""
auth/store.py -- SQLAlchemy Core persistence for credential records.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_credential is the mapper. Services never touch SQL directly.

Concurrency:
  Lockout mutations (apply_failed_attempt, reset_failed_attempts) each run in
  a single transaction whose first statement writes the credential row. The
  write takes the row lock (Postgres) or the database RESERVED lock (SQLite),
  so concurrent mutations of the same credential serialize instead of losing
  updates. The increment is done in SQL (col = col + 1), never read-modify-write
  in Python.

Timeouts:
  create_store_engine() bounds every wait: SQLite busy timeout, pool checkout
  timeout, and Postgres connect timeout all come from STORE_TIMEOUT_SECONDS.
  OperationalError / pool TimeoutError are re-raised as StoreUnavailable so
  callers apply their own failure policy. IntegrityError is NOT wrapped --
  callers catch it as a signal of a duplicate username.

Timestamps are stored as fixed-width ISO 8601 UTC strings, so string order
matches time order.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import StoreUnavailable
from auth.models import Credential

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_credentials = Table(
    "credentials",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_failed_login_at", String(32)),
    Column("password_changed_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block on the lockout writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Build the shared Engine used by CredentialStore and RevocationStore."""
    if db_url.startswith("sqlite"):
        engine = create_engine(db_url, connect_args={"check_same_thread": False, "timeout": timeout})
        event.listen(engine, "connect", _set_wal_mode)
        return engine
    connect_args: dict = {}
    if db_url.startswith("postgresql"):
        connect_args["connect_timeout"] = max(1, int(timeout))
    return create_engine(db_url, pool_timeout=timeout, pool_pre_ping=True, connect_args=connect_args)


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate driver-level failures into StoreUnavailable."""
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        raise StoreUnavailable(f"{operation} failed: {exc.__class__.__name__}") from exc


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Credential records.

    Usage:
        engine = create_store_engine("sqlite:///auth.db")
        store = CredentialStore(engine)
        cid = store.create_credential(Credential(username="coach", password_hash=hash_password("S3cret!pw")))
        cred = store.get_by_username("coach")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=[_credentials])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def create_credential(self, credential: Credential) -> int:
        """Insert a credential and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        now = utcnow()
        with store_errors("create_credential"), self.engine.begin() as conn:
            result = conn.execute(
                _credentials.insert().values(
                    username=credential.username,
                    password_hash=credential.password_hash,
                    is_active=1 if credential.is_active else 0,
                    failed_login_attempts=credential.failed_login_attempts,
                    locked_until=to_iso(credential.locked_until),
                    last_failed_login_at=to_iso(credential.last_failed_login_at),
                    password_changed_at=to_iso(credential.password_changed_at or now),
                    created_at=to_iso(credential.created_at or now),
                )
            )
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> Credential | None:
        """Look up a credential by exact (case-sensitive) username."""
        with store_errors("get_by_username"), self.engine.connect() as conn:
            row = conn.execute(select(_credentials).where(_credentials.c.username == username)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def get_by_id(self, credential_id: int) -> Credential | None:
        with store_errors("get_by_id"), self.engine.connect() as conn:
            row = conn.execute(select(_credentials).where(_credentials.c.id == credential_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def is_active_subject(self, subject_id: str) -> bool:
        """Subject lookup for TokenVerifier: token sub claims are stringified ids."""
        try:
            credential_id = int(subject_id)
        except (TypeError, ValueError):
            return False
        credential = self.get_by_id(credential_id)
        return credential is not None and credential.is_active

    def update_password(self, credential_id: int, password_hash: str, changed_at: datetime) -> bool:
        """Replace the password hash and stamp password_changed_at. Returns False if not found."""
        with store_errors("update_password"), self.engine.begin() as conn:
            result = conn.execute(
                _credentials.update()
                .where(_credentials.c.id == credential_id)
                .values(password_hash=password_hash, password_changed_at=to_iso(changed_at))
            )
        return result.rowcount > 0

    def update_last_login(self, credential_id: int, when: datetime) -> None:
        with store_errors("update_last_login"), self.engine.begin() as conn:
            conn.execute(_credentials.update().where(_credentials.c.id == credential_id).values(last_login=to_iso(when)))

    def set_active(self, credential_id: int, active: bool) -> bool:
        with store_errors("set_active"), self.engine.begin() as conn:
            result = conn.execute(
                _credentials.update().where(_credentials.c.id == credential_id).values(is_active=1 if active else 0)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lockout primitives (one transaction each)
    # ------------------------------------------------------------------

    def apply_failed_attempt(
        self,
        credential_id: int,
        now: datetime,
        threshold: int,
        lock_until: datetime,
    ) -> Credential | None:
        """Count one failed login and lock the account if it reached threshold.

        The lock is only set when the account is not already locked, so an
        existing lock is never extended by further failures. Returns the
        credential as it stands after the transaction, or None if it does not
        exist.
        """
        with store_errors("apply_failed_attempt"), self.engine.begin() as conn:
            result = conn.execute(
                _credentials.update()
                .where(_credentials.c.id == credential_id)
                .values(
                    failed_login_attempts=_credentials.c.failed_login_attempts + 1,
                    last_failed_login_at=to_iso(now),
                )
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(select(_credentials).where(_credentials.c.id == credential_id)).fetchone()
            credential = _row_to_credential(row)
            already_locked = credential.locked_until is not None and credential.locked_until > now
            if credential.failed_login_attempts >= threshold and not already_locked:
                conn.execute(
                    _credentials.update()
                    .where(_credentials.c.id == credential_id)
                    .values(locked_until=to_iso(lock_until))
                )
                credential.locked_until = from_iso(to_iso(lock_until))
        return credential

    def reset_failed_attempts(self, credential_id: int) -> bool:
        """Zero the failure counter and clear the lock. Returns False if not found."""
        with store_errors("reset_failed_attempts"), self.engine.begin() as conn:
            result = conn.execute(
                _credentials.update()
                .where(_credentials.c.id == credential_id)
                .values(failed_login_attempts=0, locked_until=None, last_failed_login_at=None)
            )
        return result.rowcount > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with store_errors("ping"), self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except StoreUnavailable:
            return False
        return True


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_credential(row) -> Credential:
    return Credential(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts,
        locked_until=from_iso(row.locked_until),
        last_failed_login_at=from_iso(row.last_failed_login_at),
        password_changed_at=from_iso(row.password_changed_at),
        created_at=from_iso(row.created_at),
        last_login=from_iso(row.last_login),
    )
