"""
auth/store.py -- SQLAlchemy Core persistence for User rows.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. The service and routes never touch SQL directly.

Unlike a store that owns an Engine, UserStore works on the request's
Connection through its TransactionManager. Every method opens a scope, so a
call made inside an outer operation (registration) becomes a savepoint, and a
call made on its own becomes a short transaction.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Failed-attempt counters are changed with `failed_login_attempts + 1` in SQL
  and the lockout is applied with a conditional UPDATE, never read-modify-
  write in Python. Concurrent failed logins cannot lose increments.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateEmail
from auth.models import User
from storage.database import MODULE_DEFAULTS, dump_json, to_iso, users
from storage.transactions import TransactionManager


class UserStore:
    """Repository for User rows and the per-module records seeded with them.

    Usage:
        store = UserStore(TransactionManager(conn))
        user = store.create_user("a@example.com", "Ann", hash_password("secret123"))
        store.get_by_email("a@example.com")
    """

    def __init__(self, tx: TransactionManager, clock: Callable[[], float] = time.time) -> None:
        self._tx = tx
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_email(self, email: str) -> User | None:
        """Exact match on the normalized (lowercased) email. None if not found."""
        with self._tx.scope():
            row = self._tx.connection.execute(select(users).where(users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self._tx.scope():
            row = self._tx.connection.execute(select(users).where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, email: str, name: str, password_hash: str) -> User:
        """Insert a user and return it with its assigned id.

        Raises DuplicateEmail if the UNIQUE(email) constraint fires -- this is
        the authoritative check; the service's pre-check only gives a fast
        answer in the common case.
        """
        now = to_iso(self._clock())
        with self._tx.scope():
            try:
                result = self._tx.connection.execute(
                    users.insert().values(
                        email=email,
                        name=name,
                        password=password_hash,
                        created_at=now,
                        updated_at=now,
                        is_active=True,
                        failed_login_attempts=0,
                    )
                )
            except IntegrityError as exc:
                raise DuplicateEmail() from exc
            user_id = result.inserted_primary_key[0]
        return User(
            id=user_id,
            email=email,
            name=name,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )

    def initialize_module_data(self, user_id: int) -> None:
        """Seed one empty document per module table for a new user."""
        now = to_iso(self._clock())
        with self._tx.scope():
            for table, column, document in MODULE_DEFAULTS:
                self._tx.connection.execute(
                    table.insert().values(
                        {
                            "user_id": user_id,
                            column: dump_json(document),
                            "created_at": now,
                            "updated_at": now,
                        }
                    )
                )

    def increment_failed_attempts(self, user_id: int, max_attempts: int, lock_until: float) -> bool:
        """Atomically bump the failure counter and lock once it reaches max_attempts.

        Returns True if this call left the account locked.
        """
        now = to_iso(self._clock())
        with self._tx.scope():
            conn = self._tx.connection
            conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(failed_login_attempts=users.c.failed_login_attempts + 1, updated_at=now)
            )
            locked = conn.execute(
                users.update()
                .where((users.c.id == user_id) & (users.c.failed_login_attempts >= max_attempts))
                .values(locked_until=to_iso(lock_until))
            )
        return locked.rowcount > 0

    def record_login_success(self, user_id: int) -> None:
        """Reset the failure counter, clear any lockout and stamp last_login."""
        now = to_iso(self._clock())
        with self._tx.scope():
            self._tx.connection.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(failed_login_attempts=0, locked_until=None, last_login=now, updated_at=now)
            )

    def clear_expired_lockout(self, user_id: int) -> bool:
        """Reset counter and lockout, but only if the lockout is already over."""
        now = to_iso(self._clock())
        with self._tx.scope():
            result = self._tx.connection.execute(
                users.update()
                .where((users.c.id == user_id) & users.c.locked_until.is_not(None) & (users.c.locked_until <= now))
                .values(failed_login_attempts=0, locked_until=None, updated_at=now)
            )
        return result.rowcount > 0

    def clear_lockout(self, user_id: int) -> bool:
        """Reset counter and lockout without touching last_login. Admin/CLI use."""
        with self._tx.scope():
            result = self._tx.connection.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(failed_login_attempts=0, locked_until=None, updated_at=to_iso(self._clock()))
            )
        return result.rowcount > 0

    def set_active(self, user_id: int, active: bool) -> bool:
        """Activate or deactivate an account. Returns False if user_id was not found."""
        with self._tx.scope():
            result = self._tx.connection.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(is_active=active, updated_at=to_iso(self._clock()))
            )
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password,
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts or 0,
        locked_until=row.locked_until,
        last_login=row.last_login,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
