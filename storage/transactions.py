"""
storage/transactions.py -- Nested transactions over one Connection.

A logical operation that must be atomic opens a scope without knowing whether
an outer operation already holds a transaction:

    tx = TransactionManager(conn)
    with tx.scope():                 # depth 0 -> 1: BEGIN
        users.create_user(...)
        with tx.scope():             # depth 1 -> 2: SAVEPOINT sp_2
            sessions.issue(...)
        # released: RELEASE SAVEPOINT sp_2
    # depth 1 -> 0: COMMIT

Rolling back an inner scope undoes only that scope's writes; the outer scope
stays intact and committable.

begin() returns a TransactionScope handle that must be handed back to
commit()/rollback(). Only the innermost open scope may be closed, so an
out-of-order close is rejected with UnbalancedTransaction before any SQL is
emitted. Prefer scope(): it pairs begin() with exactly one of commit() or
rollback() on every exit path, including task cancellation.

A TransactionManager belongs to one Connection and one request. It is not
thread-safe and must never be shared across concurrent requests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.engine import Connection, RootTransaction
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import StorageError, UnbalancedTransaction

logger = logging.getLogger("coco.storage")


@dataclass(frozen=True)
class TransactionScope:
    """Handle for one open nesting level.

    depth is the nesting depth this scope created (1 = the real transaction).
    savepoint is None for the real transaction.
    """

    depth: int
    savepoint: str | None = None


class TransactionManager:
    def __init__(self, conn: Connection) -> None:
        self._conn = conn
        self._depth = 0
        self._root: RootTransaction | None = None
        self._open: list[TransactionScope] = []

    @property
    def connection(self) -> Connection:
        return self._conn

    @property
    def depth(self) -> int:
        return self._depth

    def begin(self) -> TransactionScope:
        if self._depth == 0:
            self._root = self._conn.begin()
            scope = TransactionScope(depth=1)
        else:
            label = f"sp_{self._depth + 1}"
            self._savepoint_sql(f"SAVEPOINT {label}")
            scope = TransactionScope(depth=self._depth + 1, savepoint=label)
        self._depth += 1
        self._open.append(scope)
        return scope

    def commit(self, scope: TransactionScope) -> None:
        self._check_innermost(scope, "commit")
        self._depth -= 1
        self._open.pop()
        if self._depth == 0:
            root, self._root = self._root, None
            try:
                root.commit()
            except SQLAlchemyError as exc:
                # A failed COMMIT leaves the root unusable; clear it so the
                # connection can begin again.
                try:
                    root.rollback()
                except SQLAlchemyError:
                    logger.exception("Rollback after failed commit also failed")
                raise StorageError() from exc
        else:
            self._savepoint_sql(f"RELEASE SAVEPOINT {scope.savepoint}")

    def rollback(self, scope: TransactionScope) -> None:
        self._check_innermost(scope, "rollback")
        self._depth -= 1
        self._open.pop()
        if self._depth == 0:
            root, self._root = self._root, None
            try:
                root.rollback()
            except SQLAlchemyError as exc:
                raise StorageError() from exc
        else:
            self._savepoint_sql(f"ROLLBACK TO SAVEPOINT {scope.savepoint}")
            self._savepoint_sql(f"RELEASE SAVEPOINT {scope.savepoint}")

    @contextmanager
    def scope(self) -> Iterator[TransactionScope]:
        """Open a scope; commit on normal exit, roll back on any exception.

        BaseException is caught so a cancelled request (CancelledError,
        KeyboardInterrupt) still releases the transaction. Driver errors are
        re-raised as StorageError after the rollback; the original stays
        chained for the logs.
        """
        scope = self.begin()
        try:
            yield scope
        except BaseException as exc:
            try:
                self.rollback(scope)
            except StorageError:
                logger.exception("Rollback failed at depth %d", scope.depth)
            if isinstance(exc, SQLAlchemyError):
                raise StorageError() from exc
            raise
        self.commit(scope)

    def _check_innermost(self, scope: TransactionScope, action: str) -> None:
        if self._depth == 0:
            logger.error("%s() called with no open transaction", action)
            raise UnbalancedTransaction(f"{action}() called with no open transaction")
        if self._open[-1] is not scope:
            logger.error("%s() called for depth %d while depth %d is innermost", action, scope.depth, self._depth)
            raise UnbalancedTransaction(f"{action}() called for a scope that is not the innermost one")

    def _savepoint_sql(self, statement: str) -> None:
        try:
            self._conn.exec_driver_sql(statement)
        except SQLAlchemyError as exc:
            raise StorageError() from exc
