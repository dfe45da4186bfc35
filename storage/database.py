"""
storage/database.py -- SQLAlchemy Core schema and engine factory.

Uses SQLAlchemy Core (not ORM) so the dataclasses in auth/models.py remain the
authoritative domain representation. Swapping SQLite for PostgreSQL or MySQL
is a connection string change, not a rewrite.

Tables:
  users, refresh_tokens          -- owned by the auth core
  coco_money_sheets, coco_money_categories, debts, debt_categories,
  clothing_size, scale_calculator_history
                                 -- per-module documents; the auth core only
                                    seeds them at registration (see
                                    MODULE_DEFAULTS), the module CRUD handlers
                                    own everything else

There is no module-level engine. create_db_engine() is called once by the
application lifespan (or a test fixture) and the Engine is passed down; each
request checks out its own Connection.

SQLite specifics (applied only for sqlite:// URLs):
  - pysqlite's implicit BEGIN handling breaks SAVEPOINT semantics, so the
    driver is put in autocommit mode and SQLAlchemy's "begin" event emits the
    BEGIN itself (the recipe from the SQLAlchemy SQLite dialect docs).
  - BEGIN IMMEDIATE takes the write lock up front. Two requests rotating the
    same refresh token then serialize on the lock instead of the loser failing
    with SQLITE_BUSY on a stale WAL snapshot.
  - WAL journal mode and foreign keys are enabled per connection because
    SQLite PRAGMAs are not inherited from the pool.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    text,
    true,
)
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger("coco.storage")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("password", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("failed_login_attempts", Integer, nullable=False, server_default=text("0")),
    Column("locked_until", String(32)),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token", String(255), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("idx_refresh_tokens_user_id", "user_id"),
)


def _module_table(name: str, json_column: str, *, one_per_user: bool = False) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=one_per_user),
        Column(json_column, Text, nullable=False),  # JSON document serialized as text
        Column("created_at", String(32), nullable=False),
        Column("updated_at", String(32), nullable=False),
    )


coco_money_sheets = _module_table("coco_money_sheets", "data")
coco_money_categories = _module_table("coco_money_categories", "categories")
debts = _module_table("debts", "debts")
debt_categories = _module_table("debt_categories", "categories")
clothing_size = _module_table("clothing_size", "data", one_per_user=True)
scale_calculator_history = _module_table("scale_calculator_history", "history")

# (table, JSON column, empty document) seeded for every new user. Register
# inserts these inside the same transaction as the user row.
MODULE_DEFAULTS: list[tuple[Table, str, Any]] = [
    (coco_money_sheets, "data", {"income": [], "preliminary": []}),
    (coco_money_categories, "categories", []),
    (debts, "debts", []),
    (debt_categories, "categories", []),
    (clothing_size, "data", {"parameters": {}, "savedResults": [], "currentGender": "male"}),
    (scale_calculator_history, "history", []),
]


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def to_iso(ts: float) -> str:
    """Epoch seconds -> fixed-width ISO 8601 UTC string.

    timespec="microseconds" keeps every value the same width so string
    comparison in SQL (expires_at < :now) orders the same way as time does.
    """
    return datetime.fromtimestamp(ts, timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _sqlite_on_connect(dbapi_conn, connection_record) -> None:
    # Hand transaction control to SQLAlchemy (see module docstring).
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _sqlite_on_begin(conn: Connection) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(db_url: str) -> Engine:
    """Build an Engine for db_url and make sure the schema exists.

    Usage:
        engine = create_db_engine("sqlite:///coco.db")
        engine = create_db_engine("postgresql+psycopg://user:pw@host/db")
    """
    connect_args: dict = {}
    is_sqlite = db_url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if is_sqlite:
        event.listen(engine, "connect", _sqlite_on_connect)
        event.listen(engine, "begin", _sqlite_on_begin)
    init_schema(engine)
    return engine


def init_schema(engine: Engine) -> None:
    """Create all tables and indexes if they do not exist. Idempotent."""
    metadata.create_all(engine)
    logger.info("Schema ready (%d tables)", len(metadata.tables))


def dump_json(document: Any) -> str:
    return json.dumps(document, separators=(",", ":"))
