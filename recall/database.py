"""
SQLite Row Store.

Holds the three row collections (messages, memories, knowledge) plus the
users table that message authors are upserted into. Stores receive a
Database and issue parameterized filtered scans and single-row writes
against it; no other component touches SQL directly.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Sequence

logger = logging.getLogger("recall.database")


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        platform TEXT NOT NULL,
        platform_user_id TEXT NOT NULL,
        username TEXT NOT NULL,
        display_name TEXT,
        is_bot INTEGER NOT NULL DEFAULT 0,
        message_count INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        UNIQUE(platform, platform_user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        platform TEXT NOT NULL,
        platform_message_id TEXT NOT NULL,
        guild_id TEXT,
        channel_id TEXT NOT NULL,
        content TEXT NOT NULL,
        embedding BLOB,
        created_at INTEGER NOT NULL,
        UNIQUE(platform, platform_message_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_channel ON messages(channel_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_messages_guild ON messages(guild_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS memories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        scope TEXT NOT NULL,
        type TEXT NOT NULL CHECK (type IN ('preference', 'fact', 'instruction', 'context', 'profile_update')),
        content TEXT NOT NULL,
        embedding BLOB,
        source TEXT NOT NULL CHECK (source IN ('explicit', 'inferred')),
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_partition ON memories(user_id, scope, type)",
    "CREATE INDEX IF NOT EXISTS idx_memories_source ON memories(user_id, scope, source, updated_at)",
    """
    CREATE TABLE IF NOT EXISTS knowledge_base (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        guild_id TEXT NOT NULL,
        content TEXT NOT NULL,
        tags TEXT NOT NULL DEFAULT '[]',
        added_by INTEGER NOT NULL,
        embedding BLOB,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_knowledge_guild ON knowledge_base(guild_id)",
]


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def to_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are treated as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_ms(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class Database:
    """
    Thin wrapper around a single SQLite connection.

    A single connection keeps ":memory:" databases alive across calls and
    gives read-your-writes consistency within the process.
    """

    def __init__(self, db_path: str = "recall.db"):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level=None,  # autocommit; transaction() opens explicit ones
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._in_transaction = False
        self._init_db()
        logger.info(f"Database initialized: {db_path}")

    def _init_db(self) -> None:
        """Initialize the database schema."""
        for statement in SCHEMA:
            self._conn.execute(statement)

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database is closed")
        return self._conn

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute a single statement."""
        return self.connection.execute(sql, params)

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return self.connection.execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        return self.connection.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block of statements atomically.

        Nested use joins the outer transaction.
        """
        if self._in_transaction:
            yield self.connection
            return

        conn = self.connection
        conn.execute("BEGIN IMMEDIATE")
        self._in_transaction = True
        try:
            yield conn
        except Exception:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._in_transaction = False

    def close(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Database connection closed")
