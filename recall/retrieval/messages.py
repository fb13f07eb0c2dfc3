"""
Message Semantic Index.

Append-only store of channel messages with optional embeddings. Rows
without an embedding are invisible to similarity search but still show
up in recency queries.
"""

import logging
import sqlite3
from typing import Optional

from ..database import Database, from_ms, now_ms, to_ms
from ..errors import NotFound
from ..vector_math import (
    MS_PER_DAY,
    VectorLike,
    age_in_days,
    as_vector,
    cosine_similarity,
    deserialize_vector,
    serialize_vector,
    time_decay_score,
)
from .base import MessageInsert, SimilarMessage, StoredMessage

logger = logging.getLogger("recall.retrieval.messages")

DEFAULT_TIME_RANGE_MS = 30 * MS_PER_DAY

# Sentinel: use the index default time range
_DEFAULT_RANGE = object()

_SELECT_WITH_AUTHOR = """
    SELECT m.*, u.username, u.display_name, u.is_bot
    FROM messages m
    JOIN users u ON m.user_id = u.id
"""


class MessageIndex:
    """SQLite-backed message store with decay-scored similarity search."""

    def __init__(
        self,
        db: Database,
        default_decay_factor: float = 0.98,
        default_time_range_ms: Optional[int] = DEFAULT_TIME_RANGE_MS,
        include_bot_by_default: bool = False,
    ):
        self.db = db
        self.default_decay_factor = default_decay_factor
        self.default_time_range_ms = default_time_range_ms
        self.include_bot_by_default = include_bot_by_default

    def _row_to_message(self, row: sqlite3.Row) -> StoredMessage:
        """Convert a database row to a StoredMessage."""
        return StoredMessage(
            id=row["id"],
            user_id=row["user_id"],
            platform=row["platform"],
            platform_message_id=row["platform_message_id"],
            guild_id=row["guild_id"],
            channel_id=row["channel_id"],
            content=row["content"],
            embedding=deserialize_vector(row["embedding"]),
            created_at=from_ms(row["created_at"]),
            username=row["username"] or "",
            display_name=row["display_name"],
            is_bot=bool(row["is_bot"]),
        )

    def _upsert_user(self, message: MessageInsert, timestamp: int) -> int:
        """Create or refresh the author row and return its internal id."""
        self.db.execute(
            """
            INSERT INTO users (platform, platform_user_id, username, display_name, is_bot, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(platform, platform_user_id) DO UPDATE SET
                username = excluded.username,
                display_name = COALESCE(excluded.display_name, users.display_name),
                is_bot = excluded.is_bot,
                updated_at = excluded.updated_at
            """,
            (
                message.platform,
                message.platform_user_id,
                message.username,
                message.display_name,
                1 if message.is_bot else 0,
                timestamp,
                timestamp,
            ),
        )
        row = self.db.fetch_one(
            "SELECT id FROM users WHERE platform = ? AND platform_user_id = ?",
            (message.platform, message.platform_user_id),
        )
        return row["id"]

    async def insert(self, message: MessageInsert) -> int:
        """
        Store a message, returning its id.

        Idempotent per (platform, platform_message_id): a duplicate insert
        returns the existing row's id.
        """
        created_at = to_ms(message.timestamp) if message.timestamp else now_ms()
        embedding = serialize_vector(message.embedding) if message.embedding is not None else None

        with self.db.transaction():
            existing = self.db.fetch_one(
                "SELECT id FROM messages WHERE platform = ? AND platform_message_id = ?",
                (message.platform, message.platform_message_id),
            )
            if existing:
                logger.debug(
                    f"Message {message.platform}:{message.platform_message_id} already stored as {existing['id']}"
                )
                return existing["id"]

            user_id = self._upsert_user(message, now_ms())
            cursor = self.db.execute(
                """
                INSERT INTO messages (
                    user_id, platform, platform_message_id, guild_id, channel_id,
                    content, embedding, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    message.platform,
                    message.platform_message_id,
                    message.guild_id,
                    message.channel_id,
                    message.content,
                    embedding,
                    created_at,
                ),
            )
            self.db.execute(
                "UPDATE users SET message_count = message_count + 1 WHERE id = ?",
                (user_id,),
            )
            return cursor.lastrowid

    async def update_embedding(self, message_id: int, embedding: VectorLike) -> None:
        """
        Set or replace the embedding of an existing message.

        Raises:
            NotFound: If no message has this id
        """
        cursor = self.db.execute(
            "UPDATE messages SET embedding = ? WHERE id = ?",
            (serialize_vector(embedding), message_id),
        )
        if cursor.rowcount == 0:
            raise NotFound(f"Message {message_id} not found")

    async def search(
        self,
        query_embedding: VectorLike,
        channel_id: Optional[str] = None,
        guild_id: Optional[str] = None,
        limit: int = 10,
        decay_factor: Optional[float] = None,
        include_bot: Optional[bool] = None,
        time_range_ms=_DEFAULT_RANGE,
    ) -> list[SimilarMessage]:
        """
        Find messages similar to a query vector.

        Args:
            query_embedding: The embedding to search for
            channel_id: Only messages from this channel
            guild_id: Only messages from this guild
            limit: Maximum number of results
            decay_factor: Per-day decay applied to similarity (1 disables decay)
            include_bot: Include messages written by bots
            time_range_ms: Only messages newer than now - time_range_ms.
                None (or <= 0) searches the whole history. Defaults to
                the index default.

        Returns:
            Results sorted by decayed score, highest first
        """
        decay_factor = self.default_decay_factor if decay_factor is None else decay_factor
        if time_range_ms is _DEFAULT_RANGE:
            time_range_ms = self.default_time_range_ms
        include_bot = self.include_bot_by_default if include_bot is None else include_bot
        query_vector = as_vector(query_embedding)
        now = now_ms()

        query = _SELECT_WITH_AUTHOR + " WHERE m.embedding IS NOT NULL"
        params: list = []

        if not include_bot:
            query += " AND u.is_bot = 0"
        if channel_id:
            query += " AND m.channel_id = ?"
            params.append(channel_id)
        if guild_id:
            query += " AND m.guild_id = ?"
            params.append(guild_id)
        if time_range_ms is not None and time_range_ms > 0:
            query += " AND m.created_at > ?"
            params.append(now - time_range_ms)

        results = []
        for row in self.db.fetch_all(query, params):
            message = self._row_to_message(row)
            similarity = cosine_similarity(query_vector, message.embedding)
            score = time_decay_score(similarity, age_in_days(row["created_at"], now), decay_factor)

            results.append(SimilarMessage(
                id=message.id,
                platform=message.platform,
                channel_id=message.channel_id,
                user_id=message.user_id,
                user_name=message.author_name,
                content=message.content,
                is_bot=message.is_bot,
                timestamp=message.created_at,
                similarity=similarity,
                score=score,
            ))

        results.sort(key=lambda r: r.score, reverse=True)
        logger.debug(f"Message search: {len(results)} candidates, returning top {limit}")
        return results[:limit]

    async def get_recent(self, channel_id: str, limit: int = 20) -> list[StoredMessage]:
        """Most recent messages in a channel, newest first."""
        rows = self.db.fetch_all(
            _SELECT_WITH_AUTHOR + " WHERE m.channel_id = ? ORDER BY m.created_at DESC, m.id DESC LIMIT ?",
            (channel_id, limit),
        )
        return [self._row_to_message(row) for row in rows]

    async def get_by_platform_id(self, platform: str, platform_message_id: str) -> Optional[StoredMessage]:
        row = self.db.fetch_one(
            _SELECT_WITH_AUTHOR + " WHERE m.platform = ? AND m.platform_message_id = ?",
            (platform, platform_message_id),
        )
        return self._row_to_message(row) if row else None

    async def exists(self, platform: str, platform_message_id: str) -> bool:
        row = self.db.fetch_one(
            "SELECT 1 FROM messages WHERE platform = ? AND platform_message_id = ? LIMIT 1",
            (platform, platform_message_id),
        )
        return row is not None

    async def count(self) -> int:
        return self.db.fetch_one("SELECT COUNT(*) AS count FROM messages")["count"]

    async def get_unembedded(self, limit: int = 50) -> list[StoredMessage]:
        """Oldest messages still waiting for an embedding."""
        rows = self.db.fetch_all(
            _SELECT_WITH_AUTHOR + " WHERE m.embedding IS NULL ORDER BY m.created_at ASC LIMIT ?",
            (limit,),
        )
        return [self._row_to_message(row) for row in rows]

    async def count_unembedded(self) -> int:
        return self.db.fetch_one(
            "SELECT COUNT(*) AS count FROM messages WHERE embedding IS NULL"
        )["count"]
