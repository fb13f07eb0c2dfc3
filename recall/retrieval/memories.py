"""
Memory Store.

Per-user, per-scope facts, preferences and instructions. The write path
keeps two invariants:

- Dedup: within a (user, scope, type) partition no two rows are more
  similar than the dedup threshold. A near-duplicate write rewrites the
  best-matching row instead of inserting.
- Eviction: a (user, scope) partition never holds more than max_inferred
  inferred rows; the oldest-by-updated_at inferred row makes room.
  Explicit memories are never evicted.

Dedup needs a vector, so when the embedding provider is unavailable rows are
stored without one and dedup is skipped. Eviction applies either way.
"""

import asyncio
import logging
import sqlite3
import weakref
from typing import Optional

import numpy as np

from ..database import Database, from_ms, now_ms
from ..errors import NotFound, ProviderError, ProviderUnavailable
from ..vector_math import VectorLike, as_vector, cosine_similarity, deserialize_vector, serialize_vector
from .base import (
    MEMORY_SOURCES,
    MEMORY_TYPES,
    Memory,
    MemoryCount,
    MemorySearchResult,
    MemorySource,
    MemoryType,
    SaveResult,
    Scope,
    partition_key,
    scope_from_key,
)
from .gateway import EmbeddingGateway

logger = logging.getLogger("recall.retrieval.memories")

DEDUP_THRESHOLD = 0.85
MAX_INFERRED = 10
PROMPT_THRESHOLD = 0.3


class MemoryStore:
    """SQLite-backed user memories with semantic dedup and bounded eviction."""

    def __init__(
        self,
        db: Database,
        gateway: EmbeddingGateway,
        dedup_threshold: float = DEDUP_THRESHOLD,
        max_inferred: int = MAX_INFERRED,
        prompt_threshold: float = PROMPT_THRESHOLD,
    ):
        self.db = db
        self.gateway = gateway
        self.dedup_threshold = dedup_threshold
        self.max_inferred = max_inferred
        self.prompt_threshold = prompt_threshold
        # One lock per (user_id, scope key): serializes dedup, eviction and insert.
        # Entries disappear once no task holds or waits on the lock.
        self._partition_locks: weakref.WeakValueDictionary[tuple[int, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, user_id: int, scope_key: str) -> asyncio.Lock:
        lock = self._partition_locks.get((user_id, scope_key))
        if lock is None:
            lock = asyncio.Lock()
            self._partition_locks[(user_id, scope_key)] = lock
        return lock

    def _next_timestamp(self, user_id: int, scope_key: str) -> int:
        """
        A write time later than every updated_at in the partition.

        Eviction orders by updated_at, so two writes landing in the same
        millisecond must still be ordered.
        """
        latest = self.db.fetch_one(
            "SELECT MAX(updated_at) AS latest FROM memories WHERE user_id = ? AND scope = ?",
            (user_id, scope_key),
        )["latest"]
        now = now_ms()
        if latest is not None and latest >= now:
            return latest + 1
        return now

    def _row_to_memory(self, row: sqlite3.Row) -> Memory:
        """Convert a database row to a Memory."""
        return Memory(
            id=row["id"],
            user_id=row["user_id"],
            scope=scope_from_key(row["scope"]),
            type=row["type"],
            content=row["content"],
            source=row["source"],
            embedding=deserialize_vector(row["embedding"]),
            created_at=from_ms(row["created_at"]),
            updated_at=from_ms(row["updated_at"]),
        )

    async def _try_embed(self, text: str) -> Optional[np.ndarray]:
        """Embed text, or None when the provider is unavailable or failing."""
        if not self.gateway.is_ready():
            return None
        try:
            return await self.gateway.embed(text)
        except ProviderUnavailable:
            return None
        except ProviderError as e:
            logger.warning(f"Embedding unavailable, continuing without one: {e}")
            return None

    # =========================================================================
    # Write path
    # =========================================================================

    def _find_similar(
        self,
        user_id: int,
        scope_key: str,
        memory_type: str,
        embedding: np.ndarray,
        exclude_id: Optional[int] = None,
    ) -> Optional[sqlite3.Row]:
        """Best-scoring row in the partition above the dedup threshold."""
        rows = self.db.fetch_all(
            """
            SELECT * FROM memories
            WHERE user_id = ? AND scope = ? AND type = ? AND embedding IS NOT NULL
            """,
            (user_id, scope_key, memory_type),
        )

        best_match = None
        best_score = self.dedup_threshold
        for row in rows:
            if row["id"] == exclude_id:
                continue
            score = cosine_similarity(embedding, deserialize_vector(row["embedding"]))
            if score > best_score:
                best_match = row
                best_score = score

        if best_match is not None:
            logger.debug(f"Memory {best_match['id']} matches new content (score={best_score:.3f})")
        return best_match

    def _enforce_inferred_cap(self, user_id: int, scope_key: str, headroom: int) -> int:
        """
        Delete the oldest inferred rows so that `headroom` more can be added.

        Returns the number of rows evicted.
        """
        count = self.db.fetch_one(
            "SELECT COUNT(*) AS count FROM memories WHERE user_id = ? AND scope = ? AND source = 'inferred'",
            (user_id, scope_key),
        )["count"]

        excess = count + headroom - self.max_inferred
        if excess <= 0:
            return 0

        self.db.execute(
            """
            DELETE FROM memories WHERE id IN (
                SELECT id FROM memories
                WHERE user_id = ? AND scope = ? AND source = 'inferred'
                ORDER BY updated_at ASC, id ASC
                LIMIT ?
            )
            """,
            (user_id, scope_key, excess),
        )
        logger.info(f"Evicted {excess} inferred memories for user {user_id} in {scope_key}")
        return excess

    async def save(
        self,
        user_id: int,
        scope: Scope,
        type: MemoryType,
        content: str,
        source: MemorySource = "explicit",
    ) -> SaveResult:
        """
        Save a memory, deduplicating against the partition.

        If a memory of the same type scores above the dedup threshold, that
        row is rewritten in place and `updated` is True.
        """
        if type not in MEMORY_TYPES:
            raise ValueError(f"Unknown memory type: {type}")
        if source not in MEMORY_SOURCES:
            raise ValueError(f"Unknown memory source: {source}")

        # Embed before taking the lock; the provider call is the slow part
        embedding = await self._try_embed(content)
        scope_key = partition_key(scope)
        blob = serialize_vector(embedding) if embedding is not None else None

        async with self._lock_for(user_id, scope_key):
            with self.db.transaction():
                now = self._next_timestamp(user_id, scope_key)

                if embedding is not None:
                    similar = self._find_similar(user_id, scope_key, type, embedding)
                    if similar is not None:
                        self.db.execute(
                            "UPDATE memories SET content = ?, embedding = ?, updated_at = ? WHERE id = ?",
                            (content, blob, now, similar["id"]),
                        )
                        return SaveResult(id=similar["id"], updated=True)

                if source == "inferred":
                    self._enforce_inferred_cap(user_id, scope_key, headroom=1)

                cursor = self.db.execute(
                    """
                    INSERT INTO memories (user_id, scope, type, content, embedding, source, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, scope_key, type, content, blob, source, now, now),
                )
                return SaveResult(id=cursor.lastrowid, updated=False)

    async def update_memory(self, memory_id: int, content: str) -> Memory:
        """
        Replace a memory's content and regenerate its embedding.

        The embedding is cleared when it can't be regenerated, so a stale
        vector never describes new content. If the new content duplicates
        another memory of the same type, the two are merged and the
        surviving memory is returned.

        Raises:
            NotFound: If no memory has this id
        """
        row = self.db.fetch_one("SELECT * FROM memories WHERE id = ?", (memory_id,))
        if row is None:
            raise NotFound(f"Memory {memory_id} not found")

        embedding = await self._try_embed(content)
        blob = serialize_vector(embedding) if embedding is not None else None
        user_id, scope_key = row["user_id"], row["scope"]
        survivor = memory_id

        async with self._lock_for(user_id, scope_key):
            with self.db.transaction():
                cursor = self.db.execute(
                    "UPDATE memories SET content = ?, embedding = ?, updated_at = ? WHERE id = ?",
                    (content, blob, self._next_timestamp(user_id, scope_key), memory_id),
                )
                if cursor.rowcount == 0:
                    raise NotFound(f"Memory {memory_id} not found")

                if embedding is not None:
                    updated = self.db.fetch_one("SELECT * FROM memories WHERE id = ?", (memory_id,))
                    merged_into = self._absorb_into_duplicate(updated, embedding, scope_key)
                    if merged_into is not None:
                        logger.debug(f"Memory {memory_id} merged into {merged_into} after update")
                        survivor = merged_into

        return await self.get_memory(survivor)

    def _absorb_into_duplicate(self, row: sqlite3.Row, embedding: np.ndarray, scope_key: str) -> Optional[int]:
        """
        Fold `row` into a near-duplicate in `scope_key`, if one exists.

        The newer content wins. Returns the surviving id, or None when there
        is no duplicate.
        """
        match = self._find_similar(row["user_id"], scope_key, row["type"], embedding, exclude_id=row["id"])
        if match is None:
            return None

        if row["updated_at"] > match["updated_at"]:
            self.db.execute(
                "UPDATE memories SET content = ?, embedding = ?, updated_at = ? WHERE id = ?",
                (row["content"], serialize_vector(embedding), row["updated_at"], match["id"]),
            )
        self.db.execute("DELETE FROM memories WHERE id = ?", (row["id"],))
        return match["id"]

    async def store_embedding(self, memory_id: int, embedding: VectorLike) -> int:
        """
        Attach an embedding to a memory stored without one.

        Once the vector is known the row may turn out to duplicate another;
        in that case the two are merged. Returns the id of the surviving row.

        Raises:
            NotFound: If no memory has this id
        """
        vector = as_vector(embedding)
        row = self.db.fetch_one("SELECT * FROM memories WHERE id = ?", (memory_id,))
        if row is None:
            raise NotFound(f"Memory {memory_id} not found")

        async with self._lock_for(row["user_id"], row["scope"]):
            with self.db.transaction():
                survivor = self._absorb_into_duplicate(row, vector, row["scope"])
                if survivor is not None:
                    logger.debug(f"Memory {memory_id} merged into {survivor} after embedding")
                    return survivor
                self.db.execute(
                    "UPDATE memories SET embedding = ? WHERE id = ?",
                    (serialize_vector(vector), memory_id),
                )
                return memory_id

    # =========================================================================
    # Read path
    # =========================================================================

    async def get_memory(self, memory_id: int) -> Memory:
        """
        Raises:
            NotFound: If no memory has this id
        """
        row = self.db.fetch_one("SELECT * FROM memories WHERE id = ?", (memory_id,))
        if row is None:
            raise NotFound(f"Memory {memory_id} not found")
        return self._row_to_memory(row)

    async def get_memories(self, user_id: int, scope: Scope) -> list[Memory]:
        """All memories in a partition, most recently updated first."""
        rows = self.db.fetch_all(
            "SELECT * FROM memories WHERE user_id = ? AND scope = ? ORDER BY updated_at DESC, id DESC",
            (user_id, partition_key(scope)),
        )
        return [self._row_to_memory(row) for row in rows]

    async def get_memories_by_type(self, user_id: int, scope: Scope, type: MemoryType) -> list[Memory]:
        rows = self.db.fetch_all(
            """
            SELECT * FROM memories WHERE user_id = ? AND scope = ? AND type = ?
            ORDER BY updated_at DESC, id DESC
            """,
            (user_id, partition_key(scope), type),
        )
        return [self._row_to_memory(row) for row in rows]

    def _score_partition(
        self,
        user_id: int,
        scope_key: str,
        query_embedding: np.ndarray,
        time_range_ms: Optional[int] = None,
    ) -> list[MemorySearchResult]:
        query = "SELECT * FROM memories WHERE user_id = ? AND scope = ? AND embedding IS NOT NULL"
        params: list = [user_id, scope_key]
        if time_range_ms is not None and time_range_ms > 0:
            query += " AND created_at > ?"
            params.append(now_ms() - time_range_ms)

        scored = []
        for row in self.db.fetch_all(query, params):
            memory = self._row_to_memory(row)
            scored.append(MemorySearchResult(
                memory=memory,
                score=cosine_similarity(query_embedding, memory.embedding),
            ))

        scored.sort(key=lambda r: r.score, reverse=True)
        return scored

    async def search_memories(
        self,
        user_id: int,
        scope: Scope,
        query: str,
        limit: int = 5,
        time_range_ms: Optional[int] = None,
    ) -> list[MemorySearchResult]:
        """
        Rank a partition's memories by similarity to a query.

        Returns an empty list when no embedding can be computed.
        """
        query_embedding = await self._try_embed(query)
        if query_embedding is None:
            return []
        return self._score_partition(user_id, partition_key(scope), query_embedding, time_range_ms)[:limit]

    async def get_memories_for_prompt(
        self,
        user_id: int,
        scope: Scope,
        current_message: Optional[str] = None,
        limit: int = 10,
        query_embedding: Optional[VectorLike] = None,
    ) -> list[Memory]:
        """
        Pick the memories worth putting in a prompt.

        With a current message (or a pre-computed query embedding) the
        partition is ranked semantically and memories scoring above the
        prompt threshold are returned. When that yields nothing, or no
        embedding is available, the most recently updated memories are
        returned instead.
        """
        vector = as_vector(query_embedding) if query_embedding is not None else None
        if vector is None and current_message:
            vector = await self._try_embed(current_message)

        if vector is not None:
            scored = self._score_partition(user_id, partition_key(scope), vector)
            relevant = [r.memory for r in scored if r.score > self.prompt_threshold]
            if relevant:
                return relevant[:limit]

        rows = self.db.fetch_all(
            """
            SELECT * FROM memories WHERE user_id = ? AND scope = ?
            ORDER BY updated_at DESC, id DESC
            LIMIT ?
            """,
            (user_id, partition_key(scope), limit),
        )
        return [self._row_to_memory(row) for row in rows]

    async def get_memory_count(self, user_id: int, scope: Scope) -> MemoryCount:
        row = self.db.fetch_one(
            """
            SELECT
                SUM(CASE WHEN source = 'explicit' THEN 1 ELSE 0 END) AS explicit,
                SUM(CASE WHEN source = 'inferred' THEN 1 ELSE 0 END) AS inferred
            FROM memories WHERE user_id = ? AND scope = ?
            """,
            (user_id, partition_key(scope)),
        )
        return MemoryCount(explicit=row["explicit"] or 0, inferred=row["inferred"] or 0)

    async def get_unembedded(self, limit: int = 50) -> list[Memory]:
        """Oldest memories still waiting for an embedding."""
        rows = self.db.fetch_all(
            "SELECT * FROM memories WHERE embedding IS NULL ORDER BY created_at ASC, id ASC LIMIT ?",
            (limit,),
        )
        return [self._row_to_memory(row) for row in rows]

    async def count_unembedded(self) -> int:
        return self.db.fetch_one(
            "SELECT COUNT(*) AS count FROM memories WHERE embedding IS NULL"
        )["count"]

    # =========================================================================
    # Deletion and migration
    # =========================================================================

    async def delete_memory(self, memory_id: int) -> bool:
        cursor = self.db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        return cursor.rowcount > 0

    async def clear_memories(self, user_id: int, scope: Scope) -> int:
        """Delete every memory in a partition; returns the number deleted."""
        cursor = self.db.execute(
            "DELETE FROM memories WHERE user_id = ? AND scope = ?",
            (user_id, partition_key(scope)),
        )
        return cursor.rowcount

    async def delete_inferred_memories(self, user_id: int, scope: Scope) -> int:
        """Drop inferred memories, e.g. once they've been folded into a profile."""
        cursor = self.db.execute(
            "DELETE FROM memories WHERE user_id = ? AND scope = ? AND source = 'inferred'",
            (user_id, partition_key(scope)),
        )
        return cursor.rowcount

    async def delete_memories_by_type(self, user_id: int, scope: Scope, type: MemoryType) -> int:
        cursor = self.db.execute(
            "DELETE FROM memories WHERE user_id = ? AND scope = ? AND type = ?",
            (user_id, partition_key(scope), type),
        )
        return cursor.rowcount

    async def migrate_memories(self, user_id: int, from_scope: Scope, to_scope: Scope) -> int:
        """
        Move a user's memories from one scope to another.

        Rows that duplicate a memory already in the target are merged into it,
        and the target's inferred cap is enforced afterwards.

        Returns:
            Number of memories moved or merged
        """
        from_key = partition_key(from_scope)
        to_key = partition_key(to_scope)
        if from_key == to_key:
            return 0

        first, second = sorted([(user_id, from_key), (user_id, to_key)])
        async with self._lock_for(*first), self._lock_for(*second):
            with self.db.transaction():
                rows = self.db.fetch_all(
                    "SELECT * FROM memories WHERE user_id = ? AND scope = ? ORDER BY updated_at ASC, id ASC",
                    (user_id, from_key),
                )
                for row in rows:
                    embedding = deserialize_vector(row["embedding"])
                    if embedding is not None and self._absorb_into_duplicate(row, embedding, to_key) is not None:
                        continue
                    self.db.execute("UPDATE memories SET scope = ? WHERE id = ?", (to_key, row["id"]))

                self._enforce_inferred_cap(user_id, to_key, headroom=0)

        logger.info(f"Migrated {len(rows)} memories for user {user_id}: {from_key} -> {to_key}")
        return len(rows)
