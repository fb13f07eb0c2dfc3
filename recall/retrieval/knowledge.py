"""
Knowledge Store.

Guild-scoped knowledge base entries with tags. Unlike memories, knowledge
is shared across the whole guild and has no user dimension.

Search is semantic when the embedding provider is ready and falls back to
case-insensitive substring matching when it is not. The fallback score,
min(2 * len(query) / len(content), 1), is a deterministic heuristic kept
for compatibility; it is not a relevance ranking.
"""

import json
import logging
import sqlite3
from typing import Optional

import numpy as np

from ..database import Database, from_ms, now_ms
from ..errors import NotFound, ProviderError, ProviderUnavailable
from ..vector_math import VectorLike, as_vector, cosine_similarity, deserialize_vector, serialize_vector
from .base import KnowledgeEntry, KnowledgeSearchResult, normalize_tags
from .gateway import EmbeddingGateway

logger = logging.getLogger("recall.retrieval.knowledge")

SEARCH_THRESHOLD = 0.25
EMBEDDING_SEARCH_THRESHOLD = 0.3


def substring_score(query: str, content: str) -> Optional[float]:
    """
    Fallback score for a text match, or None when content doesn't contain query.

    Both sides are compared lower-cased.
    """
    query_lower = query.lower()
    content_lower = content.lower()
    if not content_lower or query_lower not in content_lower:
        return None
    return min(2 * len(query_lower) / len(content_lower), 1.0)


class KnowledgeStore:
    """SQLite-backed guild knowledge base."""

    def __init__(
        self,
        db: Database,
        gateway: EmbeddingGateway,
        search_threshold: float = SEARCH_THRESHOLD,
        embedding_threshold: float = EMBEDDING_SEARCH_THRESHOLD,
    ):
        self.db = db
        self.gateway = gateway
        self.search_threshold = search_threshold
        self.embedding_threshold = embedding_threshold

    def _row_to_entry(self, row: sqlite3.Row) -> KnowledgeEntry:
        """Convert a database row to a KnowledgeEntry."""
        return KnowledgeEntry(
            id=row["id"],
            guild_id=row["guild_id"],
            content=row["content"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            added_by=row["added_by"],
            embedding=deserialize_vector(row["embedding"]),
            created_at=from_ms(row["created_at"]),
            updated_at=from_ms(row["updated_at"]),
        )

    async def _try_embed(self, text: str) -> Optional[np.ndarray]:
        if not self.gateway.is_ready():
            return None
        try:
            return await self.gateway.embed(text)
        except ProviderUnavailable:
            return None
        except ProviderError as e:
            logger.warning(f"Failed to generate embedding for knowledge: {e}")
            return None

    # =========================================================================
    # Writes
    # =========================================================================

    async def add(
        self,
        guild_id: str,
        content: str,
        added_by: int,
        tags: Optional[list[str]] = None,
    ) -> KnowledgeEntry:
        """Add an entry; the embedding is generated immediately when possible."""
        normalized = normalize_tags(tags)
        embedding = await self._try_embed(content)
        now = now_ms()

        cursor = self.db.execute(
            """
            INSERT INTO knowledge_base (guild_id, content, tags, added_by, embedding, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                guild_id,
                content,
                json.dumps(normalized),
                added_by,
                serialize_vector(embedding) if embedding is not None else None,
                now,
                now,
            ),
        )

        logger.info(f"Added knowledge {cursor.lastrowid} to guild {guild_id} (embedded={embedding is not None})")
        return KnowledgeEntry(
            id=cursor.lastrowid,
            guild_id=guild_id,
            content=content,
            tags=normalized,
            added_by=added_by,
            embedding=embedding,
            created_at=from_ms(now),
            updated_at=from_ms(now),
        )

    async def update(
        self,
        entry_id: int,
        content: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> bool:
        """
        Update content and/or tags.

        The embedding is regenerated only when the content changes; if that
        fails the embedding is cleared rather than left stale.

        Returns:
            False if the entry doesn't exist
        """
        row = self.db.fetch_one("SELECT * FROM knowledge_base WHERE id = ?", (entry_id,))
        if row is None:
            return False

        new_content = row["content"] if content is None else content
        new_tags = json.loads(row["tags"]) if tags is None else normalize_tags(tags)
        blob = row["embedding"]

        if new_content != row["content"]:
            embedding = await self._try_embed(new_content)
            blob = serialize_vector(embedding) if embedding is not None else None

        cursor = self.db.execute(
            """
            UPDATE knowledge_base
            SET content = ?, tags = ?, embedding = ?, updated_at = ?
            WHERE id = ?
            """,
            (new_content, json.dumps(new_tags), blob, now_ms(), entry_id),
        )
        return cursor.rowcount > 0

    async def delete(self, entry_id: int, guild_id: str) -> bool:
        """Delete an entry, but only if it belongs to the given guild."""
        cursor = self.db.execute(
            "DELETE FROM knowledge_base WHERE id = ? AND guild_id = ?",
            (entry_id, guild_id),
        )
        deleted = cursor.rowcount > 0
        if not deleted:
            logger.debug(f"Knowledge {entry_id} not deleted: missing or not in guild {guild_id}")
        return deleted

    async def store_embedding(self, entry_id: int, embedding: VectorLike) -> None:
        """
        Attach an embedding computed out of band (backfill).

        Raises:
            NotFound: If no entry has this id
        """
        cursor = self.db.execute(
            "UPDATE knowledge_base SET embedding = ? WHERE id = ?",
            (serialize_vector(embedding), entry_id),
        )
        if cursor.rowcount == 0:
            raise NotFound(f"Knowledge entry {entry_id} not found")

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, entry_id: int) -> Optional[KnowledgeEntry]:
        row = self.db.fetch_one("SELECT * FROM knowledge_base WHERE id = ?", (entry_id,))
        return self._row_to_entry(row) if row else None

    async def require(self, entry_id: int, guild_id: str) -> KnowledgeEntry:
        """
        Fetch an entry that must exist in the given guild.

        Raises:
            NotFound: If the entry is missing or belongs to another guild
        """
        entry = await self.get(entry_id)
        if entry is None or entry.guild_id != guild_id:
            raise NotFound(f"Knowledge entry {entry_id} not found in guild {guild_id}")
        return entry

    async def list_for_guild(
        self,
        guild_id: str,
        tag: Optional[str] = None,
        limit: int = 100,
    ) -> list[KnowledgeEntry]:
        """Entries of a guild, most recently updated first."""
        rows = self.db.fetch_all(
            "SELECT * FROM knowledge_base WHERE guild_id = ? ORDER BY updated_at DESC, id DESC",
            (guild_id,),
        )
        entries = [self._row_to_entry(row) for row in rows]
        if tag:
            entries = [e for e in entries if e.has_tag(tag)]
        return entries[:limit]

    async def count(self, guild_id: str) -> int:
        return self.db.fetch_one(
            "SELECT COUNT(*) AS count FROM knowledge_base WHERE guild_id = ?",
            (guild_id,),
        )["count"]

    async def tags(self, guild_id: str) -> list[str]:
        """All distinct tags used in a guild, sorted."""
        tag_set: set[str] = set()
        for row in self.db.fetch_all("SELECT tags FROM knowledge_base WHERE guild_id = ?", (guild_id,)):
            tag_set.update(t.lower() for t in json.loads(row["tags"]))
        return sorted(tag_set)

    async def get_unembedded(self, limit: int = 50) -> list[KnowledgeEntry]:
        """Oldest entries still waiting for an embedding."""
        rows = self.db.fetch_all(
            "SELECT * FROM knowledge_base WHERE embedding IS NULL ORDER BY created_at ASC, id ASC LIMIT ?",
            (limit,),
        )
        return [self._row_to_entry(row) for row in rows]

    async def count_unembedded(self) -> int:
        return self.db.fetch_one(
            "SELECT COUNT(*) AS count FROM knowledge_base WHERE embedding IS NULL"
        )["count"]

    # =========================================================================
    # Search
    # =========================================================================

    def _embedded_rows(self, guild_id: str, time_range_ms: Optional[int]) -> list[KnowledgeEntry]:
        query = "SELECT * FROM knowledge_base WHERE guild_id = ? AND embedding IS NOT NULL"
        params: list = [guild_id]
        if time_range_ms is not None and time_range_ms > 0:
            query += " AND created_at > ?"
            params.append(now_ms() - time_range_ms)
        return [self._row_to_entry(row) for row in self.db.fetch_all(query, params)]

    def _rank(
        self,
        entries: list[KnowledgeEntry],
        query_embedding: np.ndarray,
        keep,
        tag: Optional[str],
        limit: int,
    ) -> list[KnowledgeSearchResult]:
        scored = []
        for entry in entries:
            if tag and not entry.has_tag(tag):
                continue
            score = cosine_similarity(query_embedding, entry.embedding)
            if keep(score):
                scored.append(KnowledgeSearchResult(entry=entry, score=score))
        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:limit]

    async def search(
        self,
        guild_id: str,
        query: str,
        limit: int = 10,
        tag: Optional[str] = None,
        time_range_ms: Optional[int] = None,
    ) -> list[KnowledgeSearchResult]:
        """
        Search a guild's knowledge for a query.

        Uses embeddings when the provider is ready (keeping scores above
        the search threshold) and substring matching otherwise.
        """
        query_embedding = await self._try_embed(query)
        if query_embedding is None:
            return await self.text_search(guild_id, query, limit=limit, tag=tag, time_range_ms=time_range_ms)

        return self._rank(
            self._embedded_rows(guild_id, time_range_ms),
            query_embedding,
            keep=lambda score: score > self.search_threshold,
            tag=tag,
            limit=limit,
        )

    async def search_by_embedding(
        self,
        guild_id: str,
        embedding: VectorLike,
        limit: int = 5,
        threshold: Optional[float] = None,
        tag: Optional[str] = None,
        time_range_ms: Optional[int] = None,
    ) -> list[KnowledgeSearchResult]:
        """
        Search with a pre-computed query vector.

        Lets a caller that already paid for an embedding reuse it instead of
        making a second provider call.
        """
        threshold = self.embedding_threshold if threshold is None else threshold
        return self._rank(
            self._embedded_rows(guild_id, time_range_ms),
            as_vector(embedding),
            keep=lambda score: score >= threshold,
            tag=tag,
            limit=limit,
        )

    async def text_search(
        self,
        guild_id: str,
        query: str,
        limit: int = 10,
        tag: Optional[str] = None,
        time_range_ms: Optional[int] = None,
    ) -> list[KnowledgeSearchResult]:
        """Substring fallback used when no embedding can be computed."""
        sql = "SELECT * FROM knowledge_base WHERE guild_id = ?"
        params: list = [guild_id]
        if time_range_ms is not None and time_range_ms > 0:
            sql += " AND created_at > ?"
            params.append(now_ms() - time_range_ms)
        sql += " ORDER BY updated_at DESC, id DESC"

        scored = []
        for row in self.db.fetch_all(sql, params):
            entry = self._row_to_entry(row)
            if tag and not entry.has_tag(tag):
                continue
            score = substring_score(query, entry.content)
            if score is not None:
                scored.append(KnowledgeSearchResult(entry=entry, score=score))

        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:limit]
