"""
Retrieval Engine - Wires the stores together.

This is the high-level interface bot plugins use. It handles:
- Opening the row store and the embedding gateway
- Exposing the message, memory and knowledge stores
- Building prompt context
- Backfilling embeddings for rows stored while the provider was down
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..config import Config
from ..database import Database
from ..errors import NotFound, ProviderUnavailable
from ..vector_math import MS_PER_DAY
from .context import BuiltContext, ContextAggregator, ContextRequest
from .embeddings import EmbeddingService, create_embedding_service
from .gateway import EmbeddingGateway
from .knowledge import KnowledgeStore
from .memories import MemoryStore
from .messages import MessageIndex

logger = logging.getLogger("recall.retrieval.engine")


@dataclass
class BackfillReport:
    """Rows that received an embedding during one backfill run."""
    messages: int = 0
    memories: int = 0
    knowledge: int = 0
    merged_memories: int = 0

    @property
    def total(self) -> int:
        return self.messages + self.memories + self.knowledge


@dataclass
class EngineStats:
    messages: int
    unembedded_messages: int
    unembedded_memories: int
    unembedded_knowledge: int
    embeddings_ready: bool


class RetrievalEngine:
    """
    Semantic retrieval for a conversational bot.

    Owns the database and the gateway; the stores and the aggregator share
    them.
    """

    def __init__(
        self,
        db: Database,
        gateway: EmbeddingGateway,
        settings: Optional[Config] = None,
    ):
        settings = settings or Config()
        self.db = db
        self.gateway = gateway
        self.settings = settings

        time_range_days = settings.messages.time_range_days
        self.messages = MessageIndex(
            db,
            default_decay_factor=settings.messages.decay_factor,
            default_time_range_ms=time_range_days * MS_PER_DAY if time_range_days else None,
            include_bot_by_default=settings.messages.include_bot,
        )
        self.memories = MemoryStore(
            db,
            gateway,
            dedup_threshold=settings.memory.dedup_threshold,
            max_inferred=settings.memory.max_inferred,
            prompt_threshold=settings.memory.prompt_threshold,
        )
        self.knowledge = KnowledgeStore(
            db,
            gateway,
            search_threshold=settings.knowledge.search_threshold,
            embedding_threshold=settings.knowledge.embedding_threshold,
        )
        self.context = ContextAggregator(
            gateway,
            self.memories,
            self.messages,
            self.knowledge,
            settings=settings.context,
            memory_limit=settings.memory.prompt_limit,
            decay_factor=settings.messages.decay_factor,
        )
        logger.info(f"RetrievalEngine created (embeddings ready: {gateway.is_ready()})")

    async def build_context(self, request: ContextRequest) -> BuiltContext:
        """Assemble prompt context for one incoming message."""
        return await self.context.build(request)

    async def backfill_embeddings(self, batch_size: int = 50) -> BackfillReport:
        """
        Embed every row that was stored without an embedding.

        Unlike the read and write paths, this has no fallback: it fails
        clearly when no provider is configured.

        Raises:
            ProviderUnavailable: No embedding provider is configured
            ProviderError: The provider failed after all retries
        """
        if not self.gateway.is_ready():
            raise ProviderUnavailable("Cannot backfill embeddings without an embedding provider")

        report = BackfillReport()

        while batch := await self.messages.get_unembedded(batch_size):
            vectors = await self.gateway.embed_batch([m.content for m in batch])
            for message, vector in zip(batch, vectors):
                await self.messages.update_embedding(message.id, vector)
            report.messages += len(batch)

        while batch := await self.knowledge.get_unembedded(batch_size):
            vectors = await self.gateway.embed_batch([e.content for e in batch])
            for entry, vector in zip(batch, vectors):
                await self.knowledge.store_embedding(entry.id, vector)
            report.knowledge += len(batch)

        while batch := await self.memories.get_unembedded(batch_size):
            vectors = await self.gateway.embed_batch([m.content for m in batch])
            for memory, vector in zip(batch, vectors):
                try:
                    survivor = await self.memories.store_embedding(memory.id, vector)
                except NotFound:
                    # Merged away by an earlier row in this batch
                    report.merged_memories += 1
                    continue
                if survivor != memory.id:
                    report.merged_memories += 1
                else:
                    report.memories += 1

        logger.info(
            f"Backfill complete: {report.messages} messages, {report.memories} memories "
            f"({report.merged_memories} merged), {report.knowledge} knowledge entries"
        )
        return report

    async def stats(self) -> EngineStats:
        return EngineStats(
            messages=await self.messages.count(),
            unembedded_messages=await self.messages.count_unembedded(),
            unembedded_memories=await self.memories.count_unembedded(),
            unembedded_knowledge=await self.knowledge.count_unembedded(),
            embeddings_ready=self.gateway.is_ready(),
        )

    async def close(self) -> None:
        """Clean up resources."""
        self.db.close()
        logger.info("RetrievalEngine closed")


def create_gateway(settings: Config, service: Optional[EmbeddingService] = None) -> EmbeddingGateway:
    """Build the embedding gateway from configuration."""
    embedding = settings.embeddings
    return EmbeddingGateway(
        service if service is not None else create_embedding_service(embedding),
        timeout_seconds=embedding.timeout_seconds,
        max_retries=embedding.max_retries,
        retry_delay_seconds=embedding.retry_delay_seconds,
    )


def create_retrieval_engine(
    settings: Optional[Config] = None,
    db_path: Optional[str] = None,
    service: Optional[EmbeddingService] = None,
) -> RetrievalEngine:
    """
    Factory function to create a configured RetrievalEngine.

    Args:
        settings: Configuration (defaults to the global config)
        db_path: Override the configured database path
        service: Override the configured embedding service

    Returns:
        Ready-to-use RetrievalEngine
    """
    if settings is None:
        from ..config import config as settings

    db = Database(db_path or settings.storage.db_path)
    return RetrievalEngine(db, create_gateway(settings, service), settings)
