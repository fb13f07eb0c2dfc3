"""
Semantic Retrieval for Conversational Context.

Stores chat messages, per-user memories and guild knowledge with optional
embeddings, and assembles the relevant pieces into prompt context for the
next reply.
"""

from .base import (
    DirectMessageScope,
    GlobalScope,
    GuildScope,
    HistoryMessage,
    KnowledgeEntry,
    KnowledgeSearchResult,
    Memory,
    MemoryCount,
    MemorySearchResult,
    MessageInsert,
    SaveResult,
    Scope,
    SimilarMessage,
    StoredMessage,
    partition_key,
    scope_for,
)
from .context import BuiltContext, ContextAggregator, ContextRequest
from .embeddings import EmbeddingService, create_embedding_service
from .engine import BackfillReport, RetrievalEngine, create_retrieval_engine
from .gateway import EmbeddingGateway
from .knowledge import KnowledgeStore
from .memories import MemoryStore
from .messages import MessageIndex

__all__ = [
    "DirectMessageScope",
    "GlobalScope",
    "GuildScope",
    "HistoryMessage",
    "KnowledgeEntry",
    "KnowledgeSearchResult",
    "Memory",
    "MemoryCount",
    "MemorySearchResult",
    "MessageInsert",
    "SaveResult",
    "Scope",
    "SimilarMessage",
    "StoredMessage",
    "partition_key",
    "scope_for",
    "BuiltContext",
    "ContextAggregator",
    "ContextRequest",
    "EmbeddingService",
    "create_embedding_service",
    "BackfillReport",
    "RetrievalEngine",
    "create_retrieval_engine",
    "EmbeddingGateway",
    "KnowledgeStore",
    "MemoryStore",
    "MessageIndex",
]
