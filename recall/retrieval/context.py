"""
Context Aggregator - Assembles retrieval results into prompt context.

Combines, in order:
1. Caller-supplied profile text
2. User memories relevant to the current message
3. Semantically similar past messages (minus anything already in the
   caller's recent history)
4. Guild knowledge base entries
5. Caller-supplied extra context

One query embedding is computed and shared by every source that needs it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence

import numpy as np

from ..config import ContextConfig, request_context
from ..database import now_ms, to_ms
from ..errors import ProviderError, ProviderUnavailable
from .base import HistoryMessage, KnowledgeSearchResult, Memory, Scope, SimilarMessage, scope_for
from .gateway import EmbeddingGateway
from .knowledge import KnowledgeStore
from .memories import MemoryStore
from .messages import MessageIndex

logger = logging.getLogger("recall.retrieval.context")

KNOWLEDGE_TRUNCATION_HINT = " [truncated, use the knowledge lookup tool for the full entry]"


@dataclass
class ContextRequest:
    """Everything the aggregator needs to know about one incoming message."""
    query: str
    user_id: Optional[int] = None
    memory_scope: Optional[Scope] = None
    guild_id: Optional[str] = None
    channel_id: Optional[str] = None
    user_name: str = "User"
    profile_text: Optional[str] = None
    recent_history: Sequence[HistoryMessage] = ()
    extra_context: Optional[str] = None
    skip_memories: bool = False
    skip_message_search: bool = False
    skip_knowledge_search: bool = False

    def resolved_memory_scope(self) -> Scope:
        """The explicit memory scope, else the conversation's guild (or DMs)."""
        if self.memory_scope is not None:
            return self.memory_scope
        return scope_for(self.guild_id)


@dataclass
class ContextDebug:
    """What went into a built context."""
    memories_count: int = 0
    semantic_results_count: int = 0
    knowledge_count: int = 0
    top_semantic_score: Optional[float] = None
    top_knowledge_score: Optional[float] = None
    embedding_used: bool = False
    message_search_skipped: bool = False


@dataclass
class BuiltContext:
    """The assembled context document and its parts."""
    text: str
    sections: list[str] = field(default_factory=list)
    debug: ContextDebug = field(default_factory=ContextDebug)


# =============================================================================
# Formatting
# =============================================================================


def truncate(text: str, max_chars: int, suffix: str = "...") -> str:
    """Cut text to max_chars characters, appending suffix when cut."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + suffix


def format_age(timestamp: datetime, now: Optional[datetime] = None) -> str:
    """Human-readable age: 'just now', '5m ago', '3h ago', '2d ago'."""
    now = now or datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    seconds = (now - timestamp).total_seconds()

    days = int(seconds // 86400)
    hours = int(seconds // 3600)
    minutes = int(seconds // 60)
    if days > 0:
        return f"{days}d ago"
    if hours > 0:
        return f"{hours}h ago"
    if minutes > 0:
        return f"{minutes}m ago"
    return "just now"


def format_memories_for_prompt(memories: Sequence[Memory], user_name: str) -> str:
    """Group memories by type under headings."""
    if not memories:
        return ""

    grouped: dict[str, list[str]] = {"instruction": [], "preference": [], "fact": [], "context": []}
    for memory in memories:
        # Profile updates read as facts about the user
        bucket = "fact" if memory.type == "profile_update" else memory.type
        grouped[bucket].append(memory.content)

    lines = [f"# User Context for @{user_name}"]
    headings = [
        ("instruction", "Instructions"),
        ("preference", "Preferences"),
        ("fact", "Facts"),
        ("context", "Current Context"),
    ]
    for key, heading in headings:
        if grouped[key]:
            lines.append(f"\n## {heading}")
            lines.extend(f"- {content}" for content in grouped[key])

    return "\n".join(lines)


def format_semantic_results(results: Sequence[SimilarMessage], max_chars: int = 150) -> str:
    lines = [
        f'- [{format_age(r.timestamp)}] @{r.user_name}: "{truncate(r.content, max_chars)}"'
        for r in results
    ]
    return "\n".join([
        "# Relevant Past Messages",
        "The following older messages may be relevant to this conversation:",
        *lines,
    ])


def format_knowledge_results(results: Sequence[KnowledgeSearchResult], max_chars: int = 500) -> str:
    lines = []
    for result in results:
        entry = result.entry
        tags = f" [{', '.join(entry.tags)}]" if entry.tags else ""
        lines.append(f"- {truncate(entry.content, max_chars, KNOWLEDGE_TRUNCATION_HINT)}{tags}")

    return "\n".join([
        "# Server Knowledge Base",
        "The following information from this server's knowledge base may be relevant:",
        *lines,
    ])


# =============================================================================
# Aggregator
# =============================================================================


class ContextAggregator:
    """Builds one bounded, deduplicated context document per incoming message."""

    def __init__(
        self,
        gateway: EmbeddingGateway,
        memories: MemoryStore,
        messages: MessageIndex,
        knowledge: KnowledgeStore,
        settings: Optional[ContextConfig] = None,
        memory_limit: int = 10,
        decay_factor: float = 0.98,
    ):
        self.gateway = gateway
        self.memories = memories
        self.messages = messages
        self.knowledge = knowledge
        self.settings = settings or ContextConfig()
        self.memory_limit = memory_limit
        self.decay_factor = decay_factor

    def history_covers_recent(self, history: Sequence[HistoryMessage], now: Optional[int] = None) -> bool:
        """True when enough recent history is already in the prompt to make message search redundant."""
        now = now if now is not None else now_ms()
        cutoff = now - self.settings.recent_window_minutes * 60_000
        recent = sum(1 for m in history if to_ms(m.timestamp) >= cutoff)
        return recent >= self.settings.recent_history_skip_count

    async def _query_embedding(self, query: str) -> Optional[np.ndarray]:
        if not query.strip() or not self.gateway.is_ready():
            return None
        try:
            return await self.gateway.embed(query)
        except ProviderUnavailable:
            return None
        except ProviderError as e:
            logger.warning(f"Query embedding failed, using non-semantic fallbacks: {e}")
            return None

    async def build(self, request: ContextRequest) -> BuiltContext:
        """Assemble the context document for one message."""
        label = f"guild={request.guild_id or 'dm'} channel={request.channel_id or '-'}"
        token = request_context.set(label)
        try:
            return await self._build(request)
        finally:
            request_context.reset(token)

    async def _build(self, request: ContextRequest) -> BuiltContext:
        settings = self.settings
        debug = ContextDebug()
        sections: list[str] = []

        long_enough = len(request.query.strip()) >= settings.min_query_length
        want_memories = not request.skip_memories and request.user_id is not None
        want_messages = (
            not request.skip_message_search
            and bool(request.channel_id or request.guild_id)
            and long_enough
        )
        want_knowledge = not request.skip_knowledge_search and bool(request.guild_id) and long_enough

        if want_messages and self.history_covers_recent(request.recent_history):
            logger.debug("Recent history already covers the conversation, skipping message search")
            debug.message_search_skipped = True
            want_messages = False

        query_embedding = None
        if want_memories or want_messages or want_knowledge:
            query_embedding = await self._query_embedding(request.query)
            debug.embedding_used = query_embedding is not None

        # 1. Profile
        if request.profile_text and request.profile_text.strip():
            sections.append(request.profile_text.strip())

        # 2. Memories (recency fallback when there is no embedding)
        if want_memories:
            memories = await self.memories.get_memories_for_prompt(
                request.user_id,
                request.resolved_memory_scope(),
                limit=self.memory_limit,
                query_embedding=query_embedding,
            )
            if memories:
                sections.append(format_memories_for_prompt(memories, request.user_name))
                debug.memories_count = len(memories)

        # 3. Similar past messages, excluding what the caller already shows
        if want_messages and query_embedding is not None:
            history_ids = {m.id for m in request.recent_history}
            similar = await self.messages.search(
                query_embedding,
                channel_id=request.channel_id,
                guild_id=request.guild_id,
                limit=settings.semantic_limit + len(history_ids),
                decay_factor=self.decay_factor,
                include_bot=False,
            )
            relevant = [
                s for s in similar
                if s.id not in history_ids and s.score >= settings.semantic_threshold
            ][:settings.semantic_limit]
            if relevant:
                sections.append(format_semantic_results(relevant, settings.message_max_chars))
                debug.semantic_results_count = len(relevant)
                debug.top_semantic_score = relevant[0].score

        # 4. Knowledge (substring fallback when there is no embedding)
        if want_knowledge:
            if query_embedding is not None:
                knowledge = await self.knowledge.search_by_embedding(
                    request.guild_id,
                    query_embedding,
                    limit=settings.knowledge_limit,
                    threshold=settings.knowledge_threshold,
                )
            else:
                knowledge = await self.knowledge.text_search(
                    request.guild_id,
                    request.query,
                    limit=settings.knowledge_limit,
                )
            if knowledge:
                sections.append(format_knowledge_results(knowledge, settings.knowledge_max_chars))
                debug.knowledge_count = len(knowledge)
                debug.top_knowledge_score = knowledge[0].score

        # 5. Extra context
        if request.extra_context and request.extra_context.strip():
            sections.append(request.extra_context.strip())

        logger.info(
            f"Built context: memories={debug.memories_count}, "
            f"messages={debug.semantic_results_count}, knowledge={debug.knowledge_count}"
        )
        return BuiltContext(text="\n\n".join(sections), sections=sections, debug=debug)
