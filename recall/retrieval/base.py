"""
Records and scope types shared by the retrieval stores.

Every store speaks in these dataclasses; rows never leave a store as raw
sqlite3.Row objects.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional, Union, get_args

import numpy as np

MemoryType = Literal["preference", "fact", "instruction", "context", "profile_update"]
MemorySource = Literal["explicit", "inferred"]

MEMORY_TYPES: tuple[str, ...] = get_args(MemoryType)
MEMORY_SOURCES: tuple[str, ...] = get_args(MemorySource)


# =============================================================================
# Scopes
# =============================================================================


@dataclass(frozen=True)
class GuildScope:
    """Memories that belong to one guild/server."""
    guild_id: str

    def __post_init__(self):
        if not self.guild_id:
            raise ValueError("GuildScope requires a guild_id")

    @property
    def partition_key(self) -> str:
        return f"guild:{self.guild_id}"


@dataclass(frozen=True)
class DirectMessageScope:
    """Memories collected in direct messages."""

    @property
    def partition_key(self) -> str:
        return "dm"


@dataclass(frozen=True)
class GlobalScope:
    """Memories that follow the user everywhere."""

    @property
    def partition_key(self) -> str:
        return "global"


Scope = Union[GuildScope, DirectMessageScope, GlobalScope]


def partition_key(scope: Scope) -> str:
    """Derive the storage partition key for a scope."""
    return scope.partition_key


def scope_from_key(key: str) -> Scope:
    """Inverse of partition_key()."""
    if key == "dm":
        return DirectMessageScope()
    if key == "global":
        return GlobalScope()
    if key.startswith("guild:"):
        return GuildScope(key[len("guild:"):])
    raise ValueError(f"Unknown scope partition key: {key!r}")


def scope_for(guild_id: Optional[str]) -> Scope:
    """Scope of a conversation: its guild, or DMs when there is no guild."""
    return GuildScope(guild_id) if guild_id else DirectMessageScope()


# =============================================================================
# Messages
# =============================================================================


@dataclass
class MessageInsert:
    """An incoming chat message plus the author details to upsert."""
    platform: str
    platform_message_id: str
    channel_id: str
    platform_user_id: str
    username: str
    content: str
    guild_id: Optional[str] = None
    display_name: Optional[str] = None
    is_bot: bool = False
    timestamp: Optional[datetime] = None  # defaults to now
    embedding: Optional[np.ndarray] = None


@dataclass
class StoredMessage:
    """A message row joined with its author."""
    id: int
    user_id: int
    platform: str
    platform_message_id: str
    guild_id: Optional[str]
    channel_id: str
    content: str
    embedding: Optional[np.ndarray]
    created_at: datetime
    username: str = ""
    display_name: Optional[str] = None
    is_bot: bool = False

    @property
    def author_name(self) -> str:
        return self.display_name or self.username or "Unknown"


@dataclass
class SimilarMessage:
    """A message search hit."""
    id: int
    platform: str
    channel_id: str
    user_id: int
    user_name: str
    content: str
    is_bot: bool
    timestamp: datetime
    similarity: float  # raw cosine similarity
    score: float  # similarity after time decay


# =============================================================================
# Memories
# =============================================================================


@dataclass
class Memory:
    """A fact, preference or instruction remembered about a user."""
    id: int
    user_id: int
    scope: Scope
    type: MemoryType
    content: str
    source: MemorySource
    embedding: Optional[np.ndarray]
    created_at: datetime
    updated_at: datetime


@dataclass
class MemorySearchResult:
    """A memory scored against a query."""
    memory: Memory
    score: float


@dataclass(frozen=True)
class SaveResult:
    """Outcome of MemoryStore.save()."""
    id: int
    updated: bool  # True when an existing near-duplicate was rewritten


@dataclass(frozen=True)
class MemoryCount:
    explicit: int = 0
    inferred: int = 0

    @property
    def total(self) -> int:
        return self.explicit + self.inferred


# =============================================================================
# Knowledge
# =============================================================================


@dataclass
class KnowledgeEntry:
    """A guild-wide knowledge base entry."""
    id: int
    guild_id: str
    content: str
    tags: list[str]
    added_by: int
    embedding: Optional[np.ndarray]
    created_at: datetime
    updated_at: datetime

    def has_tag(self, tag: str) -> bool:
        return tag.strip().lower() in self.tags


@dataclass
class KnowledgeSearchResult:
    """A knowledge entry scored against a query."""
    entry: KnowledgeEntry
    score: float


def normalize_tags(tags: Optional[list[str]]) -> list[str]:
    """Lower-case, strip and de-duplicate tags, keeping first-seen order."""
    seen: set[str] = set()
    normalized = []
    for tag in tags or []:
        value = tag.strip().lower()
        if value and value not in seen:
            seen.add(value)
            normalized.append(value)
    return normalized


@dataclass
class HistoryMessage:
    """A message already present in the caller's recent-history window."""
    id: int
    timestamp: datetime
