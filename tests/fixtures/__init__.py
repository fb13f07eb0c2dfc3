"""
Test fixtures and sample data for recall tests.
"""

import asyncio
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional

import numpy as np

from recall.retrieval.base import MessageInsert
from recall.retrieval.embeddings import EmbeddingService

DIM = 16


def unit_vector(index: int, dim: int = DIM) -> np.ndarray:
    """Basis vector with a 1 at `index`."""
    vector = np.zeros(dim, dtype=np.float32)
    vector[index] = 1.0
    return vector


def vector_with_similarity(base: np.ndarray, similarity: float, axis: Optional[int] = None) -> np.ndarray:
    """
    A unit vector whose cosine similarity to `base` is exactly `similarity`.

    `axis` picks the direction the vector leans away from base; different
    axes give vectors that share the same similarity to base but differ
    from each other.
    """
    base = np.asarray(base, dtype=np.float64)
    base = base / np.linalg.norm(base)
    index = axis if axis is not None else int(np.argmin(np.abs(base)))

    other = np.zeros_like(base)
    other[index] = 1.0
    other -= other.dot(base) * base
    other /= np.linalg.norm(other)

    result = similarity * base + np.sqrt(max(0.0, 1 - similarity ** 2)) * other
    return result.astype(np.float32)


def hashed_vector(text: str, dim: int = DIM) -> np.ndarray:
    """Deterministic pseudo-random vector for text with no explicit mapping."""
    seed = int.from_bytes(hashlib.sha256(text.encode()).digest()[:8], "little")
    return np.random.default_rng(seed).standard_normal(dim).astype(np.float32)


class FakeEmbeddingService(EmbeddingService):
    """
    In-process embedding provider for tests.

    Texts map to vectors registered with set_vector(); anything else gets a
    deterministic hashed vector. Counts calls so tests can assert on
    coalescing and retries.
    """

    def __init__(
        self,
        dim: int = DIM,
        configured: bool = True,
        delay: float = 0.0,
        fail_times: int = 0,
        output_dim: Optional[int] = None,
    ):
        self._dim = dim
        self.configured = configured
        self.delay = delay
        self.fail_times = fail_times
        self.failing = False
        self.output_dim = output_dim
        self.vectors: dict[str, np.ndarray] = {}
        self.calls = 0
        self.batch_calls = 0
        self.texts: list[str] = []

    @property
    def dimension(self) -> int:
        return self._dim

    def is_configured(self) -> bool:
        return self.configured

    def set_vector(self, text: str, vector) -> None:
        self.vectors[text.strip()] = np.asarray(vector, dtype=np.float32)

    def vector_for(self, text: str) -> np.ndarray:
        key = text.strip()
        if key in self.vectors:
            return self.vectors[key]
        return hashed_vector(key, self.output_dim or self._dim)

    async def _maybe_fail(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failing:
            raise RuntimeError("provider down")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("provider hiccup")

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        self.texts.append(text)
        await self._maybe_fail()
        return self.vector_for(text).tolist()

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        self.texts.extend(texts)
        await self._maybe_fail()
        return [self.vector_for(text).tolist() for text in texts]


def make_message(
    platform_message_id: str = "m1",
    content: str = "hello there, how is everyone doing",
    channel_id: str = "c1",
    guild_id: Optional[str] = "g1",
    platform_user_id: str = "u1",
    username: str = "alice",
    display_name: Optional[str] = None,
    is_bot: bool = False,
    age: timedelta = timedelta(0),
    embedding: Optional[np.ndarray] = None,
    platform: str = "discord",
) -> MessageInsert:
    """Create a MessageInsert for testing."""
    return MessageInsert(
        platform=platform,
        platform_message_id=platform_message_id,
        channel_id=channel_id,
        platform_user_id=platform_user_id,
        username=username,
        content=content,
        guild_id=guild_id,
        display_name=display_name,
        is_bot=is_bot,
        timestamp=datetime.now(timezone.utc) - age,
        embedding=embedding,
    )
