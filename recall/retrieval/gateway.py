"""
Embedding Gateway.

The single entry point to the embedding provider. It adds what the raw
services don't have:
- readiness checks (no key configured is a normal, disabled state)
- a per-attempt timeout and a small fixed-backoff retry budget
- coalescing of identical in-flight requests

Coalescing is not a cache: an entry lives only while its request is
outstanding, so two sequential calls for the same text both reach the
provider.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import numpy as np

from ..errors import ProviderError, ProviderUnavailable
from .embeddings import EmbeddingService

logger = logging.getLogger("recall.retrieval.gateway")

T = TypeVar("T")


class EmbeddingGateway:
    """Wraps an EmbeddingService with retries, timeouts and request coalescing."""

    def __init__(
        self,
        service: Optional[EmbeddingService],
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        retry_delay_seconds: float = 1.0,
    ):
        self.service = service
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds

        # Outstanding requests keyed by trimmed text; owned by this instance
        self._in_flight: dict[str, asyncio.Task] = {}
        self._in_flight_lock = asyncio.Lock()

    def is_ready(self) -> bool:
        """True iff a provider is configured (it may still be unreachable)."""
        return self.service is not None and self.service.is_configured()

    @property
    def dimension(self) -> Optional[int]:
        return self.service.dimension if self.service is not None else None

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def _ensure_ready(self) -> EmbeddingService:
        if not self.is_ready():
            raise ProviderUnavailable("Embedding provider is not configured")
        return self.service

    async def embed(self, text: str) -> np.ndarray:
        """
        Embed one text.

        Concurrent calls for the same trimmed text share one provider request.

        Raises:
            ProviderUnavailable: No provider configured
            ProviderError: The provider failed after all retries
        """
        self._ensure_ready()
        key = text.strip()

        async with self._in_flight_lock:
            task = self._in_flight.get(key)
            if task is None:
                task = asyncio.ensure_future(self._embed_uncoalesced(text))
                self._in_flight[key] = task
                task.add_done_callback(lambda done, k=key: self._settle(k, done))
            else:
                logger.debug(f"Joining in-flight embedding request ({len(key)} chars)")

        # Shield so one cancelled caller doesn't cancel the shared request
        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Task) -> None:
        """Drop a settled request from the in-flight map."""
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark the exception retrieved; every waiter re-raises it anyway
            task.exception()

    async def _embed_uncoalesced(self, text: str) -> np.ndarray:
        service = self._ensure_ready()
        values = await self._with_retries(lambda: service.embed(text), "embed")
        return self._to_vector(values, service)

    async def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """
        Embed several texts with one provider request.

        Returns vectors in the same order as the input.

        Raises:
            ProviderUnavailable: No provider configured
            ProviderError: The provider failed after all retries, or returned
                the wrong number of vectors
        """
        if not texts:
            return []
        service = self._ensure_ready()

        results = await self._with_retries(lambda: service.embed_batch(list(texts)), "embed_batch")
        if len(results) != len(texts):
            raise ProviderError(
                f"Provider returned {len(results)} embeddings for {len(texts)} inputs"
            )
        return [self._to_vector(values, service) for values in results]

    async def _with_retries(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        """Run a provider call with a timeout per attempt and fixed backoff between attempts."""
        attempts = self.max_retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(operation(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(
                    f"Embedding {label} timed out after {self.timeout_seconds}s "
                    f"(attempt {attempt}/{attempts})"
                )
            except Exception as e:
                last_error = e
                logger.warning(f"Embedding {label} failed (attempt {attempt}/{attempts}): {e}")

            if attempt < attempts:
                await asyncio.sleep(self.retry_delay_seconds)

        raise ProviderError(f"Embedding {label} failed after {attempts} attempts: {last_error}") from last_error

    @staticmethod
    def _to_vector(values, service: EmbeddingService) -> np.ndarray:
        vector = np.asarray(values, dtype=np.float32).reshape(-1)
        if vector.shape[0] != service.dimension:
            raise ProviderError(
                f"Provider returned a {vector.shape[0]}-dim embedding, expected {service.dimension}"
            )
        return vector
