"""
Unit tests for recall/retrieval/gateway.py

Tests readiness, retries, timeouts, dimension checks and coalescing of
identical in-flight requests.
"""

import asyncio

import numpy as np
import pytest

from recall.errors import ProviderError, ProviderUnavailable
from recall.retrieval.gateway import EmbeddingGateway
from tests.fixtures import DIM, FakeEmbeddingService, unit_vector


def make_gateway(service, **overrides) -> EmbeddingGateway:
    settings = {"timeout_seconds": 1.0, "max_retries": 2, "retry_delay_seconds": 0}
    settings.update(overrides)
    return EmbeddingGateway(service, **settings)


class TestReadiness:
    """Tests for is_ready and ProviderUnavailable."""

    def test_ready_with_configured_service(self, fake_service):
        gateway = make_gateway(fake_service)
        assert gateway.is_ready() is True
        assert gateway.dimension == DIM

    def test_not_ready_without_service(self, unready_gateway):
        assert unready_gateway.is_ready() is False
        assert unready_gateway.dimension is None

    def test_not_ready_with_unconfigured_service(self):
        assert make_gateway(FakeEmbeddingService(configured=False)).is_ready() is False

    @pytest.mark.asyncio
    async def test_embed_raises_provider_unavailable(self, unready_gateway):
        with pytest.raises(ProviderUnavailable):
            await unready_gateway.embed("hello")

    @pytest.mark.asyncio
    async def test_embed_batch_raises_provider_unavailable(self):
        gateway = make_gateway(FakeEmbeddingService(configured=False))
        with pytest.raises(ProviderUnavailable):
            await gateway.embed_batch(["a", "b"])

    @pytest.mark.asyncio
    async def test_empty_batch_needs_no_provider(self, unready_gateway):
        assert await unready_gateway.embed_batch([]) == []


class TestEmbed:
    """Tests for single and batch embedding."""

    @pytest.mark.asyncio
    async def test_returns_float32_vector(self, fake_service):
        fake_service.set_vector("hello", unit_vector(3))
        vector = await make_gateway(fake_service).embed("hello")

        assert isinstance(vector, np.ndarray)
        assert vector.dtype == np.float32
        np.testing.assert_array_equal(vector, unit_vector(3))

    @pytest.mark.asyncio
    async def test_batch_preserves_order(self, fake_service):
        for i, text in enumerate(["a", "b", "c"]):
            fake_service.set_vector(text, unit_vector(i))

        vectors = await make_gateway(fake_service).embed_batch(["c", "a", "b"])

        assert [int(np.argmax(v)) for v in vectors] == [2, 0, 1]
        assert fake_service.batch_calls == 1

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_provider_error(self):
        service = FakeEmbeddingService(output_dim=DIM + 1)
        with pytest.raises(ProviderError, match="expected"):
            await make_gateway(service, max_retries=0).embed("hello")

    @pytest.mark.asyncio
    async def test_batch_count_mismatch_is_provider_error(self, fake_service):
        async def short_batch(texts):
            return [unit_vector(0).tolist()]

        fake_service.embed_batch = short_batch
        with pytest.raises(ProviderError, match="2 inputs"):
            await make_gateway(fake_service).embed_batch(["a", "b"])


class TestRetries:
    """Tests for the bounded retry budget."""

    @pytest.mark.asyncio
    async def test_recovers_within_retry_budget(self):
        service = FakeEmbeddingService(fail_times=2)
        vector = await make_gateway(service, max_retries=2).embed("hello")

        assert vector.shape == (DIM,)
        assert service.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_budget(self):
        service = FakeEmbeddingService()
        service.failing = True

        with pytest.raises(ProviderError) as exc_info:
            await make_gateway(service, max_retries=2).embed("hello")

        assert service.calls == 3
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        service = FakeEmbeddingService(delay=0.5)

        with pytest.raises(ProviderError) as exc_info:
            await make_gateway(service, timeout_seconds=0.01, max_retries=1).embed("slow")

        assert service.calls == 2
        assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)

    @pytest.mark.asyncio
    async def test_batch_retries(self):
        service = FakeEmbeddingService(fail_times=1)
        vectors = await make_gateway(service).embed_batch(["a", "b"])

        assert len(vectors) == 2
        assert service.batch_calls == 2


class TestCoalescing:
    """Tests for sharing identical in-flight requests."""

    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_share_one_call(self):
        service = FakeEmbeddingService(delay=0.05)
        gateway = make_gateway(service)

        results = await asyncio.gather(*(gateway.embed("same text") for _ in range(5)))

        assert service.calls == 1
        for vector in results[1:]:
            np.testing.assert_array_equal(vector, results[0])
        assert gateway.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_key_ignores_surrounding_whitespace(self):
        service = FakeEmbeddingService(delay=0.05)
        gateway = make_gateway(service)

        await asyncio.gather(gateway.embed("hello"), gateway.embed("  hello \n"))

        assert service.calls == 1

    @pytest.mark.asyncio
    async def test_different_texts_are_not_coalesced(self):
        service = FakeEmbeddingService(delay=0.01)
        gateway = make_gateway(service)

        await asyncio.gather(gateway.embed("one"), gateway.embed("two"))

        assert service.calls == 2

    @pytest.mark.asyncio
    async def test_sequential_calls_both_reach_provider(self, fake_service):
        gateway = make_gateway(fake_service)

        await gateway.embed("hello")
        await gateway.embed("hello")

        assert fake_service.calls == 2

    @pytest.mark.asyncio
    async def test_failure_is_shared_and_entry_removed(self):
        service = FakeEmbeddingService(delay=0.02)
        service.failing = True
        gateway = make_gateway(service, max_retries=0)

        results = await asyncio.gather(
            gateway.embed("boom"),
            gateway.embed("boom"),
            return_exceptions=True,
        )

        assert all(isinstance(r, ProviderError) for r in results)
        assert service.calls == 1
        assert gateway.in_flight_count == 0

        # A later request starts fresh rather than reusing the failure
        service.failing = False
        vector = await gateway.embed("boom")
        assert vector.shape == (DIM,)
        assert service.calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_request(self):
        service = FakeEmbeddingService(delay=0.05)
        gateway = make_gateway(service)

        first = asyncio.create_task(gateway.embed("shared"))
        second = asyncio.create_task(gateway.embed("shared"))
        await asyncio.sleep(0.01)
        first.cancel()

        vector = await second
        with pytest.raises(asyncio.CancelledError):
            await first

        assert vector.shape == (DIM,)
        assert service.calls == 1
