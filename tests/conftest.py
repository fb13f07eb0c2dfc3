"""
Shared pytest fixtures for recall tests.

This module provides:
- In-memory SQLite databases
- A deterministic fake embedding provider
- Ready and unready embedding gateways
- Stores and the context aggregator wired to them
- Sample config files and environment variables
"""

from pathlib import Path

import pytest

from recall.database import Database
from recall.retrieval.context import ContextAggregator
from recall.retrieval.gateway import EmbeddingGateway
from recall.retrieval.knowledge import KnowledgeStore
from recall.retrieval.memories import MemoryStore
from recall.retrieval.messages import MessageIndex
from tests.fixtures import FakeEmbeddingService


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def db():
    """Provide an in-memory Database for fast tests."""
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def temp_db_path(tmp_path) -> str:
    """Provide a temporary SQLite database path."""
    return str(tmp_path / "test_recall.db")


# =============================================================================
# Embedding Fixtures
# =============================================================================


@pytest.fixture
def fake_service() -> FakeEmbeddingService:
    return FakeEmbeddingService()


@pytest.fixture
def gateway(fake_service) -> EmbeddingGateway:
    """Gateway backed by the fake provider, with no delay between retries."""
    return EmbeddingGateway(fake_service, timeout_seconds=1.0, max_retries=2, retry_delay_seconds=0)


@pytest.fixture
def unready_gateway() -> EmbeddingGateway:
    """Gateway with no provider configured."""
    return EmbeddingGateway(None)


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def message_index(db) -> MessageIndex:
    return MessageIndex(db)


@pytest.fixture
def memory_store(db, gateway) -> MemoryStore:
    return MemoryStore(db, gateway)


@pytest.fixture
def offline_memory_store(db, unready_gateway) -> MemoryStore:
    return MemoryStore(db, unready_gateway)


@pytest.fixture
def knowledge_store(db, gateway) -> KnowledgeStore:
    return KnowledgeStore(db, gateway)


@pytest.fixture
def offline_knowledge_store(db, unready_gateway) -> KnowledgeStore:
    return KnowledgeStore(db, unready_gateway)


@pytest.fixture
def aggregator(gateway, memory_store, message_index, knowledge_store) -> ContextAggregator:
    return ContextAggregator(gateway, memory_store, message_index, knowledge_store)


# =============================================================================
# Config Fixtures
# =============================================================================


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set mock environment variables for testing."""
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-openrouter-key")
    monkeypatch.setenv("OPENAI_API_KEY", "test-openai-key")
    monkeypatch.setenv("RECALL_DB_PATH", "/tmp/recall-test.db")


@pytest.fixture
def sample_config_yaml(tmp_path) -> Path:
    """Create a sample config.yaml file."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
embeddings:
  provider: openai
  model: text-embedding-3-small
  dimensions: 1536
  max_retries: 4

memory:
  dedup_threshold: 0.9
  max_inferred: 5

context:
  semantic_limit: 3

logging:
  level: DEBUG
"""
    )
    return config_path
