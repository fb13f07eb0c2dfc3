"""
Configuration module for the retrieval engine.

Loads tuning settings from config.yaml and secrets from environment variables.
"""

import contextvars
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Context variable for request tagging in logs (set by the context aggregator)
request_context = contextvars.ContextVar("request_label", default=None)


class RequestLogFilter(logging.Filter):
    """Filter to inject the current request label into log records."""
    def filter(self, record):
        label = request_context.get()
        if label is not None:
            record.request_info = f" [{label}]"
        else:
            record.request_info = ""
        return True


# Default config file path
CONFIG_FILE = Path(__file__).parent.parent / "config.yaml"


def _load_yaml_config() -> dict:
    """Load configuration from YAML file."""
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            return yaml.safe_load(f) or {}
    return {}


# Load YAML config once at module import
_yaml_config = _load_yaml_config()


def _get_yaml(section: str, key: str, default=None):
    """Get a value from the YAML config."""
    return (_yaml_config.get(section) or {}).get(key, default)


def _get_api_key() -> str:
    """OpenRouter key first, plain OpenAI key as fallback."""
    return os.getenv("OPENROUTER_API_KEY", "") or os.getenv("OPENAI_API_KEY", "")


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration."""
    provider: Literal["openai", "local"] = field(
        default_factory=lambda: _get_yaml("embeddings", "provider", "openai")
    )
    # Secret from .env
    api_key: str = field(default_factory=_get_api_key)
    # Any OpenAI-compatible /embeddings endpoint
    base_url: str = field(
        default_factory=lambda: _get_yaml("embeddings", "base_url", "https://openrouter.ai/api/v1")
    )
    model: str = field(
        default_factory=lambda: _get_yaml("embeddings", "model", "openai/text-embedding-3-large")
    )
    dimensions: int = field(
        default_factory=lambda: _get_yaml("embeddings", "dimensions", 3072)
    )
    local_model: str = field(
        default_factory=lambda: _get_yaml("embeddings", "local_model", "all-MiniLM-L6-v2")
    )
    timeout_seconds: float = field(
        default_factory=lambda: _get_yaml("embeddings", "timeout_seconds", 30.0)
    )
    max_retries: int = field(
        default_factory=lambda: _get_yaml("embeddings", "max_retries", 2)
    )
    retry_delay_seconds: float = field(
        default_factory=lambda: _get_yaml("embeddings", "retry_delay_seconds", 1.0)
    )


@dataclass
class StorageConfig:
    """Row store configuration."""
    db_path: str = field(
        default_factory=lambda: os.getenv("RECALL_DB_PATH", "") or _get_yaml("storage", "db_path", "recall.db")
    )


@dataclass
class MessageSearchConfig:
    """Semantic message search defaults."""
    decay_factor: float = field(
        default_factory=lambda: _get_yaml("messages", "decay_factor", 0.98)
    )
    time_range_days: int = field(
        default_factory=lambda: _get_yaml("messages", "time_range_days", 30)
    )
    include_bot: bool = field(
        default_factory=lambda: _get_yaml("messages", "include_bot", False)
    )


@dataclass
class MemoryConfig:
    """User memory deduplication and eviction policy."""
    dedup_threshold: float = field(
        default_factory=lambda: _get_yaml("memory", "dedup_threshold", 0.85)
    )
    max_inferred: int = field(
        default_factory=lambda: _get_yaml("memory", "max_inferred", 10)
    )
    prompt_threshold: float = field(
        default_factory=lambda: _get_yaml("memory", "prompt_threshold", 0.3)
    )
    prompt_limit: int = field(
        default_factory=lambda: _get_yaml("memory", "prompt_limit", 10)
    )


@dataclass
class KnowledgeConfig:
    """Guild knowledge search thresholds."""
    search_threshold: float = field(
        default_factory=lambda: _get_yaml("knowledge", "search_threshold", 0.25)
    )
    embedding_threshold: float = field(
        default_factory=lambda: _get_yaml("knowledge", "embedding_threshold", 0.3)
    )


@dataclass
class ContextConfig:
    """Prompt context assembly limits."""
    min_query_length: int = field(
        default_factory=lambda: _get_yaml("context", "min_query_length", 10)
    )
    semantic_limit: int = field(
        default_factory=lambda: _get_yaml("context", "semantic_limit", 5)
    )
    semantic_threshold: float = field(
        default_factory=lambda: _get_yaml("context", "semantic_threshold", 0.3)
    )
    message_max_chars: int = field(
        default_factory=lambda: _get_yaml("context", "message_max_chars", 150)
    )
    knowledge_limit: int = field(
        default_factory=lambda: _get_yaml("context", "knowledge_limit", 5)
    )
    knowledge_threshold: float = field(
        default_factory=lambda: _get_yaml("context", "knowledge_threshold", 0.35)
    )
    knowledge_max_chars: int = field(
        default_factory=lambda: _get_yaml("context", "knowledge_max_chars", 500)
    )
    # Skip semantic message search when this many history messages are recent
    recent_history_skip_count: int = field(
        default_factory=lambda: _get_yaml("context", "recent_history_skip_count", 5)
    )
    recent_window_minutes: int = field(
        default_factory=lambda: _get_yaml("context", "recent_window_minutes", 15)
    )


@dataclass
class AppConfig:
    """Application settings from YAML."""
    log_level: str = field(
        default_factory=lambda: _get_yaml("logging", "level", "INFO")
    )


@dataclass
class Config:
    """Main configuration container."""
    embeddings: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    messages: MessageSearchConfig = field(default_factory=MessageSearchConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    knowledge: KnowledgeConfig = field(default_factory=KnowledgeConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    app: AppConfig = field(default_factory=AppConfig)

    def setup_logging(self) -> logging.Logger:
        """Configure and return the application logger."""
        # Reset existing handlers to ensure clean configuration
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)

        logging.basicConfig(
            level=getattr(logging, self.app.log_level.upper()),
            format="%(asctime)s - %(name)s - %(levelname)s%(request_info)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        # Add filter to the handler created by basicConfig
        for handler in logging.getLogger().handlers:
            handler.addFilter(RequestLogFilter())

        return logging.getLogger("recall")

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of missing/invalid settings.

        A missing API key is not an error: the engine runs without
        embeddings and falls back to text and recency ordering.

        Returns:
            List of validation error messages, empty if all valid.
        """
        errors = []

        if self.embeddings.provider not in ("openai", "local"):
            errors.append(f"embeddings.provider must be 'openai' or 'local', got '{self.embeddings.provider}'")
        if self.embeddings.dimensions <= 0:
            errors.append("embeddings.dimensions must be positive")
        if self.embeddings.max_retries < 0:
            errors.append("embeddings.max_retries must not be negative")

        if not 0 < self.messages.decay_factor <= 1:
            errors.append("messages.decay_factor must be in (0, 1]")

        if not 0 < self.memory.dedup_threshold <= 1:
            errors.append("memory.dedup_threshold must be in (0, 1]")
        if self.memory.max_inferred < 1:
            errors.append("memory.max_inferred must be at least 1")

        if not self.storage.db_path:
            errors.append("storage.db_path is required")

        return errors


# Global configuration instance
config = Config()
