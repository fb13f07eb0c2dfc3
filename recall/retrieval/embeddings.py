"""
Embedding Services for generating vector representations.

Uses an OpenAI-compatible embeddings endpoint (OpenRouter by default), with
support for local models via sentence-transformers as an alternative.
Nothing outside the EmbeddingGateway should call these directly.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..config import EmbeddingConfig

logger = logging.getLogger("recall.retrieval.embeddings")


class EmbeddingService(ABC):
    """Turns text into fixed-length vectors."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of the vectors this service returns."""
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """True when the provider has what it needs to be called."""
        pass

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed one text."""
        pass

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts, in input order."""
        pass


class OpenAIEmbeddingService(EmbeddingService):
    """
    Embedding service for OpenAI-compatible /embeddings endpoints.

    Works against OpenAI directly or through OpenRouter, which exposes the
    same text-embedding-3 models under an "openai/" prefix.

    Models:
    - text-embedding-3-small: default 1536 dimensions
    - text-embedding-3-large: default 3072 dimensions
    """

    # Default dimensions for each model
    MODEL_DEFAULT_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
    }

    def __init__(
        self,
        api_key: str,
        model: str = "openai/text-embedding-3-large",
        base_url: Optional[str] = None,
        dimensions: Optional[int] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize the embedding service.

        Args:
            api_key: Provider API key. An empty key leaves the service unconfigured.
            model: Model name, optionally provider-prefixed ("openai/text-embedding-3-large")
            base_url: Endpoint root; None means the OpenAI default
            dimensions: Expected output dimensions. If None, uses the model's default.
            timeout: Per-request timeout in seconds
        """
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._client = None

        default_dim = self.MODEL_DEFAULT_DIMENSIONS.get(model.split("/")[-1], 1536)
        if dimensions is not None and dimensions > default_dim:
            logger.warning(
                f"Requested dimensions ({dimensions}) exceed the {model} default ({default_dim}). "
                f"Using {default_dim}."
            )
            dimensions = None
        # Sent with every request so the provider shortens its vectors to match
        self._requested_dimensions = dimensions
        self._dimension = dimensions or default_dim

        logger.info(
            f"OpenAIEmbeddingService initialized: model={model}, dimensions={self._dimension}"
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            # Retries are owned by the gateway, which uses a fixed backoff
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def _request_kwargs(self, input) -> dict:
        kwargs = {"model": self.model, "input": input}
        if self._requested_dimensions is not None:
            kwargs["dimensions"] = self._requested_dimensions
        return kwargs

    async def embed(self, text: str) -> list[float]:
        """Embed one text with a single request."""
        client = self._get_client()

        response = await client.embeddings.create(**self._request_kwargs(text))

        if not response.data:
            raise ValueError("Invalid embedding response from API")
        return list(response.data[0].embedding)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in one request, keeping input order."""
        if not texts:
            return []

        client = self._get_client()

        response = await client.embeddings.create(**self._request_kwargs(texts))

        # Items may come back out of order; sort by index, falling back to position
        indexed = [
            (item.index if item.index is not None else position, item)
            for position, item in enumerate(response.data)
        ]
        indexed.sort(key=lambda pair: pair[0])
        return [list(item.embedding) for _, item in indexed]


class LocalEmbeddingService(EmbeddingService):
    """
    Local embedding service using sentence-transformers.

    Defaults to all-MiniLM-L6-v2 (384 dimensions). Runs on CPU without an API key.
    Vectors are normalized so cosine similarity equals the dot product.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = 384  # Default for MiniLM
        logger.info(f"LocalEmbeddingService initialized with model: {model_name}")

    @property
    def dimension(self) -> int:
        return self._dimension

    def is_configured(self) -> bool:
        return True

    def _get_model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise RuntimeError(
                    "sentence-transformers not installed. "
                    "Install with: pip install 'recall[local]'"
                )
            self._model = SentenceTransformer(self.model_name)
            self._dimension = self._model.get_sentence_embedding_dimension()
            logger.info(f"Loaded local embedding model: {self.model_name}")
        return self._model

    async def embed(self, text: str) -> list[float]:
        model = self._get_model()
        embedding = model.encode(text, convert_to_numpy=True, normalize_embeddings=True)
        return embedding.tolist()

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        if not texts:
            return []

        model = self._get_model()
        embeddings = model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
        return embeddings.tolist()


def create_embedding_service(settings: EmbeddingConfig) -> EmbeddingService:
    """
    Build the embedding service selected by the embeddings config.

    A missing API key is not an error: the returned service reports itself
    unconfigured and the engine runs without embeddings.

    Args:
        settings: Embedding section of the configuration

    Returns:
        Configured EmbeddingService instance
    """
    if settings.provider == "openai":
        if not settings.api_key:
            logger.warning("Embedding API key not configured - embeddings will not work")
        return OpenAIEmbeddingService(
            api_key=settings.api_key,
            model=settings.model,
            base_url=settings.base_url or None,
            dimensions=settings.dimensions,
            timeout=settings.timeout_seconds,
        )
    elif settings.provider == "local":
        return LocalEmbeddingService(model_name=settings.local_model)
    else:
        raise ValueError(f"Unknown embedding provider: {settings.provider}")
