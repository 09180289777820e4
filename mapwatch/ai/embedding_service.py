"""Embedding generation service for product text."""

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence

from openai import AsyncOpenAI

from mapwatch import metrics
from mapwatch.ai.feature_extractor import FeatureExtractor, feature_extractor
from mapwatch.config import Settings, settings
from mapwatch.match.errors import EmbeddingError

logger = logging.getLogger(__name__)


def serialize_embedding(embedding: Sequence[float]) -> str:
    """Serialize a vector for storage on the product row."""
    return json.dumps([float(x) for x in embedding])


def parse_embedding(value: Optional[str]) -> Optional[List[float]]:
    """
    Parse a stored vector.

    Returns None when the value is missing or unreadable.
    """
    if not value:
        return None
    try:
        data = json.loads(value)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Invalid stored embedding: {e}")
        return None
    if not isinstance(data, list) or not data:
        return None
    return [float(x) for x in data]


class EmbeddingProvider(ABC):
    """Interface for text embedding backends."""

    name = "base"

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """
        Embed one text.

        Raises:
            EmbeddingError: when the backend fails
        """


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings API (text-embedding-3-small by default)."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        max_input_chars: int = 8000,
        client: Optional[AsyncOpenAI] = None,
    ):
        if not api_key and client is None:
            raise ValueError("OpenAI API key not configured")
        self.model = model
        self.max_input_chars = max_input_chars
        self._client = client or AsyncOpenAI(api_key=api_key)

    async def embed(self, text: str) -> List[float]:
        try:
            response = await self._client.embeddings.create(
                model=self.model,
                input=text[:self.max_input_chars],
                encoding_format="float",
            )
        except Exception as e:
            raise EmbeddingError(f"OpenAI embedding request failed: {e}") from e
        return list(response.data[0].embedding)


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Local sentence-transformers model."""

    name = "sentence_transformers"

    def __init__(self, model_name: str):
        self.model_name = model_name
        self._model = None

    def _load_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
            logger.info(f"Successfully loaded model: {self.model_name}")
        return self._model

    async def embed(self, text: str) -> List[float]:
        try:
            model = await asyncio.to_thread(self._load_model)
            vector = await asyncio.to_thread(
                model.encode, text, normalize_embeddings=True, show_progress_bar=False
            )
        except Exception as e:
            raise EmbeddingError(f"Local embedding failed: {e}") from e
        return [float(x) for x in vector]


def build_embedding_provider(config: Settings = settings) -> Optional[EmbeddingProvider]:
    """
    Create the configured provider.

    Returns None when embeddings are disabled or not configured, in which case
    matching uses rule-based scoring only.
    """
    provider = config.embedding_provider.lower()
    if provider == "openai":
        if not config.openai_api_key:
            logger.warning("OpenAI API key not configured - embeddings disabled")
            return None
        return OpenAIEmbeddingProvider(
            api_key=config.openai_api_key,
            model=config.openai_embedding_model,
            max_input_chars=config.embedding_max_input_chars,
        )
    if provider == "sentence_transformers":
        return SentenceTransformerEmbeddingProvider(config.embedding_model)
    if provider != "none":
        logger.warning(f"Unknown embedding provider '{config.embedding_provider}' - embeddings disabled")
    return None


@dataclass
class ProductEmbeddings:
    """Embedding vectors and the feature string computed for a product."""

    title_embedding: List[float]
    features_embedding: Optional[List[float]]
    features: str


class EmbeddingService:
    """
    Rate-limited, failure-tolerant wrapper around an embedding provider.

    Features:
    - Fixed delay between provider calls
    - In-memory cache keyed by text hash
    - Failures degrade to "no embedding" instead of raising
    """

    def __init__(
        self,
        provider: Optional[EmbeddingProvider],
        delay_ms: Optional[int] = None,
        cache_enabled: Optional[bool] = None,
        extractor: Optional[FeatureExtractor] = None,
    ):
        self.provider = provider
        self.delay_seconds = (
            delay_ms if delay_ms is not None else settings.embedding_request_delay_ms
        ) / 1000
        self.cache_enabled = (
            cache_enabled if cache_enabled is not None else settings.embedding_cache_enabled
        )
        self.extractor = extractor or feature_extractor
        self._cache: dict[str, List[float]] = {}
        self._calls = 0

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    def _get_cache_key(self, text: str) -> str:
        text_hash = hashlib.sha256(text.encode('utf-8')).hexdigest()
        return f"{self.provider.name}:{text_hash}"

    async def embed_or_none(self, text: str) -> Optional[List[float]]:
        """
        Embed a text, returning None on any provider failure.

        Args:
            text: Text to embed

        Returns:
            Embedding vector, or None when unavailable
        """
        if not self.enabled or not text or not text.strip():
            return None

        cache_key = self._get_cache_key(text)
        if self.cache_enabled and cache_key in self._cache:
            logger.debug(f"Cache hit for embedding: {cache_key[:16]}...")
            return self._cache[cache_key]

        # Rate limit: fixed delay between consecutive provider calls
        if self._calls > 0 and self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        self._calls += 1

        try:
            embedding = await self.provider.embed(text)
        except EmbeddingError as e:
            logger.warning(f"Embedding unavailable: {e}")
            metrics.record_embedding_request(success=False)
            return None
        except Exception as e:
            # Providers are pluggable; anything they raise means no embedding
            logger.warning(f"Embedding provider {self.provider.name} failed: {type(e).__name__}: {e}")
            metrics.record_embedding_request(success=False)
            return None

        metrics.record_embedding_request(success=True)
        if self.cache_enabled:
            self._cache[cache_key] = embedding
        return embedding

    async def embed_product(self, product) -> Optional[ProductEmbeddings]:
        """
        Compute title and features embeddings for a product.

        Returns None when the title embedding could not be produced.
        """
        title_embedding = await self.embed_or_none(self.extractor.title_embedding_text(product))
        if title_embedding is None:
            return None

        features = self.extractor.extract_from_product(product)
        features_embedding = await self.embed_or_none(
            self.extractor.features_embedding_text(product, features)
        )
        return ProductEmbeddings(
            title_embedding=title_embedding,
            features_embedding=features_embedding,
            features=features.as_text(),
        )

    def clear_cache(self):
        """Clear the embedding cache."""
        self._cache.clear()
        logger.info("Embedding cache cleared")

    def get_cache_size(self) -> int:
        """Get the number of cached embeddings."""
        return len(self._cache)
