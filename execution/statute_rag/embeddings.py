"""
Embedding Service

Vectors for statute chunks and questions, from Voyage AI (voyage-law-2) or
OpenAI (text-embedding-3).

    BaseEmbeddingService      batching, caching, vector checks
        VoyageEmbeddingService
        OpenAIEmbeddingService

A provider failure raises EmbeddingServiceError. No zero or random vector is
ever substituted, so a chunk that cannot be embedded is never stored.
"""

import os
import json
import hashlib
import logging
from typing import Optional
from dataclasses import dataclass
from pathlib import Path

from .errors import EmbeddingServiceError

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Embedding provider, model and request sizing."""
    provider: str = "voyage"  # "voyage" or "openai"
    model: str = "voyage-law-2"
    dimensions: int = 1024
    batch_size: int = 128
    max_tokens_per_batch: int = 100000
    chars_per_token: float = 4.0
    cache_dir: Optional[str] = None
    use_cache: bool = True


class EmbeddingCache:
    """
    Vectors keyed by (model, input type, text).

    Lives in memory, and also as one JSON file per vector when a directory
    is given, so repeated runs over unchanged chunks skip the provider.
    """

    def __init__(self, model: str, directory: Optional[str] = None, enabled: bool = True):
        self.model = model
        self.enabled = enabled
        self._memory: dict[str, list[float]] = {}
        self._directory = Path(directory) if directory else None
        if self._directory:
            self._directory.mkdir(parents=True, exist_ok=True)

    def key(self, text: str, input_type: str) -> str:
        raw = f"{self.model}:{input_type}:{text}"
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    def get(self, key: str) -> Optional[list[float]]:
        if not self.enabled:
            return None
        if key in self._memory:
            return self._memory[key]
        if self._directory is None:
            return None

        path = self._directory / f"{key}.json"
        if not path.exists():
            return None
        try:
            with open(path) as f:
                vector = json.load(f)
        except (OSError, ValueError) as e:
            logger.debug(f"Unreadable cache entry {path}: {e}")
            return None
        self._memory[key] = vector
        return vector

    def put(self, key: str, vector: list[float]) -> None:
        if not self.enabled:
            return
        self._memory[key] = vector
        if self._directory is None:
            return
        try:
            with open(self._directory / f"{key}.json", "w") as f:
                json.dump(vector, f)
        except OSError as e:
            logger.warning(f"Could not write embedding cache entry: {e}")


class BaseEmbeddingService:
    """
    Provider-independent half of an embedding service.

    Subclasses set up ``self._client`` in _init_client() (leaving it None when
    the API key is missing) and implement _call_provider() for one batch.
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""
    _doc_input_type: str = "document"
    _query_input_type: str = "query"

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or EmbeddingConfig()
        self.cache = EmbeddingCache(self.config.model, self.config.cache_dir, self.config.use_cache)
        self._client = None
        self._init_client()

    def _init_client(self):
        raise NotImplementedError

    def _call_provider(self, texts: list[str], input_type: str) -> list[list[float]]:
        raise NotImplementedError

    @property
    def dimensions(self) -> int:
        return self.config.dimensions

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """One vector per chunk text, in input order."""
        if not texts:
            return []
        self._require_client()

        batches = self._create_batches(texts)
        logger.info(f"Embedding {len(texts)} chunks in {len(batches)} batches with {self._provider_name}")

        vectors = []
        for number, batch in enumerate(batches, 1):
            vectors.extend(self._embed_batch(batch, self._doc_input_type))
            if number % 10 == 0:
                logger.info(f"Embedded batch {number}/{len(batches)}")
        return vectors

    def embed_query(self, query: str) -> list[float]:
        self._require_client()
        return self._embed_batch([query], self._query_input_type)[0]

    def _require_client(self) -> None:
        if self._client is None:
            raise EmbeddingServiceError(f"{self._provider_name} client not available; set {self._env_var_name}")

    def _create_batches(self, texts: list[str]) -> list[list[str]]:
        """Group texts so no batch exceeds batch_size items or the estimated token limit."""
        batches: list[list[str]] = []
        tokens = 0.0
        for text in texts:
            estimate = len(text) / self.config.chars_per_token
            full = batches and (
                len(batches[-1]) >= self.config.batch_size
                or tokens + estimate > self.config.max_tokens_per_batch
            )
            if not batches or full:
                batches.append([])
                tokens = 0.0
            batches[-1].append(text)
            tokens += estimate
        return batches

    def _embed_batch(self, texts: list[str], input_type: str) -> list[list[float]]:
        keys = [self.cache.key(text, input_type) for text in texts]
        vectors: list[Optional[list[float]]] = [self.cache.get(key) for key in keys]
        missing = [i for i, vector in enumerate(vectors) if vector is None]
        if not missing:
            return vectors

        try:
            fresh = self._call_provider([texts[i] for i in missing], input_type)
        except Exception as e:
            logger.error(f"{self._provider_name} embedding failed: {e}")
            raise EmbeddingServiceError(f"{self._provider_name} embedding failed: {e}") from e

        if len(fresh) != len(missing):
            raise EmbeddingServiceError(
                f"{self._provider_name} returned {len(fresh)} vectors for {len(missing)} texts"
            )

        for i, raw in zip(missing, fresh):
            vector = [float(v) for v in raw]
            if len(vector) != self.config.dimensions:
                raise EmbeddingServiceError(
                    f"{self._provider_name} returned a {len(vector)}-dim vector, "
                    f"expected {self.config.dimensions}"
                )
            self.cache.put(keys[i], vector)
            vectors[i] = vector
        return vectors


class VoyageEmbeddingService(BaseEmbeddingService):
    """voyage-law-2: 1024 dimensions, separate document and query input types."""

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"

    def _init_client(self):
        api_key = os.getenv("VOYAGE_API_KEY")
        if not api_key:
            logger.warning("VOYAGE_API_KEY is not set; embedding calls will fail")
            return

        import voyageai
        self._client = voyageai.Client(api_key=api_key)
        logger.info(f"Voyage AI client ready ({self.config.model})")

    def _call_provider(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = self._client.embed(texts=texts, model=self.config.model, input_type=input_type)
        return response.embeddings


class OpenAIEmbeddingService(BaseEmbeddingService):
    """text-embedding-3 models, truncated to EmbeddingConfig.dimensions by the API."""

    _provider_name = "OpenAI"
    _env_var_name = "OPENAI_API_KEY"

    def _init_client(self):
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            logger.warning("OPENAI_API_KEY is not set; embedding calls will fail")
            return

        from openai import OpenAI
        self._client = OpenAI(api_key=api_key)
        logger.info(f"OpenAI embeddings client ready ({self.config.model})")

    def _call_provider(self, texts: list[str], input_type: str) -> list[list[float]]:
        # OpenAI has no input types; documents and queries share one space
        response = self._client.embeddings.create(
            model=self.config.model,
            input=texts,
            dimensions=self.config.dimensions,
        )
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]


def get_embedding_service(config: Optional[EmbeddingConfig] = None) -> BaseEmbeddingService:
    """Build the service named by ``config.provider``."""
    config = config or EmbeddingConfig()
    services = {
        "voyage": VoyageEmbeddingService,
        "openai": OpenAIEmbeddingService,
    }
    if config.provider not in services:
        raise ValueError(f"Unknown embedding provider: {config.provider!r} (expected 'voyage' or 'openai')")
    return services[config.provider](config)
