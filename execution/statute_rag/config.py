"""
Pipeline Configuration

One dataclass gathers every knob the operator can turn. Component-level
configs (fetcher, chunker, embeddings, store) are derived from it so each
component can still be constructed and tested on its own.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from .chunker import ChunkConfig
from .embeddings import EmbeddingConfig
from .fetcher import FetcherConfig, default_source_urls
from .store import StoreConfig


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class PipelineConfig:
    """Top-level configuration for ingestion and retrieval."""
    source_urls: list[str] = field(default_factory=default_source_urls)
    database_url: Optional[str] = None

    # Crawling
    rate_limit_delay: float = 2.0
    request_timeout: float = 30.0
    page_load_timeout: float = 60.0

    # Write path: 1 keeps the run fully sequential
    max_workers: int = 1

    # Embeddings
    embedding_provider: str = "voyage"  # "voyage" or "openai"
    embedding_model: Optional[str] = None
    embedding_dimensions: int = 1024
    embedding_cache_dir: Optional[str] = None

    # Retrieval / answering
    search_top_k: int = 5
    llm_model: str = "gpt-4o-mini"
    llm_base_url: Optional[str] = None

    chunk: ChunkConfig = field(default_factory=ChunkConfig)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build a config from environment variables (call load_dotenv() first)."""
        config = cls()

        urls = os.getenv("STATUTE_RAG_URLS")
        if urls:
            config.source_urls = [u.strip() for u in urls.split(",") if u.strip()]

        config.database_url = os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URL")
        config.rate_limit_delay = _env_float("CRAWL_DELAY_SECONDS", config.rate_limit_delay)
        config.request_timeout = _env_float("REQUEST_TIMEOUT_SECONDS", config.request_timeout)
        config.page_load_timeout = _env_float("PAGE_LOAD_TIMEOUT_SECONDS", config.page_load_timeout)
        config.max_workers = max(1, _env_int("MAX_WORKERS", config.max_workers))

        config.embedding_provider = os.getenv("EMBEDDING_PROVIDER", config.embedding_provider)
        config.embedding_model = os.getenv("EMBEDDING_MODEL") or None
        config.embedding_dimensions = _env_int("EMBEDDING_DIMENSIONS", config.embedding_dimensions)
        config.embedding_cache_dir = os.getenv("EMBEDDING_CACHE_DIR") or None

        config.search_top_k = _env_int("SEARCH_TOP_K", config.search_top_k)
        config.llm_model = os.getenv("LLM_MODEL", config.llm_model)
        config.llm_base_url = os.getenv("LLM_BASE_URL") or None
        return config

    def fetcher_config(self) -> FetcherConfig:
        return FetcherConfig(
            rate_limit_delay=self.rate_limit_delay,
            request_timeout=self.request_timeout,
            page_load_timeout=self.page_load_timeout,
        )

    def embedding_config(self) -> EmbeddingConfig:
        default_model = "voyage-law-2" if self.embedding_provider == "voyage" else "text-embedding-3-small"
        return EmbeddingConfig(
            provider=self.embedding_provider,
            model=self.embedding_model or default_model,
            dimensions=self.embedding_dimensions,
            cache_dir=self.embedding_cache_dir,
        )

    def store_config(self) -> StoreConfig:
        return StoreConfig(
            connection_string=self.database_url,
            embedding_dimensions=self.embedding_dimensions,
        )

    def write_workers(self) -> int:
        """Parallel document writes, capped so each writer can hold a pooled connection."""
        return min(max(1, self.max_workers), self.store_config().pool_max_connections)
