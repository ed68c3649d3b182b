"""
Statute RAG - retrieval over a monitored set of statute pages

This module provides:
- Crawling rendered statute pages (HEAD probe + headless Chrome)
- Hash-based change detection so only new or changed sections are re-embedded
- Legal-aware chunking that keeps numbered sub-paragraphs together
- Embedding storage in PostgreSQL/pgvector and cosine similarity search
- Grounded question answering over the retrieved chunks
"""

from .change_detector import ChangeDetector, ChangeRecord, ChangeType
from .chunker import LegalChunker
from .config import PipelineConfig
from .embeddings import get_embedding_service
from .extractor import extract
from .fetcher import PageFetcher
from .hasher import content_hash
from .pipeline import IngestionPipeline
from .similarity import LinearScanIndex, Retriever
from .store import InMemoryStore, PostgresStore, open_store

__all__ = [
    "ChangeDetector",
    "ChangeRecord",
    "ChangeType",
    "LegalChunker",
    "PipelineConfig",
    "get_embedding_service",
    "extract",
    "PageFetcher",
    "content_hash",
    "IngestionPipeline",
    "LinearScanIndex",
    "Retriever",
    "InMemoryStore",
    "PostgresStore",
    "open_store",
]

__version__ = "0.1.0"
