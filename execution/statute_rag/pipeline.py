"""
Ingestion Pipeline

Crawl -> extract -> hash -> detect changes -> chunk -> embed -> store.

Write path per document:
- new:       embed chunks, then upsert the document and write its chunk set
- updated:   embed chunks, then delete old chunks, update the document and
             insert the new chunks
- unchanged: refresh last_fetched_at only

Embedding happens before the store is touched and each document's write is a
single store transaction, so a failure at any step leaves that document's
previous version intact. Writes for the same source URL are serialized.

backfill() repairs stored documents that have no chunks by re-chunking and
embedding their stored content, without crawling.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from .change_detector import ChangeDetector, ChangeRecord, ChangeType
from .chunker import LegalChunker, create_processing_summary
from .errors import EmbeddingServiceError, ExtractionError, RunFailedError, StoreWriteError
from .extractor import extract
from .hasher import content_hash

logger = logging.getLogger(__name__)


@dataclass
class SourcePage:
    """One fetched and extracted page, ready for change detection."""
    url: str
    title: str
    content: str
    content_hash: str
    section_id: Optional[str] = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DocumentOutcome:
    """What the write path did with one page."""
    source_url: str
    change_type: str
    succeeded: bool
    chunk_count: int = 0
    document_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RunSummary:
    """Result of a populate run."""
    pages: int
    records: list[ChangeRecord]
    outcomes: list[DocumentOutcome]

    @property
    def failed(self) -> list[DocumentOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    @property
    def written(self) -> list[DocumentOutcome]:
        return [o for o in self.outcomes if o.succeeded and o.change_type != ChangeType.UNCHANGED]

    @property
    def refreshed(self) -> list[DocumentOutcome]:
        return [o for o in self.outcomes if o.succeeded and o.change_type == ChangeType.UNCHANGED]

    def __str__(self) -> str:
        return (
            f"{self.pages} pages: {len(self.written)} written, "
            f"{len(self.refreshed)} refreshed, {len(self.failed)} failed"
        )


class IngestionPipeline:
    """
    Runs the crawl and write path against a fetcher, embedding service and store.

    Args:
        fetcher: Object with fetch(url) -> Optional[str] (PageFetcher)
        store: Document/chunk store (see store.BaseStore)
        embedding_service: Object with embed_documents(texts)
        chunker: LegalChunker (default settings if omitted)
        detector: ChangeDetector (built on ``store`` if omitted)
        max_workers: Documents written in parallel; 1 keeps the run sequential
    """

    def __init__(
        self,
        fetcher,
        store,
        embedding_service,
        chunker: Optional[LegalChunker] = None,
        detector: Optional[ChangeDetector] = None,
        max_workers: int = 1,
    ):
        self.fetcher = fetcher
        self.store = store
        self.embedding_service = embedding_service
        self.chunker = chunker or LegalChunker()
        self.detector = detector or ChangeDetector(store)
        self.max_workers = max(1, max_workers)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # =========================================================================
    # Crawl
    # =========================================================================

    def crawl(self, urls: Iterable[str]) -> list[SourcePage]:
        """
        Fetch and extract every URL, one at a time.

        Missing pages, fetch failures and unparseable pages are skipped. A URL
        listed twice yields one page.
        """
        pages: dict[str, SourcePage] = {}
        for url in urls:
            html = self.fetcher.fetch(url)
            if html is None:
                continue
            try:
                extracted = extract(html, url)
            except ExtractionError as e:
                logger.warning(str(e))
                continue

            pages[url] = SourcePage(
                url=url,
                title=extracted.title,
                content=extracted.content,
                content_hash=content_hash(extracted.content),
                section_id=extracted.section_id,
            )
            logger.info(f"Extracted '{extracted.title}' ({len(extracted.content)} chars)")

        logger.info(f"Crawled {len(pages)} pages")
        return list(pages.values())

    def preview(self, urls: Iterable[str]) -> list[ChangeRecord]:
        """Crawl and classify without writing anything."""
        return self.detector.detect_batch(self.crawl(urls))

    # =========================================================================
    # Write path
    # =========================================================================

    def populate(self, urls: Iterable[str]) -> RunSummary:
        """Crawl ``urls`` and bring the store up to date with them."""
        pages = self.crawl(urls)
        if not pages:
            logger.warning("No pages fetched; nothing to update")
        return self.ingest(pages)

    def ingest(self, pages: list[SourcePage]) -> RunSummary:
        """
        Classify already-crawled pages and apply the write path to each.

        Raises:
            RunFailedError: every attempted document write failed
        """
        records = self.detector.detect_batch(pages)
        logger.info(ChangeDetector.summarize(records))

        if self.max_workers == 1:
            outcomes = [self.process_page(page, record) for page, record in zip(pages, records)]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                outcomes = list(executor.map(self.process_page, pages, records))

        summary = RunSummary(pages=len(pages), records=records, outcomes=outcomes)
        logger.info(create_processing_summary(len(summary.written), [o.chunk_count for o in summary.written]))

        if outcomes and len(summary.failed) == len(outcomes):
            raise RunFailedError(f"All {len(outcomes)} document writes failed")
        logger.info(f"Run complete: {summary}")
        return summary

    def backfill(self) -> RunSummary:
        """
        Chunk and embed every stored document that has no chunks.

        Raises:
            RunFailedError: every backfill write failed
        """
        missing = [doc for doc in self.store.list_documents() if not self.store.get_chunks(doc.id)]
        logger.info(f"Found {len(missing)} documents without chunks")

        outcomes = [self._backfill_document(doc) for doc in missing]
        summary = RunSummary(pages=len(missing), records=[], outcomes=outcomes)
        if outcomes and len(summary.failed) == len(outcomes):
            raise RunFailedError(f"All {len(outcomes)} backfill writes failed")
        logger.info(f"Backfill complete: {summary}")
        return summary

    def _backfill_document(self, doc) -> DocumentOutcome:
        with self._lock_for(doc.source_url):
            try:
                chunks = self.chunker.chunk(doc.content, doc.title)
                embeddings = self.embedding_service.embed_documents(chunks)
                self.store.replace_document(
                    doc.id, doc.title, doc.content, doc.content_hash,
                    chunks, embeddings, fetched_at=doc.last_fetched_at,
                )
            except (EmbeddingServiceError, StoreWriteError) as e:
                logger.error(f"Error embedding {doc.source_url}: {e}")
                return DocumentOutcome(doc.source_url, ChangeType.UPDATED, succeeded=False, error=str(e))

        logger.info(f"Embedded {doc.title} ({len(chunks)} chunks)")
        return DocumentOutcome(
            doc.source_url, ChangeType.UPDATED, succeeded=True, chunk_count=len(chunks), document_id=doc.id,
        )

    def process_page(self, page: SourcePage, record: ChangeRecord) -> DocumentOutcome:
        """Apply the write path for one page; failures are contained to it."""
        with self._lock_for(page.url):
            try:
                if record.change_type == ChangeType.UNCHANGED:
                    self.store.touch_document(record.document_id, page.fetched_at)
                    return DocumentOutcome(
                        page.url, record.change_type, succeeded=True, document_id=record.document_id,
                    )
                return self._write_document(page, record)
            except (EmbeddingServiceError, StoreWriteError) as e:
                logger.error(f"Error processing {page.url}: {e}")
                return DocumentOutcome(page.url, record.change_type, succeeded=False, error=str(e))

    def _write_document(self, page: SourcePage, record: ChangeRecord) -> DocumentOutcome:
        chunks = self.chunker.chunk(page.content, page.title)
        if not chunks:
            logger.warning(f"No chunks produced for {page.url}")
        embeddings = self.embedding_service.embed_documents(chunks)

        if record.change_type == ChangeType.UPDATED and record.document_id:
            self.store.replace_document(
                record.document_id, page.title, page.content, page.content_hash,
                chunks, embeddings, fetched_at=page.fetched_at,
            )
            document_id = record.document_id
            logger.info(f"Updated document: {page.title} ({len(chunks)} chunks)")
        else:
            document_id = self.store.write_new_document(
                page.url, page.title, page.content, page.content_hash,
                chunks, embeddings, fetched_at=page.fetched_at,
            )
            logger.info(f"Created document: {page.title} ({len(chunks)} chunks)")

        return DocumentOutcome(
            page.url, record.change_type, succeeded=True,
            chunk_count=len(chunks), document_id=document_id,
        )

    def _lock_for(self, source_url: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(source_url)
            if lock is None:
                lock = self._locks[source_url] = threading.Lock()
            return lock
