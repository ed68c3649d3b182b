"""
Tests for execution/statute_rag/pipeline.py

End-to-end runs over the stub fetcher, in-memory store and mock embedding
service: crawl filtering, idempotence, update consistency, failure
isolation and the run-level failure rule.
"""

from unittest.mock import MagicMock

import pytest

from tests.conftest import (
    URL_1001, URL_1002, URL_1101, SECTION_1001_HTML, MockEmbeddingService, StubFetcher, section_html,
)

UPDATED_1001_HTML = SECTION_1001_HTML.replace(
    "designed specifically to communicate", "designed specifically and primarily to communicate",
)


def _snapshot(store):
    return (
        sorted((d.source_url, d.content_hash) for d in store.list_documents()),
        [(c.document_id, c.position, c.text) for c in store.select_all_chunks()],
    )


class TestCrawl:

    def test_missing_pages_skipped(self, pipeline, stub_fetcher):
        pages = pipeline.crawl([URL_1001, URL_1002, URL_1101])
        assert [p.url for p in pages] == [URL_1001, URL_1101]
        assert stub_fetcher.requested == [URL_1001, URL_1002, URL_1101]

    def test_unparseable_page_skipped(self, memory_store, mock_embedding_service):
        from execution.statute_rag.pipeline import IngestionPipeline
        fetcher = StubFetcher({URL_1001: "<html><body>nothing</body></html>", URL_1101: section_html("S", "x" * 80)})
        pages = IngestionPipeline(fetcher, memory_store, mock_embedding_service).crawl([URL_1001, URL_1101])
        assert [p.url for p in pages] == [URL_1101]

    def test_page_fields(self, pipeline):
        from execution.statute_rag.hasher import content_hash
        page = pipeline.crawl([URL_1001])[0]
        assert page.title == "17 U.S. Code § 1001 - Definitions"
        assert page.section_id == "1001"
        assert page.content_hash == content_hash(page.content)

    def test_duplicate_urls_collapsed(self, pipeline):
        assert len(pipeline.crawl([URL_1001, URL_1001])) == 1

    def test_dead_browser_does_not_abort_crawl(self, memory_store, mock_embedding_service):
        from urllib3.exceptions import MaxRetryError
        from execution.statute_rag.fetcher import FetcherConfig, PageFetcher
        from execution.statute_rag.pipeline import IngestionPipeline

        session = MagicMock()
        session.head.return_value = MagicMock(status_code=200)
        driver = MagicMock()
        driver.get.side_effect = MaxRetryError(None, "/session/abc/url", "Connection refused")
        fetcher = PageFetcher(FetcherConfig(rate_limit_delay=0), driver_factory=MagicMock(return_value=driver), session=session)

        pipeline = IngestionPipeline(fetcher, memory_store, mock_embedding_service)
        assert pipeline.crawl([URL_1001, URL_1101]) == []


class TestPopulate:

    def test_first_run_creates_documents_and_chunks(self, pipeline, memory_store):
        summary = pipeline.populate([URL_1001, URL_1101])

        assert len(summary.written) == 2
        assert summary.failed == []
        docs = {d.source_url: d for d in memory_store.list_documents()}
        assert set(docs) == {URL_1001, URL_1101}
        chunks = memory_store.get_chunks(docs[URL_1001].id)
        assert len(chunks) == 4
        assert chunks[0].text.startswith("17 U.S. Code § 1001 - Definitions\n\n")
        assert all(len(c.embedding) == 8 for c in chunks)

    def test_second_run_is_idempotent(self, pipeline, memory_store, mock_embedding_service):
        pipeline.populate([URL_1001, URL_1101])
        before = _snapshot(memory_store)
        embed_calls = len(mock_embedding_service.document_calls)

        summary = pipeline.populate([URL_1001, URL_1101])

        assert _snapshot(memory_store) == before
        assert len(mock_embedding_service.document_calls) == embed_calls
        assert len(summary.refreshed) == 2
        assert summary.written == []

    def test_unchanged_refreshes_last_fetched_at(self, pipeline, memory_store):
        pipeline.populate([URL_1001])
        first = memory_store.get_document_by_url(URL_1001).last_fetched_at
        pipeline.populate([URL_1001])
        assert memory_store.get_document_by_url(URL_1001).last_fetched_at >= first

    def test_update_replaces_chunk_set(self, stub_fetcher, pipeline, memory_store):
        pipeline.populate([URL_1001])
        old_doc = memory_store.get_document_by_url(URL_1001)

        stub_fetcher.pages[URL_1001] = UPDATED_1001_HTML
        summary = pipeline.populate([URL_1001])

        new_doc = memory_store.get_document_by_url(URL_1001)
        assert new_doc.id == old_doc.id
        assert new_doc.content_hash != old_doc.content_hash
        assert summary.records[0].change_type == "updated"

        chunks = memory_store.get_chunks(new_doc.id)
        assert len(chunks) == 4
        assert all("designed specifically to communicate" not in c.text for c in chunks)
        assert any("specifically and primarily" in c.text for c in chunks)
        assert len(memory_store.select_all_chunks()) == 4

    def test_lookup_failure_reingests_without_duplicates(self, pipeline, memory_store):
        pipeline.populate([URL_1001])
        original = memory_store.get_document_by_url

        memory_store.get_document_by_url = MagicMock(side_effect=RuntimeError("timeout"))
        summary = pipeline.populate([URL_1001])
        memory_store.get_document_by_url = original

        assert summary.records[0].change_type == "new"
        assert len(memory_store.list_documents()) == 1
        assert len(memory_store.select_all_chunks()) == 4


class TestFailureIsolation:

    def test_embedding_failure_keeps_previous_version(self, stub_fetcher, pipeline, memory_store, mock_embedding_service):
        pipeline.populate([URL_1001, URL_1101])
        before = _snapshot(memory_store)

        stub_fetcher.pages[URL_1001] = UPDATED_1001_HTML
        mock_embedding_service.fail_on = "specifically and primarily"
        from execution.statute_rag.errors import RunFailedError
        with pytest.raises(RunFailedError):
            pipeline.populate([URL_1001])

        assert _snapshot(memory_store) == before

    def test_one_failure_does_not_abort_run(self, stub_fetcher, pipeline, memory_store, mock_embedding_service):
        mock_embedding_service.fail_on = "Anyone who"
        summary = pipeline.populate([URL_1001, URL_1101])

        assert [o.source_url for o in summary.failed] == [URL_1101]
        assert [o.source_url for o in summary.written] == [URL_1001]
        assert memory_store.get_document_by_url(URL_1101) is None

    def test_store_write_failure_contained(self, pipeline, memory_store):
        from execution.statute_rag.errors import StoreWriteError

        real_write = memory_store.write_new_document

        def flaky(source_url, *args, **kwargs):
            if source_url == URL_1001:
                raise StoreWriteError("deadlock detected")
            return real_write(source_url, *args, **kwargs)

        memory_store.write_new_document = flaky
        summary = pipeline.populate([URL_1001, URL_1101])

        assert summary.failed[0].source_url == URL_1001
        assert "deadlock" in summary.failed[0].error
        assert memory_store.get_document_by_url(URL_1101) is not None

    def test_exhausted_connection_pool_fails_only_that_document(self, mock_embedding_service):
        import psycopg2.pool
        from execution.statute_rag.change_detector import ChangeRecord
        from execution.statute_rag.pipeline import IngestionPipeline, SourcePage
        from execution.statute_rag.store import PostgresStore, StoreConfig

        store = PostgresStore(StoreConfig(connection_string="postgres://fake/db"))
        store._pool = MagicMock()
        store._pool.getconn.side_effect = psycopg2.pool.PoolError("connection pool exhausted")
        pipeline = IngestionPipeline(StubFetcher({}), store, mock_embedding_service)

        page = SourcePage(url=URL_1001, title="T", content="c", content_hash="h")
        record = ChangeRecord(URL_1001, "unchanged", "h", old_hash="h", document_id="doc-1")
        outcome = pipeline.process_page(page, record)

        assert not outcome.succeeded
        assert "pool exhausted" in outcome.error

    def test_all_writes_failing_fails_the_run(self, pipeline, memory_store):
        from execution.statute_rag.errors import RunFailedError, StoreWriteError

        memory_store.write_new_document = MagicMock(side_effect=StoreWriteError("database unavailable"))
        with pytest.raises(RunFailedError, match="All 2 document writes failed"):
            pipeline.populate([URL_1001, URL_1101])

    def test_no_pages_is_not_a_failure(self, pipeline):
        summary = pipeline.populate([URL_1002])
        assert summary.pages == 0
        assert summary.outcomes == []


class TestBackfill:

    def test_embeds_only_documents_without_chunks(self, pipeline, memory_store, mock_embedding_service):
        pipeline.populate([URL_1001, URL_1101])
        doc_1001 = memory_store.get_document_by_url(URL_1001)
        memory_store.delete_chunks(doc_1001.id)
        before_1101 = [c.text for c in memory_store.get_chunks(memory_store.get_document_by_url(URL_1101).id)]
        embed_calls = len(mock_embedding_service.document_calls)

        summary = pipeline.backfill()

        assert [o.source_url for o in summary.written] == [URL_1001]
        assert len(mock_embedding_service.document_calls) == embed_calls + 1
        assert len(memory_store.get_chunks(doc_1001.id)) == 4
        assert memory_store.get_document_by_url(URL_1001).content_hash == doc_1001.content_hash
        assert [c.text for c in memory_store.get_chunks(memory_store.get_document_by_url(URL_1101).id)] == before_1101

    def test_nothing_missing(self, pipeline, mock_embedding_service):
        pipeline.populate([URL_1001])
        embed_calls = len(mock_embedding_service.document_calls)
        assert pipeline.backfill().outcomes == []
        assert len(mock_embedding_service.document_calls) == embed_calls

    def test_backfill_failure_raises_run_failed(self, pipeline, memory_store, mock_embedding_service):
        from execution.statute_rag.errors import RunFailedError

        pipeline.populate([URL_1001])
        memory_store.delete_chunks(memory_store.get_document_by_url(URL_1001).id)
        mock_embedding_service.fail_on = "17 U.S. Code"
        with pytest.raises(RunFailedError, match="backfill"):
            pipeline.backfill()
        assert memory_store.select_all_chunks() == []


class TestPreview:

    def test_preview_writes_nothing(self, pipeline, memory_store, mock_embedding_service):
        records = pipeline.preview([URL_1001, URL_1101])
        assert [r.change_type for r in records] == ["new", "new"]
        assert memory_store.list_documents() == []
        assert mock_embedding_service.document_calls == []


class TestConcurrency:

    def test_parallel_workers_match_sequential(self, stub_fetcher, memory_store):
        from execution.statute_rag.pipeline import IngestionPipeline
        from execution.statute_rag.store import InMemoryStore

        sequential_store = InMemoryStore()
        IngestionPipeline(stub_fetcher, sequential_store, MockEmbeddingService()).populate([URL_1001, URL_1101])
        IngestionPipeline(stub_fetcher, memory_store, MockEmbeddingService(), max_workers=4).populate(
            [URL_1001, URL_1101],
        )

        def texts(store):
            return sorted(c.text for c in store.select_all_chunks())

        assert texts(memory_store) == texts(sequential_store)

    def test_lock_per_url(self, pipeline):
        assert pipeline._lock_for(URL_1001) is pipeline._lock_for(URL_1001)
        assert pipeline._lock_for(URL_1001) is not pipeline._lock_for(URL_1101)
