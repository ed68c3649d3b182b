"""
Statute RAG command line.

Usage:
    statute-rag populate            # crawl sources and update the database
    statute-rag preview             # show what populate would change, no writes
    statute-rag ask "question"      # answer a question from stored chunks
    statute-rag init-db             # create tables and the pgvector extension
    statute-rag embed-missing       # chunk and embed stored documents that have no chunks
    statute-rag status              # list stored documents and chunk counts

Environment (or .env): DATABASE_URL, VOYAGE_API_KEY / OPENAI_API_KEY, see
config.PipelineConfig.from_env for the full list.

Schedule daily with cron:
    0 2 * * * cd /path/to/project && statute-rag populate
"""

import argparse
import logging
import sys
from collections import Counter
from typing import Optional

from dotenv import load_dotenv

from .answer import AnswerGenerator, TextGenerationService
from .change_detector import ChangeDetector
from .chunker import LegalChunker
from .config import PipelineConfig
from .embeddings import get_embedding_service
from .errors import StatuteRagError
from .fetcher import PageFetcher
from .pipeline import IngestionPipeline
from .similarity import LinearScanIndex, Retriever
from .store import open_store

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    for noisy in ("selenium", "urllib3", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="statute-rag",
        description="Crawl statute pages, keep their embeddings current and answer questions from them",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("populate", "Scrape sources and update the database with any changes"),
        ("preview", "Show what would be changed without updating the database"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument(
            "--url",
            action="append",
            dest="urls",
            help="Source URL (repeatable; default: STATUTE_RAG_URLS or 17 U.S.C. 1001-1010, 1101)",
        )
        if name == "populate":
            p.add_argument("--max-workers", type=int, default=None, help="Documents written in parallel")

    ask = sub.add_parser("ask", help="Answer a question from the stored statutes")
    ask.add_argument("question", type=str)
    ask.add_argument("-k", "--top-k", type=int, default=None, help="Chunks to retrieve")

    sub.add_parser("init-db", help="Create the database schema")
    sub.add_parser("embed-missing", help="Chunk and embed stored documents that have no chunks")
    sub.add_parser("status", help="List stored documents and chunk counts")
    return parser


def cmd_populate(config: PipelineConfig, args) -> int:
    if args.max_workers:
        config.max_workers = max(1, args.max_workers)
    workers = config.write_workers()
    if workers < config.max_workers:
        logger.warning(f"Limiting max_workers to {workers} (connection pool size)")

    with open_store(config.store_config()) as store:
        store.initialize_schema()
        embedding_service = get_embedding_service(config.embedding_config())
        with PageFetcher(config.fetcher_config()) as fetcher:
            pipeline = IngestionPipeline(
                fetcher,
                store,
                embedding_service,
                chunker=LegalChunker(config.chunk),
                max_workers=workers,
            )
            summary = pipeline.populate(config.source_urls)

    print(ChangeDetector.summarize(summary.records))
    print(f"Population completed: {summary}")
    for outcome in summary.failed:
        print(f"  FAILED {outcome.source_url}: {outcome.error}")
    return 0


def cmd_preview(config: PipelineConfig, args) -> int:
    with open_store(config.store_config()) as store:
        with PageFetcher(config.fetcher_config()) as fetcher:
            pipeline = IngestionPipeline(fetcher, store, embedding_service=None)
            records = pipeline.preview(config.source_urls)

    print(ChangeDetector.summarize(records))
    return 0


def cmd_ask(config: PipelineConfig, args) -> int:
    top_k = args.top_k or config.search_top_k
    with open_store(config.store_config()) as store:
        retriever = Retriever(get_embedding_service(config.embedding_config()), LinearScanIndex(store))
        generator = TextGenerationService(model=config.llm_model, base_url=config.llm_base_url)
        answer = AnswerGenerator(retriever, generator, top_k=top_k).answer(args.question)

    print(answer.text)
    if answer.sources:
        print("\nSources:")
        for i, result in enumerate(answer.sources, 1):
            first_line = result.chunk.text.splitlines()[0] if result.chunk.text else ""
            print(f"  [{i}] ({result.score:.3f}) {first_line[:100]}")
    return 0


def cmd_init_db(config: PipelineConfig, args) -> int:
    with open_store(config.store_config()) as store:
        store.initialize_schema()
    print("Schema initialized")
    return 0


def cmd_embed_missing(config: PipelineConfig, args) -> int:
    with open_store(config.store_config()) as store:
        pipeline = IngestionPipeline(
            fetcher=None,
            store=store,
            embedding_service=get_embedding_service(config.embedding_config()),
            chunker=LegalChunker(config.chunk),
        )
        summary = pipeline.backfill()

    if not summary.outcomes:
        print("All documents already have chunks")
        return 0
    print(f"Embedding completed: {len(summary.written)} embedded, {len(summary.failed)} failed")
    for outcome in summary.failed:
        print(f"  FAILED {outcome.source_url}: {outcome.error}")
    return 0


def cmd_status(config: PipelineConfig, args) -> int:
    with open_store(config.store_config()) as store:
        documents = store.list_documents()
        chunk_counts = Counter(c.document_id for c in store.select_all_chunks())

    print(f"Documents: {len(documents)}")
    for i, doc in enumerate(documents, 1):
        print(f"  {i}. {doc.title}")
        print(f"     URL: {doc.source_url}")
        print(f"     Content: {len(doc.content)} chars, hash {doc.content_hash[:12]}")
        print(f"     Last fetched: {doc.last_fetched_at}")
        print(f"     Chunks: {chunk_counts.get(doc.id, 0)}")
    print(f"Chunks: {sum(chunk_counts.values())}")

    without_chunks = [doc for doc in documents if not chunk_counts.get(doc.id)]
    if without_chunks:
        print(f"WARNING: {len(without_chunks)} documents have no chunks; run 'statute-rag embed-missing'")
    elif not documents:
        print("Database is empty; run 'statute-rag populate'")
    return 0


COMMANDS = {
    "populate": cmd_populate,
    "preview": cmd_preview,
    "ask": cmd_ask,
    "init-db": cmd_init_db,
    "embed-missing": cmd_embed_missing,
    "status": cmd_status,
}


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    config = PipelineConfig.from_env()
    if getattr(args, "urls", None):
        config.source_urls = args.urls

    try:
        return COMMANDS[args.command](config, args)
    except StatuteRagError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
