"""
Document and Chunk Store

Keyed record storage for ingested statute pages and their embedded chunks.

Two implementations share one interface:
- PostgresStore: PostgreSQL + pgvector, the production backend
- InMemoryStore: process-local, for tests and dry runs (``memory://``)

A store is an explicit handle: construct it, connect() at process start,
close() at shutdown (or use it as a context manager). Replacing a document's
chunk set is a single transaction, so readers never see old and new chunks
of the same document side by side.
"""

import os
import json
import uuid
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor, execute_values

from .errors import StoreReadError, StoreWriteError

logger = logging.getLogger(__name__)

MEMORY_URL = "memory://"

@dataclass
class StoreConfig:
    """Configuration for the document/chunk store."""
    connection_string: Optional[str] = None
    documents_table: str = "statute_documents"
    chunks_table: str = "statute_chunks"
    embedding_dimensions: int = 1024
    # Connection pooling settings
    pool_min_connections: int = 1
    pool_max_connections: int = 10
    use_pooling: bool = True  # Set to False for simple single-connection mode


@dataclass
class DocumentRecord:
    """One ingested source page and its current content snapshot."""
    id: str
    source_url: str
    title: str
    content: str
    content_hash: str
    last_fetched_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ChunkRecord:
    """One embedded, retrievable slice of a document."""
    id: str
    document_id: str
    position: int
    text: str
    embedding: list[float] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.id,
            "document_id": self.document_id,
            "position": self.position,
            "text": self.text,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_lengths(texts: list[str], embeddings: list[list[float]]) -> None:
    if len(texts) != len(embeddings):
        raise ValueError(f"Mismatch: {len(texts)} chunks, {len(embeddings)} embeddings")


class BaseStore:
    """
    Interface shared by every store backend.

    Document store: upsert_document, get_document_by_url, update_document,
    touch_document, list_documents, delete_document.
    Chunk store: insert_chunks, delete_chunks, get_chunks, select_all_chunks.
    Write path: write_new_document, replace_document (atomic per document).
    """

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def connect(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def initialize_schema(self) -> None:
        raise NotImplementedError

    def upsert_document(self, source_url: str, title: str, content: str,
                        content_hash: str, fetched_at: Optional[datetime] = None) -> str:
        raise NotImplementedError

    def get_document_by_url(self, source_url: str) -> Optional[DocumentRecord]:
        raise NotImplementedError

    def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        raise NotImplementedError

    def update_document(self, document_id: str, title: str, content: str,
                        content_hash: str, fetched_at: Optional[datetime] = None) -> None:
        raise NotImplementedError

    def touch_document(self, document_id: str, fetched_at: Optional[datetime] = None) -> None:
        raise NotImplementedError

    def list_documents(self) -> list[DocumentRecord]:
        raise NotImplementedError

    def delete_document(self, document_id: str) -> bool:
        raise NotImplementedError

    def insert_chunks(self, document_id: str, texts: list[str], embeddings: list[list[float]]) -> int:
        raise NotImplementedError

    def delete_chunks(self, document_id: str) -> int:
        raise NotImplementedError

    def get_chunks(self, document_id: str) -> list[ChunkRecord]:
        raise NotImplementedError

    def select_all_chunks(self) -> list[ChunkRecord]:
        raise NotImplementedError

    def write_new_document(self, source_url: str, title: str, content: str, content_hash: str,
                           texts: list[str], embeddings: list[list[float]],
                           fetched_at: Optional[datetime] = None) -> str:
        raise NotImplementedError

    def replace_document(self, document_id: str, title: str, content: str, content_hash: str,
                         texts: list[str], embeddings: list[list[float]],
                         fetched_at: Optional[datetime] = None) -> None:
        raise NotImplementedError


class InMemoryStore(BaseStore):
    """
    Process-local store.

    One re-entrant lock guards every operation, so a chunk-set replacement
    and a concurrent select_all_chunks() never interleave.
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        self.config = config or StoreConfig(connection_string=MEMORY_URL)
        self._lock = threading.RLock()
        self._documents: dict[str, DocumentRecord] = {}
        self._url_index: dict[str, str] = {}
        self._chunks: list[ChunkRecord] = []

    def connect(self) -> None:
        logger.debug("In-memory store ready")

    def close(self) -> None:
        pass

    def initialize_schema(self) -> None:
        pass

    def upsert_document(self, source_url, title, content, content_hash, fetched_at=None):
        fetched_at = fetched_at or _utcnow()
        with self._lock:
            document_id = self._url_index.get(source_url)
            if document_id is None:
                document_id = str(uuid.uuid4())
                self._documents[document_id] = DocumentRecord(
                    id=document_id, source_url=source_url, title=title, content=content,
                    content_hash=content_hash, last_fetched_at=fetched_at,
                    created_at=fetched_at, updated_at=fetched_at,
                )
                self._url_index[source_url] = document_id
            else:
                self.update_document(document_id, title, content, content_hash, fetched_at)
            return document_id

    def get_document_by_url(self, source_url):
        with self._lock:
            document_id = self._url_index.get(source_url)
            return self.get_document(document_id) if document_id else None

    def get_document(self, document_id):
        with self._lock:
            doc = self._documents.get(document_id)
            return replace(doc) if doc else None

    def update_document(self, document_id, title, content, content_hash, fetched_at=None):
        fetched_at = fetched_at or _utcnow()
        with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                raise StoreWriteError(f"Document {document_id} does not exist")
            doc.title = title
            doc.content = content
            doc.content_hash = content_hash
            doc.last_fetched_at = fetched_at
            doc.updated_at = fetched_at

    def touch_document(self, document_id, fetched_at=None):
        with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                raise StoreWriteError(f"Document {document_id} does not exist")
            doc.last_fetched_at = fetched_at or _utcnow()

    def list_documents(self):
        with self._lock:
            return [replace(d) for d in self._documents.values()]

    def delete_document(self, document_id):
        with self._lock:
            doc = self._documents.pop(document_id, None)
            if doc is None:
                return False
            self._url_index.pop(doc.source_url, None)
            self.delete_chunks(document_id)
            return True

    def insert_chunks(self, document_id, texts, embeddings):
        _check_lengths(texts, embeddings)
        with self._lock:
            if document_id not in self._documents:
                raise StoreWriteError(f"Document {document_id} does not exist")
            start = sum(1 for c in self._chunks if c.document_id == document_id)
            for offset, (text, embedding) in enumerate(zip(texts, embeddings)):
                self._chunks.append(ChunkRecord(
                    id=str(uuid.uuid4()), document_id=document_id,
                    position=start + offset, text=text, embedding=list(embedding),
                ))
            return len(texts)

    def delete_chunks(self, document_id):
        with self._lock:
            before = len(self._chunks)
            self._chunks = [c for c in self._chunks if c.document_id != document_id]
            return before - len(self._chunks)

    def get_chunks(self, document_id):
        with self._lock:
            return [replace(c, embedding=list(c.embedding)) for c in self._chunks if c.document_id == document_id]

    def select_all_chunks(self):
        with self._lock:
            return [replace(c, embedding=list(c.embedding)) for c in self._chunks]

    def write_new_document(self, source_url, title, content, content_hash, texts, embeddings, fetched_at=None):
        _check_lengths(texts, embeddings)
        with self._lock:
            document_id = self.upsert_document(source_url, title, content, content_hash, fetched_at)
            self.delete_chunks(document_id)
            self.insert_chunks(document_id, texts, embeddings)
            return document_id

    def replace_document(self, document_id, title, content, content_hash, texts, embeddings, fetched_at=None):
        _check_lengths(texts, embeddings)
        with self._lock:
            if document_id not in self._documents:
                raise StoreWriteError(f"Document {document_id} does not exist")
            self.delete_chunks(document_id)
            self.update_document(document_id, title, content, content_hash, fetched_at)
            self.insert_chunks(document_id, texts, embeddings)


class PostgresStore(BaseStore):
    """
    PostgreSQL store with pgvector.

    Features:
    - Unique source_url per document (upsert-by-url)
    - Chunks cascade-deleted with their document
    - Per-document chunk replacement in one transaction
    - Full chunk scan in storage order for in-process similarity search
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        """
        Initialize the store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or StoreConfig()
        self._conn = None
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("DATABASE_URL") or
            os.getenv("POSTGRES_URL") or
            "postgresql://localhost:5432/statute_rag"
        )

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(self._connection_string, cursor_factory=RealDictCursor)
                self._conn.autocommit = False
                logger.info("Connected to PostgreSQL (single connection)")
        except psycopg2.Error as e:
            logger.error(f"Database connection failed: {e}")
            raise StoreWriteError(f"Database connection failed: {e}") from e

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    def _get_connection(self):
        """Get a database connection (from pool or single connection)."""
        if self._pool:
            try:
                return self._pool.getconn()
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                logger.warning("Connection from pool is dead, attempting to re-establish...")
                self.connect()
                return self._pool.getconn()

        if self._conn is None or self._conn.closed:
            self.connect()
        return self._conn

    def _release_connection(self, conn, close: bool = False) -> None:
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn, close=close)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation", error_cls=StoreWriteError):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.
            error_cls: Exception raised when the operation finally fails.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            try:
                conn = self._get_connection()
            except psycopg2.Error as e:
                # Includes PoolError when every pooled connection is checked out
                logger.error(f"{label}: no database connection: {e}")
                raise error_cls(f"{label} failed: no database connection: {e}") from e

            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn, close=True)
                if attempt == 0:
                    logger.warning(f"{label}: stale connection, reconnecting: {e}")
                    if not self._pool:
                        self.connect()
                    continue
                logger.error(f"{label} failed: {e}")
                raise error_cls(f"{label} failed: {e}") from e
            except psycopg2.Error as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                logger.error(f"{label} failed: {e}")
                raise error_cls(f"{label} failed: {e}") from e
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def initialize_schema(self) -> None:
        """Create the pgvector extension, tables and indexes if they don't exist."""
        docs = self.config.documents_table
        chunks = self.config.chunks_table

        schema_sql = f"""
        CREATE EXTENSION IF NOT EXISTS vector;

        -- One row per source page
        CREATE TABLE IF NOT EXISTS {docs} (
            id UUID PRIMARY KEY,
            source_url TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            content_hash VARCHAR(64) NOT NULL,
            last_fetched_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        -- Chunks with embeddings; seq keeps storage order for stable ranking
        CREATE TABLE IF NOT EXISTS {chunks} (
            id UUID PRIMARY KEY,
            seq BIGSERIAL,
            document_id UUID NOT NULL REFERENCES {docs}(id) ON DELETE CASCADE,
            position INT NOT NULL,
            content TEXT NOT NULL,
            embedding VECTOR({self.config.embedding_dimensions}) NOT NULL,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_{chunks}_document ON {chunks}(document_id);
        CREATE INDEX IF NOT EXISTS idx_{chunks}_seq ON {chunks}(seq);
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
            conn.commit()
            logger.info("Schema initialized successfully")

        self._execute_with_retry(_op, "initialize_schema")

    # =========================================================================
    # Documents
    # =========================================================================

    @staticmethod
    def _row_to_document(row: dict) -> DocumentRecord:
        return DocumentRecord(
            id=str(row["id"]),
            source_url=row["source_url"],
            title=row["title"],
            content=row["content"],
            content_hash=row["content_hash"],
            last_fetched_at=row["last_fetched_at"],
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def _upsert_document_sql(self, cur, source_url, title, content, content_hash, fetched_at) -> str:
        cur.execute(
            f"""
            INSERT INTO {self.config.documents_table}
                (id, source_url, title, content, content_hash, last_fetched_at)
            VALUES (%s::uuid, %s, %s, %s, %s, %s)
            ON CONFLICT (source_url) DO UPDATE SET
                title = EXCLUDED.title,
                content = EXCLUDED.content,
                content_hash = EXCLUDED.content_hash,
                last_fetched_at = EXCLUDED.last_fetched_at,
                updated_at = NOW()
            RETURNING id
            """,
            (str(uuid.uuid4()), source_url, title, content, content_hash, fetched_at),
        )
        return str(cur.fetchone()["id"])

    def _update_document_sql(self, cur, document_id, title, content, content_hash, fetched_at) -> None:
        cur.execute(
            f"""
            UPDATE {self.config.documents_table}
            SET title = %s, content = %s, content_hash = %s,
                last_fetched_at = %s, updated_at = NOW()
            WHERE id = %s::uuid
            """,
            (title, content, content_hash, fetched_at, document_id),
        )
        if cur.rowcount == 0:
            raise StoreWriteError(f"Document {document_id} does not exist")

    def upsert_document(self, source_url, title, content, content_hash, fetched_at=None):
        """Insert a document, or overwrite the one already stored for source_url."""
        fetched_at = fetched_at or _utcnow()

        def _op(conn):
            with conn.cursor() as cur:
                document_id = self._upsert_document_sql(cur, source_url, title, content, content_hash, fetched_at)
            conn.commit()
            return document_id

        return self._execute_with_retry(_op, "upsert_document")

    def get_document_by_url(self, source_url):
        sql = f"SELECT * FROM {self.config.documents_table} WHERE source_url = %s LIMIT 1"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (source_url,))
                row = cur.fetchone()
            conn.commit()
            return self._row_to_document(row) if row else None

        return self._execute_with_retry(_op, "get_document_by_url", error_cls=StoreReadError)

    def get_document(self, document_id):
        sql = f"SELECT * FROM {self.config.documents_table} WHERE id = %s::uuid"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                row = cur.fetchone()
            conn.commit()
            return self._row_to_document(row) if row else None

        return self._execute_with_retry(_op, "get_document", error_cls=StoreReadError)

    def update_document(self, document_id, title, content, content_hash, fetched_at=None):
        fetched_at = fetched_at or _utcnow()

        def _op(conn):
            with conn.cursor() as cur:
                self._update_document_sql(cur, document_id, title, content, content_hash, fetched_at)
            conn.commit()

        self._execute_with_retry(_op, "update_document")

    def touch_document(self, document_id, fetched_at=None):
        """Refresh last_fetched_at only (unchanged content)."""
        sql = f"UPDATE {self.config.documents_table} SET last_fetched_at = %s WHERE id = %s::uuid"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (fetched_at or _utcnow(), document_id))
            conn.commit()

        self._execute_with_retry(_op, "touch_document")

    def list_documents(self):
        sql = f"SELECT * FROM {self.config.documents_table} ORDER BY source_url"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall()
            conn.commit()
            return [self._row_to_document(r) for r in rows]

        return self._execute_with_retry(_op, "list_documents", error_cls=StoreReadError)

    def delete_document(self, document_id):
        """Delete a document; its chunks go with it (ON DELETE CASCADE)."""
        sql = f"DELETE FROM {self.config.documents_table} WHERE id = %s::uuid"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                deleted = cur.rowcount > 0
            conn.commit()
            if deleted:
                logger.info(f"Deleted document {document_id}")
            return deleted

        return self._execute_with_retry(_op, "delete_document")

    # =========================================================================
    # Chunks
    # =========================================================================

    @staticmethod
    def _parse_embedding(value) -> list[float]:
        # pgvector renders as '[0.1,0.2,...]' text
        if isinstance(value, str):
            return [float(v) for v in json.loads(value)]
        return [float(v) for v in value]

    def _row_to_chunk(self, row: dict) -> ChunkRecord:
        return ChunkRecord(
            id=str(row["id"]),
            document_id=str(row["document_id"]),
            position=row["position"],
            text=row["content"],
            embedding=self._parse_embedding(row["embedding"]),
        )

    def _insert_chunks_sql(self, cur, document_id, texts, embeddings, start: int = 0) -> None:
        if not texts:
            return
        values = [
            (str(uuid.uuid4()), document_id, start + position, text, list(embedding))
            for position, (text, embedding) in enumerate(zip(texts, embeddings))
        ]
        execute_values(
            cur,
            f"INSERT INTO {self.config.chunks_table} (id, document_id, position, content, embedding) VALUES %s",
            values,
            template="(%s::uuid, %s::uuid, %s, %s, %s::vector)",
            page_size=1000,
        )

    def _delete_chunks_sql(self, cur, document_id) -> int:
        cur.execute(f"DELETE FROM {self.config.chunks_table} WHERE document_id = %s::uuid", (document_id,))
        return cur.rowcount

    def insert_chunks(self, document_id, texts, embeddings):
        """Batch insert chunks with embeddings using execute_values."""
        _check_lengths(texts, embeddings)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT COUNT(*) AS n FROM {self.config.chunks_table} WHERE document_id = %s::uuid",
                    (document_id,),
                )
                start = cur.fetchone()["n"]
                self._insert_chunks_sql(cur, document_id, texts, embeddings, start)
            conn.commit()
            logger.info(f"Batch inserted {len(texts)} chunks for document {document_id}")
            return len(texts)

        return self._execute_with_retry(_op, "insert_chunks")

    def delete_chunks(self, document_id):
        def _op(conn):
            with conn.cursor() as cur:
                deleted = self._delete_chunks_sql(cur, document_id)
            conn.commit()
            return deleted

        return self._execute_with_retry(_op, "delete_chunks")

    def get_chunks(self, document_id):
        sql = f"""
        SELECT id, document_id, position, content, embedding::text AS embedding
        FROM {self.config.chunks_table}
        WHERE document_id = %s::uuid
        ORDER BY position
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                rows = cur.fetchall()
            conn.commit()
            return [self._row_to_chunk(r) for r in rows]

        return self._execute_with_retry(_op, "get_chunks", error_cls=StoreReadError)

    def select_all_chunks(self):
        """Every stored chunk, in storage order."""
        sql = f"""
        SELECT id, document_id, position, content, embedding::text AS embedding
        FROM {self.config.chunks_table}
        ORDER BY seq
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall()
            conn.commit()
            return [self._row_to_chunk(r) for r in rows]

        return self._execute_with_retry(_op, "select_all_chunks", error_cls=StoreReadError)

    # =========================================================================
    # Atomic write path
    # =========================================================================

    def write_new_document(self, source_url, title, content, content_hash, texts, embeddings, fetched_at=None):
        """
        Upsert the document and write its chunk set in one transaction.

        Any chunks already attached to the URL's document are removed first,
        so a re-ingested "new" page never ends up with two chunk sets.
        """
        _check_lengths(texts, embeddings)
        fetched_at = fetched_at or _utcnow()

        def _op(conn):
            with conn.cursor() as cur:
                document_id = self._upsert_document_sql(cur, source_url, title, content, content_hash, fetched_at)
                self._delete_chunks_sql(cur, document_id)
                self._insert_chunks_sql(cur, document_id, texts, embeddings)
            conn.commit()
            logger.info(f"Wrote document {document_id} with {len(texts)} chunks")
            return document_id

        return self._execute_with_retry(_op, "write_new_document")

    def replace_document(self, document_id, title, content, content_hash, texts, embeddings, fetched_at=None):
        """
        Delete the document's chunks, update its content, insert the new
        chunks; committed together or not at all.
        """
        _check_lengths(texts, embeddings)
        fetched_at = fetched_at or _utcnow()

        def _op(conn):
            with conn.cursor() as cur:
                removed = self._delete_chunks_sql(cur, document_id)
                self._update_document_sql(cur, document_id, title, content, content_hash, fetched_at)
                self._insert_chunks_sql(cur, document_id, texts, embeddings)
            conn.commit()
            logger.info(f"Replaced {removed} chunks with {len(texts)} for document {document_id}")

        self._execute_with_retry(_op, "replace_document")


def open_store(config: Optional[StoreConfig] = None) -> BaseStore:
    """
    Construct (but do not connect) the store named by the connection string.

    ``memory://`` selects InMemoryStore; anything else is a PostgreSQL DSN.
    """
    config = config or StoreConfig()
    if (config.connection_string or "").startswith(MEMORY_URL):
        return InMemoryStore(config)
    return PostgresStore(config)
