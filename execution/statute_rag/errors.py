"""
Error taxonomy for the ingestion and retrieval pipeline.

Per-URL errors (fetch, extraction) skip the URL. Per-document errors
(embedding, store write) abort that document's write only. RunFailedError
is the one that surfaces to the operator as a failed run.
"""


class StatuteRagError(Exception):
    """Base class for all pipeline errors."""


class FetchError(StatuteRagError):
    """Network failure, timeout or non-200 response for a single URL."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to fetch {url}: {reason}")


class ExtractionError(StatuteRagError):
    """Page HTML did not contain the expected structure."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to extract {url}: {reason}")


class HashMismatchLookupError(StatuteRagError):
    """Document store could not be read while comparing hashes."""


class EmbeddingServiceError(StatuteRagError):
    """Embedding provider failed or returned an unusable vector."""


class StoreWriteError(StatuteRagError):
    """Document or chunk store rejected a write (or is unreachable)."""


class StoreReadError(StatuteRagError):
    """Document or chunk store could not be read."""


class RunFailedError(StatuteRagError):
    """Every attempted document write failed; the run as a whole failed."""
