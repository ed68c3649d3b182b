"""
Shared fixtures and test utilities for Statute RAG tests.

Provides mock services, HTML fixtures and an in-memory store so that all
tests run without API keys, a browser, a database or network access.
"""

import sys
import hashlib
from pathlib import Path

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

BASE_URL = "https://www.law.cornell.edu/uscode/text/17"
URL_1001 = f"{BASE_URL}/1001"
URL_1002 = f"{BASE_URL}/1002"
URL_1101 = f"{BASE_URL}/1101"

# ---------------------------------------------------------------------------
# HTML fixtures (trimmed LII page layouts)
# ---------------------------------------------------------------------------
SECTION_1001_HTML = """
<html>
<head><title>17 U.S. Code § 1001 - Definitions | LII / Legal Information Institute</title></head>
<body>
<nav>Home Browse Search</nav>
<div class="tabs">Text Notes</div>
<h1>17 U.S. Code § 1001 - Definitions</h1>
<div class="tab-pane active" id="tab_default_1">
  <div class="breadcrumb">U.S. Code Title 17 Chapter 10</div>
  <div class="advertisement">Sponsored listing</div>
  <script>var tracking = 1;</script>
  <p>As used in this chapter, the following terms have the following meanings:</p>
  <p>(1) A "digital audio copied recording" is a reproduction in a digital recording format of a digital musical recording.</p>
  <p>(2) A "digital audio interface device" is any machine or device that is designed specifically to communicate digital audio information.</p>
  <p>(3) A "digital audio recording device" is any machine or device of a type commonly distributed to individuals for use by individuals.</p>
</div>
<div class="tab-pane" id="tab_default_2">Notes tab content that must not be included.</div>
</body>
</html>
"""

SECTION_1101_HTML = """
<html>
<head><title>17 U.S. Code § 1101 - Unauthorized fixation | LII / Legal Information Institute</title></head>
<body>
<div class="liicol-1"><nav>Menu</nav>Sidebar links</div>
<div class="liicol-2">
  <script>track();</script>
  Anyone who, without the consent of the performer or performers, fixes the sounds
  or sounds and images of a live musical performance in a copy or phonorecord shall
  be subject to the remedies provided in sections 502 through 505. The same applies
  to whoever transmits such a performance to the public.
</div>
</body>
</html>
"""


def section_html(title: str, body: str) -> str:
    """Minimal LII-style page with an active tab holding ``body``."""
    return (
        f"<html><head><title>{title} | LII / Legal Information Institute</title></head>"
        f"<body><h1>{title}</h1><div class=\"tab-pane active\">{body}</div></body></html>"
    )


@pytest.fixture
def section_1001_html():
    return SECTION_1001_HTML


@pytest.fixture
def section_1101_html():
    return SECTION_1101_HTML


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    def __init__(self, dimensions=8):
        self._dimensions = dimensions
        self.document_calls = []
        self.query_calls = 0
        self.fail_on = None  # substring; texts containing it raise

    def embed_documents(self, texts):
        from execution.statute_rag.errors import EmbeddingServiceError

        self.document_calls.append(list(texts))
        if self.fail_on and any(self.fail_on in t for t in texts):
            raise EmbeddingServiceError("mock provider unavailable")
        return [self._deterministic_embedding(t) for t in texts]

    def embed_query(self, query):
        self.query_calls += 1
        return self._deterministic_embedding(query)

    def _deterministic_embedding(self, text):
        h = hashlib.sha256(text.encode()).hexdigest()
        seed = int(h[:8], 16)
        return [((seed + i) % 1000) / 1000.0 + 0.001 for i in range(self._dimensions)]

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


# ---------------------------------------------------------------------------
# Stub fetcher (no browser, no network)
# ---------------------------------------------------------------------------

class StubFetcher:
    """Serves canned HTML by URL; unknown URLs behave like a 404."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.requested = []

    def fetch(self, url):
        self.requested.append(url)
        return self.pages.get(url)


@pytest.fixture
def stub_fetcher():
    return StubFetcher({URL_1001: SECTION_1001_HTML, URL_1101: SECTION_1101_HTML})


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@pytest.fixture
def memory_store():
    from execution.statute_rag.store import InMemoryStore

    store = InMemoryStore()
    store.connect()
    yield store
    store.close()


@pytest.fixture
def pipeline(stub_fetcher, memory_store, mock_embedding_service):
    from execution.statute_rag.pipeline import IngestionPipeline

    return IngestionPipeline(stub_fetcher, memory_store, mock_embedding_service)
