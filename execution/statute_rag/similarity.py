"""
Similarity Search

Top-k chunk lookup by cosine similarity. The index is a narrow interface
(search(query_vector, k)). LinearScanIndex scores every stored chunk on each
query.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .store import ChunkRecord

logger = logging.getLogger(__name__)


def cosine_similarity(a, b) -> float:
    """Cosine of the angle between a and b; 0.0 if either has zero norm."""
    a_arr = np.asarray(a, dtype=float)
    b_arr = np.asarray(b, dtype=float)
    norm_a = np.linalg.norm(a_arr)
    norm_b = np.linalg.norm(b_arr)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.clip(np.dot(a_arr, b_arr) / (norm_a * norm_b), -1.0, 1.0))


@dataclass
class SearchResult:
    """A chunk and its similarity to the query."""
    chunk: ChunkRecord
    score: float

    def to_dict(self) -> dict:
        return {**self.chunk.to_dict(), "score": self.score}


class SimilarityIndex:
    """Interface: query vector -> top-k SearchResults, best first."""

    def search(self, query_vector: list[float], k: int) -> list[SearchResult]:
        raise NotImplementedError


class LinearScanIndex(SimilarityIndex):
    """Scores every chunk in the store on each query."""

    def __init__(self, store):
        self.store = store

    def search(self, query_vector: list[float], k: int) -> list[SearchResult]:
        if k <= 0:
            return []

        query = np.asarray(query_vector, dtype=float)
        candidates = []
        skipped = 0
        for chunk in self.store.select_all_chunks():
            if len(chunk.embedding) != len(query):
                skipped += 1
                continue
            candidates.append(chunk)

        if skipped:
            logger.warning(f"Skipped {skipped} chunks with embedding dimension != {len(query)}")
        if not candidates:
            return []

        matrix = np.asarray([c.embedding for c in candidates], dtype=float)
        query_norm = np.linalg.norm(query)
        row_norms = np.linalg.norm(matrix, axis=1)
        denom = row_norms * query_norm
        dots = matrix @ query

        scores = np.zeros(len(candidates))
        nonzero = denom > 0
        scores[nonzero] = dots[nonzero] / denom[nonzero]
        scores = np.clip(scores, -1.0, 1.0)

        # Stable sort keeps storage order among equal scores
        order = np.argsort(-scores, kind="stable")[:k]
        return [SearchResult(chunk=candidates[i], score=float(scores[i])) for i in order]


class Retriever:
    """Embeds a question and looks up the closest chunks."""

    def __init__(self, embedding_service, index: SimilarityIndex, default_k: int = 5):
        self.embedding_service = embedding_service
        self.index = index
        self.default_k = default_k

    def retrieve(self, query: str, k: Optional[int] = None) -> list[SearchResult]:
        k = self.default_k if k is None else k
        query_vector = self.embedding_service.embed_query(query)
        results = self.index.search(query_vector, k)
        logger.info(f"Retrieved {len(results)} chunks for query: {query[:80]}")
        return results
