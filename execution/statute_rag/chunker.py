"""
Legal-Aware Chunker

Splits a statute section's normalized text into retrieval-sized chunks while
keeping its numbered sub-paragraphs intact.

Text is first tidied by clean_legal_text(). Strategy, in priority order:
1. Structural: split before every "(1)", "(2)", ... marker
2. Semantic: pack whole sentences up to the character budget
3. Fail-safe: one truncated chunk holding the whole text

Every chunk carries the section title so it reads on its own once it has
been pulled out of the document by retrieval. Chunking is a pure function of
(content, title): identical input always yields identical chunks.
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# Zero-width split point before "(1)", "(12)", ...
STRUCTURAL_MARKER = re.compile(r"(?=\(\d+\))")

LEGAL_ABBREVIATIONS = ("U.S.", "v.", "e.g.", "i.e.", "etc.", "Inc.", "Corp.", "LLC")

_SPACE_BEFORE_CLOSING = re.compile(r"\s+([.,;:)\]])")
_SPACE_AFTER_OPENING = re.compile(r"([(\[])\s+")
_SECTION_SIGN = re.compile(r"§\s*")
_ELLIPSIS = re.compile(r"\.{3,}")


def clean_legal_text(text: str) -> str:
    """
    Tidy statute text before splitting.

    "( 1 )" becomes "(1)", "§1001" becomes "§ 1001" and runs of dots collapse
    to "...". Markers written with inner spaces are split like any other.
    """
    text = re.sub(r"\s+", " ", text)
    text = _SPACE_BEFORE_CLOSING.sub(r"\1", text)
    text = _SPACE_AFTER_OPENING.sub(r"\1", text)
    text = _SECTION_SIGN.sub("§ ", text)
    text = _ELLIPSIS.sub("...", text)
    return text.strip()


@dataclass
class ChunkConfig:
    """Configuration for chunking parameters (all sizes in characters)."""
    max_chunk_chars: int = 1200  # Budget for semantically packed chunks
    min_segment_chars: int = 40  # Shorter structural segments are noise
    min_sentence_chars: int = 20  # Shorter sentences are fragments
    fallback_min_chars: int = 50  # Fail-safe only fires above this length
    fallback_max_chars: int = 2000  # Fail-safe chunk is truncated to this


class SentenceSplitter:
    """Interface: text -> ordered list of sentences."""

    def split(self, text: str) -> list[str]:
        raise NotImplementedError


class AbbreviationSentenceSplitter(SentenceSplitter):
    """
    Splits on ".", "!" or "?" followed by whitespace.

    Known legal abbreviations are swapped for placeholders before splitting
    and restored afterwards, so "U.S. Code" or "Smith v. Jones" do not end a
    sentence.
    """

    def __init__(self, abbreviations=LEGAL_ABBREVIATIONS, min_sentence_chars: int = 20):
        self.min_sentence_chars = min_sentence_chars
        self._placeholders = [
            (f"__ABBREV_{i}__", abbrev, re.compile(re.escape(abbrev)))
            for i, abbrev in enumerate(abbreviations)
        ]
        self._boundary = re.compile(r"(?<=[.!?])\s+")

    def split(self, text: str) -> list[str]:
        protected = text
        for placeholder, _, pattern in self._placeholders:
            protected = pattern.sub(placeholder, protected)

        sentences = []
        for piece in self._boundary.split(protected):
            for placeholder, abbrev, _ in self._placeholders:
                piece = piece.replace(placeholder, abbrev)
            piece = piece.strip()
            if len(piece) >= self.min_sentence_chars:
                sentences.append(piece)
        return sentences


class LegalChunker:
    """
    Chunks statute text while preserving its numbered structure.

    The sentence splitter is pluggable; anything implementing
    SentenceSplitter.split() can replace the abbreviation heuristic without
    touching the packing logic.
    """

    def __init__(
        self,
        config: Optional[ChunkConfig] = None,
        sentence_splitter: Optional[SentenceSplitter] = None,
    ):
        self.config = config or ChunkConfig()
        self.sentence_splitter = sentence_splitter or AbbreviationSentenceSplitter(
            min_sentence_chars=self.config.min_sentence_chars,
        )

    def chunk(self, content: str, title: str) -> list[str]:
        """
        Split ``content`` into title-prefixed chunks.

        Args:
            content: Normalized section text
            title: Section title, prepended to every chunk

        Returns:
            Ordered list of chunk strings (possibly empty for trivial input)
        """
        content = clean_legal_text(content)
        chunks = self._split_structural(content, title)
        if chunks is None:
            chunks = self._pack_sentences(self.sentence_splitter.split(content), title, "\n\n")

        if not chunks and len(content) > self.config.fallback_min_chars:
            logger.debug(f"No chunks for '{title}', using truncated fallback")
            chunks = [self._prefix(title, content, "\n\n")[: self.config.fallback_max_chars]]

        return chunks

    def _split_structural(self, content: str, title: str) -> Optional[list[str]]:
        """Chunks split on "(n)" markers, or None if the text has no markers."""
        segments = [s.strip() for s in STRUCTURAL_MARKER.split(content)]
        segments = [s for s in segments if s]
        if len(segments) <= 1:
            return None

        chunks = []
        for index, segment in enumerate(segments):
            if len(segment) < self.config.min_segment_chars:
                continue
            separator = "\n\n" if index == 0 else " - "

            if len(self._prefix(title, segment, separator)) <= self.config.max_chunk_chars:
                chunks.append(self._prefix(title, segment, separator))
                continue

            # Oversized sub-paragraph: keep it together as far as the budget allows
            pieces = self._pack_sentences(self.sentence_splitter.split(segment), title, separator)
            chunks.extend(pieces or [self._prefix(title, segment, separator)])
        return chunks

    def _pack_sentences(self, sentences: list[str], title: str, separator: str) -> list[str]:
        """Greedily pack sentences into chunks of at most max_chunk_chars."""
        chunks = []
        current: list[str] = []
        current_len = 0
        header_len = len(self._prefix(title, "", separator))

        for sentence in sentences:
            if current and header_len + current_len + len(sentence) + 1 > self.config.max_chunk_chars:
                chunks.append(self._prefix(title, " ".join(current), separator))
                current = []
                current_len = 0
            current.append(sentence)
            current_len += len(sentence) + (1 if current_len else 0)

        if current:
            chunks.append(self._prefix(title, " ".join(current), separator))
        return chunks

    @staticmethod
    def _prefix(title: str, text: str, separator: str) -> str:
        return f"{title}{separator}{text}" if title else text


def create_processing_summary(documents: int, chunk_counts: list[int]) -> str:
    """One-line log summary of a chunking pass."""
    return f"Processed {documents} documents into {sum(chunk_counts)} chunks"
