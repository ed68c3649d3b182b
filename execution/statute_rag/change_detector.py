"""
Change Detector

Compares freshly fetched pages against the stored documents and classifies
each URL as new, updated or unchanged.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import HashMismatchLookupError

logger = logging.getLogger(__name__)


class ChangeType:
    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"

    ALL = (NEW, UPDATED, UNCHANGED)


@dataclass
class ChangeRecord:
    """Outcome of comparing one fetched page with the store."""
    source_url: str
    change_type: str
    new_hash: str
    old_hash: Optional[str] = None
    document_id: Optional[str] = None

    @property
    def needs_write(self) -> bool:
        return self.change_type != ChangeType.UNCHANGED


class ChangeDetector:
    """
    Hash-based change detection against a document store.

    A failed store lookup is treated as "no prior document": the page is
    re-ingested rather than silently skipped.
    """

    def __init__(self, store):
        self.store = store

    def detect(self, source_url: str, new_hash: str) -> ChangeRecord:
        try:
            existing = self._lookup(source_url)
        except HashMismatchLookupError as e:
            logger.warning(f"{e}; treating {source_url} as new")
            return ChangeRecord(source_url=source_url, change_type=ChangeType.NEW, new_hash=new_hash)

        if existing is None:
            return ChangeRecord(source_url=source_url, change_type=ChangeType.NEW, new_hash=new_hash)

        change_type = ChangeType.UNCHANGED if existing.content_hash == new_hash else ChangeType.UPDATED
        return ChangeRecord(
            source_url=source_url,
            change_type=change_type,
            new_hash=new_hash,
            old_hash=existing.content_hash,
            document_id=existing.id,
        )

    def detect_batch(self, pages: Iterable) -> list[ChangeRecord]:
        """One ChangeRecord per page, in input order. Pages need .url and .content_hash."""
        records = [self.detect(page.url, page.content_hash) for page in pages]
        logger.debug(f"Classified {len(records)} pages")
        return records

    def _lookup(self, source_url: str):
        try:
            return self.store.get_document_by_url(source_url)
        except Exception as e:
            raise HashMismatchLookupError(f"Lookup failed for {source_url}: {e}") from e

    @staticmethod
    def partition(records: Iterable[ChangeRecord]) -> dict[str, list[ChangeRecord]]:
        """Group records by change type."""
        groups = {change_type: [] for change_type in ChangeType.ALL}
        for record in records:
            groups[record.change_type].append(record)
        return groups

    @classmethod
    def summarize(cls, records: Iterable[ChangeRecord]) -> str:
        """Human-readable change summary: counts, then the new and updated URLs."""
        groups = cls.partition(records)
        lines = [
            f"Changes: {len(groups[ChangeType.NEW])} new, "
            f"{len(groups[ChangeType.UPDATED])} updated, "
            f"{len(groups[ChangeType.UNCHANGED])} unchanged"
        ]
        for change_type in (ChangeType.NEW, ChangeType.UPDATED):
            for record in groups[change_type]:
                lines.append(f"  [{change_type}] {record.source_url}")
        return "\n".join(lines)
