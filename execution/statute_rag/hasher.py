"""Content fingerprinting for change detection."""

import hashlib


def content_hash(text: str) -> str:
    """
    SHA-256 hex digest of the exact UTF-8 bytes of ``text``.

    Whitespace normalization is the extractor's job; any difference in the
    input, down to a single character, yields a different digest.
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
