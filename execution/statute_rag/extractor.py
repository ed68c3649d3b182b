"""
Content Extractor

Turns a rendered statute page into normalized plain text plus the metadata
the rest of the pipeline needs. Pure function of (html, url): no I/O.
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional

from bs4 import BeautifulSoup

from .errors import ExtractionError

logger = logging.getLogger(__name__)

# The tab holding the statute text on LII pages
ACTIVE_REGION_SELECTOR = ".tab-pane.active"
# Removed from inside the active region
NOISE_SELECTORS = ".advertisement, script, style, .breadcrumb, .tabs, nav, .sidebar"
# Removed from the whole page before falling back to a content container
CHROME_SELECTORS = ".liicol-1, .advertisement, script, style, .breadcrumb, .tabs, nav"
CONTAINER_SELECTORS = ".liicol-2, .content, .main-content, main, article"

DEFAULT_TITLE_SUFFIXES = (" | LII / Legal Information Institute",)

MIN_CONTENT_CHARS = 50

_WHITESPACE = re.compile(r"\s+")
_SECTION_ID = re.compile(r"/(\d+)/?$")


@dataclass
class ExtractedContent:
    """Normalized text and metadata pulled out of one page."""
    title: str
    content: str
    section_id: Optional[str] = None


def normalize_whitespace(text: str) -> str:
    """Collapse every whitespace run to a single space and trim."""
    return _WHITESPACE.sub(" ", text).strip()


def extract_section_id(url: str) -> Optional[str]:
    """Trailing numeric path segment of ``url`` (``.../17/1001`` -> ``"1001"``)."""
    match = _SECTION_ID.search(url.split("?")[0].split("#")[0])
    return match.group(1) if match else None


def extract_title(soup: BeautifulSoup, url: str, title_suffixes=DEFAULT_TITLE_SUFFIXES) -> str:
    """First <h1>, else <title> without the site suffix, else the URL."""
    h1 = soup.find("h1")
    if h1:
        title = normalize_whitespace(h1.get_text())
        if title:
            return title

    if soup.title is not None:
        title = soup.title.get_text()
        for suffix in title_suffixes:
            title = title.replace(suffix, "")
        title = normalize_whitespace(title)
        if title:
            return title

    return url


def _content_region_text(soup: BeautifulSoup) -> Optional[str]:
    active = soup.select_one(ACTIVE_REGION_SELECTOR)
    if active is not None:
        for element in active.select(NOISE_SELECTORS):
            element.decompose()
        return active.get_text()

    for element in soup.select(CHROME_SELECTORS):
        element.decompose()
    container = soup.select_one(CONTAINER_SELECTORS)
    if container is not None:
        return container.get_text()
    return None


def extract(html: str, url: str, title_suffixes=DEFAULT_TITLE_SUFFIXES) -> ExtractedContent:
    """
    Parse a statute page into title, normalized content and section id.

    Args:
        html: Rendered page HTML
        url: Source URL (used for the section id and as last-resort title)
        title_suffixes: Site suffixes stripped from the <title> fallback

    Returns:
        ExtractedContent

    Raises:
        ExtractionError: no content region was found, or it held too little text
    """
    soup = BeautifulSoup(html, "html.parser")

    # Title first: the fallback path below removes page chrome
    title = extract_title(soup, url, title_suffixes)

    raw = _content_region_text(soup)
    if raw is None:
        raise ExtractionError(url, "no content region found")

    content = normalize_whitespace(raw)
    if len(content) < MIN_CONTENT_CHARS:
        raise ExtractionError(url, f"content too short ({len(content)} chars)")

    return ExtractedContent(title=title, content=content, section_id=extract_section_id(url))
