"""
Tests for execution/statute_rag/extractor.py

Covers: active-region extraction, container fallback, noise removal,
        whitespace normalization, title resolution order, section ids,
        and ExtractionError cases.
"""

import pytest

from tests.conftest import URL_1001, URL_1101, section_html


class TestActiveRegion:
    """Pages with a .tab-pane.active region."""

    def test_title_from_h1(self, section_1001_html):
        from execution.statute_rag.extractor import extract
        result = extract(section_1001_html, URL_1001)
        assert result.title == "17 U.S. Code § 1001 - Definitions"

    def test_content_starts_with_statute_text(self, section_1001_html):
        from execution.statute_rag.extractor import extract
        result = extract(section_1001_html, URL_1001)
        assert result.content.startswith("As used in this chapter")
        assert "(3) A \"digital audio recording device\"" in result.content

    def test_noise_removed(self, section_1001_html):
        from execution.statute_rag.extractor import extract
        content = extract(section_1001_html, URL_1001).content
        assert "Sponsored listing" not in content
        assert "tracking" not in content
        assert "U.S. Code Title 17 Chapter 10" not in content

    def test_inactive_tabs_ignored(self, section_1001_html):
        from execution.statute_rag.extractor import extract
        content = extract(section_1001_html, URL_1001).content
        assert "Notes tab content" not in content

    def test_whitespace_collapsed(self, section_1001_html):
        from execution.statute_rag.extractor import extract
        content = extract(section_1001_html, URL_1001).content
        assert "  " not in content
        assert "\n" not in content
        assert content == content.strip()

    def test_section_id(self, section_1001_html):
        from execution.statute_rag.extractor import extract
        assert extract(section_1001_html, URL_1001).section_id == "1001"


class TestContainerFallback:
    """Pages without an active tab fall back to the primary content container."""

    def test_title_from_title_tag_without_suffix(self, section_1101_html):
        from execution.statute_rag.extractor import extract
        result = extract(section_1101_html, URL_1101)
        assert result.title == "17 U.S. Code § 1101 - Unauthorized fixation"

    def test_site_chrome_removed(self, section_1101_html):
        from execution.statute_rag.extractor import extract
        content = extract(section_1101_html, URL_1101).content
        assert content.startswith("Anyone who")
        assert "Sidebar links" not in content
        assert "Menu" not in content
        assert "track()" not in content

    def test_main_element_used_when_no_liicol(self):
        from execution.statute_rag.extractor import extract
        html = "<html><body><main>" + "Statute text that is long enough to be kept by the extractor." + "</main></body></html>"
        result = extract(html, URL_1101)
        assert result.content == "Statute text that is long enough to be kept by the extractor."


class TestTitleResolution:

    def test_falls_back_to_url(self):
        from execution.statute_rag.extractor import extract
        html = "<div class='tab-pane active'>" + "x " * 40 + "</div>"
        assert extract(html, URL_1001).title == URL_1001

    def test_empty_h1_skipped(self):
        from bs4 import BeautifulSoup
        from execution.statute_rag.extractor import extract_title
        soup = BeautifulSoup("<h1>  </h1><title>Sec 5 | LII / Legal Information Institute</title>", "html.parser")
        assert extract_title(soup, URL_1001) == "Sec 5"

    def test_custom_suffix(self):
        from bs4 import BeautifulSoup
        from execution.statute_rag.extractor import extract_title
        soup = BeautifulSoup("<title>Sec 5 - Example Site</title>", "html.parser")
        assert extract_title(soup, URL_1001, title_suffixes=(" - Example Site",)) == "Sec 5"


class TestSectionId:

    @pytest.mark.parametrize("url,expected", [
        ("https://www.law.cornell.edu/uscode/text/17/1001", "1001"),
        ("https://www.law.cornell.edu/uscode/text/17/1001/", "1001"),
        ("https://www.law.cornell.edu/uscode/text/17/1001?tab=notes", "1001"),
        ("https://www.law.cornell.edu/uscode/text/17/chapter-10", None),
    ])
    def test_trailing_numeric_segment(self, url, expected):
        from execution.statute_rag.extractor import extract_section_id
        assert extract_section_id(url) == expected


class TestExtractionErrors:

    def test_no_content_region(self):
        from execution.statute_rag.errors import ExtractionError
        from execution.statute_rag.extractor import extract
        with pytest.raises(ExtractionError) as exc_info:
            extract("<html><body><div>Nothing here</div></body></html>", URL_1001)
        assert exc_info.value.url == URL_1001
        assert "no content region" in exc_info.value.reason

    def test_content_too_short(self):
        from execution.statute_rag.errors import ExtractionError
        from execution.statute_rag.extractor import extract
        with pytest.raises(ExtractionError, match="too short"):
            extract(section_html("Sec 1", "Repealed."), URL_1001)


class TestNormalizeWhitespace:

    def test_collapses_mixed_whitespace(self):
        from execution.statute_rag.extractor import normalize_whitespace
        assert normalize_whitespace("  (1)\tA\n\n  device \r\n") == "(1) A device"
