"""
Page Fetcher

Renders statute pages through a headless Chrome session. Before each render a
cheap HTTP HEAD probe checks that the page exists, so gaps in a generated
section range (e.g. a repealed section number) are skipped without paying
for a full browser navigation.

Failures never escape fetch(): a bad URL is logged and reported as None so
the rest of the crawl carries on.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional

import requests
from requests.adapters import HTTPAdapter
from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.chrome.options import Options
from urllib3.exceptions import HTTPError as TransportError
from urllib3.util.retry import Retry

from .errors import FetchError

logger = logging.getLogger(__name__)

CORNELL_USC_TITLE_17 = "https://www.law.cornell.edu/uscode/text/17"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Status codes that mean "this section does not exist"
NOT_FOUND_STATUSES = frozenset({404, 410})
# Servers that refuse HEAD still get a real navigation
HEAD_UNSUPPORTED_STATUSES = frozenset({405, 501})


def generate_section_urls(base_url: str, start: int, end: int) -> list[str]:
    """URLs for every section number in ``[start, end]`` under ``base_url``."""
    base = base_url.rstrip("/")
    return [f"{base}/{number}" for number in range(start, end + 1)]


def default_source_urls() -> list[str]:
    """17 U.S.C. chapter 10 (§§ 1001-1010) plus § 1101."""
    return generate_section_urls(CORNELL_USC_TITLE_17, 1001, 1010) + [f"{CORNELL_USC_TITLE_17}/1101"]


@dataclass
class FetcherConfig:
    """Configuration for the page fetcher."""
    rate_limit_delay: float = 2.0  # Seconds between requests
    request_timeout: float = 30.0  # Existence probe timeout
    page_load_timeout: float = 60.0  # Browser navigation timeout
    user_agent: str = DEFAULT_USER_AGENT
    headless: bool = True
    probe_retries: int = 3


def _make_session(config: FetcherConfig) -> requests.Session:
    """Create a session with browser headers and retry backoff."""
    s = requests.Session()
    s.headers.update({
        "User-Agent": config.user_agent,
        "Accept-Language": "en-US,en;q=0.9",
    })
    retries = Retry(total=config.probe_retries, backoff_factor=2, status_forcelist=[500, 502, 503, 504])
    s.mount("https://", HTTPAdapter(max_retries=retries))
    s.mount("http://", HTTPAdapter(max_retries=retries))
    return s


def _make_chrome_driver(config: FetcherConfig):
    """Launch a headless Chrome WebDriver."""
    options = Options()
    if config.headless:
        options.add_argument("--headless=new")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    options.add_argument(f"user-agent={config.user_agent}")
    return webdriver.Chrome(options=options)


class PageFetcher:
    """
    Fetches rendered HTML for statute pages.

    The browser is started lazily on the first render and released by close().
    Use as a context manager so the browser is shut down even if the crawl
    raises:

        with PageFetcher(config) as fetcher:
            html = fetcher.fetch(url)
    """

    def __init__(
        self,
        config: Optional[FetcherConfig] = None,
        driver_factory: Optional[Callable[[FetcherConfig], object]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or FetcherConfig()
        self._driver_factory = driver_factory or _make_chrome_driver
        self._session = session or _make_session(self.config)
        self._driver = None
        self._last_request_at: Optional[float] = None

    def __enter__(self) -> "PageFetcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        """Start the browser session if it is not running yet."""
        if self._driver is not None:
            return
        try:
            self._driver = self._driver_factory(self.config)
            self._driver.set_page_load_timeout(self.config.page_load_timeout)
            logger.info("Headless browser started")
        except (WebDriverException, OSError) as e:
            self._driver = None
            raise FetchError("<browser>", f"could not start browser: {e}") from e

    def close(self) -> None:
        """Shut down the browser and HTTP session."""
        if self._driver is not None:
            try:
                self._driver.quit()
                logger.info("Headless browser closed")
            except WebDriverException as e:
                logger.warning(f"Error while closing browser: {e}")
            finally:
                self._driver = None
        self._session.close()

    def fetch(self, url: str) -> Optional[str]:
        """
        Return the rendered HTML for ``url``, or None if the page does not
        exist or could not be fetched.
        """
        try:
            if not self._probe(url):
                logger.info(f"URL not found, skipping: {url}")
                return None
            html = self._render(url)
            logger.info(f"Fetched {url} ({len(html)} bytes)")
            return html
        except FetchError as e:
            logger.error(str(e))
            return None

    def fetch_all(self, urls: Iterable[str]) -> Iterator[tuple[str, Optional[str]]]:
        """Yield ``(url, html_or_none)`` for each URL, one at a time."""
        for url in urls:
            yield url, self.fetch(url)

    def _wait_politely(self) -> None:
        """Sleep so consecutive requests are at least rate_limit_delay apart."""
        if self._last_request_at is not None and self.config.rate_limit_delay > 0:
            elapsed = time.monotonic() - self._last_request_at
            remaining = self.config.rate_limit_delay - elapsed
            if remaining > 0:
                time.sleep(remaining)
        self._last_request_at = time.monotonic()

    def _probe(self, url: str) -> bool:
        """HEAD request; False means the page does not exist."""
        self._wait_politely()
        try:
            resp = self._session.head(url, timeout=self.config.request_timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise FetchError(url, f"existence probe failed: {e}") from e

        status = resp.status_code
        if status in NOT_FOUND_STATUSES:
            return False
        if status in HEAD_UNSUPPORTED_STATUSES:
            logger.debug(f"HEAD not supported for {url} ({status}), navigating anyway")
            return True
        if status != 200:
            raise FetchError(url, f"HTTP {status}")
        return True

    def _render(self, url: str) -> str:
        """Navigate the browser to ``url`` and return the rendered DOM."""
        self.open()
        try:
            self._driver.get(url)
            return self._driver.page_source
        except WebDriverException as e:
            raise FetchError(url, f"navigation failed: {e.msg or e}") from e
        except (TransportError, OSError) as e:
            # The driver process is gone; the next fetch starts a new browser
            self._discard_driver()
            raise FetchError(url, f"browser connection lost: {e}") from e

    def _discard_driver(self) -> None:
        driver, self._driver = self._driver, None
        try:
            driver.quit()
        except (WebDriverException, TransportError, OSError) as e:
            logger.debug(f"Ignoring error while discarding browser: {e}")
