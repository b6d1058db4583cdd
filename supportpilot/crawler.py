"""
Same-origin website crawler for URL knowledge sources.

Breadth-first, bounded by a page budget and a total character ceiling, and
polite: robots.txt rules and crawl-delay are honoured, and every page fetch is
retried with backoff on transient failures.
"""
import asyncio
import re
import urllib.robotparser
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Protocol
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import aiohttp
from bs4 import BeautifulSoup

from .cancellation import IngestionCancelledError
from .logging_config import logger
from .retry import with_retry
from .text_extraction import clean_text

DEFAULT_USER_AGENT = "SupportPilotBot/1.0"
DEFAULT_MAX_PAGES = 50

MAX_HTML_BYTES = 1_500_000
MAX_TOTAL_CRAWLED_CHARS = 300_000
MIN_MEANINGFUL_CHARS = 200
MIN_MEANINGFUL_WORDS = 40
MAX_LINKS_PER_PAGE = 100
MAX_QUEUE_SIZE = 300
MAX_CRAWL_DELAY_MS = 3000

PAGE_TIMEOUT_SECONDS = 12.0
ROBOTS_TIMEOUT_SECONDS = 10.0

TRACKING_QUERY_KEYS = frozenset({
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "gclid",
    "fbclid",
    "msclkid",
})

BINARY_ASSET_PATTERN = re.compile(
    r"\.(?:jpg|jpeg|png|gif|webp|svg|ico|pdf|zip|rar|mp3|mp4|avi|mov|woff2?|ttf|eot)$",
    re.IGNORECASE,
)

STRIPPED_TAGS = ["script", "style", "noscript", "nav", "footer", "header", "aside", "form", "svg"]

StopPredicate = Callable[[], Awaitable[bool]]


class CrawlError(Exception):
    """Raised when a crawl cannot start (bad start URL or forbidden start path)."""


class CrawlFetchError(Exception):
    """Non-success HTTP status while fetching a page."""

    def __init__(self, status: int):
        super().__init__(f"Crawl fetch failed with status {status}")
        self.status = status


@dataclass
class CrawlSkipCounts:
    disallowed_by_robots: int = 0
    invalid_or_duplicate: int = 0
    non_html: int = 0
    fetch_failed: int = 0
    low_value: int = 0
    oversized: int = 0
    path_rule: int = 0


@dataclass
class CrawlResult:
    """Outcome of crawling one site."""
    content: str
    pages_crawled: int
    pages_with_content: int
    visited_urls: List[str]
    skipped: CrawlSkipCounts
    crawl_delay_ms: int
    truncated: bool
    total_characters: int

    def to_metadata(self) -> Dict[str, object]:
        return {
            "pages_crawled": self.pages_crawled,
            "pages_with_content": self.pages_with_content,
            "visited_urls": list(self.visited_urls),
            "crawl_delay_ms": self.crawl_delay_ms,
            "crawl_skipped": asdict(self.skipped),
            "crawl_truncated": self.truncated,
            "crawl_characters": self.total_characters,
        }


@dataclass
class FetchedPage:
    """
    A fetched response. `text` is None when the body was not read because the
    headers already rule the page out (not HTML, or declared too large).
    """
    url: str
    status: int
    content_type: str = ""
    content_length: Optional[int] = None
    text: Optional[str] = None


class PageFetcher(Protocol):
    async def fetch_page(self, url: str, timeout: float) -> FetchedPage:
        ...

    async def fetch_robots(self, url: str, timeout: float) -> Optional[str]:
        ...


class AiohttpPageFetcher:
    """aiohttp-backed fetcher. Bodies are read up to one byte past the size ceiling."""

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, max_bytes: int = MAX_HTML_BYTES):
        self.user_agent = user_agent
        self.max_bytes = max_bytes
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self.session = aiohttp.ClientSession(headers={"User-Agent": self.user_agent})
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    def _require_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            raise RuntimeError("AiohttpPageFetcher used outside of 'async with'")
        return self.session

    async def fetch_page(self, url: str, timeout: float) -> FetchedPage:
        session = self._require_session()
        async with session.get(
            url,
            timeout=aiohttp.ClientTimeout(total=timeout),
            allow_redirects=True,
        ) as resp:
            page = FetchedPage(
                url=str(resp.url),
                status=resp.status,
                content_type=resp.headers.get("Content-Type", ""),
                content_length=resp.content_length,
            )
            if resp.status >= 400:
                return page
            if "text/html" not in page.content_type:
                return page
            if page.content_length is not None and page.content_length > self.max_bytes:
                return page

            raw = await resp.content.read(self.max_bytes + 1)
            page.text = raw.decode(resp.get_encoding() if resp.charset else "utf-8", errors="replace")
            return page

    async def fetch_robots(self, url: str, timeout: float) -> Optional[str]:
        session = self._require_session()
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            if resp.status >= 400:
                return None
            return await resp.text(errors="replace")


# ==================== URL and path rules ====================

def normalize_path_prefix(value: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        return "/"
    with_slash = trimmed if trimmed.startswith("/") else f"/{trimmed}"
    if len(with_slash) > 1:
        with_slash = with_slash.rstrip("/") or "/"
    return with_slash


def _matches_prefix(pathname: str, prefix: str) -> bool:
    if prefix == "/":
        return True
    return pathname == prefix or pathname.startswith(f"{prefix}/")


def is_path_allowed(
    pathname: str,
    allowed_path_prefixes: List[str],
    disallowed_path_prefixes: List[str],
) -> bool:
    """Deny rules win; with no allow rules every remaining path is allowed."""
    if any(_matches_prefix(pathname, prefix) for prefix in disallowed_path_prefixes):
        return False
    if not allowed_path_prefixes:
        return True
    return any(_matches_prefix(pathname, prefix) for prefix in allowed_path_prefixes)


def normalize_crawl_url(value: str, current_url: Optional[str] = None) -> Optional[str]:
    """
    Resolve, filter and canonicalize a URL for the crawl frontier.

    Returns None for non-http(s) URLs and binary assets. Tracking query
    parameters, fragments and trailing slashes are removed.
    """
    try:
        absolute = urljoin(current_url, value.strip()) if current_url else value.strip()
        parts = urlsplit(absolute)
        port = parts.port  # raises ValueError on a malformed port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in ("http", "https") or not parts.hostname:
        return None

    path = parts.path or "/"
    if BINARY_ASSET_PATTERN.search(path):
        return None
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    query = urlencode([
        (key, val)
        for key, val in parse_qsl(parts.query, keep_blank_values=True)
        if key not in TRACKING_QUERY_KEYS
    ])

    netloc = parts.hostname.lower()
    if port is not None:
        netloc = f"{netloc}:{port}"

    return urlunsplit((scheme, netloc, path, query, ""))


def url_origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def url_path(url: str) -> str:
    return urlsplit(url).path or "/"


# ==================== HTML handling ====================

def extract_content_from_html(html: str) -> str:
    """Drop page chrome and return the text of main, else article, else body."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(STRIPPED_TAGS):
        tag.decompose()

    for selector in ("main", "article", "body"):
        text = " ".join(el.get_text(" ") for el in soup.find_all(selector))
        if text.strip():
            return clean_text(text)
    return ""


def is_meaningful_content(content: str) -> bool:
    if len(content) < MIN_MEANINGFUL_CHARS:
        return False
    return len(content.split()) >= MIN_MEANINGFUL_WORDS


def find_same_origin_links(
    html: str,
    current_url: str,
    origin: str,
    allowed_path_prefixes: List[str],
    disallowed_path_prefixes: List[str],
) -> List[str]:
    soup = BeautifulSoup(html, "html.parser")
    links: Dict[str, None] = {}

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("mailto:", "tel:", "javascript:")):
            continue

        normalized = normalize_crawl_url(href, current_url)
        if not normalized:
            continue

        if url_origin(normalized) == origin and is_path_allowed(
            url_path(normalized), allowed_path_prefixes, disallowed_path_prefixes
        ):
            links[normalized] = None

    return list(links)[:MAX_LINKS_PER_PAGE]


def robots_crawl_delay_ms(robots: urllib.robotparser.RobotFileParser, user_agent: str) -> int:
    try:
        delay_seconds = robots.crawl_delay(user_agent)
    except (TypeError, ValueError):
        return 0
    if delay_seconds is None:
        return 0
    try:
        delay = float(delay_seconds)
    except (TypeError, ValueError):
        return 0
    if delay <= 0 or delay != delay:
        return 0
    return min(MAX_CRAWL_DELAY_MS, int(delay * 1000))


# ==================== Crawler ====================

class WebCrawler:
    """Bounded, polite, same-origin crawler."""

    def __init__(
        self,
        fetcher: PageFetcher,
        max_pages: int = DEFAULT_MAX_PAGES,
        user_agent: str = DEFAULT_USER_AGENT,
        fetch_retries: int = 2,
        page_timeout: float = PAGE_TIMEOUT_SECONDS,
        robots_timeout: float = ROBOTS_TIMEOUT_SECONDS,
    ):
        self.fetcher = fetcher
        self.max_pages = max_pages
        self.user_agent = user_agent
        self.fetch_retries = fetch_retries
        self.page_timeout = page_timeout
        self.robots_timeout = robots_timeout

    async def _load_robots(self, origin: str) -> urllib.robotparser.RobotFileParser:
        robots_url = f"{origin}/robots.txt"
        robots = urllib.robotparser.RobotFileParser(robots_url)
        body: Optional[str] = None
        try:
            body = await self.fetcher.fetch_robots(robots_url, self.robots_timeout)
        except Exception as e:
            # Unavailable robots.txt means no restrictions
            logger.info("robots.txt unavailable", robots_url=robots_url, error=str(e))
        robots.parse((body or "").splitlines())
        return robots

    async def _fetch_with_retry(self, url: str) -> FetchedPage:
        async def _attempt(attempt: int) -> FetchedPage:
            page = await self.fetcher.fetch_page(url, self.page_timeout)
            if page.status >= 400:
                raise CrawlFetchError(page.status)
            return page

        return await with_retry(
            _attempt,
            retries=self.fetch_retries,
            should_retry=lambda error, attempt: "status 4" not in str(error),
            label="crawl_fetch",
        )

    async def crawl(
        self,
        start_url: str,
        allowed_path_prefixes: Optional[List[str]] = None,
        disallowed_path_prefixes: Optional[List[str]] = None,
        should_stop: Optional[StopPredicate] = None,
    ) -> CrawlResult:
        """
        Crawl up to `max_pages` same-origin pages starting at `start_url`.

        Raises:
            CrawlError: Start URL is invalid or excluded by the path rules
            IngestionCancelledError: `should_stop` reported cancellation
        """
        normalized_start = normalize_crawl_url(start_url)
        if not normalized_start:
            raise CrawlError("Invalid start URL for crawling")

        origin = url_origin(normalized_start)
        allowed = [normalize_path_prefix(p) for p in (allowed_path_prefixes or []) if p.strip()]
        disallowed = [normalize_path_prefix(p) for p in (disallowed_path_prefixes or []) if p.strip()]

        if not is_path_allowed(url_path(normalized_start), allowed, disallowed):
            raise CrawlError("Start URL path is not allowed by the configured crawl rules")

        robots = await self._load_robots(origin)
        crawl_delay_ms = robots_crawl_delay_ms(robots, self.user_agent)

        queue = deque([normalized_start])
        enqueued = {normalized_start}
        visited: Dict[str, None] = {}
        collected: List[str] = []
        skipped = CrawlSkipCounts()

        pages_with_content = 0
        total_characters = 0
        truncated = False

        while queue and len(visited) < self.max_pages and not truncated:
            if should_stop is not None and await should_stop():
                raise IngestionCancelledError()

            current = queue.popleft()
            if current in visited:
                skipped.invalid_or_duplicate += 1
                continue

            if not is_path_allowed(url_path(current), allowed, disallowed):
                skipped.path_rule += 1
                continue

            if not robots.can_fetch(self.user_agent, current):
                skipped.disallowed_by_robots += 1
                continue

            visited[current] = None

            if crawl_delay_ms > 0 and len(visited) > 1:
                await asyncio.sleep(crawl_delay_ms / 1000)

            try:
                page = await self._fetch_with_retry(current)

                final_url = normalize_crawl_url(page.url)
                if not final_url or url_origin(final_url) != origin:
                    skipped.non_html += 1
                    continue

                if "text/html" not in page.content_type:
                    skipped.non_html += 1
                    continue

                if page.content_length is not None and page.content_length > MAX_HTML_BYTES:
                    skipped.oversized += 1
                    continue

                html = page.text or ""
                if len(html) > MAX_HTML_BYTES:
                    skipped.oversized += 1
                    continue

                content = extract_content_from_html(html)
                if not is_meaningful_content(content):
                    skipped.low_value += 1
                else:
                    segment = f"URL: {current}\n{content}"
                    if total_characters + len(segment) > MAX_TOTAL_CRAWLED_CHARS:
                        remaining = max(0, MAX_TOTAL_CRAWLED_CHARS - total_characters)
                        if remaining > 0:
                            collected.append(segment[:remaining])
                            total_characters += remaining
                        truncated = True
                    else:
                        collected.append(segment)
                        total_characters += len(segment)
                    pages_with_content += 1

                for link in find_same_origin_links(html, current, origin, allowed, disallowed):
                    if link in visited or link in enqueued or len(queue) >= MAX_QUEUE_SIZE:
                        continue
                    enqueued.add(link)
                    queue.append(link)
            except Exception as e:
                logger.info("Crawl page failed", url=current, error=str(e))
                skipped.fetch_failed += 1

        result = CrawlResult(
            content=clean_text("\n\n".join(collected)),
            pages_crawled=len(visited),
            pages_with_content=pages_with_content,
            visited_urls=list(visited),
            skipped=skipped,
            crawl_delay_ms=crawl_delay_ms,
            truncated=truncated,
            total_characters=total_characters,
        )
        logger.info(
            "Crawl finished",
            start_url=normalized_start,
            pages_crawled=result.pages_crawled,
            pages_with_content=result.pages_with_content,
            truncated=result.truncated,
        )
        return result


async def crawl_website_for_content(
    start_url: str,
    max_pages: int = DEFAULT_MAX_PAGES,
    user_agent: str = DEFAULT_USER_AGENT,
    allowed_path_prefixes: Optional[List[str]] = None,
    disallowed_path_prefixes: Optional[List[str]] = None,
    should_stop: Optional[StopPredicate] = None,
    fetcher: Optional[PageFetcher] = None,
) -> CrawlResult:
    """Crawl with the given fetcher, or with a short-lived aiohttp session."""
    if fetcher is not None:
        crawler = WebCrawler(fetcher, max_pages=max_pages, user_agent=user_agent)
        return await crawler.crawl(start_url, allowed_path_prefixes, disallowed_path_prefixes, should_stop)

    async with AiohttpPageFetcher(user_agent=user_agent) as http_fetcher:
        crawler = WebCrawler(http_fetcher, max_pages=max_pages, user_agent=user_agent)
        return await crawler.crawl(start_url, allowed_path_prefixes, disallowed_path_prefixes, should_stop)
