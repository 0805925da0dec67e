"""Page fetching: one HTTP request per URL, parsed into the bits the audit needs."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urldefrag, urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

SKIP_EXTENSIONS = frozenset((
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico",
    ".pdf", ".zip", ".rar", ".7z", ".gz",
    ".mp4", ".mp3", ".wav", ".webm",
    ".css", ".js", ".map",
    ".woff", ".woff2", ".ttf", ".eot",
))

SKIP_SCHEMES = ("#", "mailto:", "tel:", "javascript:")

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


class FetchError(Exception):
    """The URL could not be fetched at all (DNS, connection, timeout...)."""

    def __init__(self, url, reason):
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


@dataclass
class Link:
    url: str
    link_text: str = ""


@dataclass
class FetchResult:
    url: str
    status_code: int
    redirect_target: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    outbound_links: List[Link] = field(default_factory=list)
    is_html: bool = True


def normalize_url(url, base=None):
    """Canonical form used for visited-set membership and website lookup.

    Joins against ``base``, drops the fragment, lowercases scheme and host,
    strips default ports and turns an empty path into ``/``. Returns None for
    non-http(s) URLs and static assets.
    """
    if not url:
        return None
    try:
        joined, _ = urldefrag(urljoin(base, url) if base else url)
        parsed = urlparse(joined.strip())
    except ValueError:
        return None
    if parsed.scheme.lower() not in ("http", "https"):
        return None
    if any(parsed.path.lower().endswith(ext) for ext in SKIP_EXTENSIONS):
        return None

    scheme = parsed.scheme.lower()
    hostname = (parsed.hostname or "").lower()
    if not hostname:
        return None
    try:
        port = parsed.port
    except ValueError:
        return None
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        netloc = f"{hostname}:{port}"
    else:
        netloc = hostname

    return urlunparse((scheme, netloc, parsed.path or "/", parsed.params, parsed.query, ""))


def same_host(url, host):
    return urlparse(url).netloc == host


def parse_page(content, base_url):
    """Return (title, description, links) from an HTML document."""
    soup = BeautifulSoup(content, 'html.parser')

    title_tag = soup.find('title')
    title = title_tag.get_text(strip=True) if title_tag else None

    description = None
    for meta in soup.find_all('meta', attrs={'name': True}):
        if meta['name'].strip().lower() == 'description':
            description = (meta.get('content') or '').strip()
            break

    links = []
    for a_tag in soup.find_all('a', href=True):
        href = a_tag['href'].strip()
        if not href or href.lower().startswith(SKIP_SCHEMES):
            continue
        try:
            url = urljoin(base_url, href)
        except ValueError:
            logger.debug("Skipping malformed link %r on %s", href, base_url)
            continue
        links.append(Link(url=url, link_text=a_tag.get_text(" ", strip=True)[:120]))

    return title, description, links


class PageFetcher:
    """Fetches pages over HTTP without following redirects.

    Connection errors and timeouts are retried with exponential backoff; once
    retries are exhausted a :class:`FetchError` is raised. Requests are rate
    limited across every thread sharing the fetcher.
    """

    def __init__(self, timeout=10, requests_per_second=2, max_retries=3, user_agent=DEFAULT_USER_AGENT,
                 retry_wait_min=1, retry_wait_max=10):
        self.timeout = timeout
        self.requests_per_second = requests_per_second
        self.user_agent = user_agent
        self.last_request_time = 0
        self._rate_lock = threading.Lock()
        self._request_with_retry = retry(
            stop=stop_after_attempt(max(1, max_retries)),
            wait=wait_exponential(multiplier=1, min=retry_wait_min, max=retry_wait_max),
            retry=retry_if_exception_type((requests.exceptions.ConnectionError, requests.exceptions.Timeout)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )(self.make_request)

    @classmethod
    def from_settings(cls, settings):
        return cls(
            timeout=settings.timeout,
            requests_per_second=settings.requests_per_second,
            max_retries=settings.max_retries,
            user_agent=settings.user_agent,
        )

    def wait_for_rate_limit(self):
        """Ensure we don't exceed our rate limit by waiting if necessary."""
        if self.requests_per_second <= 0:
            return

        with self._rate_lock:
            time_since_last_request = time.time() - self.last_request_time
            time_to_wait = (1.0 / self.requests_per_second) - time_since_last_request
            if time_to_wait > 0:
                time.sleep(time_to_wait)
            self.last_request_time = time.time()

    def make_request(self, url):
        """Make a single request with rate limiting"""
        self.wait_for_rate_limit()
        return requests.get(url, timeout=self.timeout, allow_redirects=False,
                            headers={'User-Agent': self.user_agent})

    def fetch(self, url):
        try:
            response = self._request_with_retry(url)
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to fetch {url}: {str(e)}")
            raise FetchError(url, str(e)) from e

        status_code = response.status_code
        headers = response.headers or {}
        logger.debug("Fetched %s -> %s", url, status_code)

        location = headers.get('location')
        if status_code in REDIRECT_STATUSES and location:
            try:
                target = urljoin(url, location)
            except ValueError:
                target = location
            return FetchResult(url=url, status_code=status_code, redirect_target=target,
                               outbound_links=[], is_html=False)

        if 'text/html' not in headers.get('Content-Type', ''):
            return FetchResult(url=url, status_code=status_code, is_html=False)

        title, description, links = parse_page(response.content, url)
        return FetchResult(url=url, status_code=status_code, title=title, description=description,
                           outbound_links=links)
