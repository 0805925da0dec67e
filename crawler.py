import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlparse

from classifier import Error404, Redirect301, SeoIssue, classify_page
from fetcher import normalize_url, same_host

logger = logging.getLogger(__name__)


class CrawlError(Exception):
    pass


class CrawlCancelled(CrawlError):
    pass


@dataclass(frozen=True)
class QueuedPage:
    url: str
    source_page: Optional[str] = None
    link_text: str = ""


@dataclass(frozen=True)
class CrawlProgress:
    pages_found: int
    pages_crawled: int


@dataclass
class CrawlResult:
    pages_found: int = 0
    pages_crawled: int = 0
    errors_404: List[Error404] = field(default_factory=list)
    redirects_301: List[Redirect301] = field(default_factory=list)
    seo_issues: List[SeoIssue] = field(default_factory=list)

    def to_record_fields(self):
        """Column values for a completed Crawl record."""
        return {
            'pages_found': self.pages_found,
            'pages_crawled': self.pages_crawled,
            'errors_404': [e.to_dict() for e in self.errors_404],
            'redirects_301': [r.to_dict() for r in self.redirects_301],
            'seo_issues': [s.to_dict() for s in self.seo_issues],
        }


class CrawlAccumulator:
    """Counters, visited set and findings for a single traversal.

    Every mutation goes through one lock, so progress snapshots taken from
    other threads never see a half-applied page.
    """

    def __init__(self, max_pages):
        self.max_pages = max_pages
        self._lock = threading.Lock()
        self._found = set()
        self._titles: Dict[str, List[str]] = {}
        self._result = CrawlResult()

    def mark_found(self, url):
        """Claim ``url`` for fetching. False if already seen or over budget."""
        with self._lock:
            if url in self._found or len(self._found) >= self.max_pages:
                return False
            self._found.add(url)
            self._result.pages_found += 1
            return True

    def record_page(self, page, fetch_result):
        with self._lock:
            findings = classify_page(fetch_result, page.source_page, page.link_text, self._titles)
            self._result.pages_crawled += 1
            self._result.errors_404.extend(findings.errors_404)
            self._result.redirects_301.extend(findings.redirects_301)
            self._result.seo_issues.extend(findings.seo_issues)

            title = fetch_result.title
            if fetch_result.status_code == 200 and title and title.strip():
                self._titles.setdefault(title, []).append(fetch_result.url)
            return findings

    def snapshot(self):
        with self._lock:
            return CrawlProgress(self._result.pages_found, self._result.pages_crawled)

    def result(self):
        with self._lock:
            return CrawlResult(
                pages_found=self._result.pages_found,
                pages_crawled=self._result.pages_crawled,
                errors_404=list(self._result.errors_404),
                redirects_301=list(self._result.redirects_301),
                seo_issues=list(self._result.seo_issues),
            )


class CrawlTraversal:
    """Breadth-first crawl of one site, restricted to the seed's host.

    Up to ``max_workers`` fetches run at once, but results are consumed in
    the order pages were queued, so findings come out in BFS order no matter
    which fetch finishes first. A :class:`fetcher.FetchError` from any page
    aborts the whole traversal.
    """

    def __init__(self, fetcher, max_pages=100, max_workers=4):
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        self.fetcher = fetcher
        self.max_pages = max_pages
        self.max_workers = max(1, max_workers)
        self._cancelled = threading.Event()

    def cancel(self):
        """Ask a running traversal to stop before fetching more pages."""
        self._cancelled.set()

    @property
    def is_cancelled(self):
        return self._cancelled.is_set()

    def run(self, seed_url, on_progress=None):
        seed = normalize_url(seed_url)
        if seed is None:
            raise CrawlError(f"Not a crawlable URL: {seed_url}")
        host = urlparse(seed).netloc

        accumulator = CrawlAccumulator(self.max_pages)
        queue = deque()
        accumulator.mark_found(seed)
        queue.append(QueuedPage(seed))
        logger.info("Starting crawl of %s (max %d pages, %d workers)", seed, self.max_pages, self.max_workers)

        in_flight = deque()
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='crawl')
        try:
            while queue or in_flight:
                if self.is_cancelled:
                    raise CrawlCancelled(f"Crawl of {seed} was cancelled")

                while queue and len(in_flight) < self.max_workers:
                    page = queue.popleft()
                    in_flight.append((page, pool.submit(self.fetcher.fetch, page.url)))

                page, future = in_flight.popleft()
                fetch_result = future.result()
                accumulator.record_page(page, fetch_result)

                for candidate in self._next_pages(page, fetch_result, host):
                    if accumulator.mark_found(candidate.url):
                        queue.append(candidate)

                progress = accumulator.snapshot()
                logger.debug("[%d/%d] %s -> %s", progress.pages_crawled, progress.pages_found,
                             page.url, fetch_result.status_code)
                if on_progress is not None:
                    on_progress(progress)
        finally:
            for _, future in in_flight:
                future.cancel()
            pool.shutdown(wait=True)

        result = accumulator.result()
        logger.info("Crawl of %s finished: %d/%d pages, %d 404s, %d redirects, %d SEO issues",
                    seed, result.pages_crawled, result.pages_found, len(result.errors_404),
                    len(result.redirects_301), len(result.seo_issues))
        return result

    def _next_pages(self, page, fetch_result, host):
        if fetch_result.redirect_target:
            target = normalize_url(fetch_result.redirect_target)
            if target and same_host(target, host):
                yield QueuedPage(target, source_page=page.url, link_text=page.link_text)

        for link in fetch_result.outbound_links:
            url = normalize_url(link.url, page.url)
            if url and same_host(url, host):
                yield QueuedPage(url, source_page=page.url, link_text=link.link_text)
