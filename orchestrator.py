"""Drives a crawl record from submission to a terminal status."""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from urllib.parse import urlparse

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config import get_settings
from crawler import CrawlTraversal
from database import Stores
from fetcher import PageFetcher, normalize_url
from models import CrawlStatus, check_transition, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CrawlEvent:
    crawl_id: int
    website_id: int
    status: str
    pages_found: int
    pages_crawled: int


class CrawlOrchestrator:
    """Owns the crawl lifecycle: pending -> crawling -> completed | failed.

    Every call to :meth:`start_crawl` leaves its Crawl and Website in the same
    terminal status, whatever happens during the traversal. Traversal errors
    end in a failed crawl that is returned normally; database errors are
    re-raised once the records have been pushed to ``failed`` where possible.
    """

    def __init__(self, stores, fetcher, max_pages=100, max_workers=4, progress_interval=1.0, clock=utcnow):
        self.stores = stores
        self.fetcher = fetcher
        self.max_pages = max_pages
        self.max_workers = max_workers
        self.progress_interval = progress_interval
        self.clock = clock
        self._observers = []
        self._active = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings=None, stores=None, fetcher=None):
        settings = settings or get_settings()
        return cls(
            stores or Stores(),
            fetcher or PageFetcher.from_settings(settings),
            max_pages=settings.max_pages,
            max_workers=settings.max_workers,
            progress_interval=settings.progress_interval,
        )

    # Observers

    def subscribe(self, callback):
        """Call ``callback(CrawlEvent)`` on every status change and progress write.

        Returns a function that removes the subscription.
        """
        with self._lock:
            self._observers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._observers:
                    self._observers.remove(callback)
        return unsubscribe

    def _notify(self, crawl):
        event = CrawlEvent(crawl.id, crawl.website_id, crawl.status, crawl.pages_found or 0,
                           crawl.pages_crawled or 0)
        with self._lock:
            observers = list(self._observers)
        for callback in observers:
            try:
                callback(event)
            except Exception:
                logger.exception("Crawl observer %r failed on %s", callback, event)

    # Lifecycle

    def start_crawl(self, url, name=None, schedule='manual'):
        """Crawl ``url`` and return the Crawl record in its terminal status."""
        seed = normalize_url(url)
        if seed is None:
            raise ValueError(f"Not a crawlable URL: {url}")

        website = crawl = result = None
        try:
            website = self._resolve_website(seed, name, schedule)
            crawl = self.stores.crawls.create(
                website_id=website.id,
                website_url=website.url,
                status=CrawlStatus.PENDING.value,
                pages_found=0,
                pages_crawled=0,
                errors_404=[],
                redirects_301=[],
                seo_issues=[],
                created_date=self.clock(),
            )
            logger.info("Crawl %s created for %s", crawl.id, website.url)
            self._notify(crawl)

            crawl = self._advance(crawl, CrawlStatus.CRAWLING)
            website = self.stores.websites.update(website.id, last_crawl_status=CrawlStatus.CRAWLING.value)
            result = self._traverse(crawl)
        finally:
            website, crawl = self._finalize(website, crawl, result)
        return crawl

    def start_crawl_in_background(self, url, name=None, schedule='manual'):
        """Run :meth:`start_crawl` on a daemon thread and return the thread.

        The URL is checked before the thread starts, so a bad URL raises
        ``ValueError`` here instead of on the worker.
        """
        seed = normalize_url(url)
        if seed is None:
            raise ValueError(f"Not a crawlable URL: {url}")
        thread = threading.Thread(target=self._run_crawl, args=(seed, name, schedule), daemon=True,
                                  name=f"crawl-{urlparse(seed).netloc}")
        thread.start()
        return thread

    def _run_crawl(self, url, name, schedule):
        try:
            self.start_crawl(url, name=name, schedule=schedule)
        except Exception:
            logger.exception("Background crawl of %s failed", url)

    def cancel(self, crawl_id):
        """Stop the traversal for ``crawl_id`` if this orchestrator is running it."""
        with self._lock:
            traversal = self._active.get(crawl_id)
        if traversal is None:
            return False
        traversal.cancel()
        return True

    def _resolve_website(self, seed, name, schedule):
        existing = self.stores.websites.filter(url=seed)
        if existing:
            return self.stores.websites.update(existing[0].id, schedule=schedule,
                                               last_crawl_status=CrawlStatus.PENDING.value)
        try:
            website = self.stores.websites.create(
                url=seed,
                name=name or urlparse(seed).netloc,
                schedule=schedule,
                last_crawl_status=CrawlStatus.PENDING.value,
                created_date=self.clock(),
            )
        except IntegrityError:
            # Another request registered the same URL first.
            existing = self.stores.websites.filter(url=seed)
            if not existing:
                raise
            return self.stores.websites.update(existing[0].id, schedule=schedule,
                                               last_crawl_status=CrawlStatus.PENDING.value)
        logger.info("Registered website %s (%s)", website.id, website.url)
        return website

    def _traverse(self, crawl):
        traversal = CrawlTraversal(self.fetcher, max_pages=self.max_pages, max_workers=self.max_workers)
        with self._lock:
            if crawl.id in self._active:
                raise RuntimeError(f"Crawl {crawl.id} is already running")
            self._active[crawl.id] = traversal

        last_write = [None]

        def on_progress(progress):
            now = time.monotonic()
            if last_write[0] is not None and now - last_write[0] < self.progress_interval:
                return
            last_write[0] = now
            updated = self.stores.crawls.update(crawl.id, pages_found=progress.pages_found,
                                                pages_crawled=progress.pages_crawled)
            self._notify(updated)

        try:
            return traversal.run(crawl.website_url, on_progress=on_progress)
        except SQLAlchemyError:
            raise
        except Exception:
            logger.exception("Crawl %s of %s failed", crawl.id, crawl.website_url)
            return None
        finally:
            with self._lock:
                self._active.pop(crawl.id, None)

    def _advance(self, crawl, target, **fields):
        target = check_transition(crawl.status, target)
        crawl = self.stores.crawls.update(crawl.id, status=target.value, **fields)
        logger.info("Crawl %s is now %s", crawl.id, target.value)
        self._notify(crawl)
        return crawl

    def _finalize(self, website, crawl, result):
        """Leave the crawl and its website in the same terminal status."""
        if crawl is not None and crawl.is_terminal:
            return website, crawl

        if crawl is not None and result is not None and crawl.status == CrawlStatus.CRAWLING.value:
            try:
                crawl = self._advance(crawl, CrawlStatus.COMPLETED, **result.to_record_fields())
                website = self.stores.websites.update(
                    website.id,
                    last_crawl_status=CrawlStatus.COMPLETED.value,
                    last_crawled_date=self.clock(),
                )
                return website, crawl
            except SQLAlchemyError:
                logger.exception("Could not record completion of crawl %s", crawl.id)
                self._mark_failed(website, crawl)
                raise

        return self._mark_failed(website, crawl)

    def _mark_failed(self, website, crawl):
        status = CrawlStatus.FAILED.value
        if crawl is not None:
            current = self.stores.crawls.get(crawl.id) or crawl
            if current.is_terminal:
                # Already settled; the website follows whatever was persisted.
                crawl, status = current, current.status
            else:
                crawl = self._advance(current, CrawlStatus.FAILED)
        if website is not None:
            website = self.stores.websites.update(website.id, last_crawl_status=status)
            logger.warning("Website %s marked %s", website.url, status)
        return website, crawl

    # Recovery

    def reconcile_stale_crawls(self, grace_period=timedelta(minutes=30)):
        """Fail pending/crawling records older than ``grace_period`` with no live traversal.

        Meant to run at startup, after a shutdown may have abandoned crawls.
        """
        cutoff = self.clock() - grace_period
        with self._lock:
            running = set(self._active)
        stale = [
            crawl for crawl in self.stores.crawls.list(
                status=[CrawlStatus.PENDING.value, CrawlStatus.CRAWLING.value])
            if crawl.created_date < cutoff and crawl.id not in running
        ]
        reconciled = []
        for crawl in stale:
            crawl = self._advance(crawl, CrawlStatus.FAILED)
            latest = self.stores.crawls.list(limit=1, website_id=crawl.website_id)
            if latest and latest[0].id == crawl.id:
                self.stores.websites.update(crawl.website_id, last_crawl_status=CrawlStatus.FAILED.value)
            reconciled.append(crawl)
        if reconciled:
            logger.warning("Marked %d abandoned crawl(s) as failed", len(reconciled))
        return reconciled


if __name__ == "__main__":
    import sys

    from config import setup_logging

    setup_logging()
    orchestrator = CrawlOrchestrator.from_settings()
    orchestrator.reconcile_stale_crawls(timedelta(minutes=get_settings().stale_grace_minutes))
    crawl = orchestrator.start_crawl(sys.argv[1] if len(sys.argv) > 1 else "https://toscrape.com/")
    print(f"Crawl {crawl.id}: {crawl.status}, {crawl.pages_crawled}/{crawl.pages_found} pages, "
          f"{len(crawl.errors_404 or [])} 404s, {len(crawl.redirects_301 or [])} redirects, "
          f"{len(crawl.seo_issues or [])} SEO issues")
