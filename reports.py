"""Read-only views over persisted Website and Crawl records.

Aggregation (issue counts, rollups, health scores, progress) and selection
of the crawl a report page shows. Nothing here writes to the store or
mutates the records it is given.
"""

from dataclasses import dataclass
from typing import Optional

from models import CrawlStatus

ACTIVE_STATUSES = frozenset({CrawlStatus.PENDING.value, CrawlStatus.CRAWLING.value})


@dataclass(frozen=True)
class CrawlStats:
    errors_404: int = 0
    redirects_301: int = 0
    seo_issues: int = 0

    @property
    def total(self):
        return self.errors_404 + self.redirects_301 + self.seo_issues

    def __add__(self, other):
        return CrawlStats(
            self.errors_404 + other.errors_404,
            self.redirects_301 + other.redirects_301,
            self.seo_issues + other.seo_issues,
        )


@dataclass(frozen=True)
class DashboardSummary:
    total_websites: int
    total_404s: int
    total_301s: int
    total_seo_issues: int


@dataclass(frozen=True)
class Selection:
    website: Optional[object] = None
    crawl: Optional[object] = None
    # Value the ``crawl_id`` query parameter should hold; None clears it.
    crawl_id: Optional[str] = None
    discarded: bool = False

    @property
    def is_empty(self):
        return self.crawl is None


def is_completed(crawl):
    return crawl.status == CrawlStatus.COMPLETED.value


def completed_crawls(crawls):
    return [c for c in crawls if is_completed(c)]


def _recency_key(crawl):
    return (crawl.created_date, crawl.id)


def newest_first(crawls):
    return sorted(crawls, key=_recency_key, reverse=True)


def _index_by_id(records):
    return {record.id: record for record in records}


# Aggregation

def crawl_stats(crawl):
    return CrawlStats(
        errors_404=len(crawl.errors_404 or []),
        redirects_301=len(crawl.redirects_301 or []),
        seo_issues=len(crawl.seo_issues or []),
    )


def total_stats(crawls):
    """Sum of the issue counts of the completed crawls in ``crawls``."""
    total = CrawlStats()
    for crawl in completed_crawls(crawls):
        total = total + crawl_stats(crawl)
    return total


def summarize(websites, crawls):
    """Dashboard totals. ``crawls`` is the recent window the caller loaded."""
    total = total_stats(crawls)
    return DashboardSummary(
        total_websites=len(websites),
        total_404s=total.errors_404,
        total_301s=total.redirects_301,
        total_seo_issues=total.seo_issues,
    )


def summarize_by_website(crawls):
    """Map website_id -> summed CrawlStats over its completed crawls."""
    rollup = {}
    for crawl in completed_crawls(crawls):
        rollup[crawl.website_id] = rollup.get(crawl.website_id, CrawlStats()) + crawl_stats(crawl)
    return rollup


def health_score(crawl):
    return max(0, 100 - 5 * crawl_stats(crawl).total)


def health_band(score):
    if score >= 80:
        return "good"
    if score >= 60:
        return "warning"
    return "critical"


def latest_completed_crawl(crawls, website_id=None):
    candidates = [c for c in completed_crawls(crawls) if website_id is None or c.website_id == website_id]
    if not candidates:
        return None
    return max(candidates, key=_recency_key)


def website_health(websites, crawls, limit=None):
    """(website, score) for each website with a completed crawl, in the given website order.

    ``limit`` caps how many websites are considered, before skipping the
    ones without a completed crawl.
    """
    considered = websites if limit is None else websites[:limit]
    health = []
    for website in considered:
        latest = latest_completed_crawl(crawls, website.id)
        if latest is not None:
            health.append((website, health_score(latest)))
    return health


def active_crawls(crawls):
    return [c for c in crawls if c.status in ACTIVE_STATUSES]


def progress_percent(crawl):
    if crawl.pages_found:
        return min(100.0, (crawl.pages_crawled or 0) / crawl.pages_found * 100)
    # Nothing discovered yet: show a sliver for a crawl that has started.
    return 5.0 if crawl.status == CrawlStatus.CRAWLING.value else 0.0


def recent_crawls_with_website(crawls, websites):
    by_id = _index_by_id(websites)
    return [(crawl, by_id[crawl.website_id]) for crawl in crawls if crawl.website_id in by_id]


# Selection

def _selected(crawl, websites_by_id, discarded=False):
    return Selection(
        website=websites_by_id.get(crawl.website_id),
        crawl=crawl,
        crawl_id=str(crawl.id),
        discarded=discarded,
    )


def find_crawl(crawl_id, crawls):
    """Completed crawl whose id matches ``crawl_id`` (int or query-string text)."""
    if crawl_id is None or crawl_id == "":
        return None
    wanted = str(crawl_id).strip()
    for crawl in completed_crawls(crawls):
        if str(crawl.id) == wanted:
            return crawl
    return None


def select_report(crawl_id, crawls, websites):
    """Resolve the (website, crawl) pair a report view should show.

    A ``crawl_id`` naming a completed crawl wins. An unknown one is discarded
    (``Selection.discarded``) and the newest completed crawl across all
    websites is used instead. With no completed crawls the selection is empty
    and the parameter is cleared.
    """
    websites_by_id = _index_by_id(websites)
    discarded = False

    if crawl_id is not None and crawl_id != "":
        crawl = find_crawl(crawl_id, crawls)
        if crawl is not None:
            return _selected(crawl, websites_by_id)
        discarded = True

    latest = latest_completed_crawl(crawls)
    if latest is None:
        return Selection(discarded=discarded)
    return _selected(latest, websites_by_id, discarded=discarded)


def select_website(website_id, crawls, websites):
    """Switch to ``website_id`` and its newest completed crawl, if it has one."""
    website = next((w for w in websites if str(w.id) == str(website_id)), None)
    if website is None:
        return select_report(None, crawls, websites)
    latest = latest_completed_crawl(crawls, website.id)
    if latest is None:
        return Selection(website=website)
    return Selection(website=website, crawl=latest, crawl_id=str(latest.id))


def select_crawl(crawl_id, current, crawls, websites):
    """Switch to another crawl, keeping ``current`` if the id is unknown."""
    crawl = find_crawl(crawl_id, crawls)
    if crawl is None:
        return current
    return _selected(crawl, _index_by_id(websites))


def website_crawls(website, crawls):
    if website is None:
        return []
    return newest_first([c for c in completed_crawls(crawls) if c.website_id == website.id])


def report_websites(websites, crawls):
    """Websites that own at least one completed crawl, keeping the given order."""
    owners = {c.website_id for c in completed_crawls(crawls)}
    return [w for w in websites if w.id in owners]
