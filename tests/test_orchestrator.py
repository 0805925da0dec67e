import logging
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import SITE, FakeFetcher, html_page
from models import CrawlStatus, InvalidTransition, check_transition
from orchestrator import CrawlOrchestrator


def db_down():
    return OperationalError("UPDATE crawls", {}, Exception("database is locked"))


@pytest.fixture
def make_orchestrator(stores, clock):
    def make(fetcher, **kwargs):
        kwargs.setdefault('max_workers', 1)
        kwargs.setdefault('progress_interval', 0)
        return CrawlOrchestrator(stores, fetcher, clock=clock, **kwargs)
    return make


def test_successful_crawl_completes(make_orchestrator, stores, site_pages):
    crawl = make_orchestrator(FakeFetcher(site_pages)).start_crawl(SITE, name="Example", schedule="weekly")

    assert crawl.status == "completed"
    assert crawl.pages_found == 3
    assert crawl.pages_crawled == 3
    assert crawl.errors_404 == [{"url": f"{SITE}/missing", "source_page": f"{SITE}/about", "link_text": "Broken link"}]

    stored = stores.crawls.get(crawl.id)
    assert stored.status == "completed"
    assert stored.pages_crawled <= stored.pages_found

    website = stores.websites.get(crawl.website_id)
    assert website.url == f"{SITE}/"
    assert website.name == "Example"
    assert website.schedule == "weekly"
    assert website.last_crawl_status == "completed"
    assert website.last_crawled_date is not None
    assert crawl.website_url == website.url


def test_unreachable_site_fails_crawl(make_orchestrator, stores, unreachable_fetcher):
    crawl = make_orchestrator(unreachable_fetcher).start_crawl(SITE)

    assert crawl.status == "failed"
    assert crawl.errors_404 == []
    assert crawl.redirects_301 == []
    assert crawl.seo_issues == []
    assert stores.crawls.get(crawl.id).status == "failed"
    website = stores.websites.get(crawl.website_id)
    assert website.last_crawl_status == "failed"
    assert website.last_crawled_date is None


def test_unexpected_traversal_error_fails_crawl(make_orchestrator, stores, site_pages):
    site_pages[f"{SITE}/about"] = RuntimeError("parser exploded")

    crawl = make_orchestrator(FakeFetcher(site_pages)).start_crawl(SITE)

    assert crawl.status == "failed"
    assert stores.websites.get(crawl.website_id).last_crawl_status == "failed"


def test_existing_website_is_reused(make_orchestrator, stores, site_pages):
    orchestrator = make_orchestrator(FakeFetcher(site_pages))
    first = orchestrator.start_crawl("https://EXAMPLE.com", name="Example", schedule="daily")
    second = orchestrator.start_crawl("https://example.com/", name="Renamed", schedule="monthly")

    assert first.website_id == second.website_id
    assert first.id != second.id
    websites = stores.websites.list()
    assert len(websites) == 1
    assert websites[0].name == "Example"
    assert websites[0].schedule == "monthly"
    assert [c.id for c in stores.crawls.list()] == [second.id, first.id]


def test_invalid_url_creates_nothing(make_orchestrator, stores):
    with pytest.raises(ValueError):
        make_orchestrator(FakeFetcher({})).start_crawl("javascript:alert(1)")

    assert stores.websites.list() == []
    assert stores.crawls.list() == []


def test_crawl_creation_failure_marks_website_failed(make_orchestrator, stores, site_pages):
    orchestrator = make_orchestrator(FakeFetcher(site_pages))

    with patch.object(stores.crawls, 'create', side_effect=db_down()):
        with pytest.raises(OperationalError):
            orchestrator.start_crawl(SITE)

    websites = stores.websites.list()
    assert len(websites) == 1
    assert websites[0].last_crawl_status == "failed"
    assert stores.crawls.list() == []


def test_completion_write_failure_is_raised_and_crawl_failed(make_orchestrator, stores, site_pages):
    orchestrator = make_orchestrator(FakeFetcher(site_pages))
    real_update = stores.crawls.update

    def failing_update(record_id, **fields):
        if fields.get('status') == "completed":
            raise db_down()
        return real_update(record_id, **fields)

    with patch.object(stores.crawls, 'update', side_effect=failing_update):
        with pytest.raises(OperationalError):
            orchestrator.start_crawl(SITE)

    crawl = stores.crawls.list()[0]
    assert crawl.status == "failed"
    assert stores.websites.get(crawl.website_id).last_crawl_status == "failed"


def test_progress_write_failure_is_raised(make_orchestrator, stores, site_pages):
    orchestrator = make_orchestrator(FakeFetcher(site_pages))
    real_update = stores.crawls.update

    def failing_update(record_id, **fields):
        if 'status' not in fields:
            raise db_down()
        return real_update(record_id, **fields)

    with patch.object(stores.crawls, 'update', side_effect=failing_update):
        with pytest.raises(OperationalError):
            orchestrator.start_crawl(SITE)

    assert stores.crawls.list()[0].status == "failed"


def test_observers_see_every_transition(make_orchestrator, site_pages):
    orchestrator = make_orchestrator(FakeFetcher(site_pages))
    events = []
    unsubscribe = orchestrator.subscribe(events.append)

    orchestrator.start_crawl(SITE)

    statuses = [event.status for event in events]
    assert statuses[0] == "pending"
    assert statuses[1] == "crawling"
    assert statuses[-1] == "completed"
    assert (events[-2].pages_found, events[-2].pages_crawled) == (3, 3)

    unsubscribe()
    orchestrator.start_crawl(SITE)
    assert len(events) == len(statuses)


def test_failing_observer_does_not_break_crawl(make_orchestrator, site_pages):
    orchestrator = make_orchestrator(FakeFetcher(site_pages))

    def broken_observer(event):
        raise RuntimeError("observer bug")

    orchestrator.subscribe(broken_observer)
    assert orchestrator.start_crawl(SITE).status == "completed"


def test_progress_writes_are_throttled(make_orchestrator, stores, site_pages):
    orchestrator = make_orchestrator(FakeFetcher(site_pages), progress_interval=3600)
    events = []
    orchestrator.subscribe(events.append)

    crawl = orchestrator.start_crawl(SITE)

    # One progress write (the first page), then only status changes.
    assert [e.status for e in events] == ["pending", "crawling", "crawling", "completed"]
    assert crawl.pages_found == 3


def test_reconcile_fails_abandoned_crawls(stores, site_pages):
    now = datetime(2024, 1, 1, 12, 0, 0)
    website = stores.websites.create(url=f"{SITE}/", name="Example", last_crawl_status="crawling",
                                     created_date=now - timedelta(days=1))
    abandoned = stores.crawls.create(website_id=website.id, website_url=website.url, status="crawling",
                                     created_date=now - timedelta(hours=2))
    fresh = stores.crawls.create(website_id=website.id, website_url=website.url, status="pending",
                                 created_date=now - timedelta(minutes=5))
    done = stores.crawls.create(website_id=website.id, website_url=website.url, status="completed",
                                created_date=now - timedelta(hours=3))

    orchestrator = CrawlOrchestrator(stores, FakeFetcher(site_pages), clock=lambda: now)
    reconciled = orchestrator.reconcile_stale_crawls(timedelta(minutes=30))

    assert [c.id for c in reconciled] == [abandoned.id]
    assert stores.crawls.get(abandoned.id).status == "failed"
    assert stores.crawls.get(fresh.id).status == "pending"
    assert stores.crawls.get(done.id).status == "completed"
    # The website's latest crawl is still pending, so its status is left alone.
    assert stores.websites.get(website.id).last_crawl_status == "crawling"


def test_reconcile_updates_website_when_latest_crawl_abandoned(stores, site_pages):
    now = datetime(2024, 1, 1, 12, 0, 0)
    website = stores.websites.create(url=f"{SITE}/", name="Example", last_crawl_status="crawling")
    stores.crawls.create(website_id=website.id, website_url=website.url, status="crawling",
                         created_date=now - timedelta(hours=2))

    orchestrator = CrawlOrchestrator(stores, FakeFetcher(site_pages), clock=lambda: now)
    orchestrator.reconcile_stale_crawls(timedelta(minutes=30))

    assert stores.websites.get(website.id).last_crawl_status == "failed"


def test_status_only_moves_forward():
    assert check_transition("pending", "crawling") == CrawlStatus.CRAWLING
    assert check_transition("crawling", "completed") == CrawlStatus.COMPLETED
    assert check_transition("crawling", "failed") == CrawlStatus.FAILED

    for current, target in [("completed", "failed"), ("failed", "crawling"), ("crawling", "pending"),
                            ("completed", "completed"), ("pending", "completed")]:
        with pytest.raises(InvalidTransition):
            check_transition(current, target)


def test_cancel_unknown_crawl(make_orchestrator):
    assert make_orchestrator(FakeFetcher({})).cancel(12345) == False


def test_background_crawl_rejects_invalid_url_up_front(make_orchestrator, stores):
    with pytest.raises(ValueError):
        make_orchestrator(FakeFetcher({})).start_crawl_in_background("not a url")

    assert stores.websites.list() == []


def test_background_crawl_completes(make_orchestrator, stores, site_pages):
    thread = make_orchestrator(FakeFetcher(site_pages)).start_crawl_in_background(SITE)
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert stores.crawls.list()[0].status == "completed"


def test_background_crawl_logs_persistence_failure(make_orchestrator, stores, site_pages, caplog):
    orchestrator = make_orchestrator(FakeFetcher(site_pages))

    with patch.object(stores.crawls, 'create', side_effect=db_down()):
        with caplog.at_level(logging.ERROR, logger="orchestrator"):
            thread = orchestrator.start_crawl_in_background(SITE)
            thread.join(timeout=10)

    assert "Background crawl of https://example.com/ failed" in caplog.text
    assert stores.websites.list()[0].last_crawl_status == "failed"
