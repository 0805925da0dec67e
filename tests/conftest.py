import dataclasses
import itertools
from datetime import datetime, timedelta

import pytest

from database import Stores, init_db
from fetcher import FetchError, FetchResult, Link

SITE = "https://example.com"


class FakeFetcher:
    """PageFetcher stand-in serving canned results keyed by URL.

    A value may be a FetchResult (its url is replaced by the requested one)
    or an exception instance to raise. Unknown URLs answer 404.
    """

    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        page = self.pages.get(url)
        if isinstance(page, Exception):
            raise page
        if page is None:
            return FetchResult(url=url, status_code=404, is_html=False)
        return dataclasses.replace(page, url=url)


def html_page(title=None, description=None, links=()):
    return FetchResult(
        url="",
        status_code=200,
        title=title,
        description=description,
        outbound_links=[Link(url, text) for url, text in links],
    )


@pytest.fixture
def stores():
    return Stores(init_db("sqlite://"))


@pytest.fixture
def clock():
    ticks = itertools.count()
    start = datetime(2024, 1, 1, 12, 0, 0)
    return lambda: start + timedelta(seconds=next(ticks))


@pytest.fixture
def site_pages():
    """/ links to /about, which links to the missing /missing page."""
    return {
        f"{SITE}/": html_page("Home", "Welcome", [(f"{SITE}/about", "About us")]),
        f"{SITE}/about": html_page("About", "Who we are", [("/missing", "Broken link"), ("/", "Home")]),
        f"{SITE}/missing": FetchResult(url="", status_code=404, is_html=False),
    }


@pytest.fixture
def unreachable_fetcher():
    return FakeFetcher({f"{SITE}/": FetchError(f"{SITE}/", "connection refused")})
