from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CrawlStatus(str, Enum):
    PENDING = "pending"
    CRAWLING = "crawling"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self):
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({CrawlStatus.COMPLETED, CrawlStatus.FAILED})

# Forward-only lifecycle; terminal states have no outgoing edges.
ALLOWED_TRANSITIONS = {
    CrawlStatus.PENDING: frozenset({CrawlStatus.CRAWLING, CrawlStatus.FAILED}),
    CrawlStatus.CRAWLING: frozenset({CrawlStatus.COMPLETED, CrawlStatus.FAILED}),
    CrawlStatus.COMPLETED: frozenset(),
    CrawlStatus.FAILED: frozenset(),
}


class InvalidTransition(Exception):
    def __init__(self, current, target):
        super().__init__(f"Cannot move crawl from {current} to {target}")
        self.current = current
        self.target = target


def check_transition(current, target):
    """Return ``target`` as a CrawlStatus, raising if the move is not allowed."""
    current, target = CrawlStatus(current), CrawlStatus(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)
    return target


class Website(Base):
    __tablename__ = 'websites'

    id = Column(Integer, primary_key=True)
    url = Column(String, unique=True, nullable=False)
    name = Column(String)
    schedule = Column(String, default='manual')
    last_crawl_status = Column(String)
    last_crawled_date = Column(DateTime)
    created_date = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Website id={self.id} url={self.url!r} status={self.last_crawl_status}>"


class Crawl(Base):
    __tablename__ = 'crawls'

    id = Column(Integer, primary_key=True)
    website_id = Column(Integer, ForeignKey('websites.id'), nullable=False, index=True)
    website_url = Column(String, nullable=False)
    status = Column(String, default=CrawlStatus.PENDING.value, nullable=False)
    pages_found = Column(Integer, default=0, nullable=False)
    pages_crawled = Column(Integer, default=0, nullable=False)
    errors_404 = Column(JSON, default=list)
    redirects_301 = Column(JSON, default=list)
    seo_issues = Column(JSON, default=list)
    created_date = Column(DateTime, default=utcnow, nullable=False, index=True)

    @property
    def is_terminal(self):
        return CrawlStatus(self.status).is_terminal

    def __repr__(self):
        return f"<Crawl id={self.id} website_id={self.website_id} status={self.status}>"
