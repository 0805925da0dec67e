"""Runtime settings for the site audit crawler.

Values come from environment variables, optionally loaded from a ``.env``
file in the working directory.
"""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

DEFAULT_USER_AGENT = "SiteAuditCrawler/1.0"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///crawl_results.db"
    max_pages: int = 100
    max_workers: int = 4
    requests_per_second: float = 2.0
    timeout: float = 10.0
    max_retries: int = 3
    user_agent: str = DEFAULT_USER_AGENT
    progress_interval: float = 1.0
    stale_grace_minutes: int = 30
    dashboard_crawl_limit: int = 50
    crawler_crawl_limit: int = 20
    refresh_interval: int = 5
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment."""
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            max_pages=_env_int("CRAWL_MAX_PAGES", cls.max_pages),
            max_workers=_env_int("CRAWL_MAX_WORKERS", cls.max_workers),
            requests_per_second=_env_float("CRAWL_REQUESTS_PER_SECOND", cls.requests_per_second),
            timeout=_env_float("CRAWL_TIMEOUT", cls.timeout),
            max_retries=_env_int("CRAWL_MAX_RETRIES", cls.max_retries),
            user_agent=os.getenv("CRAWL_USER_AGENT", cls.user_agent),
            progress_interval=_env_float("CRAWL_PROGRESS_INTERVAL", cls.progress_interval),
            stale_grace_minutes=_env_int("STALE_CRAWL_GRACE_MINUTES", cls.stale_grace_minutes),
            dashboard_crawl_limit=_env_int("DASHBOARD_CRAWL_LIMIT", cls.dashboard_crawl_limit),
            crawler_crawl_limit=_env_int("CRAWLER_CRAWL_LIMIT", cls.crawler_crawl_limit),
            refresh_interval=_env_int("REFRESH_INTERVAL", cls.refresh_interval),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load ``.env`` once and return the cached settings."""
    load_dotenv()
    return Settings.from_env()


def setup_logging(level=None):
    """Configure root logging for the app and scripts."""
    logging.basicConfig(
        level=level or get_settings().log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
