"""
HarvestCore - crawl orchestration for rate-limited, anti-scraping-aware sources.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import DependencyContainer
from .crawler import (
    BoundedConcurrencyFetcher,
    PaginationCrawlController,
    ProxyRotationManager,
    RateLimiter,
    RetryingHttpClient,
)
from .protocols import Category, CrawlSession, FetchResult, PageRequest, Record, SessionStatus

__all__ = [
    "__version__",
    "BoundedConcurrencyFetcher",
    "Category",
    "Config",
    "CrawlSession",
    "DependencyContainer",
    "FetchResult",
    "PageRequest",
    "PaginationCrawlController",
    "ProxyRotationManager",
    "RateLimiter",
    "Record",
    "RetryingHttpClient",
    "SessionStatus",
]
