"""
HarvestCore Crawler Module - paginated crawl orchestration.

Components, leaves first:
- RateLimiter: minimum spacing across all requests of one source
- ProxyRotationManager: rotating proxy credentials and health counters
- RetryingHttpClient: retries, backoff and proxy-to-direct fallback
- BoundedConcurrencyFetcher: capped parallel detail fetching
- PaginationCrawlController: per-category paging, dedup and termination
"""

from .detail_fetcher import BoundedConcurrencyFetcher
from .http_client import HttpResponse, RetryingHttpClient
from .pagination import PaginationCrawlController
from .proxy_manager import ProxyHealth, ProxyRotationManager, ProxyStatus
from .rate_limiter import RateLimiter
from .user_agents import USER_AGENTS, build_browser_headers

__all__ = [
    "BoundedConcurrencyFetcher",
    "HttpResponse",
    "PaginationCrawlController",
    "ProxyHealth",
    "ProxyRotationManager",
    "ProxyStatus",
    "RateLimiter",
    "RetryingHttpClient",
    "USER_AGENTS",
    "build_browser_headers",
]
