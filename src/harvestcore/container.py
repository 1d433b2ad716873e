"""
Dependency injection container wiring the crawl engine from one ``Config``.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Generic, List, Optional, Sequence, TypeVar, Union
from uuid import uuid4

import structlog

from harvestcore.config import Config
from harvestcore.crawler.detail_fetcher import BoundedConcurrencyFetcher
from harvestcore.crawler.http_client import RetryingHttpClient
from harvestcore.crawler.pagination import PageRequestBuilder, PaginationCrawlController
from harvestcore.crawler.proxy_manager import ProxyRotationManager
from harvestcore.crawler.rate_limiter import RateLimiter
from harvestcore.observability.activity import ActivityLog
from harvestcore.observability.metrics import CrawlMetrics
from harvestcore.protocols import Category, DetailParser, Parser, Store
from harvestcore.storage.sqlite_store import SQLiteStore

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    async def get(self) -> T:
        """Get or create the instance."""
        if not self._initialized:
            self._instance = self._factory(*self._args, **self._kwargs)
            if callable(getattr(self._instance, "initialize", None)):
                await self._instance.initialize()  # type: ignore
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance is not None and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore
        self._instance = None
        self._initialized = False


class DependencyContainer:
    """
    Owns the shared metrics and activity log and builds one HTTP client
    (with its own rate limiter and proxy manager) and one store per source.
    """

    def __init__(self, config: Optional[Config] = None, config_path: Optional[Path] = None) -> None:
        self.config_path = config_path
        self.config = config
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.container_id = str(uuid4())
        self.is_running = False

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._instances_lock = asyncio.Lock()
        self._shutdown_handlers: List[Callable[[], Any]] = []
        self._metrics: Optional[CrawlMetrics] = None
        self._activity: Optional[ActivityLog] = None

    async def initialize(self) -> None:
        """Load configuration and start the metrics exporter if configured."""
        if self.config is None:
            self.load_config()
        assert self.config is not None

        port = self.config.monitoring.prometheus_port
        if port:
            self.metrics.start_exporter(port)

        self.is_running = True
        self.logger.info(
            "Dependency container initialized",
            container_id=self.container_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    def load_config(self) -> Config:
        if self.config_path and self.config_path.exists():
            self.config = Config.from_yaml(self.config_path)
        else:
            self.config = Config()
        return self.config

    def _require_config(self) -> Config:
        if self.config is None:
            return self.load_config()
        return self.config

    @property
    def metrics(self) -> CrawlMetrics:
        if self._metrics is None:
            self._metrics = CrawlMetrics()
        return self._metrics

    @property
    def activity(self) -> ActivityLog:
        if self._activity is None:
            config = self._require_config()
            self._activity = ActivityLog(
                config.project_name.lower(),
                self.metrics,
                buffer_size=config.monitoring.activity_buffer_size,
            )
        return self._activity

    def _build_http_client(self, source: str) -> RetryingHttpClient:
        config = self._require_config()
        return RetryingHttpClient(
            config.http,
            rate_limiter=RateLimiter(config.http.rate_limit_delay),
            proxy_manager=ProxyRotationManager(config.proxy, self.activity),
            activity=self.activity,
            source=source,
        )

    async def _get(self, key: str, factory: Callable[..., T], *args: Any) -> T:
        async with self._instances_lock:
            if key not in self._instances:
                self._instances[key] = LazyInstance(factory, *args)
            return await self._instances[key].get()  # type: ignore

    async def get_http_client(self, source: str) -> RetryingHttpClient:
        """Get the HTTP client instance for a source."""
        return await self._get(f"http_client:{source}", self._build_http_client, source)

    async def get_store(self, source: str) -> SQLiteStore:
        """Get the SQLite store instance for a source."""
        config = self._require_config()
        return await self._get(f"store:{source}", SQLiteStore, config.storage.db_path, source)

    async def get_detail_fetcher(self, source: str) -> BoundedConcurrencyFetcher:
        client = await self.get_http_client(source)
        return await self._get(
            f"detail_fetcher:{source}", BoundedConcurrencyFetcher, client, self._require_config().detail
        )

    async def controller(
        self,
        source: str,
        parser: Parser,
        categories: Sequence[Union[str, Category]],
        page_request: PageRequestBuilder,
        *,
        store: Optional[Store] = None,
        detail_parser: Optional[DetailParser] = None,
        detail_url: Optional[Callable[[str], str]] = None,
    ) -> PaginationCrawlController:
        """Build a controller for one crawl of ``source``."""
        config = self._require_config()
        client = await self.get_http_client(source)
        fetcher = await self.get_detail_fetcher(source) if detail_parser is not None else None
        return PaginationCrawlController(
            source=source,
            client=client,
            parser=parser,
            store=store if store is not None else await self.get_store(source),
            categories=categories,
            page_request=page_request,
            config=config.crawl,
            activity=self.activity,
            fetcher=fetcher,
            detail_parser=detail_parser,
            detail_url=detail_url,
        )

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown of all managed instances."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", container_id=self.container_id)

        for handler in self._shutdown_handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler()
                else:
                    handler()
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        await self._cleanup_instances()
        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    async def _cleanup_instances(self) -> None:
        """Clean up all managed instances."""
        for name, instance in self._instances.items():
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error(f"Error cleaning up {name}", error=str(e))
        self._instances.clear()

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        """Add a custom shutdown handler."""
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        """Get health status of all managed components."""
        return {
            "container_id": self.container_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "instances": sorted(self._instances),
            "config_path": str(self.config_path) if self.config_path else None,
        }
