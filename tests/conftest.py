"""
Test configuration for HarvestCore.

Provides isolated configuration, metrics, activity logs and collaborator
fakes so that no test touches the network or a shared metrics registry.
"""

from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from harvestcore.config.config import Config, HttpConfig, ProxyConfig
from harvestcore.crawler.http_client import RetryingHttpClient
from harvestcore.crawler.proxy_manager import ProxyRotationManager
from harvestcore.crawler.rate_limiter import RateLimiter
from harvestcore.observability.activity import ActivityLog
from harvestcore.observability.metrics import CrawlMetrics
from tests.helpers import FakeParser, FakeStore

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take >10 seconds")


# ============================================================================
# Observability Fixtures
# ============================================================================


@pytest.fixture
def metrics() -> CrawlMetrics:
    """Metrics on a private registry."""
    return CrawlMetrics()


@pytest.fixture
def activity(metrics) -> ActivityLog:
    return ActivityLog("test", metrics, buffer_size=1000)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Configuration with fast timings and a temporary database."""
    return Config.model_validate(
        {
            "http": {"rate_limit_delay": 0, "max_retries": 2, "retry_delay": 0.01},
            "detail": {"timeout": 0.5, "retry_attempts": 1, "retry_delay": 0},
            "crawl": {"max_consecutive_empty_pages": 5, "category_delay": 0},
            "storage": {"db_path": str(tmp_path / "harvest.db")},
        }
    )


@pytest.fixture
def http_config() -> HttpConfig:
    return HttpConfig(rate_limit_delay=0, max_retries=3, retry_delay=1.0)


@pytest.fixture
def proxy_config() -> ProxyConfig:
    return ProxyConfig(key="test-key", endpoint="http://proxy.example.net:1001", rotation_interval=10)


# ============================================================================
# Client Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def http_client(http_config, activity) -> AsyncGenerator[RetryingHttpClient, None]:
    """Direct-connection client whose backoff sleeps are recorded, not slept."""
    client = RetryingHttpClient(http_config, rate_limiter=RateLimiter(0), activity=activity, source="test")
    await client.initialize()
    with patch.object(client, "_sleep", new_callable=AsyncMock) as sleep:
        client.sleep_mock = sleep  # type: ignore[attr-defined]
        yield client
    await client.close()


@pytest_asyncio.fixture
async def proxied_client(http_config, proxy_config, activity) -> AsyncGenerator[RetryingHttpClient, None]:
    """Client routed through a rotating proxy; backoff sleeps are recorded."""
    manager = ProxyRotationManager(proxy_config, activity, salt="t")
    client = RetryingHttpClient(
        http_config,
        rate_limiter=RateLimiter(0),
        proxy_manager=manager,
        activity=activity,
        source="test",
    )
    await client.initialize()
    with patch.object(client, "_sleep", new_callable=AsyncMock) as sleep:
        client.sleep_mock = sleep  # type: ignore[attr-defined]
        yield client
    await client.close()


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def fake_parser() -> FakeParser:
    return FakeParser()


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()

