"""
Defines and manages Prometheus metrics for the crawl engine.

Collectors live on an explicitly supplied ``CollectorRegistry`` so that every
process, test, or container owns its own set instead of sharing a global.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = structlog.get_logger(__name__)


class CrawlMetrics:
    """Prometheus collectors for HTTP, proxy, pagination and persistence events."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self._exporter_port: Optional[int] = None

        self.http_requests = Counter(
            "harvest_http_requests_total",
            "Logical HTTP requests by final outcome",
            ["source", "method", "outcome"],
            registry=self.registry,
        )
        self.http_request_seconds = Histogram(
            "harvest_http_request_seconds",
            "Wall time of a logical HTTP request including retries",
            ["source"],
            registry=self.registry,
        )
        self.http_retries = Counter(
            "harvest_http_retries_total",
            "Retry attempts after a failed HTTP attempt",
            ["source"],
            registry=self.registry,
        )
        self.proxy_fallbacks = Counter(
            "harvest_proxy_fallbacks_total",
            "Switches from proxied to direct transport within a request",
            ["source"],
            registry=self.registry,
        )
        self.proxy_rotations = Counter(
            "harvest_proxy_rotations_total",
            "Proxy session rotations",
            registry=self.registry,
        )
        self.pages = Counter(
            "harvest_pages_total",
            "Processed list pages by classification",
            ["source", "kind"],
            registry=self.registry,
        )
        self.items_persisted = Counter(
            "harvest_items_persisted_total",
            "Records newly persisted by the store",
            ["source"],
            registry=self.registry,
        )
        self.errors = Counter(
            "harvest_errors_total",
            "Errors reported to the activity log",
            ["source"],
            registry=self.registry,
        )
        self.in_flight = Gauge(
            "harvest_in_flight_requests",
            "HTTP attempts currently awaiting a response",
            registry=self.registry,
        )

    def start_exporter(self, port: int) -> None:
        """Starts the Prometheus HTTP exporter for this registry."""
        if self._exporter_port is not None:
            return
        start_http_server(port, registry=self.registry)
        self._exporter_port = port
        logger.info("Prometheus exporter started", port=port)

    def snapshot(self) -> Dict[str, Any]:
        """Get current sample values keyed by sample name and labels."""
        data: Dict[str, Any] = {}
        for family in self.registry.collect():
            for sample in family.samples:
                if sample.name.endswith("_created"):
                    continue
                if sample.labels:
                    labels = ",".join(f"{k}={v}" for k, v in sorted(sample.labels.items()))
                    key = f"{sample.name}{{{labels}}}"
                else:
                    key = sample.name
                data[key] = sample.value
        return data

    def value(self, name: str, **labels: str) -> float:
        """Read one sample value, 0.0 if it has not been observed yet."""
        result = self.registry.get_sample_value(name, labels or None)
        return result if result is not None else 0.0
