"""
Activity log for crawl observability.

Every component that talks to the network or the store reports through an
``ActivityLog`` passed in at construction time. Each entry lands in a bounded
ring buffer (for status views and idle detection), is emitted as a structlog
event, and updates the matching Prometheus collector.
"""

from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import structlog

from harvestcore.observability.metrics import CrawlMetrics


class ActivityType(Enum):
    HTTP_REQUEST = "http_request"
    PARSING = "parsing"
    DATABASE = "database"
    ERROR = "error"
    PROXY = "proxy"


class ActivityStatus(Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Activity:
    id: int
    timestamp: datetime
    source: str
    type: ActivityType
    status: ActivityStatus
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


def _status_for(status: Optional[int], error: Optional[str]) -> ActivityStatus:
    if error:
        return ActivityStatus.ERROR
    if status is not None and 200 <= status < 400:
        return ActivityStatus.SUCCESS
    return ActivityStatus.WARNING


class ActivityLog:
    """Bounded, injectable activity sink shared by one crawl's components."""

    def __init__(
        self,
        source: str,
        metrics: Optional[CrawlMetrics] = None,
        buffer_size: int = 500,
        logger: Any = None,
    ) -> None:
        self.source = source
        self.metrics = metrics if metrics is not None else CrawlMetrics()
        self._entries: Deque[Activity] = deque(maxlen=buffer_size)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._last_monotonic: Optional[float] = None
        self.logger = logger if logger is not None else structlog.get_logger(__name__)

    # --- recording -----------------------------------------------------------

    def _append(
        self,
        type_: ActivityType,
        status: ActivityStatus,
        message: str,
        source: Optional[str],
        details: Dict[str, Any],
    ) -> Activity:
        with self._lock:
            entry = Activity(
                id=next(self._ids),
                timestamp=datetime.now(timezone.utc),
                source=source or self.source,
                type=type_,
                status=status,
                message=message,
                details=details,
            )
            self._entries.append(entry)
            self._last_monotonic = time.monotonic()
        return entry

    def log_http_request(
        self,
        url: str,
        method: str,
        status: Optional[int],
        elapsed_ms: float,
        used_proxy: bool,
        proxy_host: Optional[str] = None,
        error: Optional[str] = None,
        retry_count: int = 0,
        fell_back_to_direct: bool = False,
        source: Optional[str] = None,
    ) -> Activity:
        state = _status_for(status, error)
        message = f"{method} {url} -> {status if status is not None else 'no response'}"
        details = {
            "url": url,
            "method": method,
            "status": status,
            "elapsed_ms": round(elapsed_ms, 1),
            "used_proxy": used_proxy,
            "proxy_host": proxy_host,
            "retry_count": retry_count,
            "fell_back_to_direct": fell_back_to_direct,
        }
        if error:
            details["error"] = error
        entry = self._append(ActivityType.HTTP_REQUEST, state, message, source, details)

        outcome = "success" if state is ActivityStatus.SUCCESS else "failure"
        self.metrics.http_requests.labels(source=entry.source, method=method, outcome=outcome).inc()
        self.metrics.http_request_seconds.labels(source=entry.source).observe(elapsed_ms / 1000.0)
        if state is ActivityStatus.SUCCESS:
            self.logger.debug("HTTP request completed", source=entry.source, **details)
        else:
            self.logger.warning("HTTP request failed", source=entry.source, **details)
        return entry

    def log_parsing(
        self,
        category: str,
        page: int,
        item_count: int,
        new_count: Optional[int] = None,
        source: Optional[str] = None,
    ) -> Activity:
        details = {"category": category, "page": page, "item_count": item_count, "new_count": new_count}
        state = ActivityStatus.SUCCESS if item_count > 0 else ActivityStatus.WARNING
        message = f"Parsed {item_count} items from {category} page {page}"
        entry = self._append(ActivityType.PARSING, state, message, source, details)
        self.logger.info("Page parsed", source=entry.source, **details)
        return entry

    def log_database_op(
        self,
        operation: str,
        item_count: int,
        error: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Activity:
        details: Dict[str, Any] = {"operation": operation, "item_count": item_count}
        state = ActivityStatus.SUCCESS
        if error:
            details["error"] = error
            state = ActivityStatus.ERROR
        entry = self._append(ActivityType.DATABASE, state, f"{operation}: {item_count} items", source, details)
        if error:
            self.metrics.errors.labels(source=entry.source).inc()
            self.logger.error("Database operation failed", source=entry.source, **details)
        else:
            if operation == "upsert":
                self.metrics.items_persisted.labels(source=entry.source).inc(item_count)
            self.logger.debug("Database operation", source=entry.source, **details)
        return entry

    def log_error(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
    ) -> Activity:
        details = {k: v for k, v in (context or {}).items() if k not in ("source", "event")}
        entry = self._append(ActivityType.ERROR, ActivityStatus.ERROR, message, source, details)
        self.metrics.errors.labels(source=entry.source).inc()
        self.logger.error(message, source=entry.source, **details)
        return entry

    def log_proxy_event(
        self,
        event: str,
        details: Optional[Dict[str, Any]] = None,
        warning: bool = False,
        source: Optional[str] = None,
    ) -> Activity:
        fields = {k: v for k, v in (details or {}).items() if k not in ("source", "event")}
        info = dict(fields, event=event)
        state = ActivityStatus.WARNING if warning else ActivityStatus.SUCCESS
        entry = self._append(ActivityType.PROXY, state, f"Proxy {event}", source, info)
        if event == "rotation":
            self.metrics.proxy_rotations.inc()
        elif event == "fallback":
            self.metrics.proxy_fallbacks.labels(source=entry.source).inc()
        # structlog reserves "event" for the message
        if warning:
            self.logger.warning("Proxy event", source=entry.source, proxy_event=event, **fields)
        else:
            self.logger.debug("Proxy event", source=entry.source, proxy_event=event, **fields)
        return entry

    # --- inspection ----------------------------------------------------------

    def recent(self, limit: int = 50, type: Optional[ActivityType] = None) -> List[Activity]:
        """Newest-first entries, optionally filtered by type."""
        with self._lock:
            entries = list(self._entries)
        entries.reverse()
        if type is not None:
            entries = [entry for entry in entries if entry.type is type]
        return entries[:limit]

    @property
    def last_activity_at(self) -> Optional[datetime]:
        with self._lock:
            return self._entries[-1].timestamp if self._entries else None

    def is_idle(self, max_idle_seconds: float) -> bool:
        """True when nothing has been recorded for longer than the threshold."""
        with self._lock:
            last = self._last_monotonic
        if last is None:
            return False
        return time.monotonic() - last > max_idle_seconds

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._last_monotonic = None

    def __len__(self) -> int:
        return len(self._entries)
