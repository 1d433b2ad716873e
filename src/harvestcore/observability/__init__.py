"""Logging, activity and metrics for the crawl engine."""

from __future__ import annotations

from .activity import Activity, ActivityLog, ActivityStatus, ActivityType
from .logging import configure_logging
from .metrics import CrawlMetrics

__all__ = ["Activity", "ActivityLog", "ActivityStatus", "ActivityType", "configure_logging", "CrawlMetrics"]
