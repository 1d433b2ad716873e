"""
Tests for the activity log and its metric side effects.
"""

import time

import pytest
from structlog.testing import capture_logs

from harvestcore.observability.activity import ActivityLog, ActivityStatus, ActivityType
from harvestcore.observability.metrics import CrawlMetrics


@pytest.mark.unit
class TestActivityLog:
    def test_http_request_entry_and_metrics(self, activity, metrics):
        entry = activity.log_http_request("https://x/1", "GET", 200, 123.45, used_proxy=True, proxy_host="p")

        assert entry.type is ActivityType.HTTP_REQUEST
        assert entry.status is ActivityStatus.SUCCESS
        assert entry.source == "test"
        assert entry.details["elapsed_ms"] == 123.5
        assert entry.details["proxy_host"] == "p"
        assert metrics.value("harvest_http_requests_total", source="test", method="GET", outcome="success") == 1
        assert metrics.value("harvest_http_request_seconds_count", source="test") == 1

    @pytest.mark.parametrize(
        "status, error, expected",
        [
            (200, None, ActivityStatus.SUCCESS),
            (302, None, ActivityStatus.SUCCESS),
            (404, None, ActivityStatus.WARNING),
            (None, None, ActivityStatus.WARNING),
            (500, "boom", ActivityStatus.ERROR),
        ],
    )
    def test_http_status_classification(self, activity, status, error, expected):
        entry = activity.log_http_request("https://x", "GET", status, 1.0, used_proxy=False, error=error)
        assert entry.status is expected

    def test_parsing_entry(self, activity):
        entry = activity.log_parsing("cars", 3, 0, new_count=0)

        assert entry.status is ActivityStatus.WARNING
        assert entry.details == {"category": "cars", "page": 3, "item_count": 0, "new_count": 0}

    def test_database_ops_update_metrics(self, activity, metrics):
        activity.log_database_op("upsert", 7)
        activity.log_database_op("update_session", 0)
        failed = activity.log_database_op("upsert", 3, error="locked")

        assert failed.status is ActivityStatus.ERROR
        assert metrics.value("harvest_items_persisted_total", source="test") == 7
        assert metrics.value("harvest_errors_total", source="test") == 1

    def test_error_context_cannot_clobber_reserved_keys(self, activity):
        entry = activity.log_error("Parse error", {"page": 2, "source": "evil", "event": "x"})

        assert entry.details == {"page": 2}
        assert entry.source == "test"
        assert activity.metrics.value("harvest_errors_total", source="test") == 1

    def test_proxy_events(self, activity, metrics):
        activity.log_proxy_event("rotation", {"session_id": "a1"})
        fallback = activity.log_proxy_event("fallback", {"url": "u"}, warning=True, source="other")

        assert fallback.status is ActivityStatus.WARNING
        assert fallback.source == "other"
        assert metrics.value("harvest_proxy_rotations_total") == 1
        assert metrics.value("harvest_proxy_fallbacks_total", source="other") == 1

    def test_proxy_event_logs_event_name_under_its_own_key(self, activity):
        with capture_logs() as logs:
            entry = activity.log_proxy_event(
                "fallback", {"url": "u", "event": "x", "source": "evil"}, warning=True
            )

        assert entry.details == {"url": "u", "event": "fallback"}
        assert entry.source == "test"
        (record,) = [log for log in logs if log["event"] == "Proxy event"]
        assert record["proxy_event"] == "fallback"
        assert record["source"] == "test"
        assert record["log_level"] == "warning"

    def test_recent_is_newest_first_and_filterable(self, activity):
        activity.log_parsing("cars", 1, 5)
        activity.log_error("oops")
        activity.log_parsing("cars", 2, 5)

        assert [e.id for e in activity.recent()] == [3, 2, 1]
        assert [e.details["page"] for e in activity.recent(type=ActivityType.PARSING)] == [2, 1]
        assert len(activity.recent(limit=1)) == 1

    def test_buffer_is_bounded(self):
        log = ActivityLog("small", CrawlMetrics(), buffer_size=3)
        for page in range(10):
            log.log_parsing("c", page, 1)

        assert len(log) == 3
        assert [e.details["page"] for e in log.recent()] == [9, 8, 7]

    def test_idle_detection(self, activity):
        assert activity.is_idle(0) is False
        assert activity.last_activity_at is None

        activity.log_parsing("cars", 1, 1)
        assert activity.last_activity_at is not None
        assert activity.is_idle(60) is False
        time.sleep(0.02)
        assert activity.is_idle(0.01) is True

    def test_clear(self, activity):
        activity.log_error("x")
        activity.clear()

        assert len(activity) == 0
        assert activity.is_idle(0) is False

    def test_private_registries_do_not_collide(self):
        first, second = ActivityLog("a"), ActivityLog("a")
        first.log_error("x")

        assert first.metrics.value("harvest_errors_total", source="a") == 1
        assert second.metrics.value("harvest_errors_total", source="a") == 0


@pytest.mark.unit
class TestCrawlMetrics:
    def test_snapshot_contains_labelled_samples(self, metrics):
        metrics.pages.labels(source="s", kind="new").inc(2)
        metrics.in_flight.inc()

        snapshot = metrics.snapshot()

        assert snapshot["harvest_pages_total{kind=new,source=s}"] == 2
        assert snapshot["harvest_in_flight_requests"] == 1
        assert not any(key.endswith("_created") for key in snapshot)

    def test_value_defaults_to_zero(self, metrics):
        assert metrics.value("harvest_pages_total", source="none", kind="new") == 0.0
