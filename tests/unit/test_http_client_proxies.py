"""
Tests for proxied transport and the one-time fallback to a direct connection.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest
from aioresponses import aioresponses

from harvestcore.crawler.http_client import HttpResponse, RetryingHttpClient, is_proxy_failure
from harvestcore.exceptions import HttpRequestError
from harvestcore.observability.activity import ActivityStatus, ActivityType

URL = "https://listings.example.com/item/42"


def ok_response(url: str = URL) -> HttpResponse:
    return HttpResponse(status=200, text="<html>ok</html>", url=url, final_url=url)


def used_credentials(mock: AsyncMock) -> list:
    return [call.kwargs["credentials"] for call in mock.await_args_list]


@pytest.mark.unit
class TestProxyTransport:
    @pytest.mark.asyncio
    async def test_requests_carry_rotating_credentials(self, proxied_client):
        with aioresponses() as m:
            m.get(URL, status=200, body="ok")

            response = await proxied_client.get(URL)

            (_, calls), = m.requests.items()
            kwargs = calls[0].kwargs
        assert response.used_proxy is True
        assert kwargs["proxy"] == "http://proxy.example.net:1001"
        assert kwargs["proxy_auth"].login == "customer-test-key"
        assert kwargs["proxy_auth"].password == "session-t0"

    @pytest.mark.asyncio
    async def test_success_is_recorded_on_the_manager(self, proxied_client):
        with patch.object(proxied_client, "_perform_request", AsyncMock(return_value=ok_response())):
            await proxied_client.get(URL)

        status = proxied_client.proxy_manager.get_status()
        assert status.total_requests == 1
        assert status.successful_requests == 1


@pytest.mark.unit
class TestProxyFallback:
    @pytest.mark.asyncio
    async def test_proxy_failure_falls_back_to_direct_immediately(self, proxied_client, activity):
        """A proxy-looking failure retries at once without proxy and without backoff."""
        perform = AsyncMock(side_effect=[aiohttp.ServerDisconnectedError(), ok_response()])

        with patch.object(proxied_client, "_perform_request", perform):
            response = await proxied_client.get(URL)

        assert perform.await_count == 2
        first, second = used_credentials(perform)
        assert first is not None
        assert second is None
        assert response.fell_back_to_direct is True
        assert response.used_proxy is False
        assert response.attempts == 1
        proxied_client.sleep_mock.assert_not_awaited()
        assert activity.metrics.value("harvest_proxy_fallbacks_total", source="test") == 1

        (event,) = [e for e in activity.recent(type=ActivityType.PROXY) if e.details["event"] == "fallback"]
        assert event.status is ActivityStatus.WARNING
        assert event.details["proxy_host"] == "proxy.example.net"

    @pytest.mark.asyncio
    async def test_fallback_recorded_as_proxy_error(self, proxied_client):
        perform = AsyncMock(side_effect=[aiohttp.ServerDisconnectedError(), ok_response()])

        with patch.object(proxied_client, "_perform_request", perform):
            await proxied_client.get(URL)

        status = proxied_client.proxy_manager.get_status()
        assert status.failed_requests == 1
        assert status.error_count == 1
        assert status.recent_errors[0].url == URL

    @pytest.mark.asyncio
    async def test_fallback_happens_at_most_once(self, proxied_client):
        """After the fallback, further failures take the normal backoff path."""
        failures = [aiohttp.ServerDisconnectedError() for _ in range(5)]
        perform = AsyncMock(side_effect=failures)

        with patch.object(proxied_client, "_perform_request", perform):
            with pytest.raises(HttpRequestError) as exc_info:
                await proxied_client.get(URL)

        # one free fallback + max_retries + 1 counted attempts
        assert perform.await_count == 5
        credentials = used_credentials(perform)
        assert credentials[0] is not None
        assert credentials[1:] == [None, None, None, None]
        assert [c.args[0] for c in proxied_client.sleep_mock.await_args_list] == [1.0, 2.0, 4.0]
        assert exc_info.value.attempts == 4

    @pytest.mark.asyncio
    async def test_second_failure_after_fallback_then_success(self, proxied_client):
        perform = AsyncMock(
            side_effect=[
                asyncio.TimeoutError(),
                aiohttp.ClientOSError("connection refused"),
                ok_response(),
            ]
        )

        with patch.object(proxied_client, "_perform_request", perform):
            response = await proxied_client.get(URL)

        assert perform.await_count == 3
        assert response.fell_back_to_direct is True
        assert response.attempts == 2
        assert proxied_client.sleep_mock.await_count == 1

    @pytest.mark.asyncio
    async def test_non_proxy_error_does_not_fall_back(self, proxied_client):
        """An HTTP error status while proxied retries with the proxy still on."""
        perform = AsyncMock(
            side_effect=[
                HttpResponse(status=500, text="boom", url=URL, final_url=URL),
                ok_response(),
            ]
        )

        with patch.object(proxied_client, "_perform_request", perform):
            response = await proxied_client.get(URL)

        assert all(c is not None for c in used_credentials(perform))
        assert response.fell_back_to_direct is False
        assert response.used_proxy is True
        assert proxied_client.sleep_mock.await_count == 1

    @pytest.mark.asyncio
    async def test_direct_client_never_falls_back(self, http_client, activity):
        perform = AsyncMock(side_effect=[aiohttp.ServerDisconnectedError(), ok_response()])

        with patch.object(http_client, "_perform_request", perform):
            response = await http_client.get(URL)

        assert response.fell_back_to_direct is False
        assert http_client.sleep_mock.await_count == 1
        assert activity.metrics.value("harvest_proxy_fallbacks_total", source="test") == 0

    @pytest.mark.asyncio
    async def test_exhaustion_records_error_with_manager(self, proxied_client):
        perform = AsyncMock(return_value=HttpResponse(status=503, text="", url=URL, final_url=URL))

        with patch.object(proxied_client, "_perform_request", perform):
            with pytest.raises(HttpRequestError):
                await proxied_client.get(URL)

        status = proxied_client.proxy_manager.get_status()
        assert status.failed_requests == 4
        assert status.error_count == 1
        assert "after 4 attempts" in status.recent_errors[0].message


@pytest.mark.unit
class TestProxyFailureClassification:
    @pytest.mark.parametrize(
        "exc",
        [
            aiohttp.ServerDisconnectedError(),
            aiohttp.ServerTimeoutError(),
            aiohttp.ClientOSError(),
            asyncio.TimeoutError(),
        ],
    )
    def test_proxy_signatures(self, exc):
        assert is_proxy_failure(exc)

    @pytest.mark.parametrize(
        "exc",
        [aiohttp.ClientPayloadError("truncated"), ValueError("bad")],
    )
    def test_non_proxy_errors(self, exc):
        assert not is_proxy_failure(exc)


@pytest.mark.unit
class TestProxyRotationEndToEnd:
    @pytest.mark.asyncio
    async def test_requests_past_rotation_interval_switch_session(self, proxied_client, activity):
        """Twelve requests with rotation_interval=10 cross one session boundary."""
        with aioresponses() as m:
            m.get(URL, status=200, body="ok", repeat=True)

            responses = [await proxied_client.get(URL) for _ in range(12)]

            (_, calls), = m.requests.items()
            passwords = [call.kwargs["proxy_auth"].password for call in calls]

        assert all(r.ok and r.used_proxy for r in responses)
        assert passwords == ["session-t0"] * 9 + ["session-t1"] * 3
        (rotation,) = activity.recent(type=ActivityType.PROXY)
        assert rotation.details["event"] == "rotation"
        assert rotation.details["request_counter"] == 10
        assert activity.metrics.value("harvest_proxy_rotations_total") == 1
        assert proxied_client.proxy_manager.get_status().successful_requests == 12

    @pytest.mark.asyncio
    async def test_fallback_success_is_recorded_as_proxied_attempt(self, proxied_client, activity):
        perform = AsyncMock(side_effect=[aiohttp.ServerDisconnectedError(), ok_response()])

        with patch.object(proxied_client, "_perform_request", perform):
            await proxied_client.get(URL)

        (entry,) = activity.recent(type=ActivityType.HTTP_REQUEST)
        assert entry.status is ActivityStatus.SUCCESS
        assert entry.details["used_proxy"] is True
        assert entry.details["fell_back_to_direct"] is True
        assert entry.details["proxy_host"] == "proxy.example.net"


@pytest.mark.unit
class TestActivityInjection:
    def test_empty_injected_activity_is_kept(self, activity):
        client = RetryingHttpClient(activity=activity, source="test")

        assert len(activity) == 0
        assert client.activity is activity
        assert client.proxy_manager.activity is activity
