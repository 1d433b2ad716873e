"""
Retrying HTTP client with rate limiting, rotating proxies and a one-time
fallback to direct transport.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

import aiohttp
import structlog

from harvestcore.config.config import HttpConfig, ProxyConfig
from harvestcore.crawler.proxy_manager import ProxyRotationManager
from harvestcore.crawler.rate_limiter import RateLimiter
from harvestcore.crawler.user_agents import build_browser_headers
from harvestcore.exceptions import HttpRequestError, HttpStatusError
from harvestcore.observability.activity import ActivityLog
from harvestcore.protocols import PageRequest, TransportCredentials

logger = structlog.get_logger(__name__)

# Transport failures that look like the proxy hop is at fault. Matched by
# exception type; aiohttp's connector errors cover DNS and refused connects.
PROXY_FAILURE_ERRORS = (
    aiohttp.ClientProxyConnectionError,
    aiohttp.ClientConnectorError,
    aiohttp.ServerDisconnectedError,
    aiohttp.ClientOSError,
    aiohttp.ServerTimeoutError,
    asyncio.TimeoutError,
)

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


@dataclass
class HttpResponse:
    """Response of a logical request with timing and attempt information."""

    status: int
    text: str
    url: str
    final_url: str
    headers: Dict[str, str] = field(default_factory=dict)
    reason: Optional[str] = None
    elapsed_ms: float = 0.0
    attempts: int = 1
    used_proxy: bool = False
    fell_back_to_direct: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    def json(self) -> Any:
        return json.loads(self.text)


def is_proxy_failure(exc: BaseException) -> bool:
    return isinstance(exc, PROXY_FAILURE_ERRORS)


class RetryingHttpClient:
    """
    Issues one logical GET/POST with retries and exponential backoff.

    Each logical request waits for its rate-limit turn once, then loops over
    attempts. A proxy-looking transport failure while proxied strips the
    proxy and retries immediately without spending an attempt; this happens
    at most once per request. Any other failure sleeps
    ``retry_delay * 2**attempt`` (times ``block_backoff_multiplier`` for a
    403/Forbidden) before the next attempt. After ``max_retries + 1`` failed
    attempts an ``HttpRequestError`` is raised.
    """

    def __init__(
        self,
        config: Optional[HttpConfig] = None,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        proxy_manager: Optional[ProxyRotationManager] = None,
        activity: Optional[ActivityLog] = None,
        source: Optional[str] = None,
    ):
        self.config = config or HttpConfig()
        self.activity = activity if activity is not None else ActivityLog(source or "default")
        self.source = source or self.activity.source
        self.rate_limiter = rate_limiter or RateLimiter(self.config.rate_limit_delay)
        self.proxy_manager = proxy_manager or ProxyRotationManager(ProxyConfig(), self.activity)

        # Session will be initialized in initialize()
        self.session: Optional[aiohttp.ClientSession] = None
        self._owns_session = True

    async def initialize(self, session: Optional[aiohttp.ClientSession] = None) -> None:
        """Initialize the HTTP client session."""
        if self.session is not None:
            return
        if session is not None:
            self.session = session
            self._owns_session = False
        else:
            connector = aiohttp.TCPConnector(
                limit=0,
                ttl_dns_cache=30,
                use_dns_cache=True,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            self.session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True
        logger.info(
            "HTTP client session initialized",
            source=self.source,
            max_retries=self.config.max_retries,
            proxy_enabled=self.proxy_manager.enabled,
        )

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None
        logger.info("HTTP client closed", source=self.source)

    async def __aenter__(self) -> "RetryingHttpClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # --- public API ----------------------------------------------------------

    async def get(
        self,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        *,
        timeout: Optional[float] = None,
        wait_for_turn: bool = True,
    ) -> HttpResponse:
        return await self.request("GET", url, headers=headers, timeout=timeout, wait_for_turn=wait_for_turn)

    async def post(
        self,
        url: str,
        body: Any,
        headers: Optional[Mapping[str, str]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        return await self.request("POST", url, body=body, headers=headers, timeout=timeout)

    async def fetch(self, page: PageRequest) -> HttpResponse:
        return await self.request(page.method, page.url, body=page.body, headers=page.headers)

    async def request(
        self,
        method: str,
        url: str,
        *,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        wait_for_turn: bool = True,
    ) -> HttpResponse:
        """
        Perform one logical request.

        Args:
            method: HTTP method
            url: Fully-qualified URL
            body: JSON-serializable object or raw str/bytes for the request body
            headers: Extra headers merged over the browser defaults
            timeout: Per-attempt transport timeout (defaults to config)
            wait_for_turn: False when the caller already took its rate-limit turn

        Returns:
            HttpResponse for the first 2xx/3xx answer

        Raises:
            HttpRequestError: once every attempt has failed
        """
        method = method.upper()
        timeout = timeout if timeout is not None else self.config.request_timeout
        max_attempts = self.config.max_retries + 1

        if wait_for_turn:
            await self.rate_limiter.wait_turn()

        started = time.monotonic()
        attempt = 0
        force_direct = False
        fell_back = False
        proxy_used = False
        proxy_host: Optional[str] = None
        last_error: Optional[BaseException] = None
        credentials: Optional[TransportCredentials] = None

        while attempt < max_attempts:
            credentials = None if force_direct else self.proxy_manager.next_credentials()
            if credentials is not None:
                proxy_used = True
                proxy_host = credentials.host
            request_headers = build_browser_headers(self.config.accept_language, headers)
            attempt_started = time.monotonic()
            logger.debug(
                "HTTP attempt",
                method=method,
                url=url,
                attempt=attempt + 1,
                proxied=credentials is not None,
            )

            try:
                self.activity.metrics.in_flight.inc()
                try:
                    response = await self._perform_request(
                        method,
                        url,
                        body=body,
                        headers=request_headers,
                        credentials=credentials,
                        timeout=timeout,
                    )
                finally:
                    self.activity.metrics.in_flight.dec()

                if not response.ok:
                    raise HttpStatusError(
                        url,
                        response.status,
                        response.text[: self.config.error_body_limit],
                        response.reason,
                    )
            except HttpStatusError as exc:
                last_error = exc
            except TRANSPORT_ERRORS as exc:
                elapsed = (time.monotonic() - attempt_started) * 1000
                if credentials is not None and not fell_back and is_proxy_failure(exc):
                    fell_back = True
                    force_direct = True
                    self._record_fallback(url, exc, credentials, elapsed)
                    continue
                last_error = exc
            else:
                elapsed = (time.monotonic() - attempt_started) * 1000
                if credentials is not None:
                    self.proxy_manager.record_outcome(True, elapsed)
                total_ms = (time.monotonic() - started) * 1000
                self.activity.log_http_request(
                    url,
                    method,
                    response.status,
                    total_ms,
                    used_proxy=proxy_used,
                    proxy_host=proxy_host,
                    retry_count=attempt,
                    fell_back_to_direct=fell_back,
                    source=self.source,
                )
                return replace(
                    response,
                    attempts=attempt + 1,
                    elapsed_ms=total_ms,
                    used_proxy=credentials is not None,
                    fell_back_to_direct=fell_back,
                )

            # Standard retry path
            if credentials is not None:
                self.proxy_manager.record_outcome(False, (time.monotonic() - attempt_started) * 1000)
            attempt += 1
            if attempt < max_attempts:
                delay = self._calculate_backoff_delay(attempt - 1, last_error)
                logger.warning(
                    "Retrying request",
                    method=method,
                    url=url,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay=delay,
                    error=_describe(last_error),
                )
                self.activity.metrics.http_retries.labels(source=self.source).inc()
                await self._sleep(delay)

        status = last_error.status if isinstance(last_error, HttpStatusError) else None
        error_body = last_error.body if isinstance(last_error, HttpStatusError) else None
        error = HttpRequestError(url, method, max_attempts, last_error, status=status, body=error_body)
        total_ms = (time.monotonic() - started) * 1000
        self.activity.log_http_request(
            url,
            method,
            status,
            total_ms,
            used_proxy=proxy_used,
            proxy_host=proxy_host,
            error=str(error),
            retry_count=max_attempts - 1,
            fell_back_to_direct=fell_back,
            source=self.source,
        )
        if proxy_used:
            self.proxy_manager.record_error(str(error), url)
        raise error

    # --- internals -----------------------------------------------------------

    def _calculate_backoff_delay(self, attempt: int, error: Optional[BaseException]) -> float:
        """Exponential backoff; blocks back off harder."""
        base = self.config.retry_delay
        if isinstance(error, HttpStatusError) and error.is_block:
            base *= self.config.block_backoff_multiplier
        return base * (2**attempt)

    async def _sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)

    def _record_fallback(
        self, url: str, exc: BaseException, credentials: TransportCredentials, elapsed_ms: float
    ) -> None:
        message = _describe(exc)
        self.proxy_manager.record_outcome(False, elapsed_ms)
        self.proxy_manager.record_error(message, url)
        self.activity.log_proxy_event(
            "fallback",
            {"url": url, "proxy_host": credentials.host, "error": message},
            warning=True,
            source=self.source,
        )
        logger.warning("Proxy failed, retrying direct", url=url, proxy_host=credentials.host, error=message)

    async def _perform_request(
        self,
        method: str,
        url: str,
        *,
        body: Any,
        headers: Mapping[str, str],
        credentials: Optional[TransportCredentials],
        timeout: float,
    ) -> HttpResponse:
        """Perform the actual HTTP round trip."""
        if self.session is None:
            await self.initialize()
        assert self.session is not None

        kwargs: Dict[str, Any] = {"headers": dict(headers), "timeout": aiohttp.ClientTimeout(total=timeout)}
        if credentials is not None:
            kwargs["proxy"] = credentials.proxy_url
            kwargs["proxy_auth"] = aiohttp.BasicAuth(credentials.username, credentials.password)
        if body is not None:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["data"] = body

        started = time.monotonic()
        async with self.session.request(method, url, **kwargs) as response:
            text = await response.text(errors="replace")
            return HttpResponse(
                status=response.status,
                text=text,
                url=url,
                final_url=str(response.url),
                headers=dict(response.headers),
                reason=response.reason,
                elapsed_ms=(time.monotonic() - started) * 1000,
                used_proxy=credentials is not None,
            )

    def get_stats(self) -> Dict[str, Any]:
        """Get current client statistics."""
        return {
            "source": self.source,
            "admitted_requests": self.rate_limiter.admitted,
            "rate_limit_wait_seconds": round(self.rate_limiter.total_wait, 3),
            "proxy": self.proxy_manager.get_status().as_dict(),
        }


def _describe(exc: Optional[BaseException]) -> str:
    if exc is None:
        return "unknown error"
    return str(exc) or type(exc).__name__
