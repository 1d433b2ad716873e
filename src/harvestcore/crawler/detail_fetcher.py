"""
Parallel detail-page fetching with a hard concurrency cap.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Optional, Sequence

import structlog

from harvestcore.config.config import DetailFetchConfig
from harvestcore.protocols import FetchResult

logger = structlog.get_logger(__name__)


class BoundedConcurrencyFetcher:
    """
    Fetches many independent detail resources through one shared client.

    A semaphore caps in-flight requests at ``max_concurrency``; the slot is
    held only for the duration of one attempt, so an item sleeping through
    its linear backoff never blocks the others. Every input id yields
    exactly one ``FetchResult`` and results are index-aligned with the input.
    """

    def __init__(self, client: Any, config: Optional[DetailFetchConfig] = None):
        self.client = client
        self.config = config or DetailFetchConfig()

    async def fetch_many(
        self,
        item_ids: Sequence[str],
        url_for: Callable[[str], str],
        max_concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
    ) -> List[FetchResult]:
        """
        Fetch the detail resource of every id.

        Args:
            item_ids: Ids to fetch; duplicates are fetched once per occurrence
            url_for: Builds the detail URL for one id
            max_concurrency: Overrides the configured concurrency cap
            timeout: Overrides the client-side timeout per attempt (seconds)
            retries: Overrides the retry budget per item

        Returns:
            One FetchResult per id, in input order
        """
        if not item_ids:
            return []

        limit = max_concurrency if max_concurrency is not None else self.config.max_concurrency
        if limit < 1:
            raise ValueError("max_concurrency must be at least 1")
        semaphore = asyncio.Semaphore(limit)
        per_item_timeout = timeout if timeout is not None else self.config.timeout
        per_item_retries = retries if retries is not None else self.config.retry_attempts

        logger.info("Fetching details", total=len(item_ids), max_concurrency=limit)

        results = await asyncio.gather(
            *(
                self._fetch_one(item_id, url_for, semaphore, per_item_timeout, per_item_retries)
                for item_id in item_ids
            )
        )

        succeeded = sum(1 for result in results if result.success)
        logger.info(
            "Detail fetching completed",
            total=len(results),
            success=succeeded,
            failures=len(results) - succeeded,
        )
        return list(results)

    async def _fetch_one(
        self,
        item_id: str,
        url_for: Callable[[str], str],
        semaphore: asyncio.Semaphore,
        timeout: float,
        retries: int,
    ) -> FetchResult:
        try:
            url = url_for(item_id)
        except Exception as exc:
            logger.warning("Could not build detail URL", item_id=item_id, error=str(exc))
            return FetchResult(item_id=item_id, payload=None, success=False, error=str(exc))

        error = "unknown error"
        for attempt in range(retries + 1):
            try:
                async with semaphore:
                    response = await self._timed_get(url, timeout)
                return FetchResult(item_id=item_id, payload=response.text, success=True)
            except asyncio.TimeoutError:
                error = f"Request timeout after {timeout}s"
            except Exception as exc:
                error = str(exc) or type(exc).__name__

            if attempt < retries:
                logger.debug("Retrying detail fetch", item_id=item_id, attempt=attempt + 1, error=error)
                await self._sleep(self.config.retry_delay * (attempt + 1))

        logger.warning("Detail fetch failed", item_id=item_id, attempts=retries + 1, error=error)
        return FetchResult(item_id=item_id, payload=None, success=False, error=error)

    async def _timed_get(self, url: str, timeout: float) -> Any:
        limiter = getattr(self.client, "rate_limiter", None)
        if limiter is None:
            return await asyncio.wait_for(self.client.get(url), timeout=timeout)
        # The timeout covers the transport call, not the queue for a rate-limit turn
        await limiter.wait_turn()
        return await asyncio.wait_for(self.client.get(url, wait_for_turn=False), timeout=timeout)

    async def _sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)
