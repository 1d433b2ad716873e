"""
Pagination crawl controller.

Drives one crawl session over a list of categories. Each category is paged
sequentially until a run of consecutive pages yields nothing new, which is
the only reliable end-of-results signal on sources whose pagination
metadata cannot be trusted. Page-level fetch and parse failures are absorbed
as empty pages; store failures and unexpected errors fail the session.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import structlog

from harvestcore.config.config import CrawlConfig
from harvestcore.crawler.detail_fetcher import BoundedConcurrencyFetcher
from harvestcore.exceptions import ConfigurationError, HttpRequestError, StoreError
from harvestcore.observability.activity import ActivityLog
from harvestcore.protocols import (
    Category,
    CategoryCursor,
    CategoryResult,
    CrawlSession,
    CrawlSummary,
    DetailParser,
    PageContext,
    PageKind,
    PageRequest,
    Parser,
    Record,
    SessionStatus,
    StopReason,
    Store,
    utcnow,
)

logger = structlog.get_logger(__name__)

PageRequestBuilder = Callable[[Category, int], Union[str, PageRequest]]


def as_page_request(value: Union[str, PageRequest]) -> PageRequest:
    return value if isinstance(value, PageRequest) else PageRequest(url=value)


class PaginationCrawlController:
    """
    Crawls paginated categories into a store, deduplicating by record id.

    Args:
        source: Name of the crawled source, used in logs, metrics and records
        client: A ``RetryingHttpClient`` (anything with an async ``request``)
        parser: Turns list-page payloads into records
        store: Persists records and session checkpoints
        categories: Category keys or ``Category`` objects, crawled in order
        page_request: Builds the request for ``(category, page)``; pages start at 1
        config: Termination, checkpoint and scheduling settings
        activity: Activity sink shared with the client
        fetcher: Detail fetcher; built from ``client`` when enrichment is on
        detail_parser: Enables detail enrichment together with ``detail_url``
        detail_url: Builds the detail URL for a record id
    """

    def __init__(
        self,
        *,
        source: str,
        client: Any,
        parser: Parser,
        store: Store,
        categories: Sequence[Union[str, Category]],
        page_request: PageRequestBuilder,
        config: Optional[CrawlConfig] = None,
        activity: Optional[ActivityLog] = None,
        fetcher: Optional[BoundedConcurrencyFetcher] = None,
        detail_parser: Optional[DetailParser] = None,
        detail_url: Optional[Callable[[str], str]] = None,
    ):
        if (detail_parser is None) != (detail_url is None):
            raise ConfigurationError("detail enrichment needs both detail_parser and detail_url")

        self.source = source
        self.client = client
        self.parser = parser
        self.store = store
        self.categories = [c if isinstance(c, Category) else Category(key=str(c)) for c in categories]
        self.page_request = page_request
        self.config = config or CrawlConfig()
        if activity is None:
            activity = getattr(client, "activity", None)
        self.activity = activity if activity is not None else ActivityLog(source)
        self.detail_parser = detail_parser
        self.detail_url = detail_url
        self.fetcher = fetcher
        if self.enrichment_enabled and self.fetcher is None:
            self.fetcher = BoundedConcurrencyFetcher(client)

        self.session: Optional[CrawlSession] = None
        self._session_lock = asyncio.Lock()
        self._pages_since_checkpoint = 0
        self.logger = logger.bind(source=source)

    @property
    def enrichment_enabled(self) -> bool:
        return self.detail_parser is not None and self.detail_url is not None

    # --- session -------------------------------------------------------------

    async def start_session(self) -> CrawlSession:
        """Create the session record in the store if none is active."""
        if self.session is None or self.session.is_terminal:
            session_id = await self._store_call("create_session", self.store.create_session())
            self.session = CrawlSession(id=session_id, source=self.source)
            self._pages_since_checkpoint = 0
            self.logger = logger.bind(source=self.source, session_id=session_id)
            self.logger.info("Crawl session started", categories=[c.key for c in self.categories])
        return self.session

    async def run(self) -> CrawlSummary:
        """Crawl every category and close the session as completed or failed."""
        session = await self.start_session()
        # Client and fetcher logs pick the session up through merge_contextvars
        with structlog.contextvars.bound_contextvars(crawl_session_id=session.id, crawl_source=self.source):
            return await self._run_session(session)

    async def _run_session(self, session: CrawlSession) -> CrawlSummary:
        results: List[CategoryResult] = []

        try:
            if self.config.category_concurrency > 1 and len(self.categories) > 1:
                results = await self._run_concurrently()
            else:
                for index, category in enumerate(self.categories):
                    if index and self.config.category_delay:
                        await self._sleep(self.config.category_delay)
                    results.append(await self.crawl_category(category))
        except Exception as exc:
            session.status = SessionStatus.FAILED
            session.error_message = str(exc) or type(exc).__name__
            session.completed_at = utcnow()
            self.logger.error("Crawl session failed", error=session.error_message, exc_info=True)
            self.activity.log_error(
                "Crawl session failed",
                {"session_id": session.id, "error": session.error_message},
                source=self.source,
            )
            try:
                await self._write_session()
            except StoreError as store_exc:
                self.logger.error("Could not record failed session", error=str(store_exc))
            raise

        session.status = SessionStatus.COMPLETED
        session.completed_at = utcnow()
        await self._write_session()
        self.logger.info(
            "Crawl session completed",
            pages_scraped=session.pages_scraped,
            items_found=session.items_found,
        )
        return CrawlSummary(session=session, categories=results)

    async def _run_concurrently(self) -> List[CategoryResult]:
        semaphore = asyncio.Semaphore(self.config.category_concurrency)

        async def worker(index: int, category: Category) -> CategoryResult:
            async with semaphore:
                if index and self.config.category_delay:
                    await self._sleep(self.config.category_delay)
                return await self.crawl_category(category)

        tasks = [asyncio.ensure_future(worker(i, c)) for i, c in enumerate(self.categories)]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    # --- category loop -------------------------------------------------------

    async def crawl_category(self, category: Union[str, Category]) -> CategoryResult:
        """Page through one category until a stop condition is met."""
        if not isinstance(category, Category):
            category = Category(key=str(category))
        session = await self.start_session()
        cursor = CategoryCursor(category_key=category.key)
        result = CategoryResult(category_key=category.key)
        log = self.logger.bind(category=category.key)
        threshold = self.config.max_consecutive_empty_pages
        page_cap = self.config.max_pages_per_category

        log.info("Category started", label=category.label)

        while True:
            if page_cap is not None and result.pages_scraped >= page_cap:
                result.stop_reason = StopReason.PAGE_CAP
                break

            request = as_page_request(self.page_request(category, cursor.current_page))
            fingerprint = request.fingerprint
            if fingerprint in cursor.requested:
                log.warning("Page request repeated, stopping category", page=cursor.current_page, url=request.url)
                result.stop_reason = StopReason.LOOP_GUARD
                break
            cursor.requested.add(fingerprint)

            kind, persisted, new_count, duplicates = await self._process_page(category, cursor, request, log)

            result.pages_scraped += 1
            result.last_page = cursor.current_page
            result.items_found += persisted
            result.new_records += new_count
            result.duplicates += duplicates
            if kind is PageKind.FAILED:
                result.failed_pages += 1

            if kind is PageKind.NEW:
                cursor.consecutive_empty_pages = 0
            else:
                cursor.consecutive_empty_pages += 1

            self.activity.metrics.pages.labels(source=self.source, kind=kind.value).inc()
            await self._record_page(session, persisted)

            if cursor.consecutive_empty_pages >= threshold:
                log.info(
                    "Empty page threshold reached",
                    page=cursor.current_page,
                    consecutive_empty_pages=cursor.consecutive_empty_pages,
                )
                result.stop_reason = StopReason.EMPTY_THRESHOLD
                break

            cursor.advance()

        await self._flush_checkpoint()
        log.info(
            "Category finished",
            stop_reason=result.stop_reason.value if result.stop_reason else None,
            pages_scraped=result.pages_scraped,
            items_found=result.items_found,
            duplicates=result.duplicates,
            failed_pages=result.failed_pages,
        )
        return result

    async def _process_page(
        self,
        category: Category,
        cursor: CategoryCursor,
        request: PageRequest,
        log: Any,
    ) -> Tuple[PageKind, int, int, int]:
        """Fetch, parse, dedup and persist one page.

        Returns ``(kind, persisted, new_candidates, duplicates)``.
        """
        page = cursor.current_page
        try:
            response = await self.client.request(
                request.method, request.url, body=request.body, headers=request.headers
            )
        except HttpRequestError as exc:
            log.warning("Page fetch failed, counting as empty", page=page, url=request.url, error=str(exc))
            self.activity.log_error(
                "Page fetch failed",
                {"category": category.key, "page": page, "url": request.url, "error": str(exc)},
                source=self.source,
            )
            return PageKind.FAILED, 0, 0, 0

        context = PageContext(source=self.source, category=category, page=page, url=request.url)
        try:
            candidates = list(self.parser.parse_list_page(response.text, context))
        except Exception as exc:
            log.warning("Parser failed, treating page as empty", page=page, error=str(exc))
            self.activity.log_error(
                "Parse error",
                {"category": category.key, "page": page, "url": request.url, "error": str(exc)},
                source=self.source,
            )
            candidates = []

        new_records: List[Record] = []
        duplicates = 0
        malformed = 0
        for record in candidates:
            record_id = getattr(record, "id", None)
            if record_id is None or record_id == "":
                malformed += 1
                continue
            record_id = str(record_id)
            if record_id in cursor.seen_ids_in_category:
                duplicates += 1
                continue
            cursor.seen_ids_in_category.add(record_id)
            if isinstance(record, Record) and (record.category is None or record.id != record_id):
                record = replace(record, id=record_id, category=record.category or category.key)
            new_records.append(record)

        if malformed:
            log.warning("Dropped records without an id", page=page, count=malformed)
        self.activity.log_parsing(category.key, page, len(candidates), new_count=len(new_records), source=self.source)

        if not new_records:
            kind = PageKind.DUPLICATE if duplicates else PageKind.EMPTY
            log.info("No new records on page", page=page, candidates=len(candidates), duplicates=duplicates)
            return kind, 0, 0, duplicates

        if self.enrichment_enabled:
            new_records = await self._enrich(new_records, log)

        persisted = await self._persist(new_records)
        log.info(
            "Page processed",
            page=page,
            candidates=len(candidates),
            new=len(new_records),
            duplicates=duplicates,
            persisted=persisted,
        )
        kind = PageKind.NEW if persisted > 0 else PageKind.DUPLICATE
        return kind, persisted, len(new_records), duplicates

    # --- enrichment and persistence -----------------------------------------

    async def _enrich(self, records: List[Record], log: Any) -> List[Record]:
        """Merge detail-page fields over list records; failures keep list data."""
        assert self.fetcher is not None and self.detail_parser is not None and self.detail_url is not None

        targets = records
        get_existing = getattr(self.store, "get_existing_ids", None)
        if self.config.prefilter_existing and get_existing is not None:
            existing = await self._store_call("get_existing_ids", get_existing([r.id for r in records]))
            targets = [r for r in records if r.id not in existing]
            if len(targets) < len(records):
                log.debug("Skipping detail fetch for stored records", skipped=len(records) - len(targets))
        if not targets:
            return records

        results = await self.fetcher.fetch_many([r.id for r in targets], self.detail_url)

        partials: Dict[str, Mapping[str, Any]] = {}
        for result in results:
            if not result.success or result.payload is None:
                continue
            try:
                partial = self.detail_parser.parse_detail_page(result.payload, result.item_id)
            except Exception as exc:
                log.warning("Detail parser failed, keeping list data", item_id=result.item_id, error=str(exc))
                continue
            if partial:
                partials[result.item_id] = partial

        failed = len(results) - len(partials)
        if failed:
            log.info("Detail enrichment incomplete", enriched=len(partials), fallback=failed)
        return [r.merged(partials[r.id]) if r.id in partials else r for r in records]

    async def _persist(self, records: List[Record]) -> int:
        try:
            persisted = await self.store.upsert_many(records)
        except Exception as exc:
            self.activity.log_database_op("upsert", len(records), error=str(exc), source=self.source)
            raise StoreError("upsert_many", exc) from exc
        self.activity.log_database_op("upsert", persisted, source=self.source)
        return persisted

    async def _record_page(self, session: CrawlSession, persisted: int) -> None:
        async with self._session_lock:
            session.pages_scraped += 1
            session.items_found += persisted
            self._pages_since_checkpoint += 1
            if self._pages_since_checkpoint >= self.config.checkpoint_every:
                await self._write_session_locked()

    async def _flush_checkpoint(self) -> None:
        async with self._session_lock:
            if self._pages_since_checkpoint:
                await self._write_session_locked()

    async def _write_session(self) -> None:
        async with self._session_lock:
            await self._write_session_locked()

    async def _write_session_locked(self) -> None:
        session = self.session
        assert session is not None
        await self._store_call(
            "update_session",
            self.store.update_session(
                session.id,
                pages_scraped=session.pages_scraped,
                items_found=session.items_found,
                status=session.status,
                error_message=session.error_message,
            ),
        )
        self._pages_since_checkpoint = 0

    async def _store_call(self, operation: str, awaitable: Any) -> Any:
        try:
            return await awaitable
        except StoreError:
            raise
        except Exception as exc:
            self.activity.log_database_op(operation, 0, error=str(exc), source=self.source)
            raise StoreError(operation, exc) from exc

    async def _sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)
