"""
Core contracts and dataclasses for HarvestCore.

This module defines the data model shared by the crawl engine and the
collaborator interfaces it consumes:

- ``CrawlSession``: bookkeeping for one crawl invocation across categories
- ``CategoryCursor``: transient per-category pagination state
- ``FetchResult``: one outcome per detail id from the concurrent fetcher
- ``TransportCredentials``: proxy connection parameters for one request
- ``Parser`` / ``DetailParser`` / ``Store``: source-specific collaborators
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Set, runtime_checkable

# ============================================================================
# Enums
# ============================================================================


class SessionStatus(Enum):
    """Lifecycle states of a crawl session."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PageKind(Enum):
    """Classification of one processed page for progress accounting."""

    NEW = "new"  # at least one new record persisted
    DUPLICATE = "duplicate"  # candidates found, all already seen
    EMPTY = "empty"  # zero candidates
    FAILED = "failed"  # fetch failed after retries


class StopReason(Enum):
    """Why a category loop terminated."""

    EMPTY_THRESHOLD = "empty_threshold"
    LOOP_GUARD = "loop_guard"
    PAGE_CAP = "page_cap"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Records and requests
# ============================================================================


@dataclass
class Record:
    """A parsed item carrying a stable source-native identifier."""

    id: str
    data: Dict[str, Any] = field(default_factory=dict)
    category: Optional[str] = None

    def merged(self, partial: Mapping[str, Any]) -> "Record":
        """Return a copy with ``partial`` laid over the current data."""
        return Record(id=self.id, data={**self.data, **partial}, category=self.category)


@dataclass(frozen=True)
class Category:
    """A partition of the remote result set crawled with its own cursor."""

    key: str
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.key


@dataclass(frozen=True)
class PageRequest:
    """A fully-qualified page request; GET unless a body is supplied."""

    url: str
    method: str = "GET"
    body: Any = None
    headers: Optional[Mapping[str, str]] = None

    @property
    def fingerprint(self) -> str:
        """Identity used by the loop guard to detect a repeated request."""
        if self.body is None:
            return f"{self.method} {self.url}"
        body = self.body if isinstance(self.body, (str, bytes)) else json.dumps(self.body, sort_keys=True)
        return f"{self.method} {self.url} {body!r}"


@dataclass(frozen=True)
class PageContext:
    """Context handed to the parser alongside a raw list-page payload."""

    source: str
    category: Category
    page: int
    url: str


# ============================================================================
# Crawl state
# ============================================================================


@dataclass
class CrawlSession:
    """One run of the controller over one or more categories."""

    id: Any
    source: str
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    pages_scraped: int = 0
    items_found: int = 0
    status: SessionStatus = SessionStatus.RUNNING
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not SessionStatus.RUNNING


@dataclass
class CategoryCursor:
    """Per-category pagination state owned by a single category loop."""

    category_key: str
    current_page: int = 1
    consecutive_empty_pages: int = 0
    seen_ids_in_category: Set[str] = field(default_factory=set)
    requested: Set[str] = field(default_factory=set)

    def advance(self) -> None:
        self.current_page += 1


@dataclass(frozen=True)
class TransportCredentials:
    """Proxy connection parameters; the password embeds the rotation session."""

    host: str
    port: int
    username: str
    password: str
    session_id: str

    @property
    def proxy_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class FetchResult:
    """Outcome of fetching one detail resource."""

    item_id: str
    payload: Optional[str]
    success: bool
    error: Optional[str] = None


@dataclass
class CategoryResult:
    """Counters for a single category run."""

    category_key: str
    pages_scraped: int = 0
    items_found: int = 0
    new_records: int = 0
    duplicates: int = 0
    failed_pages: int = 0
    last_page: int = 0
    stop_reason: Optional[StopReason] = None


@dataclass
class CrawlSummary:
    """Outcome of a full controller run."""

    session: CrawlSession
    categories: List[CategoryResult] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        return self.session.items_found

    @property
    def total_pages(self) -> int:
        return self.session.pages_scraped


# ============================================================================
# Collaborator protocols
# ============================================================================


@runtime_checkable
class Parser(Protocol):
    """Turns a raw list-page payload into candidate records."""

    def parse_list_page(self, payload: str, context: PageContext) -> Sequence[Record]: ...


@runtime_checkable
class DetailParser(Protocol):
    """Extracts enrichment fields from a raw detail-page payload."""

    def parse_detail_page(self, payload: str, record_id: str) -> Mapping[str, Any]: ...


class Store(Protocol):
    """Persistence collaborator: upsert-by-primary-key plus session bookkeeping."""

    async def upsert_many(self, records: Sequence[Record]) -> int: ...

    async def create_session(self) -> Any: ...

    async def update_session(
        self,
        session_id: Any,
        *,
        pages_scraped: int,
        items_found: int,
        status: SessionStatus,
        error_message: Optional[str] = None,
    ) -> None: ...


class ExistingIdLookup(Protocol):
    """Optional Store capability used to pre-filter already stored ids."""

    async def get_existing_ids(self, ids: Sequence[str]) -> Set[str]: ...
