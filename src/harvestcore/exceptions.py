"""
Exception hierarchy for HarvestCore.

Transport and status failures are recovered inside the crawl loop; only
``StoreError`` and unexpected exceptions are allowed to cross the category
boundary and fail a crawl session.
"""

from __future__ import annotations

from typing import Optional


class HarvestError(Exception):
    """Base class for all HarvestCore errors."""


class ConfigurationError(HarvestError):
    """Raised when components are wired with an unusable configuration."""


class HttpStatusError(HarvestError):
    """A single attempt that received a 4xx/5xx response."""

    def __init__(self, url: str, status: int, body: str = "", reason: Optional[str] = None) -> None:
        self.url = url
        self.status = status
        self.body = body
        self.reason = reason
        message = f"HTTP {status}"
        if reason:
            message += f" {reason}"
        if body:
            message += f": {body}"
        super().__init__(message)

    @property
    def is_block(self) -> bool:
        """True when the server looks like it is refusing us outright."""
        return self.status == 403 or "Forbidden" in self.body or (self.reason or "") == "Forbidden"

    @property
    def is_application_error(self) -> bool:
        """True for structured upstream rejections such as a bad API query."""
        return self.status == 400


class HttpRequestError(HarvestError):
    """Raised once all attempts for a logical request are exhausted."""

    def __init__(
        self,
        url: str,
        method: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
        status: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        self.url = url
        self.method = method
        self.attempts = attempts
        self.last_error = last_error
        self.status = status
        self.body = body
        detail = str(last_error) if last_error is not None else "unknown error"
        if not detail:
            detail = type(last_error).__name__
        super().__init__(f"Failed to fetch {url} after {attempts} attempts: {detail}")


class StoreError(HarvestError):
    """Raised when the persistence collaborator fails; aborts the crawl."""

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"Store operation '{operation}' failed: {cause}")
