"""
Rotating proxy credentials with health tracking.

The upstream provider hands out a new egress IP whenever the session token in
the proxy password changes. ``ProxyRotationManager`` advances that token
deterministically every ``rotation_interval`` requests and keeps running
health counters for the status view. All methods are synchronous and
guarded by one lock, so the manager can be shared by concurrent callers.
"""

from __future__ import annotations

import re
import secrets
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional

import structlog

from harvestcore.config.config import ProxyConfig
from harvestcore.protocols import TransportCredentials

if TYPE_CHECKING:
    from harvestcore.observability.activity import ActivityLog

logger = structlog.get_logger(__name__)

_SESSION_SUFFIX = re.compile(r"_session-[A-Za-z0-9]*$")


class ProxyHealth(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProxyErrorEntry:
    timestamp: datetime
    message: str
    url: Optional[str] = None


@dataclass
class ProxySessionState:
    """Mutable rotation and health state; only touched under the manager lock."""

    rotation_interval: int
    request_counter: int = 0
    last_host: Optional[str] = None
    last_port: Optional[int] = None
    rotation_count: int = 0
    last_rotation_at: Optional[datetime] = None
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    error_count: int = 0
    response_times: Deque[float] = field(default_factory=lambda: deque(maxlen=100))
    recent_errors: Deque[ProxyErrorEntry] = field(default_factory=lambda: deque(maxlen=50))
    last_validated_at: Optional[datetime] = None
    last_validation_ok: Optional[bool] = None
    last_validation_message: Optional[str] = None

    @property
    def current_session(self) -> int:
        return self.request_counter // self.rotation_interval


@dataclass(frozen=True)
class ProxyStatus:
    enabled: bool
    health: ProxyHealth
    host: Optional[str]
    port: Optional[int]
    current_session_id: Optional[str]
    request_counter: int
    rotation_interval: int
    rotation_count: int
    last_rotation_at: Optional[datetime]
    total_requests: int
    successful_requests: int
    failed_requests: int
    error_count: int
    success_rate: float
    average_response_ms: Optional[float]
    last_validated_at: Optional[datetime]
    last_validation_ok: Optional[bool]
    recent_errors: List[ProxyErrorEntry] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "health": self.health.value,
            "host": self.host,
            "port": self.port,
            "current_session_id": self.current_session_id,
            "request_counter": self.request_counter,
            "rotation_interval": self.rotation_interval,
            "rotation_count": self.rotation_count,
            "last_rotation_at": self.last_rotation_at.isoformat() if self.last_rotation_at else None,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "error_count": self.error_count,
            "success_rate": round(self.success_rate, 2),
            "average_response_ms": self.average_response_ms,
            "last_validated_at": self.last_validated_at.isoformat() if self.last_validated_at else None,
            "last_validation_ok": self.last_validation_ok,
            "recent_errors": [
                {"timestamp": e.timestamp.isoformat(), "message": e.message, "url": e.url} for e in self.recent_errors
            ],
        }


def classify_health(enabled: bool, total: int, success_rate: float) -> ProxyHealth:
    if not enabled or total == 0:
        return ProxyHealth.UNKNOWN
    if success_rate >= 95:
        return ProxyHealth.HEALTHY
    if success_rate >= 70:
        return ProxyHealth.DEGRADED
    return ProxyHealth.UNHEALTHY


class ProxyRotationManager:
    """
    Issues transport credentials and rotates the proxy session every
    ``rotation_interval`` requests.

    A manager built from a config without a usable key runs in disabled
    mode: ``next_credentials()`` returns ``None`` (connect directly) and the
    ``record_*`` methods are no-ops.
    """

    def __init__(
        self,
        config: ProxyConfig,
        activity: Optional[ActivityLog] = None,
        *,
        salt: Optional[str] = None,
    ):
        self.config = config
        self.activity = activity
        self.enabled = config.enabled
        self.host, self.port = config.host_and_port() if self.enabled else (None, None)
        self._salt = salt if salt is not None else secrets.token_hex(4)
        self._lock = threading.Lock()
        self._state = self._new_state()

        if self.enabled:
            logger.info(
                "Proxy rotation enabled",
                host=self.host,
                port=self.port,
                rotation_interval=config.rotation_interval,
            )
        else:
            logger.info("Proxy rotation disabled, using direct connections")

    def _new_state(self) -> ProxySessionState:
        return ProxySessionState(
            rotation_interval=self.config.rotation_interval,
            response_times=deque(maxlen=self.config.response_time_window),
            recent_errors=deque(maxlen=self.config.error_window),
        )

    # --- credentials ---------------------------------------------------------

    @property
    def username(self) -> str:
        return self.config.username or f"customer-{self.config.key.strip()}"

    def session_token(self, session: int) -> str:
        return f"{self._salt}{session}"

    def build_password(self, session_id: str) -> str:
        custom = self.config.password
        if not custom:
            return f"session-{session_id}"
        if custom.endswith("session-"):
            return f"{custom}{session_id}"
        if _SESSION_SUFFIX.search(custom):
            return _SESSION_SUFFIX.sub(f"_session-{session_id}", custom)
        return f"{custom}_session-{session_id}"

    def next_credentials(self) -> Optional[TransportCredentials]:
        """Credentials for the next request, or ``None`` to connect directly."""
        if not self.enabled:
            return None

        with self._lock:
            state = self._state
            previous = state.current_session
            state.request_counter += 1
            current = state.current_session
            rotated = current != previous
            if rotated:
                state.rotation_count += 1
                state.last_rotation_at = datetime.now(timezone.utc)
                state.last_host = self.host
                state.last_port = self.port
            counter = state.request_counter

        session_id = self.session_token(current)
        if rotated:
            logger.debug("Proxy session rotated", session_id=session_id, request_counter=counter)
            if self.activity is not None:
                self.activity.log_proxy_event(
                    "rotation",
                    {"session_id": session_id, "request_counter": counter, "host": self.host},
                )

        assert self.host is not None and self.port is not None
        return TransportCredentials(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.build_password(session_id),
            session_id=session_id,
        )

    # --- health --------------------------------------------------------------

    def record_outcome(self, success: bool, elapsed_ms: float) -> None:
        if not self.enabled:
            return
        with self._lock:
            state = self._state
            state.total_requests += 1
            if success:
                state.successful_requests += 1
            else:
                state.failed_requests += 1
            state.response_times.append(elapsed_ms)

    def record_error(self, message: str, url: Optional[str] = None) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._state.error_count += 1
            self._state.recent_errors.append(ProxyErrorEntry(datetime.now(timezone.utc), message, url))

    def record_validation(self, ok: bool, message: Optional[str] = None) -> None:
        with self._lock:
            self._state.last_validated_at = datetime.now(timezone.utc)
            self._state.last_validation_ok = ok
            self._state.last_validation_message = message

    def validate(self) -> bool:
        """Check that the credential set is usable and record the result."""
        if not self.enabled:
            self.record_validation(False, "proxy disabled")
            return False

        problems = []
        if not self.host:
            problems.append("missing host")
        if not self.port or not 0 < self.port < 65536:
            problems.append(f"invalid port {self.port}")
        if not self.username:
            problems.append("missing username")

        ok = not problems
        message = "ok" if ok else ", ".join(problems)
        self.record_validation(ok, message)
        if ok:
            logger.debug("Proxy configuration validated", host=self.host, port=self.port)
        else:
            logger.error("Proxy configuration invalid", problems=problems)
        return ok

    def get_status(self) -> ProxyStatus:
        with self._lock:
            state = self._state
            total = state.total_requests
            success_rate = 100.0 if total == 0 else state.successful_requests / total * 100
            times = list(state.response_times)
            return ProxyStatus(
                enabled=self.enabled,
                health=classify_health(self.enabled, total, success_rate),
                host=self.host,
                port=self.port,
                current_session_id=(
                    self.session_token(state.current_session) if self.enabled and state.request_counter else None
                ),
                request_counter=state.request_counter,
                rotation_interval=state.rotation_interval,
                rotation_count=state.rotation_count,
                last_rotation_at=state.last_rotation_at,
                total_requests=total,
                successful_requests=state.successful_requests,
                failed_requests=state.failed_requests,
                error_count=state.error_count,
                success_rate=success_rate,
                average_response_ms=round(sum(times) / len(times), 1) if times else None,
                last_validated_at=state.last_validated_at,
                last_validation_ok=state.last_validation_ok,
                recent_errors=list(reversed(state.recent_errors)),
            )

    def reset(self) -> None:
        """Clear all counters and start a fresh rotation sequence."""
        with self._lock:
            self._state = self._new_state()
        logger.info("Proxy statistics reset")

    @property
    def state(self) -> ProxySessionState:
        return self._state
