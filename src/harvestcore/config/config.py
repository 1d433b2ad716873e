"""
Configuration management for HarvestCore using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Tuple
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

DISABLED_PROXY_KEYS = frozenset({"", "dummy-key", "dummy-key-for-no-proxy"})
DEFAULT_PROXY_ENDPOINT = "rp.evomi.com:1001"
DEFAULT_PROXY_PORT = 8080

# --- Nested Configuration Models ---


class HttpConfig(BaseModel):
    """Retrying HTTP client settings."""

    model_config = ConfigDict(frozen=True)

    rate_limit_delay: float = Field(default=2.5, ge=0, description="Minimum spacing between requests in seconds.")
    max_retries: int = Field(default=3, ge=0, description="Retries after the initial attempt.")
    retry_delay: float = Field(default=1.0, ge=0, description="Base delay for exponential backoff in seconds.")
    request_timeout: float = Field(default=30.0, gt=0, description="Per-attempt transport timeout in seconds.")
    accept_language: str = Field(default="he-IL,he;q=0.9,en-US;q=0.8,en;q=0.7")
    block_backoff_multiplier: float = Field(
        default=3.0, ge=1.0, description="Backoff multiplier applied when the server answers 403/Forbidden."
    )
    error_body_limit: int = Field(default=1000, ge=0, description="Max characters of an error body kept.")


class ProxyConfig(BaseModel):
    """Rotating residential proxy settings."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(default="", description="Provider API key. Empty or a dummy key disables proxying.")
    endpoint: Optional[str] = Field(default=None, description="[scheme://]host[:port] of the proxy gateway.")
    username: Optional[str] = None
    password: Optional[str] = None
    rotation_interval: int = Field(default=10, ge=1, description="Requests served per proxy session.")
    response_time_window: int = Field(default=100, ge=1)
    error_window: int = Field(default=50, ge=1)

    @property
    def enabled(self) -> bool:
        return self.key.strip() not in DISABLED_PROXY_KEYS

    def host_and_port(self) -> Tuple[str, int]:
        """Split the endpoint into host and port, stripping any scheme."""
        endpoint = (self.endpoint or DEFAULT_PROXY_ENDPOINT).strip()
        if "://" not in endpoint:
            endpoint = f"http://{endpoint}"
        parsed = urlparse(endpoint)
        return parsed.hostname or "", parsed.port or DEFAULT_PROXY_PORT


class DetailFetchConfig(BaseModel):
    """Bounded-concurrency detail fetch settings."""

    model_config = ConfigDict(frozen=True)

    max_concurrency: int = Field(default=10, ge=1)
    # Measured from the rate-limit admission, so queued items do not time out
    timeout: float = Field(default=5.0, gt=0, description="Client-side timeout per attempt in seconds.")
    retry_attempts: int = Field(default=2, ge=0)
    retry_delay: float = Field(default=1.0, ge=0, description="Linear backoff step in seconds.")


class CrawlConfig(BaseModel):
    """Pagination controller settings."""

    model_config = ConfigDict(frozen=True)

    max_consecutive_empty_pages: int = Field(default=20, ge=1)
    max_pages_per_category: Optional[int] = Field(default=None, ge=1)
    checkpoint_every: int = Field(default=1, ge=1, description="Persist session counters every K pages.")
    category_delay: float = Field(default=0.05, ge=0)
    category_concurrency: int = Field(default=1, ge=1, description="1 crawls categories sequentially.")
    prefilter_existing: bool = False


class StorageConfig(BaseModel):
    """Configuration for the SQLite reference store."""

    model_config = ConfigDict(frozen=True)

    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".harvestcore" / "harvest.db",
        description="SQLite database file path",
    )

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        """Ensure database directory exists."""
        path = Path(v) if not isinstance(v, Path) else v
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        return path


class MonitoringConfig(BaseModel):
    """Configuration for logging, activity and metrics."""

    model_config = ConfigDict(frozen=True)

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    json_logs: bool = False
    activity_buffer_size: int = Field(default=500, ge=1)
    prometheus_port: int | None = Field(default=None, description="Port for Prometheus exporter. None to disable.")

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "HarvestCore"
    http: HttpConfig = Field(default_factory=HttpConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    detail: DetailFetchConfig = Field(default_factory=DetailFetchConfig)
    crawl: CrawlConfig = Field(default_factory=CrawlConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="HARVEST_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(mode="json"), sort_keys=False)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for name in ("harvestcore.yaml", "harvestcore.yml"):
        path = current_dir / name
        if path.exists():
            return path
    return None


def load_config(path: Optional[Path] = None) -> Config:
    """Load from an explicit path, a discovered file, or environment defaults."""
    path = path or find_config_file()
    if path is None:
        log.info("No config file found. Using default settings.")
        return Config()
    log.info("Loading configuration from: %s", path)
    return Config.from_yaml(path)
