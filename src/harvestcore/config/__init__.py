"""Configuration models and loaders."""

from .config import (
    Config,
    CrawlConfig,
    DetailFetchConfig,
    HttpConfig,
    MonitoringConfig,
    ProxyConfig,
    StorageConfig,
    find_config_file,
    load_config,
)

__all__ = [
    "Config",
    "CrawlConfig",
    "DetailFetchConfig",
    "HttpConfig",
    "MonitoringConfig",
    "ProxyConfig",
    "StorageConfig",
    "find_config_file",
    "load_config",
]
