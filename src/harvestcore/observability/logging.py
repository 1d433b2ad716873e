"""
Structured logging setup.

All harvestcore modules log through structlog; ``configure_logging`` routes
both structlog and the standard library through one handler so that records
from aiohttp or aiosqlite share the same format. Crawl context bound with
``structlog.contextvars`` (the controller binds ``crawl_session_id`` for the
duration of a run) is merged into every record.
"""
from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any, Dict, List

import structlog

if TYPE_CHECKING:
    from harvestcore.config.config import MonitoringConfig


def drop_unset_fields(logger: logging.Logger, method_name: str, event_dict: Dict[Any, Any]) -> Dict[Any, Any]:
    """Removes keys whose value is None, e.g. ``proxy_host`` on direct requests."""
    return {key: value for key, value in event_dict.items() if value is not None}


def build_processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        drop_unset_fields,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


def configure_logging(config: MonitoringConfig) -> None:
    """Install the structlog formatter on the root logger."""
    shared_processors = build_processors()

    handler: logging.Handler
    if config.log_file:
        handler = logging.FileHandler(config.log_file)
    else:
        handler = logging.StreamHandler(sys.stderr)

    renderer: Any
    if config.log_file or config.json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(config.log_level.upper())

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.get_logger("harvestcore.logging").info(
        "Logging configured", level=config.log_level, output=config.log_file or "console"
    )
