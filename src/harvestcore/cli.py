"""Command-line interface for HarvestCore."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import structlog
from rich.console import Console
from rich.table import Table

from harvestcore import __version__
from harvestcore.config.config import Config, load_config
from harvestcore.container import DependencyContainer
from harvestcore.crawler.proxy_manager import ProxyStatus
from harvestcore.exceptions import HttpRequestError
from harvestcore.observability.logging import configure_logging

console = Console()
logger = structlog.get_logger(__name__)


def _load(ctx: click.Context) -> Config:
    config: Config = ctx.obj.get("config") or load_config(ctx.obj.get("config_path"))
    ctx.obj["config"] = config
    return config


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides configuration)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """HarvestCore - paginated crawl orchestration with retries and rotating proxies."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    settings = _load(ctx)
    monitoring = settings.monitoring
    if log_level:
        monitoring = monitoring.model_copy(update={"log_level": log_level})
    configure_logging(monitoring)


@cli.command()
@click.argument("url")
@click.option("--post-json", type=click.File("r"), help="Send a POST with this JSON file as the body")
@click.option("--count", default=1, show_default=True, type=click.IntRange(min=1), help="Number of requests")
@click.option("--source", default="cli", show_default=True, help="Source name used in logs and metrics")
@click.pass_context
def fetch(ctx: click.Context, url: str, post_json: Optional[Any], count: int, source: str) -> None:
    """Fetch URL through the full client stack and show the proxy status."""
    config = _load(ctx)
    body = json.load(post_json) if post_json else None

    async def run_fetch() -> tuple[List[Dict[str, Any]], ProxyStatus]:
        container = DependencyContainer(config)
        rows: List[Dict[str, Any]] = []
        async with container.lifecycle():
            client = await container.get_http_client(source)
            for _ in range(count):
                try:
                    if body is None:
                        response = await client.get(url)
                    else:
                        response = await client.post(url, body)
                except HttpRequestError as exc:
                    rows.append({"status": exc.status, "attempts": exc.attempts, "error": str(exc)})
                    continue
                rows.append(
                    {
                        "status": response.status,
                        "attempts": response.attempts,
                        "elapsed_ms": round(response.elapsed_ms, 1),
                        "proxy": response.used_proxy,
                        "fallback": response.fell_back_to_direct,
                        "bytes": len(response.text),
                    }
                )
            return rows, client.proxy_manager.get_status()

    rows, status = asyncio.run(run_fetch())

    table = Table(title=f"{'POST' if body is not None else 'GET'} {url}")
    for column in ("#", "status", "attempts", "elapsed ms", "proxy", "fallback", "bytes / error"):
        table.add_column(column)
    for index, row in enumerate(rows, start=1):
        table.add_row(
            str(index),
            str(row.get("status")),
            str(row.get("attempts")),
            str(row.get("elapsed_ms", "-")),
            str(row.get("proxy", "-")),
            str(row.get("fallback", "-")),
            row["error"] if "error" in row else str(row["bytes"]),
        )
    console.print(table)
    console.print(_proxy_table(status))

    if any("error" in row for row in rows):
        sys.exit(1)


def _proxy_table(status: ProxyStatus) -> Table:
    table = Table(title="Proxy status", show_header=False)
    table.add_column("field")
    table.add_column("value")
    for key, value in status.as_dict().items():
        if key == "recent_errors":
            value = len(value)
        table.add_row(key, str(value))
    return table


@cli.command()
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1))
@click.option("--source", default=None, help="Only sessions of this source")
@click.pass_context
def sessions(ctx: click.Context, limit: int, source: Optional[str]) -> None:
    """List recent crawl sessions from the SQLite store."""
    config = _load(ctx)

    async def load_sessions() -> List[Dict[str, Any]]:
        container = DependencyContainer(config)
        async with container.lifecycle():
            store = await container.get_store(source or "cli")
            return await store.list_sessions(limit=limit, all_sources=source is None)

    rows = asyncio.run(load_sessions())
    if not rows:
        console.print("[yellow]No crawl sessions recorded[/yellow]")
        return

    table = Table(title=f"Crawl sessions ({config.storage.db_path})")
    for column in ("id", "source", "status", "pages", "items", "started", "completed", "error"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            str(row["id"]),
            row["source"],
            row["status"],
            str(row["pages_scraped"]),
            str(row["items_found"]),
            row["started_at"],
            row["completed_at"] or "-",
            row["error_message"] or "",
        )
    console.print(table)


@cli.command(name="config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the effective configuration as YAML."""
    click.echo(_load(ctx).to_yaml())


def main() -> None:
    """Main CLI entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
