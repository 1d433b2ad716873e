#!/usr/bin/env python3
"""
Entry point for HarvestCore.

``python main.py health`` prints the container health status as JSON; every
other invocation is handed to the ``harvestcore`` CLI.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path

import structlog

from harvestcore.cli import main as cli_main
from harvestcore.container import DependencyContainer

logger = structlog.get_logger(__name__)


async def health_check() -> dict:
    """Perform health check for container orchestration."""
    config_path = os.getenv("HARVESTCORE_CONFIG")
    container = DependencyContainer(config_path=Path(config_path) if config_path else None)
    try:
        async with container.lifecycle():
            return {"status": "healthy", **container.get_health_status()}
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return {"status": "unhealthy", "error": str(e)}


def main() -> None:
    if len(sys.argv) > 1 and sys.argv[1] == "health":
        health = asyncio.run(health_check())
        print(json.dumps(health, indent=2))
        sys.exit(0 if health["status"] == "healthy" else 1)
    cli_main()


if __name__ == "__main__":
    main()
