#!/usr/bin/env python3
"""Spot Heating - spot price driven heating scheduler service.

Runs the enabled modules in a single async Python application.
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Any, List, Optional

from dotenv import load_dotenv

from spot_heating.config.settings import Settings
from spot_heating.modules.heating_scheduler import HeatingScheduler
from spot_heating.utils.async_influxdb_client import AsyncInfluxDBClient
from spot_heating.utils.logging import setup_root_logger


class SpotHeating:
    """Main application class that manages all modules."""

    def __init__(self) -> None:
        """Initialize the application."""
        self.settings = Settings(influxdb_token=os.getenv("INFLUXDB_TOKEN", ""))
        self.setup_logging()

        # Shared clients
        self.influxdb_client = AsyncInfluxDBClient(self.settings)

        # Modules
        self.modules: List[asyncio.Task[None]] = []
        self.heating_scheduler: Optional[HeatingScheduler] = None

        self.shutdown_event = asyncio.Event()

    def setup_logging(self) -> None:
        """Configure colored logging."""
        setup_root_logger(self.settings.log_timezone, self.settings.log_level)

    async def initialize_modules(self) -> None:
        """Initialize all modules."""
        logger = logging.getLogger(__name__)

        await self.influxdb_client.start()
        logger.info("InfluxDB client started")

        if self.settings.modules.heating_scheduler_enabled:
            self.heating_scheduler = HeatingScheduler(self.influxdb_client, self.settings)
            logger.info("Heating Scheduler module initialized")

    async def start_modules(self) -> None:
        """Start all enabled modules."""
        logger = logging.getLogger(__name__)

        if self.heating_scheduler:
            task = asyncio.create_task(self.heating_scheduler.run(self.shutdown_event))
            self.modules.append(task)
            logger.info("Heating Scheduler started")

    async def shutdown(self) -> None:
        """Gracefully shutdown all modules."""
        logger = logging.getLogger(__name__)
        logger.info("Initiating shutdown...")

        self.shutdown_event.set()

        if self.modules:
            await asyncio.gather(*self.modules, return_exceptions=True)

        await self.influxdb_client.stop()

        logger.info("Shutdown complete")

    def handle_signal(self, signum: int, frame: Any) -> None:
        """Handle shutdown signals."""
        logger = logging.getLogger(__name__)
        logger.info(f"Received signal {signum}")
        asyncio.create_task(self.shutdown())

    async def run(self) -> None:
        """Run the main application loop."""
        logger = logging.getLogger(__name__)

        try:
            signal.signal(signal.SIGINT, self.handle_signal)
            signal.signal(signal.SIGTERM, self.handle_signal)

            await self.initialize_modules()
            await self.start_modules()

            logger.info("Spot Heating is running...")

            await self.shutdown_event.wait()

        except Exception as e:
            logger.error(f"Fatal error: {e}", exc_info=True)
            await self.shutdown()
            sys.exit(1)


async def main() -> None:
    """Run the main entry point."""
    load_dotenv()

    app = SpotHeating()
    await app.run()


def cli() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
