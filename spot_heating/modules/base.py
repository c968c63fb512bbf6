"""Base class for long running service modules."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from spot_heating.config.settings import Settings
from spot_heating.utils.async_influxdb_client import AsyncInfluxDBClient
from spot_heating.utils.logging import configure_module_logger


class BaseModule(ABC):
    """A module started by the application and stopped on shutdown."""

    def __init__(
        self,
        name: str,
        service_name: str,
        settings: Settings,
        influxdb_client: Optional[AsyncInfluxDBClient] = None,
    ) -> None:
        self.name = name
        self.service_name = service_name
        self.settings = settings
        self.influxdb_client = influxdb_client

        self.logger = configure_module_logger(
            f"{__name__}.{name}", service_name, settings.log_timezone, settings.log_level
        )
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @abstractmethod
    async def start(self) -> None:
        """Start background work."""

    @abstractmethod
    async def stop(self) -> None:
        """Cancel background work."""

    async def sleep_until(self, target: datetime) -> None:
        """Sleep until ``target``, an aware datetime."""
        delay = (target - datetime.now(target.tzinfo)).total_seconds()
        if delay > 0:
            self.logger.info(f"Sleeping {delay / 3600:.1f} hours until {target.isoformat()}")
            await asyncio.sleep(delay)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Run the module until shutdown is requested."""
        self._running = True
        await self.start()

        try:
            await shutdown_event.wait()
        finally:
            self._running = False
            await self.stop()
