"""Buffered async InfluxDB access for the feeds and the schedule sink."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from influxdb_client import Point, WritePrecision
from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync

from spot_heating.config.settings import Settings

WRITE_ATTEMPTS = 3


class AsyncInfluxDBClient:
    """One shared InfluxDB connection with a bucket-aware write buffer.

    Points are queued by ``write_point`` and written when the buffer reaches
    ``batch_size``, on every ``flush_interval`` tick, or on an explicit
    ``flush()``. Queries go straight to the server.
    """

    def __init__(self, settings: Settings) -> None:
        self.config = settings.influxdb
        self.logger = logging.getLogger(f"{__name__}.AsyncInfluxDB")

        self._client: Optional[InfluxDBClientAsync] = None
        self._pending: List[Tuple[str, Point]] = []
        self._lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task[None]] = None

        self.points_written = 0
        self.failed_batches = 0

    async def start(self) -> None:
        """Connect and start the periodic flush."""
        self._client = InfluxDBClientAsync(
            url=self.config.url, token=self.config.token, org=self.config.org
        )
        self._flush_task = asyncio.create_task(self._flush_periodically())
        self.logger.info(f"Connected to InfluxDB at {self.config.url}")

    async def stop(self) -> None:
        """Write what is still pending and disconnect."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        if self._client is None:
            return

        try:
            await self.flush()
        except Exception as e:
            self.logger.warning(f"Pending points lost on shutdown: {e}")

        try:
            await self._client.close()
        except Exception as e:
            self.logger.warning(f"Failed to close InfluxDB connection: {e}")
        self._client = None
        self.logger.info(
            f"InfluxDB client stopped, {self.points_written} points written, "
            f"{self.failed_batches} failed batches"
        )

    def _require_client(self) -> InfluxDBClientAsync:
        if self._client is None:
            raise RuntimeError("InfluxDB client is not started")
        return self._client

    async def write_point(
        self,
        bucket: str,
        measurement: str,
        fields: Dict[str, Any],
        tags: Optional[Dict[str, str]] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Queue one point for ``bucket``."""
        point = Point(measurement)
        for key, value in (tags or {}).items():
            point = point.tag(key, value)
        for key, value in fields.items():
            point = point.field(key, value)
        if timestamp is not None:
            point = point.time(timestamp, WritePrecision.S)

        async with self._lock:
            self._pending.append((bucket, point))
            full = len(self._pending) >= self.config.batch_size

        if full:
            await self.flush()

    async def flush(self) -> None:
        """Write every pending point, one batch per bucket."""
        async with self._lock:
            pending, self._pending = self._pending, []

        batches: Dict[str, List[Point]] = {}
        for bucket, point in pending:
            batches.setdefault(bucket, []).append(point)

        for bucket, points in batches.items():
            await self._write_batch(bucket, points)

    async def _write_batch(self, bucket: str, points: List[Point]) -> None:
        """Write one batch, backing off 1s, 2s, ... between attempts."""
        client = self._require_client()
        for attempt in range(1, WRITE_ATTEMPTS + 1):
            try:
                await client.write_api().write(bucket=bucket, record=points)
            except Exception as e:
                if attempt == WRITE_ATTEMPTS:
                    self.failed_batches += 1
                    self.logger.error(
                        f"Dropping {len(points)} points for {bucket} after {attempt} attempts: {e}"
                    )
                    return
                delay = 2 ** (attempt - 1)
                self.logger.warning(f"Write to {bucket} failed, retrying in {delay}s: {e}")
                await asyncio.sleep(delay)
            else:
                self.points_written += len(points)
                self.logger.debug(f"Wrote {len(points)} points to {bucket}")
                return

    async def _flush_periodically(self) -> None:
        interval = self.config.flush_interval / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.flush()
            except Exception as e:
                self.logger.error(f"Periodic flush failed: {e}", exc_info=True)

    async def query(self, query: str) -> Any:
        """Run a Flux query and return its tables."""
        client = self._require_client()
        try:
            return await client.query_api().query(query=query, org=self.config.org)
        except Exception as e:
            self.logger.error(f"InfluxDB query failed: {e}")
            raise
