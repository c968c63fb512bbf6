"""InfluxDB backed price, forecast and load feeds plus the schedule sink."""

import logging
from datetime import datetime
from typing import Dict, List, Tuple

import pytz

from spot_heating.config.settings import Settings
from spot_heating.optimization.exceptions import InsufficientDataError
from spot_heating.optimization.slots import ControlPoint, PricePoint
from spot_heating.utils.async_influxdb_client import AsyncInfluxDBClient


def _flux_range(start: datetime, end: datetime) -> str:
    """Flux range clause for a UTC window."""
    utc_start = start.astimezone(pytz.UTC)
    utc_end = end.astimezone(pytz.UTC)
    return f"range(start: {utc_start.isoformat()}, stop: {utc_end.isoformat()})"


async def _query_series(
    client: AsyncInfluxDBClient, query: str
) -> List[Tuple[datetime, float]]:
    """Run a query and collect (time, value) pairs from all tables."""
    result = await client.query(query)

    points: List[Tuple[datetime, float]] = []
    for table in result:
        for record in table.records:
            time = record.get_time()
            value = record.get_value()
            if time is not None and value is not None:
                points.append((time, float(value)))
    return sorted(points, key=lambda point: point[0])


class InfluxPriceFeed:
    """Reads stored day-ahead prices."""

    def __init__(self, influxdb_client: AsyncInfluxDBClient, settings: Settings) -> None:
        self.influxdb_client = influxdb_client
        self.config = settings.influxdb
        self.logger = logging.getLogger(f"{__name__}.InfluxPriceFeed")

    async def get_prices(self, start: datetime, end: datetime) -> List[PricePoint]:
        """Price points inside ``[start, end)`` ordered by time."""
        query = f"""
        from(bucket: "{self.config.bucket_prices}")
            |> {_flux_range(start, end)}
            |> filter(fn: (r) => r["_measurement"] == "{self.config.price_measurement}")
            |> filter(fn: (r) => r["_field"] == "{self.config.price_field}")
            |> sort(columns: ["_time"])
        """
        prices = await _query_series(self.influxdb_client, query)
        self.logger.debug(f"Read {len(prices)} prices for {start.isoformat()} - {end.isoformat()}")
        return prices


class InfluxForecastFeed:
    """Averages the stored temperature forecast over a period."""

    def __init__(
        self,
        influxdb_client: AsyncInfluxDBClient,
        settings: Settings,
    ) -> None:
        self.influxdb_client = influxdb_client
        self.config = settings.influxdb
        self.points_per_hour = settings.scheduler.forecast_points_per_hour
        self.logger = logging.getLogger(f"{__name__}.InfluxForecastFeed")

    async def get_average_temperature(self, start: datetime, end: datetime) -> float:
        """Average forecast temperature for ``[start, end)``.

        Raises:
            InsufficientDataError: The forecast does not cover the period
        """
        query = f"""
        from(bucket: "{self.config.bucket_weather}")
            |> {_flux_range(start, end)}
            |> filter(fn: (r) => r["_measurement"] == "{self.config.forecast_measurement}")
            |> filter(fn: (r) => r["_field"] == "{self.config.forecast_field}")
        """
        points = await _query_series(self.influxdb_client, query)

        hours = (end - start).total_seconds() / 3600
        required = hours * self.points_per_hour
        if not points or len(points) < required:
            raise InsufficientDataError(
                f"Not enough forecast data for {start.isoformat()} - {end.isoformat()}: "
                f"{len(points)} points, {required:g} required"
            )

        average = sum(value for _, value in points) / len(points)
        self.logger.debug(f"Average temperature {average:.2f} for {start.isoformat()}")
        return average


class InfluxLoadFeed:
    """Reads the load already scheduled by other devices."""

    def __init__(self, influxdb_client: AsyncInfluxDBClient, settings: Settings) -> None:
        self.influxdb_client = influxdb_client
        self.config = settings.influxdb
        self.device_name = settings.scheduler.device_name

    async def get_loads(self, start: datetime, end: datetime) -> Dict[datetime, float]:
        """Total load of the other devices per timestamp."""
        query = f"""
        from(bucket: "{self.config.bucket_control}")
            |> {_flux_range(start, end)}
            |> filter(fn: (r) => r["_measurement"] == "{self.config.load_measurement}")
            |> filter(fn: (r) => r["_field"] == "load")
            |> filter(fn: (r) => r["device"] != "{self.device_name}")
            |> group(columns: ["_time"])
            |> sum()
        """
        return dict(await _query_series(self.influxdb_client, query))


class InfluxScheduleSink:
    """Stores control schedules and the resulting loads."""

    def __init__(self, influxdb_client: AsyncInfluxDBClient, settings: Settings) -> None:
        self.influxdb_client = influxdb_client
        self.config = settings.influxdb
        self.device_name = settings.scheduler.device_name
        self.logger = logging.getLogger(f"{__name__}.InfluxScheduleSink")

    async def write_control_points(self, points: List[ControlPoint]) -> None:
        """Write ``(timestamp, control)`` pairs, overwriting existing points."""
        for timestamp, control in points:
            await self.influxdb_client.write_point(
                bucket=self.config.bucket_control,
                measurement=self.config.control_measurement,
                fields={"control": int(control)},
                tags={"device": self.device_name},
                timestamp=timestamp.astimezone(pytz.UTC),
            )
        await self.influxdb_client.flush()
        self.logger.info(f"Stored {len(points)} control points for {self.device_name}")

    async def write_load_points(self, points: List[Tuple[datetime, float]]) -> None:
        """Write this device's load per slot, tagged with the device name."""
        for timestamp, load in points:
            await self.influxdb_client.write_point(
                bucket=self.config.bucket_control,
                measurement=self.config.load_measurement,
                fields={"load": float(load)},
                tags={"device": self.device_name},
                timestamp=timestamp.astimezone(pytz.UTC),
            )
        await self.influxdb_client.flush()

    async def get_control_points(self, start: datetime, end: datetime) -> List[ControlPoint]:
        """Read a stored schedule back."""
        query = f"""
        from(bucket: "{self.config.bucket_control}")
            |> {_flux_range(start, end)}
            |> filter(fn: (r) => r["_measurement"] == "{self.config.control_measurement}")
            |> filter(fn: (r) => r["_field"] == "control")
            |> filter(fn: (r) => r["device"] == "{self.device_name}")
            |> sort(columns: ["_time"])
        """
        points = await _query_series(self.influxdb_client, query)
        return [(timestamp, int(value)) for timestamp, value in points]
