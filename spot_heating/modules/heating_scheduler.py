"""Heating scheduler module - optimizes the next day's heating schedule.

Once a day, after the day-ahead prices are published, the scheduler reads
the prices and the temperature forecast from InfluxDB, runs the heating
optimizer and stores the resulting ON/OFF schedule. When the prices for the
next day are missing, the previous day's schedule is cloned instead.
"""

import asyncio
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple

import pytz

from spot_heating.config.settings import Settings
from spot_heating.modules.base import BaseModule
from spot_heating.optimization.allocator import SlotAllocator
from spot_heating.optimization.exceptions import (
    InsufficientDataError,
    OptimizationError,
    RepairLoopError,
)
from spot_heating.optimization.heating_optimizer import HeatingPeriodOptimizer
from spot_heating.optimization.slots import ControlPoint, clone_for_next_day
from spot_heating.utils.async_influxdb_client import AsyncInfluxDBClient
from spot_heating.utils.influx_feeds import (
    InfluxForecastFeed,
    InfluxLoadFeed,
    InfluxPriceFeed,
    InfluxScheduleSink,
)


class HeatingScheduler(BaseModule):
    """Plans the heating schedule for the next day and stores it in InfluxDB."""

    def __init__(
        self,
        influxdb_client: AsyncInfluxDBClient,
        settings: Settings,
        price_feed: Optional[InfluxPriceFeed] = None,
        forecast_feed: Optional[InfluxForecastFeed] = None,
        load_feed: Optional[InfluxLoadFeed] = None,
        schedule_sink: Optional[InfluxScheduleSink] = None,
    ) -> None:
        """Initialize the heating scheduler."""
        super().__init__(
            name="HeatingScheduler",
            service_name="HEATING",
            settings=settings,
            influxdb_client=influxdb_client,
        )
        self.heating_config = settings.heating
        self.scheduler_config = settings.scheduler

        self.price_feed = price_feed or InfluxPriceFeed(influxdb_client, settings)
        self.forecast_feed = forecast_feed or InfluxForecastFeed(influxdb_client, settings)
        self.load_feed = load_feed or InfluxLoadFeed(influxdb_client, settings)
        self.schedule_sink = schedule_sink or InfluxScheduleSink(influxdb_client, settings)

        self._local_tz = pytz.timezone(self.scheduler_config.timezone)
        self._daily_update_task: Optional[asyncio.Task[None]] = None
        self._last_run_date: Optional[date] = None

    async def start(self) -> None:
        """Start the heating scheduler."""
        self._daily_update_task = asyncio.create_task(self._daily_update_loop())
        mode = " in simulation mode" if self.scheduler_config.simulation_mode else ""
        self.logger.info(f"Heating scheduler started{mode}")

    async def stop(self) -> None:
        """Stop the heating scheduler."""
        if self._daily_update_task and not self._daily_update_task.done():
            self._daily_update_task.cancel()
            try:
                await self._daily_update_task
            except asyncio.CancelledError:
                pass

        self.logger.info("Heating scheduler stopped")

    def day_window(self, day: date) -> Tuple[datetime, datetime]:
        """Local midnight to midnight for ``day`` as aware datetimes."""
        start = self._local_tz.localize(datetime.combine(day, time.min))
        end = self._local_tz.localize(datetime.combine(day + timedelta(days=1), time.min))
        return start, end

    async def run_optimization(self, day: Optional[date] = None) -> Optional[List[ControlPoint]]:
        """Optimize one day, tomorrow by default, logging instead of raising."""
        if day is None:
            day = (datetime.now(self._local_tz) + timedelta(days=1)).date()

        try:
            points = await self.optimize_day(day)
        except OptimizationError as e:
            self.logger.error(f"Heating optimization for {day} failed: {e}")
            return None
        except RepairLoopError as e:
            self.logger.error(f"Heating schedule repair for {day} failed: {e}", exc_info=True)
            return None

        self._last_run_date = day
        return points

    async def optimize_day(self, day: date) -> List[ControlPoint]:
        """Build, store and return the heating schedule for ``day``."""
        start, end = self.day_window(day)
        prices = await self.price_feed.get_prices(start, end)

        if not prices:
            if self.scheduler_config.clone_on_missing_prices:
                self.logger.warning(f"No prices for {day}, cloning the previous schedule")
                return await self.clone_previous_day(day)
            raise InsufficientDataError(f"No prices available for {day}")

        allocator = SlotAllocator(
            max_load=self.heating_config.max_load,
            device_load=self.heating_config.device_load,
        )
        allocator.set_prices(prices)

        if allocator.load_balancing and not self.heating_config.reset_loads:
            allocator.seed_loads(await self.load_feed.get_loads(start, end))

        optimizer = HeatingPeriodOptimizer(allocator, self.heating_config, start, end)
        temperatures = []
        for period_start, period_end in optimizer.period_windows():
            temperatures.append(
                await self.forecast_feed.get_average_temperature(period_start, period_end)
            )

        points = optimizer.optimize(temperatures)
        heating_hours = sum(control for _, control in points) * allocator.resolution
        self.logger.info(f"Heating schedule for {day}: {heating_hours} ON in {len(points)} slots")

        await self._store(points)
        if allocator.load_balancing:
            await self._store_loads(allocator)
        return points

    async def clone_previous_day(self, day: date) -> List[ControlPoint]:
        """Reuse the stored schedule of the day before ``day``."""
        start, _ = self.day_window(day - timedelta(days=1))
        end, _ = self.day_window(day)
        previous = await self.schedule_sink.get_control_points(start, end)
        if not previous:
            raise InsufficientDataError(f"No schedule stored for {day - timedelta(days=1)} to clone")

        points = clone_for_next_day(previous)
        await self._store(points)
        return points

    async def _store(self, points: List[ControlPoint]) -> None:
        if self.scheduler_config.simulation_mode:
            self.logger.info(f"[SIMULATION] Would store {len(points)} control points")
            return
        await self.schedule_sink.write_control_points(points)

    async def _store_loads(self, allocator: SlotAllocator) -> None:
        if self.scheduler_config.simulation_mode:
            return
        # The load feed sums the stored shares of all other devices
        await self.schedule_sink.write_load_points(allocator.get_device_load_points())

    def next_run_time(self, now: Optional[datetime] = None) -> datetime:
        """Next local update time strictly after ``now``."""
        now = now or datetime.now(self._local_tz)
        local_now = now.astimezone(self._local_tz)
        target = self._local_tz.localize(
            datetime.combine(
                local_now.date(),
                time(self.scheduler_config.update_hour, self.scheduler_config.update_minute),
            )
        )
        if target <= local_now:
            target = self._local_tz.localize(
                datetime.combine(
                    local_now.date() + timedelta(days=1),
                    time(self.scheduler_config.update_hour, self.scheduler_config.update_minute),
                )
            )
        return target

    async def _daily_update_loop(self) -> None:
        """Run the optimization every day at the configured local time."""
        while self.running:
            try:
                await self.sleep_until(self.next_run_time())
                await self.run_optimization()

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in daily update loop: {e}", exc_info=True)
                # Wait an hour before retrying
                await asyncio.sleep(3600)
