"""Tests for the heating scheduler module."""

import asyncio
from datetime import date, datetime, timedelta
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytz

from spot_heating.config.settings import Settings
from spot_heating.modules.heating_scheduler import HeatingScheduler
from spot_heating.optimization.exceptions import InsufficientDataError, RepairLoopError
from spot_heating.optimization.heating_optimizer import HeatingPeriodOptimizer

PRAGUE = pytz.timezone("Europe/Prague")
DAY = date(2024, 1, 16)


def make_settings(**env: str) -> Settings:
    """Create settings with extra environment variables."""
    with patch.dict("os.environ", {"INFLUXDB_TOKEN": "test-token", **env}):
        return Settings(influxdb_token="test-token")


def make_scheduler(settings: Settings, influxdb_client: MagicMock) -> HeatingScheduler:
    """Create a scheduler with mocked feeds and sink."""
    price_feed = MagicMock()
    price_feed.get_prices = AsyncMock(return_value=[])
    forecast_feed = MagicMock()
    forecast_feed.get_average_temperature = AsyncMock(return_value=1.52)
    load_feed = MagicMock()
    load_feed.get_loads = AsyncMock(return_value={})
    schedule_sink = MagicMock()
    schedule_sink.write_control_points = AsyncMock()
    schedule_sink.write_load_points = AsyncMock()
    schedule_sink.get_control_points = AsyncMock(return_value=[])

    return HeatingScheduler(
        influxdb_client,
        settings,
        price_feed=price_feed,
        forecast_feed=forecast_feed,
        load_feed=load_feed,
        schedule_sink=schedule_sink,
    )


@pytest.fixture
def day_prices(sample_energy_prices: List[dict]) -> List[Any]:
    """Hourly prices for DAY in local time."""
    start = PRAGUE.localize(datetime(2024, 1, 16))
    return [
        (start + timedelta(hours=entry["hour"]), entry["price"]) for entry in sample_energy_prices
    ]


@pytest.fixture
def scheduler(mock_settings: Settings, mock_influxdb_client: MagicMock) -> HeatingScheduler:
    """Create scheduler instance."""
    return make_scheduler(mock_settings, mock_influxdb_client)


def test_day_window(scheduler: HeatingScheduler) -> None:
    """Test local midnight to midnight."""
    start, end = scheduler.day_window(DAY)

    assert start.isoformat() == "2024-01-16T00:00:00+01:00"
    assert end - start == timedelta(hours=24)


def test_day_window_across_dst_change(scheduler: HeatingScheduler) -> None:
    """Test the 23 hour day in spring."""
    start, end = scheduler.day_window(date(2024, 3, 31))

    assert end - start == timedelta(hours=23)


@pytest.mark.parametrize(
    "now, expected",
    [
        (datetime(2024, 1, 15, 10, 0), datetime(2024, 1, 15, 15, 0)),
        (datetime(2024, 1, 15, 15, 0), datetime(2024, 1, 16, 15, 0)),
        (datetime(2024, 1, 15, 18, 30), datetime(2024, 1, 16, 15, 0)),
    ],
)
def test_next_run_time(scheduler: HeatingScheduler, now: datetime, expected: datetime) -> None:
    """Test scheduling the daily update."""
    assert scheduler.next_run_time(PRAGUE.localize(now)) == PRAGUE.localize(expected)


@pytest.mark.asyncio
async def test_optimize_day(scheduler: HeatingScheduler, day_prices: List[Any]) -> None:
    """Test a full run with prices and forecast."""
    scheduler.price_feed.get_prices.return_value = day_prices

    points = await scheduler.optimize_day(DAY)

    assert len(points) == 96
    assert points[0][0] == day_prices[0][0]
    assert sum(control for _, control in points) == 30
    # One forecast per period including look-back and look-ahead
    assert scheduler.forecast_feed.get_average_temperature.call_count == 6
    scheduler.schedule_sink.write_control_points.assert_called_once_with(points)
    scheduler.schedule_sink.write_load_points.assert_not_called()
    scheduler.load_feed.get_loads.assert_not_called()


@pytest.mark.asyncio
async def test_clone_on_missing_prices(scheduler: HeatingScheduler) -> None:
    """Test reusing yesterday's schedule when there are no prices."""
    yesterday = PRAGUE.localize(datetime(2024, 1, 15))
    scheduler.schedule_sink.get_control_points.return_value = [
        (yesterday, 1),
        (yesterday + timedelta(minutes=15), 0),
    ]

    points = await scheduler.optimize_day(DAY)

    assert points == [
        (yesterday + timedelta(days=1), 1),
        (yesterday + timedelta(days=1, minutes=15), 0),
    ]
    scheduler.schedule_sink.write_control_points.assert_called_once_with(points)
    scheduler.forecast_feed.get_average_temperature.assert_not_called()


@pytest.mark.asyncio
async def test_clone_without_stored_schedule(scheduler: HeatingScheduler) -> None:
    """Test that there is nothing to clone."""
    with pytest.raises(InsufficientDataError):
        await scheduler.optimize_day(DAY)


@pytest.mark.asyncio
async def test_missing_prices_without_clone(mock_influxdb_client: MagicMock) -> None:
    """Test that a disabled clone logs the failure and stores nothing."""
    settings = make_settings(SCHEDULER_CLONE_ON_MISSING_PRICES="false")
    scheduler = make_scheduler(settings, mock_influxdb_client)

    assert await scheduler.run_optimization(DAY) is None

    scheduler.schedule_sink.get_control_points.assert_not_called()
    scheduler.schedule_sink.write_control_points.assert_not_called()


@pytest.mark.asyncio
async def test_insufficient_forecast(scheduler: HeatingScheduler, day_prices: List[Any]) -> None:
    """Test that a missing forecast aborts the run."""
    scheduler.price_feed.get_prices.return_value = day_prices
    scheduler.forecast_feed.get_average_temperature.side_effect = InsufficientDataError(
        "no forecast"
    )

    assert await scheduler.run_optimization(DAY) is None

    scheduler.schedule_sink.write_control_points.assert_not_called()


@pytest.mark.asyncio
async def test_simulation_mode(mock_influxdb_client: MagicMock, day_prices: List[Any]) -> None:
    """Test that simulation mode computes but does not store."""
    settings = make_settings(SCHEDULER_SIMULATION_MODE="true")
    scheduler = make_scheduler(settings, mock_influxdb_client)
    scheduler.price_feed.get_prices.return_value = day_prices

    points = await scheduler.run_optimization(DAY)

    assert points is not None
    assert len(points) == 96
    scheduler.schedule_sink.write_control_points.assert_not_called()


@pytest.mark.asyncio
async def test_load_balancing(mock_influxdb_client: MagicMock, day_prices: List[Any]) -> None:
    """Test reading other loads and storing this device's share."""
    settings = make_settings(
        HEATING_MAX_LOAD="10", HEATING_DEVICE_LOAD="3", HEATING_RESET_LOADS="false"
    )
    scheduler = make_scheduler(settings, mock_influxdb_client)
    scheduler.price_feed.get_prices.return_value = day_prices
    # The cheapest hour is fully used by another device
    busy = day_prices[4][0]
    scheduler.load_feed.get_loads.return_value = {
        busy + timedelta(minutes=15 * i): 8.0 for i in range(4)
    }

    points = await scheduler.optimize_day(DAY)

    scheduler.load_feed.get_loads.assert_called_once()
    controls = dict(points)
    assert all(controls[busy + timedelta(minutes=15 * i)] == 0 for i in range(4))

    loads = scheduler.schedule_sink.write_load_points.call_args[0][0]
    assert len(loads) == 96
    # Only this device's share is stored
    assert {load for _, load in loads} == {0.0, 3.0}
    assert all(load == 3.0 * controls[timestamp] for timestamp, load in loads)


class FakeLoadStore:
    """In-memory stand-in for the per-device load measurement."""

    def __init__(self) -> None:
        self.loads: Dict[str, Dict[datetime, float]] = {}
        self.seeded: Dict[str, Dict[datetime, float]] = {}

    def load_feed(self, device: str) -> MagicMock:
        """Feed summing the loads of every other device."""

        def get_loads(start: datetime, end: datetime) -> Dict[datetime, float]:
            totals: Dict[datetime, float] = {}
            for other, rows in self.loads.items():
                if other == device:
                    continue
                for timestamp, load in rows.items():
                    if start <= timestamp < end:
                        totals[timestamp] = totals.get(timestamp, 0.0) + load
            self.seeded[device] = totals
            return totals

        feed = MagicMock()
        feed.get_loads = AsyncMock(side_effect=get_loads)
        return feed

    def sink(self, device: str) -> MagicMock:
        """Sink recording the loads written by ``device``."""

        def write_load_points(points: List[Any]) -> None:
            self.loads[device] = dict(points)

        sink = MagicMock()
        sink.write_control_points = AsyncMock()
        sink.write_load_points = AsyncMock(side_effect=write_load_points)
        return sink


@pytest.mark.asyncio
async def test_device_chain_counts_each_load_once(
    mock_influxdb_client: MagicMock, day_prices: List[Any]
) -> None:
    """Test three devices sharing one load limit through the load store."""
    store = FakeLoadStore()
    schedules = {}
    for device in ("boiler", "floor", "radiators"):
        settings = make_settings(
            HEATING_MAX_LOAD="6",
            HEATING_DEVICE_LOAD="2",
            HEATING_RESET_LOADS="false",
            SCHEDULER_DEVICE_NAME=device,
        )
        scheduler = make_scheduler(settings, mock_influxdb_client)
        scheduler.price_feed.get_prices.return_value = day_prices
        scheduler.load_feed = store.load_feed(device)
        scheduler.schedule_sink = store.sink(device)

        schedules[device] = await scheduler.optimize_day(DAY)

    # Two devices at 2 each leave exactly room for the third
    assert schedules["radiators"] == schedules["boiler"] == schedules["floor"]
    on_slots = [timestamp for timestamp, control in schedules["boiler"] if control == 1]
    assert all(store.seeded["radiators"][timestamp] == 4.0 for timestamp in on_slots)
    assert set(store.seeded["radiators"].values()) == {0.0, 4.0}

    # Running the first device again does not count its own earlier load
    settings = make_settings(
        HEATING_MAX_LOAD="6",
        HEATING_DEVICE_LOAD="2",
        HEATING_RESET_LOADS="false",
        SCHEDULER_DEVICE_NAME="boiler",
    )
    scheduler = make_scheduler(settings, mock_influxdb_client)
    scheduler.price_feed.get_prices.return_value = day_prices
    scheduler.load_feed = store.load_feed("boiler")
    scheduler.schedule_sink = store.sink("boiler")

    assert await scheduler.optimize_day(DAY) == schedules["boiler"]
    assert all(store.seeded["boiler"][timestamp] == 4.0 for timestamp in on_slots)


@pytest.mark.asyncio
async def test_repair_failure_is_logged(
    scheduler: HeatingScheduler, day_prices: List[Any]
) -> None:
    """Test that a repair loop failure does not escape the daily run."""
    scheduler.price_feed.get_prices.return_value = day_prices

    with patch.object(
        HeatingPeriodOptimizer, "fix_gaps", side_effect=RepairLoopError("no progress")
    ):
        assert await scheduler.run_optimization(DAY) is None

    scheduler.schedule_sink.write_control_points.assert_not_called()


@pytest.mark.asyncio
async def test_start_stop(scheduler: HeatingScheduler) -> None:
    """Test running and stopping the daily loop."""
    shutdown_event = asyncio.Event()
    task = asyncio.create_task(scheduler.run(shutdown_event))
    await asyncio.sleep(0)

    assert scheduler.running is True

    shutdown_event.set()
    await task

    assert scheduler.running is False
    assert scheduler._daily_update_task is not None
    assert scheduler._daily_update_task.done()
