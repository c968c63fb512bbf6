"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytz

from spot_heating.config.settings import Settings
from spot_heating.optimization.allocator import SlotAllocator
from spot_heating.optimization.slots import PricePoint, Slot, SlotSeries

START = datetime(2024, 1, 15, 0, 0, tzinfo=pytz.UTC)


@pytest.fixture
def mock_settings() -> Settings:
    """Create settings for testing."""
    with patch.dict(
        "os.environ",
        {
            "INFLUXDB_TOKEN": "test-token",
            "INFLUXDB_ORG": "test-org",
        },
    ):
        return Settings(influxdb_token="test-token")


@pytest.fixture
def mock_influxdb_client(mock_settings: Settings) -> MagicMock:
    """Create a mock InfluxDB client."""
    client = MagicMock()
    client.settings = mock_settings
    client.write_point = AsyncMock()
    client.flush = AsyncMock()
    client.query = AsyncMock(return_value=[])

    return client


@pytest.fixture
def sample_energy_prices() -> List[Dict[str, Any]]:
    """Sample hourly energy prices for testing."""
    return [
        {"hour": 0, "price": 2.5},
        {"hour": 1, "price": 2.3},
        {"hour": 2, "price": 2.1},
        {"hour": 3, "price": 1.9},
        {"hour": 4, "price": 1.8},
        {"hour": 5, "price": 2.0},
        {"hour": 6, "price": 2.4},
        {"hour": 7, "price": 3.2},
        {"hour": 8, "price": 3.5},
        {"hour": 9, "price": 3.1},
        {"hour": 10, "price": 2.8},
        {"hour": 11, "price": 2.6},
        {"hour": 12, "price": 2.4},
        {"hour": 13, "price": 2.5},
        {"hour": 14, "price": 2.7},
        {"hour": 15, "price": 2.9},
        {"hour": 16, "price": 3.3},
        {"hour": 17, "price": 3.8},
        {"hour": 18, "price": 4.2},
        {"hour": 19, "price": 3.9},
        {"hour": 20, "price": 3.4},
        {"hour": 21, "price": 3.0},
        {"hour": 22, "price": 2.7},
        {"hour": 23, "price": 2.5},
    ]


@pytest.fixture
def make_prices() -> Callable[..., List[PricePoint]]:
    """Build raw price points with a fixed spacing."""

    def _make(
        prices: Sequence[float], minutes: int = 15, start: datetime = START
    ) -> List[PricePoint]:
        step = timedelta(minutes=minutes)
        return [(start + i * step, float(price)) for i, price in enumerate(prices)]

    return _make


@pytest.fixture
def make_slots() -> Callable[..., List[Slot]]:
    """Build 15 minute slots from a control string such as "1100"."""

    def _make(
        controls: str, prices: Optional[Sequence[float]] = None, start: datetime = START
    ) -> List[Slot]:
        prices = prices or [1.0] * len(controls)
        return [
            Slot(
                timestamp=start + i * timedelta(minutes=15),
                price=float(price),
                control=int(control),
            )
            for i, (control, price) in enumerate(zip(controls, prices))
        ]

    return _make


@pytest.fixture
def make_allocator(
    make_slots: Callable[..., List[Slot]]
) -> Callable[..., SlotAllocator]:
    """Build an allocator holding a fully allocated schedule."""

    def _make(controls: str, prices: Optional[Sequence[float]] = None) -> SlotAllocator:
        allocator = SlotAllocator()
        allocator.set_series(SlotSeries(make_slots(controls, prices)))
        return allocator

    return _make
