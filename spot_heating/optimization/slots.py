"""Price slot data model and normalization to the canonical 15 minute resolution."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from spot_heating.optimization.exceptions import InsufficientDataError, ValidationError

logger = logging.getLogger(__name__)

RESOLUTION = timedelta(minutes=15)

# Input resolution in minutes -> canonical slots per input point
SLOTS_PER_POINT: Dict[int, int] = {15: 1, 30: 2, 60: 4}

PricePoint = Tuple[datetime, float]
ControlPoint = Tuple[datetime, int]


@dataclass
class Slot:
    """One canonical time slot with its price, seeded load and control value."""

    timestamp: datetime
    price: float
    load: float = 0.0
    control: Optional[int] = None

    @property
    def allocated(self) -> bool:
        """Whether a control value has been assigned."""
        return self.control is not None


def detect_resolution(points: Sequence[PricePoint]) -> timedelta:
    """Infer the resolution of raw price points from their spacing.

    Args:
        points: Price points sorted by timestamp

    Returns:
        Spacing of the points

    Raises:
        InsufficientDataError: Fewer than two points were given
        ValidationError: Spacing is uneven or not 15, 30 or 60 minutes
    """
    if len(points) < 2:
        raise InsufficientDataError(
            f"At least 2 price points are needed, got {len(points)}"
        )

    step = points[1][0] - points[0][0]
    minutes = step.total_seconds() / 60
    if minutes not in SLOTS_PER_POINT:
        raise ValidationError(f"Unsupported price resolution: {minutes:g} minutes")

    for previous, current in zip(points, points[1:]):
        if current[0] - previous[0] != step:
            raise ValidationError(
                f"Price points are not evenly spaced at {current[0].isoformat()}"
            )

    return step


def normalize_prices(points: Sequence[PricePoint]) -> List[Slot]:
    """Expand raw price points into canonical 15 minute slots.

    Each point is duplicated into 1, 2 or 4 slots carrying the same price.
    """
    ordered = sorted(points, key=lambda point: point[0])
    step = detect_resolution(ordered)
    per_point = SLOTS_PER_POINT[int(step.total_seconds() // 60)]

    slots: List[Slot] = []
    for timestamp, price in ordered:
        for n in range(per_point):
            slots.append(Slot(timestamp=timestamp + n * RESOLUTION, price=float(price)))

    if per_point > 1:
        logger.debug(f"Normalized {len(ordered)} price points into {len(slots)} slots")
    return slots


class SlotSeries:
    """Contiguous, sorted and unique slots covering ``[start, end)``."""

    def __init__(self, slots: List[Slot], resolution: timedelta = RESOLUTION) -> None:
        """Initialize the series and verify contiguity."""
        if not slots:
            raise InsufficientDataError("Slot series cannot be empty")

        self.resolution = resolution
        self.slots = sorted(slots, key=lambda slot: slot.timestamp)
        self._index: Dict[datetime, int] = {}

        for i, slot in enumerate(self.slots):
            if slot.timestamp in self._index:
                raise ValidationError(f"Duplicate slot at {slot.timestamp.isoformat()}")
            if i > 0 and slot.timestamp - self.slots[i - 1].timestamp != resolution:
                raise ValidationError(f"Slot series has a hole before {slot.timestamp.isoformat()}")
            self._index[slot.timestamp] = i

    @classmethod
    def from_prices(cls, points: Sequence[PricePoint]) -> "SlotSeries":
        """Build a canonical series from raw price points."""
        return cls(normalize_prices(points))

    @property
    def start(self) -> datetime:
        """Start of the first slot."""
        return self.slots[0].timestamp

    @property
    def end(self) -> datetime:
        """End of the last slot."""
        return self.slots[-1].timestamp + self.resolution

    @property
    def duration(self) -> timedelta:
        """Length of the covered window."""
        return self.end - self.start

    def __len__(self) -> int:
        return len(self.slots)

    def __iter__(self) -> Iterator[Slot]:
        return iter(self.slots)

    def __getitem__(self, index: int) -> Slot:
        return self.slots[index]

    def index_of(self, timestamp: datetime) -> Optional[int]:
        """Position of the slot starting at ``timestamp``, if any."""
        return self._index.get(timestamp)

    def window(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> List[int]:
        """Indices of the slots starting inside ``[start, end)``."""
        return [
            i
            for i, slot in enumerate(self.slots)
            if (start is None or slot.timestamp >= start)
            and (end is None or slot.timestamp < end)
        ]

    def unallocated(self) -> List[Slot]:
        """Slots still missing a control value."""
        return [slot for slot in self.slots if not slot.allocated]


def clone_for_next_day(points: Sequence[ControlPoint], days: int = 1) -> List[ControlPoint]:
    """Move a control schedule forward by whole days.

    Used when the prices for the next day are not yet published.
    """
    logger.info(f"Cloning {len(points)} control points {days} day(s) forward")
    return [(timestamp + timedelta(days=days), control) for timestamp, control in points]
