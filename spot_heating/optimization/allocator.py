"""Generic price-driven slot allocation.

The allocator owns one slot series and fills in control values:
cheapest slots ON, most expensive slots OFF, either scattered or as a
single contiguous run, optionally limited by a load model and a time window.

A failed request raises and is remembered: every later call on the same
series raises the same error until a fresh series is set.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from spot_heating.optimization.exceptions import (
    AllocationError,
    OptimizationError,
    ValidationError,
)
from spot_heating.optimization.slots import ControlPoint, PricePoint, Slot, SlotSeries

ON = "on"
OFF = "off"
DIRECTIONS = {ON: 1, OFF: 0}


class SlotAllocator:
    """Allocates ON/OFF control values on a price slot series."""

    def __init__(
        self,
        max_load: Optional[float] = None,
        device_load: Optional[float] = None,
    ) -> None:
        """Initialize the allocator.

        Args:
            max_load: Total load limit per slot, enables load balancing
            device_load: Load added by this device when switched ON
        """
        if (max_load is None) != (device_load is None):
            raise ValidationError("max_load and device_load must be set together")

        self.logger = logging.getLogger(f"{__name__}.SlotAllocator")
        self.max_load = max_load
        self.device_load = device_load
        self.series: Optional[SlotSeries] = None
        self._failure: Optional[OptimizationError] = None

    def set_prices(self, points: Sequence[PricePoint]) -> SlotSeries:
        """Normalize raw price points and start a fresh allocation."""
        self._failure = None
        self.series = None
        try:
            series = SlotSeries.from_prices(points)
        except OptimizationError as e:
            raise self._fail(e)
        return self.set_series(series)

    def set_series(self, series: SlotSeries) -> SlotSeries:
        """Start a fresh allocation on an existing slot series."""
        self._failure = None
        self.series = series
        self.logger.info(
            f"Price window {series.start.isoformat()} - {series.end.isoformat()} "
            f"({len(series)} slots)"
        )
        return series

    def seed_loads(self, loads: Dict[datetime, float]) -> None:
        """Copy externally measured loads onto the matching slots."""
        series = self.require_series()
        for slot in series:
            slot.load = float(loads.get(slot.timestamp, 0.0))

    @property
    def resolution(self) -> timedelta:
        """Resolution of the current series."""
        return self.require_series().resolution

    @property
    def load_balancing(self) -> bool:
        """Whether the load model is active."""
        return self.max_load is not None

    def round_duration(self, hours: float) -> int:
        """Round a duration in hours up to a whole number of slots."""
        seconds = hours * 3600
        slot_seconds = self.resolution.total_seconds()
        return int(math.ceil(round(seconds / slot_seconds, 9)))

    def allocate_scattered_slots(
        self,
        direction: str,
        hours: Optional[float],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        """Allocate individual slots in price order.

        ON picks the cheapest unallocated slots, OFF the most expensive ones.
        Equal prices keep chronological order. Slots that would exceed the
        load limit are skipped for ON requests.

        Args:
            direction: 'on' or 'off'
            hours: Requested duration in hours, rounded up to the resolution
            start: Optional start of the candidate window
            end: Optional end of the candidate window (exclusive)

        Returns:
            Number of slots allocated
        """
        control, count = self._validate_request(direction, hours)
        if count == 0:
            return 0

        series = self.require_series()
        candidates = [i for i in series.window(start, end) if not series[i].allocated]
        candidates = sorted(candidates, key=lambda i: series[i].price, reverse=control == 0)

        allocated = 0
        for i in candidates:
            if allocated >= count:
                break
            slot = series[i]
            if control == 1 and self._overloaded(slot):
                self.logger.debug(f"Skipping {slot.timestamp.isoformat()}, load limit reached")
                continue
            slot.control = control
            allocated += 1

        if allocated < count:
            self.logger.warning(
                f"Requested {count} {direction.upper()} slots but only {allocated} "
                f"could be allocated between {self._describe_window(start, end)}"
            )
        else:
            self.logger.debug(f"Allocated {allocated} {direction.upper()} slots")
        return allocated

    def allocate_contiguous_period(
        self,
        direction: str,
        hours: Optional[float],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Allocate the cheapest (ON) or most expensive (OFF) contiguous run.

        Returns:
            Start of the allocated run, None for a zero duration

        Raises:
            AllocationError: No run of the requested length fits the window
        """
        control, count = self._validate_request(direction, hours)
        if count == 0:
            return None

        series = self.require_series()
        best = self._best_run(control, count, start, end)
        if best is None:
            raise self._fail(
                AllocationError(
                    f"No free {count * self.resolution} run for {direction.upper()} "
                    f"between {self._describe_window(start, end)}"
                )
            )

        run_start = series[best].timestamp
        self.set_control_for_period(run_start, count * self.resolution, control)
        self.logger.debug(f"Allocated {direction.upper()} run starting at {run_start.isoformat()}")
        return run_start

    def set_control_for_period(
        self, start: datetime, duration: timedelta, value: int
    ) -> int:
        """Set ``control`` on every slot in ``[start, start + duration)``.

        An unknown ``start`` is only logged, repair steps may point just
        outside the series.

        Returns:
            Number of slots written
        """
        series = self.require_series()
        if value not in (0, 1):
            raise self._fail(ValidationError(f"Control value must be 0 or 1, got {value}"))

        index = series.index_of(start)
        if index is None:
            self.logger.warning(
                f"{start.isoformat()} not found in the price series, control not set"
            )
            return 0

        end = start + duration
        written = 0
        while index < len(series) and series[index].timestamp < end:
            series[index].control = value
            index += 1
            written += 1
        return written

    def fill_remaining(
        self,
        direction: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        """Assign one control value to every unallocated slot in the window."""
        control = self._direction_value(direction)
        series = self.require_series()

        filled = 0
        for i in series.window(start, end):
            if not series[i].allocated:
                series[i].control = control
                filled += 1

        self.logger.debug(f"Filled {filled} remaining slots {direction.upper()}")
        return filled

    def allocate_individual_hours(
        self,
        direction: str,
        n: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[datetime]:
        """Allocate ``n`` separate whole-hour blocks, best price first."""
        control, _ = self._validate_request(direction, n)
        count = self.round_duration(1)
        series = self.require_series()

        starts: List[datetime] = []
        for _ in range(int(n)):
            best = self._best_run(control, count, start, end)
            if best is None:
                self.logger.warning(
                    f"Only {len(starts)} of {n} individual hours could be allocated"
                )
                break
            run_start = series[best].timestamp
            self.set_control_for_period(run_start, count * self.resolution, control)
            starts.append(run_start)
        return starts

    def allow_in_pieces(
        self, hours: float, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> int:
        """Switch ON the cheapest individual slots."""
        return self.allocate_scattered_slots(ON, hours, start, end)

    def block_in_pieces(
        self, hours: float, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> int:
        """Switch OFF the most expensive individual slots."""
        return self.allocate_scattered_slots(OFF, hours, start, end)

    def allow_period(
        self, hours: float, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Optional[datetime]:
        """Switch ON the cheapest contiguous run."""
        return self.allocate_contiguous_period(ON, hours, start, end)

    def block_period(
        self, hours: float, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Optional[datetime]:
        """Switch OFF the most expensive contiguous run."""
        return self.allocate_contiguous_period(OFF, hours, start, end)

    def allow_individual_hours(self, n: int) -> List[datetime]:
        """Switch ON the ``n`` cheapest separate hours."""
        return self.allocate_individual_hours(ON, n)

    def block_individual_hours(self, n: int) -> List[datetime]:
        """Switch OFF the ``n`` most expensive separate hours."""
        return self.allocate_individual_hours(OFF, n)

    def allow_all_remaining(self) -> int:
        """Switch ON everything not yet allocated."""
        return self.fill_remaining(ON)

    def block_all_remaining(self) -> int:
        """Switch OFF everything not yet allocated."""
        return self.fill_remaining(OFF)

    def get_control_points(self) -> List[ControlPoint]:
        """Export the finished schedule as ``(timestamp, control)`` pairs."""
        series = self.require_series()
        missing = series.unallocated()
        if missing:
            raise self._fail(
                ValidationError(
                    f"Schedule incomplete, {len(missing)} slots without control value "
                    f"starting at {missing[0].timestamp.isoformat()}"
                )
            )
        return [(slot.timestamp, int(slot.control)) for slot in series]  # type: ignore[arg-type]

    def get_load_points(self) -> List[Tuple[datetime, float]]:
        """Export the total load per slot including this device when ON."""
        series = self.require_series()
        device_load = self.device_load or 0.0
        return [
            (slot.timestamp, slot.load + (device_load if slot.control == 1 else 0.0))
            for slot in series
        ]

    def get_device_load_points(self) -> List[Tuple[datetime, float]]:
        """Export only this device's share of the load per slot."""
        series = self.require_series()
        device_load = self.device_load or 0.0
        return [
            (slot.timestamp, device_load if slot.control == 1 else 0.0) for slot in series
        ]

    def _best_run(
        self,
        control: int,
        count: int,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> Optional[int]:
        """Index of the first slot of the best free run, or None."""
        series = self.require_series()
        indices = series.window(start, end)

        best: Optional[int] = None
        best_sum = 0.0
        for offset in range(len(indices) - count + 1):
            run = [series[i] for i in indices[offset : offset + count]]
            if any(slot.allocated for slot in run):
                continue
            if control == 1 and any(self._overloaded(slot) for slot in run):
                continue

            price_sum = sum(slot.price for slot in run)
            if best is None or (price_sum < best_sum if control == 1 else price_sum > best_sum):
                best = indices[offset]
                best_sum = price_sum
        return best

    def _overloaded(self, slot: Slot) -> bool:
        """Whether switching this slot ON would exceed the load limit."""
        if self.max_load is None or self.device_load is None:
            return False
        return slot.load + self.device_load > self.max_load

    def _validate_request(self, direction: str, hours: Optional[float]) -> Tuple[int, int]:
        """Validate an allocation request and return (control value, slot count)."""
        control = self._direction_value(direction)
        series = self.require_series()

        if hours is None or hours < 0:
            raise self._fail(ValidationError(f"Duration must be a non-negative number, got {hours}"))

        count = self.round_duration(hours)
        if count > len(series):
            raise self._fail(
                ValidationError(
                    f"{hours} hours requested but there are prices only for {series.duration}"
                )
            )
        return control, count

    def _direction_value(self, direction: str) -> int:
        """Map a direction name to its control value."""
        self.require_series()
        if direction not in DIRECTIONS:
            raise self._fail(ValidationError(f"Unknown direction: {direction!r}"))
        return DIRECTIONS[direction]

    def require_series(self) -> SlotSeries:
        """Return the series, re-raising an earlier failure first."""
        if self._failure is not None:
            raise self._failure
        if self.series is None:
            raise self._fail(ValidationError("No price series set"))
        return self.series

    def _fail(self, error: OptimizationError) -> OptimizationError:
        """Remember a failure so later calls on this series report it again."""
        self._failure = error
        self.logger.error(f"Optimization aborted: {error}")
        return error

    @staticmethod
    def _describe_window(start: Optional[datetime], end: Optional[datetime]) -> str:
        first = start.isoformat() if start else "series start"
        last = end.isoformat() if end else "series end"
        return f"{first} and {last}"
