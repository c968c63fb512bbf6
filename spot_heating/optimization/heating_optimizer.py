"""Heating schedule optimizer.

Turns a temperature forecast into heating hours per period, allocates them
on the price series and then repairs the schedule: short heating runs are
merged into their neighbours and short gaps between runs are closed.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from spot_heating.config.settings import HeatingConfig
from spot_heating.optimization.allocator import ON, SlotAllocator
from spot_heating.optimization.exceptions import RepairLoopError, ValidationError
from spot_heating.optimization.heating_gap import LEFT, RIGHT, HeatingGap, find_gaps
from spot_heating.optimization.heating_period import HeatingPeriod, validate_heat_curve
from spot_heating.optimization.slots import ControlPoint

# One look-back period before the window, two look-ahead periods after it
LOOK_BACK = 1
LOOK_AHEAD = 2


class HeatingPeriodOptimizer:
    """Builds and repairs a heating schedule for ``[start, end)``."""

    def __init__(
        self,
        allocator: SlotAllocator,
        config: HeatingConfig,
        start: datetime,
        end: datetime,
    ) -> None:
        """Initialize the optimizer.

        Args:
            allocator: Allocator holding the price series for the window
            config: Heating parameters
            start: Start of the optimization window
            end: End of the optimization window (exclusive)
        """
        if end <= start:
            raise ValidationError("Optimization window end must be after its start")

        self.logger = logging.getLogger(f"{__name__}.HeatingPeriodOptimizer")
        self.allocator = allocator
        self.config = config
        self.start = start
        self.end = end
        self.heat_curve = validate_heat_curve(config.heat_curve)
        self.periods: List[HeatingPeriod] = []

    @property
    def number_of_periods(self) -> int:
        return self.config.number_of_periods

    @property
    def period_duration(self) -> timedelta:
        return (self.end - self.start) / self.number_of_periods

    @property
    def real_periods(self) -> List[HeatingPeriod]:
        """Periods inside the window, without look-back and look-ahead."""
        return self.periods[LOOK_BACK : LOOK_BACK + self.number_of_periods]

    def period_windows(self) -> List[Tuple[datetime, datetime]]:
        """Start and end of every period, look-back and look-ahead included."""
        duration = self.period_duration
        windows = []
        for i in range(-LOOK_BACK, self.number_of_periods + LOOK_AHEAD):
            period_start = self.start + duration * i
            windows.append((period_start, period_start + duration))
        return windows

    def optimize(self, temperatures: Sequence[float]) -> List[ControlPoint]:
        """Run the full optimization.

        Args:
            temperatures: Average temperature for each entry of ``period_windows()``

        Returns:
            The finished schedule as ``(timestamp, control)`` pairs
        """
        self.logger.info(
            f"Optimizing heating for {self.start.isoformat()} - {self.end.isoformat()} "
            f"in {self.number_of_periods} periods"
        )
        self.calculate_heating_needs(temperatures)
        self.adjust_for_temperature_drops()
        self.allocate_non_flex_needs()
        self.allocate_flex_needs()
        self.allocator.block_all_remaining()
        self.merge_short_periods()
        self.fix_gaps()
        return self.allocator.get_control_points()

    def calculate_heating_needs(self, temperatures: Sequence[float]) -> List[HeatingPeriod]:
        """Create the heating periods from their average temperatures."""
        windows = self.period_windows()
        if len(temperatures) != len(windows):
            raise ValidationError(
                f"Expected {len(windows)} period temperatures, got {len(temperatures)}"
            )

        self.periods = [
            HeatingPeriod(
                period_start,
                period_end,
                temperature,
                self.heat_curve,
                self.config.flex_default,
                self.config.flex_threshold,
            )
            for (period_start, period_end), temperature in zip(windows, temperatures)
        ]
        for period in self.periods:
            self.logger.debug(f"{period}")
        return self.periods

    def adjust_for_temperature_drops(self) -> None:
        """Pre-heat before significant temperature drops.

        If the next period is much colder, the flexibility of this and the
        next period is removed. If the two following periods both get much
        colder, this period also takes over the next period's need, the next
        takes over the one after it and all three lose their flexibility.
        """
        threshold = self.config.drop_threshold
        if threshold is None:
            self.logger.info("Temperature drop handling not active")
            return

        drop_detected = False
        for i in range(self.number_of_periods + 1):
            current, following, after = self.periods[i : i + 3]
            delta1 = following.avg_temp - current.avg_temp
            delta2 = after.avg_temp - following.avg_temp
            self.logger.debug(f"Period {i}: delta1 {delta1:.2f}, delta2 {delta2:.2f}")

            if delta1 < -threshold and delta2 < -threshold:
                self.logger.info(
                    f"Big temperature drop after {current.start.isoformat()}, "
                    "adjusting need and flexibility of the next three periods"
                )
                current.set_heating_need(following.heating_need)
                following.set_heating_need(after.heating_need)
                for period in (current, following, after):
                    period.set_flexibility(0)
                drop_detected = True
            elif delta1 < -threshold:
                self.logger.info(
                    f"Temperature drop after {current.start.isoformat()}, "
                    "removing flexibility of the next two periods"
                )
                current.set_flexibility(0)
                following.set_flexibility(0)
                drop_detected = True

        if drop_detected:
            for period in self.periods:
                self.logger.debug(f"After drop compensation: {period}")

    def allocate_non_flex_needs(self) -> None:
        """Allocate each period's fixed need close to the period itself."""
        overlap = timedelta(hours=self.config.period_overlap)
        for n, period in enumerate(self.real_periods, start=1):
            window_start = max(period.start - overlap, self.start) if n > 1 else period.start
            window_end = (
                min(period.end + overlap, self.end) if n < self.number_of_periods else period.end
            )
            self.allocator.allocate_scattered_slots(
                ON, period.non_flex_need, window_start, window_end
            )

    def allocate_flex_needs(self) -> None:
        """Allocate the pooled flexible need anywhere in the window."""
        flex_hours = sum(period.flex_need for period in self.real_periods)
        self.logger.debug(f"Allocating {flex_hours:.2f} flexible hours")
        self.allocator.allocate_scattered_slots(ON, flex_hours, self.start, self.end)

    def find_gaps(self) -> List[HeatingGap]:
        series = self.allocator.require_series()
        return find_gaps(series.slots, series.resolution)

    def merge_short_periods(self) -> None:
        """Merge heating runs shorter than the short threshold into a neighbour."""
        if self.config.short_threshold is None:
            self.logger.info("Short period merging not active")
            return

        short = timedelta(minutes=self.config.short_threshold * 60)
        for _ in range(self._iteration_cap()):
            if not self._merge_first_short_run(short):
                return
        raise RepairLoopError("Merging short heating periods did not converge")

    def _merge_first_short_run(self, short: timedelta) -> bool:
        gaps = self.find_gaps()
        for i, gap in enumerate(gaps):
            duration = gap.previous_heating_duration
            if duration is None or duration >= short:
                continue

            self.logger.info(
                f"Short {duration} heating at "
                f"{gap.previous_heating_start.timestamp.isoformat()}"  # type: ignore[union-attr]
            )
            previous_gap = gaps[i - 1] if i > 0 else None
            direction = self.get_short_period_shift_direction(gap, previous_gap)
            if direction is None:
                self.logger.info("Short heating period can't be merged in either direction")
                continue

            if direction == LEFT:
                self.shift_heating(previous_gap, LEFT)  # type: ignore[arg-type]
            else:
                self.shift_heating(gap, RIGHT)
            return True
        return False

    def fix_gaps(self) -> None:
        """Close short gaps between heating runs."""
        if not self.config.gap_threshold or not self.config.shift_price_limit:
            self.logger.info("Gap handling not active")
            return

        threshold = timedelta(minutes=round(60 * self.config.gap_threshold))
        for _ in range(self._iteration_cap()):
            if not self._fix_first_gap(threshold):
                return
        raise RepairLoopError("Fixing short gaps did not converge")

    def _fix_first_gap(self, threshold: timedelta) -> bool:
        for gap in self.find_gaps():
            direction = gap.get_shift_direction(
                threshold, self.config.shift_price_limit, self.start
            )
            if direction is None:
                continue
            self.logger.info(f"Closing {gap}, shifting heating {direction}")
            self.shift_heating(gap, direction)
            return True
        return False

    def get_short_period_shift_direction(
        self, current_gap: HeatingGap, previous_gap: Optional[HeatingGap]
    ) -> Optional[str]:
        """Direction to merge the short run between two gaps, or None.

        The run is bounded by ``previous_gap`` on the left and ``current_gap``
        on the right. The price limit is checked against the start price of
        the short run for both directions.
        """
        left_price: Optional[float] = None
        if previous_gap is not None and previous_gap.previous_heating_end is not None:
            left_price = previous_gap.gap_start_price
        right_price = current_gap.gap_end_price

        if left_price is None and right_price is None:
            self.logger.debug("No heating periods in either direction")
            return None

        if right_price is None:
            direction, shift_price = LEFT, left_price
        elif left_price is None:
            direction, shift_price = RIGHT, right_price
        elif left_price < right_price:
            direction, shift_price = LEFT, left_price
        else:
            direction, shift_price = RIGHT, right_price

        baseline = current_gap.previous_heating_start_price or 0.0
        if shift_price > baseline + self.config.shift_price_limit:  # type: ignore[operator]
            self.logger.info(
                f"Unable to move short heating period {direction}, "
                f"restricted by shift price limit {self.config.shift_price_limit}"
            )
            return None
        return direction

    def shift_heating(self, gap: HeatingGap, direction: str) -> None:
        if direction == LEFT:
            self.shift_heating_left(gap)
        elif direction == RIGHT:
            self.shift_heating_right(gap)
        else:
            raise ValidationError(f"Unknown shift direction: {direction!r}")

    def shift_heating_left(self, gap: HeatingGap) -> None:
        """Slide the tail of the next heating run back into the gap."""
        if gap.next_heating_end is None:
            raise ValidationError(f"{gap} has no heating run after it")

        resolution = self.allocator.resolution
        self.allocator.set_control_for_period(gap.gap_start_time, gap.gap_duration, 1)
        self.allocator.set_control_for_period(
            gap.next_heating_end.timestamp - gap.gap_duration + resolution,
            gap.gap_duration,
            0,
        )

    def shift_heating_right(self, gap: HeatingGap) -> None:
        """Slide the head of the previous heating run forward into the gap."""
        if gap.previous_heating_start is None:
            raise ValidationError(f"{gap} has no heating run before it")

        self.allocator.set_control_for_period(gap.gap_start_time, gap.gap_duration, 1)
        self.allocator.set_control_for_period(
            gap.previous_heating_start.timestamp, gap.gap_duration, 0
        )

    def _iteration_cap(self) -> int:
        return 2 * len(self.allocator.require_series())
