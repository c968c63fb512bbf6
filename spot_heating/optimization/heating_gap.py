"""OFF runs between heating runs and the rules for closing them."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from spot_heating.optimization.slots import Slot

logger = logging.getLogger(__name__)

LEFT = "left"
RIGHT = "right"


class HeatingGap:
    """A maximal run of OFF slots with its neighbouring heating runs."""

    def __init__(self, start: Slot, resolution: timedelta) -> None:
        """Open a gap at its first OFF slot."""
        self.resolution = resolution
        self.gap_start = start
        self.gap_end: Optional[Slot] = None
        self.gap_duration = resolution

        self.previous_heating_start: Optional[Slot] = None
        self.previous_heating_end: Optional[Slot] = None
        self.next_heating_start: Optional[Slot] = None
        self.next_heating_end: Optional[Slot] = None

    def increase_duration(self) -> None:
        self.gap_duration += self.resolution

    @property
    def gap_start_time(self) -> datetime:
        return self.gap_start.timestamp

    @property
    def gap_start_price(self) -> float:
        return self.gap_start.price

    @property
    def gap_end_price(self) -> Optional[float]:
        """Price of the last OFF slot, None when no heating follows."""
        return self.gap_end.price if self.gap_end else None

    @property
    def previous_heating_start_price(self) -> Optional[float]:
        return self.previous_heating_start.price if self.previous_heating_start else None

    @property
    def next_heating_end_price(self) -> Optional[float]:
        return self.next_heating_end.price if self.next_heating_end else None

    @property
    def previous_heating_duration(self) -> Optional[timedelta]:
        """Length of the heating run before the gap."""
        if self.previous_heating_start is None or self.previous_heating_end is None:
            return None
        return (
            self.previous_heating_end.timestamp
            - self.previous_heating_start.timestamp
            + self.resolution
        )

    @property
    def next_heating_duration(self) -> Optional[timedelta]:
        """Length of the heating run after the gap."""
        if self.next_heating_start is None or self.next_heating_end is None:
            return None
        return self.next_heating_end.timestamp - self.next_heating_start.timestamp + self.resolution

    def shift_left_allowed(self, threshold: timedelta, price_limit: float) -> bool:
        """Whether the next heating run may slide back into this gap."""
        if self.gap_duration > threshold:
            logger.debug(f"{self}: shift left limited by duration threshold")
            return False
        if self.next_heating_end is None:
            logger.debug(f"{self}: shift left not possible, no heating after the gap")
            return False
        if self.gap_start_price - self.next_heating_end.price > price_limit:
            logger.debug(f"{self}: shift left limited by price limit")
            return False
        return True

    def shift_right_allowed(
        self, threshold: timedelta, price_limit: float, window_start: datetime
    ) -> bool:
        """Whether the previous heating run may slide forward into this gap."""
        if self.gap_duration > threshold:
            logger.debug(f"{self}: shift right limited by duration threshold")
            return False
        if self.previous_heating_start is None:
            logger.debug(f"{self}: shift right not possible, no heating before the gap")
            return False
        if self.previous_heating_start.timestamp == window_start:
            logger.debug(f"{self}: shift right not allowed for the first heating of the window")
            return False
        if self.gap_start_price - self.previous_heating_start.price > price_limit:
            logger.debug(f"{self}: shift right limited by price limit")
            return False
        return True

    def get_shift_direction(
        self, threshold: timedelta, price_limit: float, window_start: datetime
    ) -> Optional[str]:
        """Pick the side to close this gap from, or None if neither is allowed."""
        left = self.shift_left_allowed(threshold, price_limit)
        right = self.shift_right_allowed(threshold, price_limit, window_start)

        if left and right:
            # Both are set when both shifts are allowed
            if self.gap_start_price <= self.next_heating_end.price:  # type: ignore[union-attr]
                return LEFT
            return RIGHT
        if left:
            return LEFT
        if right:
            return RIGHT
        return None

    def __repr__(self) -> str:
        return f"HeatingGap({self.gap_duration} starting at {self.gap_start_time.isoformat()})"


def find_gaps(slots: Sequence[Slot], resolution: timedelta) -> List[HeatingGap]:
    """Scan a fully allocated schedule and return its OFF gaps in order."""
    gaps: List[HeatingGap] = []
    in_gap = False
    in_heating = False
    heating_start: Optional[Slot] = None

    for i, slot in enumerate(slots):
        if slot.control == 0:
            in_heating = False
            if in_gap:
                gaps[-1].increase_duration()
                continue

            gap = HeatingGap(slot, resolution)
            gap.previous_heating_start = heating_start
            if i > 0:
                gap.previous_heating_end = slots[i - 1]
            if gaps:
                gaps[-1].next_heating_end = slots[i - 1]
            gaps.append(gap)
            in_gap = True

        elif slot.control == 1:
            in_gap = False
            if not in_heating:
                heating_start = slot
                if gaps:
                    gaps[-1].next_heating_start = slot
                    if i > 0:
                        gaps[-1].gap_end = slots[i - 1]
            in_heating = True

    return gaps
