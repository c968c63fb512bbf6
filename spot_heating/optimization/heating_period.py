"""Heat curve interpolation and heating periods."""

from datetime import datetime, timedelta
from typing import List, Sequence, Tuple

from spot_heating.optimization.exceptions import ValidationError

# (outdoor temperature, heating hours per 24h)
HeatCurvePoint = Tuple[float, float]

DAY = timedelta(hours=24)


def validate_heat_curve(curve: Sequence[HeatCurvePoint]) -> List[HeatCurvePoint]:
    """Check a heat curve and return it as a list of float pairs.

    The curve needs at least two points with strictly ascending temperatures,
    strictly descending hours and hours within 0..24.
    """
    points = [(float(temperature), float(hours)) for temperature, hours in curve]
    if len(points) < 2:
        raise ValidationError(f"Heat curve needs at least 2 points, got {len(points)}")

    for temperature, hours in points:
        if not 0 <= hours <= 24:
            raise ValidationError(f"Heat curve hours must be within 0..24, got {hours}")

    for (t1, h1), (t2, h2) in zip(points, points[1:]):
        if t2 <= t1:
            raise ValidationError("Heat curve temperatures must be strictly ascending")
        if h2 >= h1:
            raise ValidationError("Heat curve hours must be strictly descending")

    return points


def calculate_heating_hours(
    curve: Sequence[HeatCurvePoint], temperature: float, multiplier: float = 1.0
) -> float:
    """Interpolate the heating hours for an average temperature.

    Args:
        curve: Validated heat curve
        temperature: Average outdoor temperature
        multiplier: Scale for periods shorter or longer than 24h

    Returns:
        Heating hours, clamped to the curve end points outside its range
    """
    if temperature <= curve[0][0]:
        return curve[0][1] * multiplier
    if temperature >= curve[-1][0]:
        return curve[-1][1] * multiplier

    for (t1, h1), (t2, h2) in zip(curve, curve[1:]):
        if t1 <= temperature <= t2:
            hours = h1 + (temperature - t1) * (h2 - h1) / (t2 - t1)
            return hours * multiplier

    # Unreachable for a validated curve
    raise ValidationError(f"Temperature {temperature} outside heat curve")


class HeatingPeriod:
    """A slice of the optimization window with its heating need."""

    def __init__(
        self,
        start: datetime,
        end: datetime,
        avg_temp: float,
        heat_curve: Sequence[HeatCurvePoint],
        flex_default: float = 0.0,
        flex_threshold: float = 0.0,
    ) -> None:
        """Initialize the period and derive its heating need from the curve."""
        if end <= start:
            raise ValidationError("Heating period end must be after its start")

        self.start = start
        self.end = end
        self.avg_temp = float(avg_temp)
        self.flex_default = flex_default
        self.flex_threshold = flex_threshold

        multiplier = self.duration / DAY
        self.heating_need = calculate_heating_hours(heat_curve, self.avg_temp, multiplier)
        self.flexibility = self._default_flexibility()

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def non_flex_need(self) -> float:
        """Hours that must be heated inside this period."""
        return (1 - self.flexibility) * self.heating_need

    @property
    def flex_need(self) -> float:
        """Hours that may be heated anywhere in the window."""
        return self.flexibility * self.heating_need

    def set_heating_need(self, hours: float) -> None:
        """Overwrite the need and re-apply the default flexibility rule."""
        self.heating_need = hours
        self.flexibility = self._default_flexibility()

    def set_flexibility(self, flexibility: float) -> None:
        if not 0 <= flexibility <= 1:
            raise ValidationError(f"Flexibility must be within 0..1, got {flexibility}")
        self.flexibility = flexibility

    def _default_flexibility(self) -> float:
        if self.heating_need < self.flex_threshold:
            return 1.0
        return self.flex_default

    def __repr__(self) -> str:
        return (
            f"HeatingPeriod({self.start.isoformat()}: temperature {self.avg_temp:.2f}, "
            f"heating hours {self.heating_need:.2f}, flexibility {self.flexibility})"
        )
