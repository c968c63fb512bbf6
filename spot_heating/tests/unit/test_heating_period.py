"""Test heat curve interpolation and heating periods."""

from datetime import datetime, timedelta

import pytest
import pytz

from spot_heating.optimization.exceptions import ValidationError
from spot_heating.optimization.heating_period import (
    HeatingPeriod,
    calculate_heating_hours,
    validate_heat_curve,
)

START = datetime(2024, 1, 15, tzinfo=pytz.UTC)

LINEAR_CURVE = [(-25, 24), (13, 0)]
BENT_CURVE = [(-25, 24), (2, 7), (13, 2)]
COMPLEX_CURVE = [(-25, 24), (-10, 18), (0, 12), (10, 6), (20, 0)]


class TestHeatCurve:
    """Test heating hour interpolation."""

    def test_linear_curve(self) -> None:
        """Test a two point curve."""
        assert calculate_heating_hours(LINEAR_CURVE, 1.52) == pytest.approx(7.25, abs=0.01)

    @pytest.mark.parametrize(
        "temperature, hours",
        [(-10, 14.5555), (8, 4.2727), (-30, 24), (20, 2)],
    )
    def test_bent_curve(self, temperature: float, hours: float) -> None:
        """Test interpolation between and outside three points."""
        assert calculate_heating_hours(BENT_CURVE, temperature) == pytest.approx(hours, abs=1e-3)

    @pytest.mark.parametrize("temperature, hours", [(-20, 22), (5, 9), (20, 0), (-25, 24)])
    def test_complex_curve(self, temperature: float, hours: float) -> None:
        """Test a five point curve including its end points."""
        assert calculate_heating_hours(COMPLEX_CURVE, temperature) == pytest.approx(hours)

    def test_multiplier(self) -> None:
        """Test scaling for a 6 hour period."""
        assert calculate_heating_hours(BENT_CURVE, -15, 0.25) == pytest.approx(
            17.7037 * 0.25, abs=1e-3
        )

    @pytest.mark.parametrize(
        "curve",
        [
            [(-25, 24)],
            [(-25, 24), (13, 24)],
            [(13, 0), (-25, 24)],
            [(-25, 30), (13, 0)],
        ],
    )
    def test_invalid_curve(self, curve) -> None:
        """Test curves that are too short, flat, unordered or out of range."""
        with pytest.raises(ValidationError):
            validate_heat_curve(curve)


class TestHeatingPeriod:
    """Test the HeatingPeriod class."""

    def test_full_day(self) -> None:
        """Test the need for a 24 hour period."""
        period = HeatingPeriod(START, START + timedelta(hours=24), 1.52, LINEAR_CURVE)

        assert period.heating_need == pytest.approx(7.25, abs=0.01)
        assert period.flexibility == 0.0
        assert period.non_flex_need == period.heating_need

    def test_flexible_split(self) -> None:
        """Test the flexible and fixed parts of a 6 hour period."""
        period = HeatingPeriod(
            START, START + timedelta(hours=6), 2.33, LINEAR_CURVE, flex_default=0.6, flex_threshold=1.0
        )

        assert period.heating_need == pytest.approx(1.68, abs=0.01)
        assert period.non_flex_need == pytest.approx(0.67, abs=0.01)
        assert period.flex_need == pytest.approx(1.01, abs=0.01)

    def test_small_need_is_fully_flexible(self) -> None:
        """Test that a need below the threshold gets flexibility 1."""
        period = HeatingPeriod(
            START, START + timedelta(hours=6), 2.33, LINEAR_CURVE, flex_default=0.6, flex_threshold=2.0
        )

        assert period.flexibility == 1.0
        assert period.non_flex_need == 0

    def test_set_heating_need_reapplies_flexibility(self) -> None:
        """Test that a new need re-evaluates the threshold."""
        period = HeatingPeriod(
            START, START + timedelta(hours=6), 2.33, LINEAR_CURVE, flex_default=0.6, flex_threshold=2.0
        )

        period.set_heating_need(5.0)
        assert period.flexibility == 0.6

        period.set_heating_need(1.0)
        assert period.flexibility == 1.0

    def test_set_flexibility(self) -> None:
        """Test overriding and validating the flexibility."""
        period = HeatingPeriod(START, START + timedelta(hours=6), 0, LINEAR_CURVE, flex_default=0.5)

        period.set_flexibility(0)
        assert period.flex_need == 0

        with pytest.raises(ValidationError):
            period.set_flexibility(1.5)

    def test_empty_period(self) -> None:
        """Test that the end must follow the start."""
        with pytest.raises(ValidationError):
            HeatingPeriod(START, START, 0, LINEAR_CURVE)
