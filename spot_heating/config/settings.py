"""Configuration settings for the spot price heating optimizer using Pydantic."""

from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ModuleConfig(BaseModel):
    """Configuration for which modules are enabled."""

    heating_scheduler_enabled: bool = True


class InfluxDBConfig(BaseModel):
    """InfluxDB configuration."""

    url: str = "http://influxdb:8086"
    token: str = Field(min_length=1)
    org: str = "home"

    # Buckets
    bucket_prices: str = "ote_prices"
    bucket_weather: str = "weather_forecast"
    bucket_control: str = "heating_control"

    # Measurements
    price_measurement: str = "electricity_prices"
    price_field: str = "price"
    forecast_measurement: str = "weather_forecast"
    forecast_field: str = "temperature"
    control_measurement: str = "heating_control"
    load_measurement: str = "heating_load"

    # Write options
    batch_size: int = Field(default=5000, ge=1)
    flush_interval: int = Field(default=1000, ge=100)  # milliseconds


class HeatingConfig(BaseModel):
    """Heating optimization parameters."""

    number_of_periods: int = Field(default=3, gt=0)

    # (temperature, heating hours per 24h) pairs, coldest first
    heat_curve: List[Tuple[float, float]] = Field(
        default_factory=lambda: [(-25.0, 24.0), (13.0, 0.0)], min_length=2
    )

    # Optional repair steps
    drop_threshold: Optional[float] = Field(default=None, ge=0)  # degrees
    short_threshold: Optional[float] = Field(default=None, ge=0)  # hours

    flex_default: float = Field(default=0.0, ge=0, le=1)
    flex_threshold: float = Field(default=0.0, ge=0)  # hours
    gap_threshold: float = Field(default=0.0, ge=0)  # hours
    shift_price_limit: float = Field(default=0.0, ge=0)
    period_overlap: float = Field(default=1.0, ge=0)  # hours

    # Load balancing
    max_load: Optional[float] = Field(default=None, gt=0)
    device_load: Optional[float] = Field(default=None, gt=0)
    reset_loads: bool = True

    @field_validator("heat_curve", mode="before")
    @classmethod
    def parse_heat_curve(cls, v: Any) -> Any:
        """Parse a heat curve from a "-25:24,13:0" string or a list."""
        if isinstance(v, str):
            points = []
            for pair in v.split(","):
                temperature, hours = pair.split(":")
                points.append((float(temperature.strip()), float(hours.strip())))
            return points
        return v

    @field_validator("heat_curve")
    @classmethod
    def validate_heat_curve_order(cls, v: List[Tuple[float, float]]) -> List[Tuple[float, float]]:
        """Ensure ascending temperatures with descending hours."""
        for (t1, h1), (t2, h2) in zip(v, v[1:]):
            if t2 <= t1:
                raise ValueError("heat_curve temperatures must be strictly ascending")
            if h2 >= h1:
                raise ValueError("heat_curve hours must be strictly descending")
        for _, hours in v:
            if not 0 <= hours <= 24:
                raise ValueError("heat_curve hours must be within 0..24")
        return v

    @model_validator(mode="after")
    def validate_load_model(self) -> "HeatingConfig":
        """Ensure max_load and device_load are configured together."""
        if (self.max_load is None) != (self.device_load is None):
            raise ValueError("max_load and device_load must be set together")
        return self


class SchedulerConfig(BaseModel):
    """Heating scheduler configuration."""

    timezone: str = "Europe/Prague"

    # Daily optimization time, after the day-ahead prices are published
    update_hour: int = Field(default=15, ge=0, le=23)
    update_minute: int = Field(default=0, ge=0, le=59)

    # Clone the previous schedule when the prices are missing
    clone_on_missing_prices: bool = True

    # Minimum forecast points per hour of a heating period
    forecast_points_per_hour: float = Field(default=1.0, gt=0)

    # Tag identifying the controlled device in InfluxDB
    device_name: str = "heating"

    simulation_mode: bool = False


class Settings(BaseSettings):
    """Main settings class using Pydantic Settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # General settings
    log_level: str = Field(
        default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$"
    )
    log_timezone: str = Field(
        default="Europe/Prague", description="Timezone for log timestamps"
    )

    # Module configuration
    heating_scheduler_enabled: bool = True

    influxdb_url: str = Field(default="http://influxdb:8086", alias="INFLUXDB_HOST")
    influxdb_token: str
    influxdb_org: str = "home"
    influxdb_bucket_prices: str = "ote_prices"
    influxdb_bucket_weather: str = "weather_forecast"
    influxdb_bucket_control: str = "heating_control"

    # Heating optimization
    heating_number_of_periods: int = Field(default=3, gt=0)
    heating_heat_curve: str = "-25:24,13:0"
    heating_drop_threshold: Optional[float] = None
    heating_short_threshold: Optional[float] = None
    heating_flex_default: float = 0.0
    heating_flex_threshold: float = 0.0
    heating_gap_threshold: float = 0.0
    heating_shift_price_limit: float = 0.0
    heating_period_overlap: float = 1.0
    heating_max_load: Optional[float] = None
    heating_device_load: Optional[float] = None
    heating_reset_loads: bool = True

    # Scheduling
    scheduler_timezone: str = Field(
        default="Europe/Prague", description="Timezone of the planned days and update time"
    )
    scheduler_update_hour: int = Field(default=15, ge=0, le=23)
    scheduler_update_minute: int = Field(default=0, ge=0, le=59)
    scheduler_clone_on_missing_prices: bool = True
    scheduler_forecast_points_per_hour: float = Field(default=1.0, gt=0)
    scheduler_device_name: str = "heating"
    scheduler_simulation_mode: bool = False

    @property
    def modules(self) -> ModuleConfig:
        """Get module configuration."""
        return ModuleConfig(heating_scheduler_enabled=self.heating_scheduler_enabled)

    @property
    def influxdb(self) -> InfluxDBConfig:
        """Get InfluxDB configuration."""
        return InfluxDBConfig(
            url=self.influxdb_url,
            token=self.influxdb_token,
            org=self.influxdb_org,
            bucket_prices=self.influxdb_bucket_prices,
            bucket_weather=self.influxdb_bucket_weather,
            bucket_control=self.influxdb_bucket_control,
        )

    @property
    def heating(self) -> HeatingConfig:
        """Get heating optimization configuration."""
        return HeatingConfig(
            number_of_periods=self.heating_number_of_periods,
            heat_curve=self.heating_heat_curve,  # type: ignore[arg-type]
            drop_threshold=self.heating_drop_threshold,
            short_threshold=self.heating_short_threshold,
            flex_default=self.heating_flex_default,
            flex_threshold=self.heating_flex_threshold,
            gap_threshold=self.heating_gap_threshold,
            shift_price_limit=self.heating_shift_price_limit,
            period_overlap=self.heating_period_overlap,
            max_load=self.heating_max_load,
            device_load=self.heating_device_load,
            reset_loads=self.heating_reset_loads,
        )

    @property
    def scheduler(self) -> SchedulerConfig:
        """Get heating scheduler configuration."""
        return SchedulerConfig(
            timezone=self.scheduler_timezone,
            update_hour=self.scheduler_update_hour,
            update_minute=self.scheduler_update_minute,
            clone_on_missing_prices=self.scheduler_clone_on_missing_prices,
            forecast_points_per_hour=self.scheduler_forecast_points_per_hour,
            device_name=self.scheduler_device_name,
            simulation_mode=self.scheduler_simulation_mode,
        )
