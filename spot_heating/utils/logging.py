"""Logging utilities with local timezone timestamps and service prefixes."""

import datetime
import logging
import zoneinfo
from typing import Optional

import colorlog

LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class TimezoneAwareFormatter(colorlog.ColoredFormatter):
    """Colored formatter that renders timestamps in a configured timezone."""

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        timezone: str = "Europe/Prague",
        service_name: Optional[str] = None,
        **kwargs,
    ) -> None:
        """Initialize the timezone-aware formatter.

        Args:
            fmt: Log format string
            datefmt: Date format string
            timezone: Timezone name (e.g., 'Europe/Prague')
            service_name: Service name for prefix (e.g., 'HEATING')
            **kwargs: Additional arguments passed to ColoredFormatter
        """
        if service_name and fmt:
            fmt = fmt.replace("%(name)s", f"[{service_name.upper()}] %(name)s")
        elif service_name:
            fmt = (
                f"%(log_color)s%(asctime)s - [{service_name.upper()}] "
                f"%(name)s - %(levelname)s - %(message)s"
            )

        super().__init__(fmt, datefmt, **kwargs)
        self.timezone = zoneinfo.ZoneInfo(timezone)

    def formatTime(
        self, record: logging.LogRecord, datefmt: Optional[str] = None
    ) -> str:
        """Format time in the configured timezone."""
        utc_time = datetime.datetime.fromtimestamp(record.created, tz=datetime.timezone.utc)
        local_time = utc_time.astimezone(self.timezone)
        return local_time.strftime(datefmt or DATE_FORMAT)


def setup_root_logger(timezone: str = "Europe/Prague", log_level: str = "INFO") -> logging.Logger:
    """Attach a colored handler to the root logger.

    Core optimizer classes log through module loggers that propagate here.

    Args:
        timezone: Timezone for timestamps
        log_level: Logging level

    Returns:
        The root logger
    """
    logger = logging.getLogger()
    handler = colorlog.StreamHandler()
    handler.setFormatter(
        TimezoneAwareFormatter(
            fmt="%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt=DATE_FORMAT,
            timezone=timezone,
            log_colors=LOG_COLORS,
        )
    )
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, log_level.upper()))
    return logger


def configure_module_logger(
    module_name: str,
    service_name: str,
    timezone: str = "Europe/Prague",
    log_level: str = "INFO",
) -> logging.Logger:
    """Configure a logger for a service module with a service prefix.

    Args:
        module_name: Full module name (e.g., 'spot_heating.modules.base.HeatingScheduler')
        service_name: Service name for prefix (e.g., 'HEATING')
        timezone: Timezone for timestamps
        log_level: Logging level

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(module_name)

    handler = colorlog.StreamHandler()
    formatter = TimezoneAwareFormatter(
        fmt=(
            f"%(log_color)s%(asctime)s - [{service_name.upper()}] "
            f"%(name)s - %(levelname)s - %(message)s"
        ),
        datefmt=DATE_FORMAT,
        timezone=timezone,
        log_colors=LOG_COLORS,
    )
    handler.setFormatter(formatter)

    # Replace handlers so repeated configuration does not duplicate output
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Avoid duplicate messages through the root logger
    logger.propagate = False

    return logger
