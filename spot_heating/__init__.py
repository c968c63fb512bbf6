"""Spot price driven heating scheduler."""

__version__ = "1.0.0"
