"""Exceptions raised by the slot optimizer and the heating schedule repair."""


class OptimizationError(Exception):
    """Base class for failures that abort an optimization run."""


class ValidationError(OptimizationError):
    """Invalid request: duration, direction, price series or heat curve."""


class InsufficientDataError(ValidationError):
    """Not enough price or forecast data to cover the requested window."""


class AllocationError(OptimizationError):
    """No feasible contiguous run exists inside the requested window."""


class RepairLoopError(RuntimeError):
    """A schedule repair loop did not settle within its iteration cap.

    Every shift removes a gap or a short run, so this is an internal
    invariant violation rather than bad input.
    """
