"""Pan-tilt driver implementations."""

from .simulated import SimulatedPtu

__all__ = ["SimulatedPtu"]
