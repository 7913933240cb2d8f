"""Protocol definitions for pan-tilt drivers and callbacks."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Protocol, runtime_checkable

from .models import Axis, ControlMode, DiagnosticsSummary, StateSnapshot


Clock = Callable[[], float]

SnapshotSink = Callable[[StateSnapshot], Awaitable[None] | None]
DiagnosticsSink = Callable[[DiagnosticsSummary], Awaitable[None] | None]
CalibrationSink = Callable[[Dict[str, float]], Awaitable[None] | None]


@runtime_checkable
class DeviceProtocol(Protocol):
    """Semantic operations offered by a pan-tilt unit driver.

    A driver wraps an already opened serial link and performs the byte-level
    request/response exchange. Angles are radians, speeds radians per second.
    Command methods return ``False`` when the unit rejects the request. Link
    failures are raised (``serial.SerialException``, ``OSError`` or
    ``DeviceLinkError``).
    """

    async def initialize(self) -> bool:
        """Bring the unit into a known state and cache its limits."""
        ...

    async def disable_limits(self) -> bool:
        """Turn off the unit's soft position limits."""
        ...

    async def get_min(self, axis: Axis) -> float: ...

    async def get_max(self, axis: Axis) -> float: ...

    async def get_min_speed(self, axis: Axis) -> float: ...

    async def get_max_speed(self, axis: Axis) -> float: ...

    async def get_resolution(self, axis: Axis) -> float: ...

    async def set_position(self, axis: Axis, position: float) -> bool: ...

    async def set_speed(self, axis: Axis, speed: float) -> bool: ...

    async def apply_offset(self, axis: Axis, offset: float) -> bool:
        """Move the axis by ``offset`` relative to its current position."""
        ...

    async def home(self) -> bool:
        """Reset the unit and return both axes to their home position."""
        ...

    async def send_raw(self, buffer: bytes, length: int) -> bool:
        """Write the first ``length`` bytes of ``buffer`` to the unit verbatim."""
        ...

    async def get_position(self, axis: Axis) -> float: ...

    async def get_speed(self, axis: Axis) -> float: ...

    async def get_mode(self) -> ControlMode: ...


ProtocolFactory = Callable[[Any], DeviceProtocol]
