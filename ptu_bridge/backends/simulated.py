"""In-memory pan-tilt driver for running the bridge without hardware.

The simulator moves instantly to every commanded target. Raw commands are
written to the link so they can be observed on a pyserial ``loop://`` port.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..adapters.serial_link import DeviceLinkError
from ..core import Axis, AxisCalibration, ControlMode

LOGGER = logging.getLogger(__name__)

DEFAULT_CALIBRATION: Dict[Axis, AxisCalibration] = {
    Axis.PAN: AxisCalibration(
        min_position=math.radians(-159.0),
        max_position=math.radians(159.0),
        min_speed=0.0,
        max_speed=math.radians(120.0),
        resolution=math.radians(0.0129),
    ),
    Axis.TILT: AxisCalibration(
        min_position=math.radians(-47.0),
        max_position=math.radians(31.0),
        min_speed=0.0,
        max_speed=math.radians(120.0),
        resolution=math.radians(0.0129),
    ),
}


@dataclass(slots=True)
class _AxisModel:
    calibration: AxisCalibration
    position: float = 0.0
    speed: float = 0.0


class SimulatedPtu:
    """Implements :class:`~ptu_bridge.core.DeviceProtocol` in memory."""

    def __init__(
        self, link: Any, *, calibration: Optional[Dict[Axis, AxisCalibration]] = None
    ) -> None:
        self._link = link
        source = calibration or DEFAULT_CALIBRATION
        self._axes = {axis: _AxisModel(source[axis]) for axis in Axis}
        self._limits_enabled = True
        self._initialized = False
        self.mode = ControlMode.POSITION

    def _ensure_open(self) -> None:
        if not getattr(self._link, "is_open", True):
            raise DeviceLinkError("serial link is closed")

    async def initialize(self) -> bool:
        self._ensure_open()
        for model in self._axes.values():
            model.position = 0.0
            model.speed = 0.0
        self._initialized = True
        return True

    async def disable_limits(self) -> bool:
        self._ensure_open()
        self._limits_enabled = False
        return True

    async def get_min(self, axis: Axis) -> float:
        return self._axes[axis].calibration.min_position

    async def get_max(self, axis: Axis) -> float:
        return self._axes[axis].calibration.max_position

    async def get_min_speed(self, axis: Axis) -> float:
        return self._axes[axis].calibration.min_speed

    async def get_max_speed(self, axis: Axis) -> float:
        return self._axes[axis].calibration.max_speed

    async def get_resolution(self, axis: Axis) -> float:
        return self._axes[axis].calibration.resolution

    async def set_position(self, axis: Axis, position: float) -> bool:
        self._ensure_open()
        model = self._axes[axis]
        limits = model.calibration
        if self._limits_enabled and not (
            limits.min_position <= position <= limits.max_position
        ):
            LOGGER.debug("Simulated %s target %.4f outside limits", axis.value, position)
            return False
        model.position = position
        return True

    async def set_speed(self, axis: Axis, speed: float) -> bool:
        self._ensure_open()
        model = self._axes[axis]
        if not (model.calibration.min_speed <= abs(speed) <= model.calibration.max_speed):
            return False
        model.speed = speed
        return True

    async def apply_offset(self, axis: Axis, offset: float) -> bool:
        return await self.set_position(axis, self._axes[axis].position + offset)

    async def home(self) -> bool:
        self._ensure_open()
        for model in self._axes.values():
            model.position = 0.0
        return True

    async def send_raw(self, buffer: bytes, length: int) -> bool:
        self._ensure_open()
        write = getattr(self._link, "write", None)
        if write is not None:
            write(bytes(buffer[:length]))
        return True

    async def get_position(self, axis: Axis) -> float:
        self._ensure_open()
        return self._axes[axis].position

    async def get_speed(self, axis: Axis) -> float:
        self._ensure_open()
        return self._axes[axis].speed

    async def get_mode(self) -> ControlMode:
        return self.mode
