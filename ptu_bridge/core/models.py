"""Domain models for pan-tilt commands and telemetry."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Dict, Optional, Sequence, Union


class Axis(str, Enum):
    PAN = "pan"
    TILT = "tilt"


class ControlMode(str, Enum):
    POSITION = "position"
    VELOCITY = "velocity"


class HealthLevel(str, Enum):
    NOMINAL = "nominal"
    DEGRADED = "degraded"


@dataclass(slots=True, frozen=True)
class AxisCalibration:
    """Limits reported by the unit for a single axis, in radians."""

    min_position: float
    max_position: float
    min_speed: float
    max_speed: float
    resolution: float

    def as_params(self, axis: Axis) -> Dict[str, float]:
        name = axis.value
        return {
            f"min_{name}": self.min_position,
            f"max_{name}": self.max_position,
            f"min_{name}_speed": self.min_speed,
            f"max_{name}_speed": self.max_speed,
            f"{name}_step": self.resolution,
        }


@dataclass(slots=True)
class MotionCommand:
    kind: ClassVar[str] = "motion"

    position: Sequence[float]
    velocity: Optional[Sequence[float]] = None


@dataclass(slots=True)
class JogRequest:
    kind: ClassVar[str] = "jog"

    pan: float = 0.0
    tilt: float = 0.0


@dataclass(slots=True)
class DirectCommand:
    kind: ClassVar[str] = "direct"

    buffer: bytes
    length: int


@dataclass(slots=True)
class ResetRequest:
    kind: ClassVar[str] = "reset"


@dataclass(slots=True)
class RotateRelative:
    kind: ClassVar[str] = "rotate"

    pan: float = 0.0
    tilt: float = 0.0


Command = Union[MotionCommand, JogRequest, DirectCommand, ResetRequest, RotateRelative]

COMMAND_KINDS: tuple[str, ...] = (
    MotionCommand.kind,
    JogRequest.kind,
    DirectCommand.kind,
    ResetRequest.kind,
    RotateRelative.kind,
)


@dataclass(slots=True, frozen=True)
class JointState:
    name: str
    position: float
    velocity: float

    def as_dict(self) -> Dict[str, object]:
        return {"name": self.name, "position": self.position, "velocity": self.velocity}


@dataclass(slots=True, frozen=True)
class StateSnapshot:
    """Position and velocity of both axes captured during one poll tick."""

    pan: JointState
    tilt: JointState
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def joint(self, axis: Axis) -> JointState:
        return self.pan if axis is Axis.PAN else self.tilt

    def as_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "pan": self.pan.as_dict(),
            "tilt": self.tilt.as_dict(),
        }


@dataclass(slots=True, frozen=True)
class DiagnosticsSummary:
    level: HealthLevel
    mode: ControlMode
    message: str = ""

    def as_dict(self) -> Dict[str, object]:
        return {
            "level": self.level.value,
            "mode": self.mode.value,
            "message": self.message,
        }
