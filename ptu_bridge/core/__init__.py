"""Core primitives for ptu-bridge."""

from .models import (
    COMMAND_KINDS,
    Axis,
    AxisCalibration,
    Command,
    ControlMode,
    DiagnosticsSummary,
    DirectCommand,
    HealthLevel,
    JogRequest,
    JointState,
    MotionCommand,
    ResetRequest,
    RotateRelative,
    StateSnapshot,
)
from .protocols import (
    CalibrationSink,
    Clock,
    DeviceProtocol,
    DiagnosticsSink,
    ProtocolFactory,
    SnapshotSink,
)
from .utils import ProtocolLoadError, invoke_callback, load_factory

__all__ = [
    "COMMAND_KINDS",
    "Axis",
    "AxisCalibration",
    "CalibrationSink",
    "Clock",
    "Command",
    "ControlMode",
    "DeviceProtocol",
    "DiagnosticsSink",
    "DiagnosticsSummary",
    "DirectCommand",
    "HealthLevel",
    "JogRequest",
    "JointState",
    "MotionCommand",
    "ProtocolFactory",
    "ProtocolLoadError",
    "ResetRequest",
    "RotateRelative",
    "SnapshotSink",
    "StateSnapshot",
    "invoke_callback",
    "load_factory",
]
