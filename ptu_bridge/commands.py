"""Command intake and routing for the pan-tilt session."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from .adapters.serial_link import LINK_ERRORS
from .config import PtuConfig
from .core import (
    COMMAND_KINDS,
    Axis,
    Clock,
    Command,
    DirectCommand,
    JogRequest,
    MotionCommand,
    ResetRequest,
    RotateRelative,
)
from .session import SessionManager

LOGGER = logging.getLogger(__name__)


class CommandValidationError(ValueError):
    """Raised when a command payload has the wrong shape."""

    def __init__(self, message: str, *, kind: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind


class RouteOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    THROTTLED = "throttled"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def parse_command(kind: str, raw_payload: bytes) -> Command:
    """Decode a JSON transport payload into a command value.

    Raises:
        CommandValidationError: If the kind is unknown or the payload is
            malformed.
    """
    if kind not in COMMAND_KINDS:
        raise CommandValidationError(f"Unknown command kind {kind!r}", kind=kind)

    if kind == ResetRequest.kind:
        return ResetRequest()

    try:
        data = json.loads(raw_payload.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise CommandValidationError("Payload is not valid UTF-8", kind=kind) from exc
    except json.JSONDecodeError as exc:
        raise CommandValidationError("Payload is not valid JSON", kind=kind) from exc

    if not isinstance(data, dict):
        raise CommandValidationError("Payload must be a JSON object", kind=kind)

    if kind == MotionCommand.kind:
        position = _number_list(data.get("position"), "position", kind)
        if position is None:
            raise CommandValidationError("Missing position array", kind=kind)
        try:
            velocity = _number_list(data.get("velocity"), "velocity", kind)
        except CommandValidationError:
            # The router substitutes the default velocity.
            velocity = None
        return MotionCommand(position=position, velocity=velocity)

    if kind == DirectCommand.kind:
        buffer = _decode_buffer(data.get("buffer"))
        length = data.get("length", len(buffer))
        if isinstance(length, bool) or not isinstance(length, int):
            raise CommandValidationError("length must be an integer", kind=kind)
        return DirectCommand(buffer=buffer, length=length)

    pan = _number(data.get("pan", 0), "pan", kind)
    tilt = _number(data.get("tilt", 0), "tilt", kind)
    if kind == JogRequest.kind:
        return JogRequest(pan=pan, tilt=tilt)
    return RotateRelative(pan=pan, tilt=tilt)


def _number(value: Any, name: str, kind: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise CommandValidationError(f"{name} must be a number", kind=kind)
    return float(value)


def _number_list(value: Any, name: str, kind: str) -> Optional[list[float]]:
    if value is None:
        return None
    if not isinstance(value, list):
        raise CommandValidationError(f"{name} must be an array", kind=kind)
    return [_number(item, name, kind) for item in value]


def _decode_buffer(value: Any) -> bytes:
    kind = DirectCommand.kind
    if value is None:
        return b""
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CommandValidationError(
                "buffer must be base64 encoded", kind=kind
            ) from exc
    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError) as exc:
            raise CommandValidationError(
                "buffer must contain byte values 0-255", kind=kind
            ) from exc
    raise CommandValidationError("buffer must be a string or array", kind=kind)


# ---------------------------------------------------------------------------
# Serialized intake
# ---------------------------------------------------------------------------


class CommandInbox:
    """Pending commands awaiting the session loop.

    Only the most recent unconsumed command of each kind is kept; commands
    are handed out in the order their latest version arrived. Must only be
    used from the event loop thread.
    """

    def __init__(self) -> None:
        self._pending: "OrderedDict[str, Command]" = OrderedDict()
        self._available = asyncio.Event()
        self._coalesced = 0

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def coalesced_count(self) -> int:
        return self._coalesced

    def put(self, command: Command) -> None:
        if self._pending.pop(command.kind, None) is not None:
            self._coalesced += 1
            LOGGER.debug("Replaced pending %s command with newer one", command.kind)
        self._pending[command.kind] = command
        self._available.set()

    def get_nowait(self) -> Optional[Command]:
        if not self._pending:
            self._available.clear()
            return None
        _, command = self._pending.popitem(last=False)
        if not self._pending:
            self._available.clear()
        return command

    async def get(self, timeout: Optional[float] = None) -> Optional[Command]:
        """Return the next command, or ``None`` if none arrives in time."""
        command = self.get_nowait()
        if command is not None:
            return command
        try:
            await asyncio.wait_for(self._available.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self.get_nowait()

    def clear(self) -> None:
        self._pending.clear()
        self._available.clear()


# ---------------------------------------------------------------------------
# Jog throttling
# ---------------------------------------------------------------------------


class JogRateLimiter:
    """Applies jog steps no more often than ``min_period`` seconds apart."""

    def __init__(
        self,
        session: SessionManager,
        *,
        step: float,
        min_period: float,
        monotonic: Optional[Clock] = None,
    ) -> None:
        self._session = session
        self._step = step
        self._min_period = min_period
        self._monotonic = monotonic or time.monotonic
        self._last_accepted = self._monotonic()

    @property
    def last_accepted(self) -> float:
        return self._last_accepted

    async def submit(self, request: JogRequest) -> RouteOutcome:
        protocol = self._session.protocol
        if protocol is None:
            LOGGER.debug("Dropping jog; not connected")
            return RouteOutcome.SKIPPED

        now = self._monotonic()
        elapsed = now - self._last_accepted
        if elapsed < self._min_period:
            LOGGER.debug(
                "Dropping jog; %.3fs since last accepted (minimum %.3fs)",
                elapsed,
                self._min_period,
            )
            return RouteOutcome.THROTTLED

        if abs(request.pan) != 1 and abs(request.tilt) != 1:
            LOGGER.warning(
                "Dropping malformed jog (pan=%s, tilt=%s); one axis must be +/-1",
                request.pan,
                request.tilt,
            )
            return RouteOutcome.REJECTED

        offsets = {
            Axis.PAN: request.pan * self._step,
            Axis.TILT: request.tilt * self._step,
        }
        # The throttle is time based: a failed apply still counts as a jog.
        self._last_accepted = now
        for axis, offset in offsets.items():
            if not await protocol.apply_offset(axis, offset):
                LOGGER.warning("Unit rejected %s jog offset %.4f", axis.value, offset)
        return RouteOutcome.APPLIED


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class CommandRouter:
    """Validates commands and forwards them to the connected unit."""

    def __init__(
        self,
        session: SessionManager,
        *,
        default_velocity: float,
        jog_limiter: JogRateLimiter,
    ) -> None:
        self._session = session
        self._default_velocity = default_velocity
        self._jog = jog_limiter
        self._velocity_fallback_warned = False
        self._handlers: Dict[str, Callable[[Any], Awaitable[RouteOutcome]]] = {
            MotionCommand.kind: self._handle_motion,
            JogRequest.kind: self._jog.submit,
            DirectCommand.kind: self._handle_direct,
            ResetRequest.kind: self._handle_reset,
            RotateRelative.kind: self._handle_rotate,
        }

    @classmethod
    def from_config(
        cls,
        session: SessionManager,
        config: PtuConfig,
        *,
        monotonic: Optional[Clock] = None,
    ) -> "CommandRouter":
        limiter = JogRateLimiter(
            session,
            step=config.control.jog_step,
            min_period=config.control.jog_min_period_seconds,
            monotonic=monotonic,
        )
        return cls(
            session,
            default_velocity=config.device.default_velocity,
            jog_limiter=limiter,
        )

    @property
    def jog_limiter(self) -> JogRateLimiter:
        return self._jog

    async def dispatch(self, command: Command) -> RouteOutcome:
        handler = self._handlers.get(command.kind)
        if handler is None:
            LOGGER.warning("No handler for command kind %s", command.kind)
            return RouteOutcome.REJECTED

        if not self._session.is_connected:
            LOGGER.debug("Dropping %s command; not connected", command.kind)
            return RouteOutcome.SKIPPED

        try:
            return await handler(command)
        except LINK_ERRORS as exc:
            self._session.handle_io_error(exc, f"{command.kind} command")
            return RouteOutcome.FAILED

    async def _handle_motion(self, command: MotionCommand) -> RouteOutcome:
        if len(command.position) != 2:
            LOGGER.warning(
                "Dropping motion command with %d positions; expected 2",
                len(command.position),
            )
            return RouteOutcome.REJECTED

        speeds = self._resolve_speeds(command.velocity)
        protocol = self._protocol()
        pan, tilt = command.position
        await self._apply(protocol.set_position, Axis.PAN, pan, "position")
        await self._apply(protocol.set_position, Axis.TILT, tilt, "position")
        await self._apply(protocol.set_speed, Axis.PAN, speeds[0], "speed")
        await self._apply(protocol.set_speed, Axis.TILT, speeds[1], "speed")
        return RouteOutcome.APPLIED

    def _resolve_speeds(self, velocity: Optional[Sequence[float]]) -> tuple[float, float]:
        if velocity is not None and len(velocity) == 2:
            return float(velocity[0]), float(velocity[1])

        if not self._velocity_fallback_warned:
            LOGGER.warning(
                "Motion command without two velocities; using default %.3f rad/s",
                self._default_velocity,
            )
            self._velocity_fallback_warned = True
        else:
            LOGGER.debug("Using default velocity %.3f rad/s", self._default_velocity)
        return self._default_velocity, self._default_velocity

    async def _handle_direct(self, command: DirectCommand) -> RouteOutcome:
        if command.length < 0 or command.length > len(command.buffer):
            LOGGER.warning(
                "Dropping direct command: declared length %d, buffer holds %d bytes",
                command.length,
                len(command.buffer),
            )
            return RouteOutcome.REJECTED

        if not await self._protocol().send_raw(command.buffer, command.length):
            LOGGER.warning("Unit rejected direct command of %d bytes", command.length)
        return RouteOutcome.APPLIED

    async def _handle_reset(self, command: ResetRequest) -> RouteOutcome:
        LOGGER.info("Resetting pan-tilt unit")
        if not await self._protocol().home():
            LOGGER.warning("Unit reported failure while homing")
        return RouteOutcome.APPLIED

    async def _handle_rotate(self, command: RotateRelative) -> RouteOutcome:
        protocol = self._protocol()
        for axis, offset in ((Axis.PAN, command.pan), (Axis.TILT, command.tilt)):
            if not await protocol.apply_offset(axis, offset):
                LOGGER.warning("Failed to rotate %s by %.4f rad", axis.value, offset)
        return RouteOutcome.APPLIED

    def _protocol(self):
        protocol = self._session.protocol
        assert protocol is not None
        return protocol

    async def _apply(self, operation, axis: Axis, value: float, label: str) -> None:
        if not await operation(axis, float(value)):
            LOGGER.warning("Unit rejected %s %s %.4f", axis.value, label, value)
