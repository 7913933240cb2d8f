"""Lifecycle management for the serial session with a pan-tilt unit.

The :class:`SessionManager` owns at most one :class:`DeviceSession`. The
presence of that session *is* the connected state: once the link is closed the
session object is dropped, so no component can keep using a stale driver.

State transitions::

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTING -> FAULTED -> DISCONNECTED      (initialisation failed)
    CONNECTING -> FAULTED -> CONNECTED         (initialisation failed, dry run)
    CONNECTED -> DISCONNECTED                  (disconnect or link error)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .adapters.serial_link import (
    LINK_ERRORS,
    LinkOpener,
    LinkTimeouts,
    close_link,
    open_serial_link,
)
from .core import (
    Axis,
    AxisCalibration,
    CalibrationSink,
    DeviceProtocol,
    ProtocolFactory,
    invoke_callback,
)

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    FAULTED = "faulted"
    CONNECTED = "connected"


@dataclass(slots=True)
class DeviceSession:
    """One live connection to the unit."""

    link: Any
    protocol: DeviceProtocol
    port: str
    state: SessionState = SessionState.CONNECTING
    dry_run: bool = False
    calibration: Dict[Axis, AxisCalibration] = field(default_factory=dict)
    link_faults: int = 0


@dataclass(slots=True, frozen=True)
class ConnectResult:
    connected: bool
    error: Optional[str] = None
    dry_run: bool = False

    def __bool__(self) -> bool:
        return self.connected


class SessionManager:
    """Opens, initialises and tears down the session with the unit."""

    def __init__(
        self,
        *,
        protocol_factory: ProtocolFactory,
        link_opener: LinkOpener = open_serial_link,
        on_calibration: Optional[CalibrationSink] = None,
    ) -> None:
        self._protocol_factory = protocol_factory
        self._link_opener = link_opener
        self._on_calibration = on_calibration
        self._session: Optional[DeviceSession] = None
        self._state = SessionState.DISCONNECTED

    @property
    def state(self) -> SessionState:
        if self._session is not None:
            return self._session.state
        return self._state

    @property
    def is_connected(self) -> bool:
        session = self._session
        return session is not None and session.state is SessionState.CONNECTED

    @property
    def session(self) -> Optional[DeviceSession]:
        return self._session

    @property
    def protocol(self) -> Optional[DeviceProtocol]:
        if not self.is_connected:
            return None
        assert self._session is not None
        return self._session.protocol

    @property
    def calibration(self) -> Dict[Axis, AxisCalibration]:
        if self._session is None:
            return {}
        return dict(self._session.calibration)

    async def connect(
        self,
        port: str,
        baud: int,
        timeouts: Optional[LinkTimeouts] = None,
        *,
        limits_enabled: bool = True,
        dry_run: bool = False,
    ) -> ConnectResult:
        """Open the link, initialise the unit and publish its calibration.

        Calling this while connected closes the existing session first.
        """
        if self._session is not None:
            LOGGER.info("Reconnecting; closing existing session first")
            self.disconnect()

        self._state = SessionState.CONNECTING
        LOGGER.info("Attempting to connect to pan-tilt unit on %s", port)

        try:
            link = await self._link_opener(port, baud, timeouts or LinkTimeouts())
        except LINK_ERRORS as exc:
            LOGGER.error("Unable to open port %s: %s", port, exc)
            self._state = SessionState.DISCONNECTED
            return ConnectResult(False, error=f"unable to open port {port}: {exc}")

        LOGGER.info("Serial port %s opened, now initializing", port)

        try:
            protocol = self._protocol_factory(link)
        except Exception as exc:
            LOGGER.error("Failed to build device driver: %s", exc, exc_info=True)
            close_link(link)
            self._state = SessionState.DISCONNECTED
            return ConnectResult(False, error=f"driver construction failed: {exc}")

        session = DeviceSession(link=link, protocol=protocol, port=port)
        self._session = session

        if await self._initialize(protocol):
            LOGGER.info("Pan-tilt unit initialized on %s", port)
        else:
            session.state = SessionState.FAULTED
            if not dry_run:
                LOGGER.error("Could not initialize pan-tilt unit on %s", port)
                self.disconnect()
                return ConnectResult(False, error=f"initialization failed on {port}")
            LOGGER.warning(
                "Could not initialize pan-tilt unit on %s; continuing in dry-run mode",
                port,
            )
            session.dry_run = True

        session.state = SessionState.CONNECTED

        if not limits_enabled and not await self._disable_limits(session):
            self.disconnect()
            return ConnectResult(False, error="link lost while disabling limits")

        if not await self._read_calibration(session):
            self.disconnect()
            return ConnectResult(False, error="link lost while reading calibration")

        params: Dict[str, float] = {}
        for axis, calibration in session.calibration.items():
            params.update(calibration.as_params(axis))
        if params:
            await invoke_callback(self._on_calibration, params)

        return ConnectResult(True, dry_run=session.dry_run)

    def disconnect(self) -> None:
        """Close the link and drop the session. Safe to call repeatedly."""
        session = self._session
        self._session = None
        self._state = SessionState.DISCONNECTED
        if session is None:
            return
        close_link(session.link)
        LOGGER.info("Disconnected from pan-tilt unit on %s", session.port)

    def handle_io_error(self, exc: BaseException, operation: str) -> bool:
        """Tear down the session after a fatal link error.

        A dry-run session survives link errors so the bridge can be exercised
        without a working unit. Returns whether the session is still up.
        """
        session = self._session
        if session is not None and session.dry_run:
            session.link_faults += 1
            log = LOGGER.warning if session.link_faults == 1 else LOGGER.debug
            log(
                "Dry run: ignoring serial link failure during %s (%d so far): %s",
                operation,
                session.link_faults,
                exc,
            )
            return True

        LOGGER.error("Serial link failure during %s: %s", operation, exc)
        self.disconnect()
        return False

    async def _initialize(self, protocol: DeviceProtocol) -> bool:
        try:
            return bool(await protocol.initialize())
        except LINK_ERRORS as exc:
            LOGGER.error("Link error during initialization: %s", exc)
            return False

    async def _disable_limits(self, session: DeviceSession) -> bool:
        try:
            disabled = await session.protocol.disable_limits()
        except LINK_ERRORS as exc:
            if session.dry_run:
                LOGGER.warning("Dry run: could not disable soft limits: %s", exc)
                return True
            LOGGER.error("Link error while disabling soft limits: %s", exc)
            return False
        if disabled:
            LOGGER.info("Soft limits disabled")
        else:
            LOGGER.warning("Unit refused to disable soft limits")
        return True

    async def _read_calibration(self, session: DeviceSession) -> bool:
        protocol = session.protocol
        for axis in Axis:
            try:
                calibration = AxisCalibration(
                    min_position=await protocol.get_min(axis),
                    max_position=await protocol.get_max(axis),
                    min_speed=await protocol.get_min_speed(axis),
                    max_speed=await protocol.get_max_speed(axis),
                    resolution=await protocol.get_resolution(axis),
                )
            except LINK_ERRORS as exc:
                if session.dry_run:
                    LOGGER.warning(
                        "Dry run: calibration for %s unavailable: %s", axis.value, exc
                    )
                    continue
                LOGGER.error("Failed to read %s calibration: %s", axis.value, exc)
                return False
            session.calibration[axis] = calibration
        return True
