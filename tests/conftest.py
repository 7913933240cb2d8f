from typing import Any, Dict, List, Optional

import pytest
import serial

from ptu_bridge.adapters.serial_link import LinkTimeouts
from ptu_bridge.core import Axis, ControlMode
from ptu_bridge.session import SessionManager


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLink:
    def __init__(self, port: str = "/dev/ttyFAKE") -> None:
        self.port = port
        self.is_open = True
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.is_open = False


class FakeProtocol:
    """Records every call made by the bridge."""

    def __init__(
        self,
        *,
        initialize_ok: bool = True,
        positions: Optional[Dict[Axis, float]] = None,
        speeds: Optional[Dict[Axis, float]] = None,
        mode: ControlMode = ControlMode.POSITION,
    ) -> None:
        self.initialize_ok = initialize_ok
        self.positions = positions or {Axis.PAN: 0.0, Axis.TILT: 0.0}
        self.speeds = speeds or {Axis.PAN: 0.0, Axis.TILT: 0.0}
        self.mode = mode
        self.command_result = True
        self.raise_on: Dict[str, BaseException] = {}
        self.calls: List[tuple] = []
        self.link: Any = None

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        error = self.raise_on.get(name)
        if error is not None:
            raise error

    def command_calls(self) -> List[tuple]:
        """Calls other than initialisation and calibration queries."""
        ignored = {
            "initialize",
            "disable_limits",
            "get_min",
            "get_max",
            "get_min_speed",
            "get_max_speed",
            "get_resolution",
        }
        return [call for call in self.calls if call[0] not in ignored]

    async def initialize(self) -> bool:
        self._record("initialize")
        return self.initialize_ok

    async def disable_limits(self) -> bool:
        self._record("disable_limits")
        return True

    async def get_min(self, axis: Axis) -> float:
        self._record("get_min", axis)
        return -2.5 if axis is Axis.PAN else -0.8

    async def get_max(self, axis: Axis) -> float:
        self._record("get_max", axis)
        return 2.5 if axis is Axis.PAN else 0.5

    async def get_min_speed(self, axis: Axis) -> float:
        self._record("get_min_speed", axis)
        return 0.0

    async def get_max_speed(self, axis: Axis) -> float:
        self._record("get_max_speed", axis)
        return 2.0

    async def get_resolution(self, axis: Axis) -> float:
        self._record("get_resolution", axis)
        return 0.0002

    async def set_position(self, axis: Axis, position: float) -> bool:
        self._record("set_position", axis, position)
        return self.command_result

    async def set_speed(self, axis: Axis, speed: float) -> bool:
        self._record("set_speed", axis, speed)
        return self.command_result

    async def apply_offset(self, axis: Axis, offset: float) -> bool:
        self._record("apply_offset", axis, offset)
        return self.command_result

    async def home(self) -> bool:
        self._record("home")
        return self.command_result

    async def send_raw(self, buffer: bytes, length: int) -> bool:
        self._record("send_raw", buffer, length)
        return self.command_result

    async def get_position(self, axis: Axis) -> float:
        self._record("get_position", axis)
        return self.positions[axis]

    async def get_speed(self, axis: Axis) -> float:
        self._record("get_speed", axis)
        return self.speeds[axis]

    async def get_mode(self) -> ControlMode:
        self._record("get_mode")
        return self.mode


class FakeLinkOpener:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: List[tuple] = []
        self.links: List[FakeLink] = []

    async def __call__(self, port: str, baud: int, timeouts: LinkTimeouts) -> FakeLink:
        self.calls.append((port, baud, timeouts))
        if self.fail:
            raise serial.SerialException(f"could not open port {port}")
        link = FakeLink(port)
        self.links.append(link)
        return link


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def protocol() -> FakeProtocol:
    return FakeProtocol()


@pytest.fixture
def link_opener() -> FakeLinkOpener:
    return FakeLinkOpener()


@pytest.fixture
def manager(protocol: FakeProtocol, link_opener: FakeLinkOpener) -> SessionManager:
    def factory(link: Any) -> FakeProtocol:
        protocol.link = link
        return protocol

    return SessionManager(protocol_factory=factory, link_opener=link_opener)
