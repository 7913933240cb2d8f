"""Tests for the supervisor loop."""

import asyncio
import json
import time
from pathlib import Path

import pytest

from conftest import FakeLinkOpener, FakeProtocol
from ptu_bridge.adapters import MQTTConnectionError
from ptu_bridge.app import PtuBridgeApp, SupervisorState
from ptu_bridge.config import build_default_config
from ptu_bridge.core import Axis, ResetRequest


class FakeTransport:
    def __init__(self, *, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.connected = False
        self.published: list[tuple[str, bytes, int, bool]] = []
        self.subscriptions: list[tuple[str, int]] = []
        self.unsubscribed: list[str] = []
        self.handler = None
        self.connect_handlers = []
        self.disconnect_handlers = []

    async def connect(self) -> None:
        if self.fail_connect:
            raise MQTTConnectionError("broker unreachable")
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    def publish(self, topic, payload, qos=0, retain=False) -> None:
        self.published.append((topic, payload, qos, retain))

    def subscribe(self, topic, qos=0) -> None:
        self.subscriptions.append((topic, qos))

    def unsubscribe(self, topic) -> None:
        self.unsubscribed.append(topic)

    def set_message_handler(self, handler) -> None:
        self.handler = handler

    def register_connect_handler(self, handler) -> None:
        self.connect_handlers.append(handler)

    def register_disconnect_handler(self, handler) -> None:
        self.disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self.connected

    def drop(self, rc: int = 7) -> None:
        self.connected = False
        for handler in self.disconnect_handlers:
            handler(rc)

    def restore(self) -> None:
        self.connected = True
        for handler in self.connect_handlers:
            handler(0)

    def topics(self) -> list[str]:
        return [topic for topic, *_ in self.published]


def _config(tmp_path: Path, *, broker: bool = False):
    config = build_default_config(tmp_path / "ptu-bridge.cfg")
    config.broker.enabled = broker
    config.broker.device_id = "head1"
    config.resilience.retry_delay_seconds = 0.01
    config.telemetry.rate_hz = 100.0
    return config


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


async def _stop(app: PtuBridgeApp, task: asyncio.Task) -> None:
    app.request_stop()
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_supervisor_retries_after_port_open_failure(tmp_path):
    opener = FakeLinkOpener(fail=True)
    app = PtuBridgeApp(
        _config(tmp_path),
        protocol_factory=lambda link: FakeProtocol(),
        link_opener=opener,
    )

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: app.attempts >= 3)

    assert app.session is None
    assert len(opener.calls) >= 2
    snapshot = await app.health.snapshot()
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["device"]["healthy"] is False

    await _stop(app, task)
    assert app.state == SupervisorState.STOPPING


@pytest.mark.asyncio
async def test_supervisor_reconnects_once_port_becomes_available(tmp_path):
    opener = FakeLinkOpener(fail=True)
    app = PtuBridgeApp(
        _config(tmp_path),
        protocol_factory=lambda link: FakeProtocol(),
        link_opener=opener,
    )

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: app.attempts >= 2)
    opener.fail = False
    await _wait_until(lambda: app.state == SupervisorState.ACTIVE)

    assert app.session is not None
    assert app.session.is_connected is True

    await _stop(app, task)
    assert app.session is None
    assert opener.links[-1].close_calls == 1


@pytest.mark.asyncio
async def test_active_session_publishes_state_and_calibration(tmp_path):
    protocol = FakeProtocol(positions={Axis.PAN: 0.25, Axis.TILT: -0.1})
    transport = FakeTransport()
    app = PtuBridgeApp(
        _config(tmp_path, broker=True),
        protocol_factory=lambda link: protocol,
        link_opener=FakeLinkOpener(),
        transport=transport,
    )

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: "ptu/head1/diagnostics" in transport.topics())

    assert transport.subscriptions == [("ptu/head1/cmd/#", 0)]

    calibration = [item for item in transport.published if item[0] == "ptu/head1/calibration"]
    assert len(calibration) == 1
    _, payload, qos, retain = calibration[0]
    assert (qos, retain) == (1, True)
    assert json.loads(payload)["max_pan"] == 2.5
    assert app.calibration["min_tilt"] == -0.8

    state = next(item for item in transport.published if item[0] == "ptu/head1/state")
    document = json.loads(state[1])
    assert document["pan"] == {"name": "ptu_pan", "position": 0.25, "velocity": 0.0}
    assert document["tilt"]["position"] == -0.1

    await _stop(app, task)
    assert transport.connected is False


@pytest.mark.asyncio
async def test_transport_messages_reach_the_unit(tmp_path):
    protocol = FakeProtocol()
    transport = FakeTransport()
    app = PtuBridgeApp(
        _config(tmp_path, broker=True),
        protocol_factory=lambda link: protocol,
        link_opener=FakeLinkOpener(),
        transport=transport,
    )

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: app.state == SupervisorState.ACTIVE)

    transport.handler("ptu/head1/cmd/rotate", b'{"pan": 0.1, "tilt": -0.2}')
    transport.handler("ptu/head1/cmd/reset", b"true")
    await _wait_until(lambda: ("home",) in protocol.calls)

    assert ("apply_offset", Axis.PAN, 0.1) in protocol.calls
    assert ("apply_offset", Axis.TILT, -0.2) in protocol.calls

    await _stop(app, task)


@pytest.mark.asyncio
async def test_malformed_transport_message_is_dropped(tmp_path):
    app = PtuBridgeApp(
        _config(tmp_path),
        protocol_factory=lambda link: FakeProtocol(),
        link_opener=FakeLinkOpener(),
    )

    app._on_transport_message("ptu/head1/cmd/motion", b"not json")
    app._on_transport_message("ptu/head1/cmd/teleport", b"{}")
    app._on_transport_message("ptu/other/cmd/reset", b"")

    assert len(app.inbox) == 0


@pytest.mark.asyncio
async def test_transport_message_enqueued_on_event_loop(tmp_path):
    app = PtuBridgeApp(
        _config(tmp_path),
        protocol_factory=lambda link: FakeProtocol(),
        link_opener=FakeLinkOpener(fail=True),
    )
    app._loop = asyncio.get_running_loop()

    app._on_transport_message("ptu/head1/cmd/reset", b"")
    await asyncio.sleep(0)

    assert app.inbox.get_nowait() == ResetRequest()


@pytest.mark.asyncio
async def test_lost_link_triggers_new_attempt(tmp_path):
    protocol = FakeProtocol()
    opener = FakeLinkOpener()
    app = PtuBridgeApp(
        _config(tmp_path),
        protocol_factory=lambda link: protocol,
        link_opener=opener,
    )

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: app.state == SupervisorState.ACTIVE)
    protocol.raise_on["get_position"] = OSError("device unplugged")
    await _wait_until(lambda: app.attempts >= 2)

    assert opener.links[0].close_calls == 1

    await _stop(app, task)


@pytest.mark.asyncio
async def test_broker_failure_does_not_stop_supervisor(tmp_path):
    transport = FakeTransport(fail_connect=True)
    app = PtuBridgeApp(
        _config(tmp_path, broker=True),
        protocol_factory=lambda link: FakeProtocol(),
        link_opener=FakeLinkOpener(),
        transport=transport,
    )

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: app.state == SupervisorState.ACTIVE)

    snapshot = await app.health.snapshot()
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["mqtt"]["healthy"] is False
    assert transport.published == []

    await _stop(app, task)


@pytest.mark.asyncio
async def test_driver_loaded_from_configured_reference(tmp_path):
    config = _config(tmp_path)
    config.device.protocol = "ptu_bridge.backends.simulated:SimulatedPtu"
    app = PtuBridgeApp(config, link_opener=FakeLinkOpener())

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: app.state == SupervisorState.ACTIVE)

    assert app.calibration["max_pan"] > app.calibration["min_pan"]

    await _stop(app, task)


@pytest.mark.asyncio
async def test_invalid_driver_reference_retries(tmp_path):
    config = _config(tmp_path)
    config.device.protocol = "ptu_bridge.backends.simulated:Missing"
    opener = FakeLinkOpener()
    app = PtuBridgeApp(config, link_opener=opener)

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: app.attempts >= 2)

    assert opener.calls == []

    await _stop(app, task)


class TimedLinkOpener(FakeLinkOpener):
    def __init__(self) -> None:
        super().__init__(fail=True)
        self.started_at: list[float] = []

    async def __call__(self, port, baud, timeouts):
        self.started_at.append(time.monotonic())
        return await super().__call__(port, baud, timeouts)


@pytest.mark.asyncio
async def test_attempts_are_spaced_by_retry_delay(tmp_path):
    config = _config(tmp_path)
    config.resilience.retry_delay_seconds = 0.1
    opener = TimedLinkOpener()
    app = PtuBridgeApp(
        config,
        protocol_factory=lambda link: FakeProtocol(),
        link_opener=opener,
    )

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: len(opener.started_at) >= 3)
    await _stop(app, task)

    gaps = [
        later - earlier
        for earlier, later in zip(opener.started_at, opener.started_at[1:])
    ]
    assert len(gaps) >= 2
    for gap in gaps:
        assert gap >= 0.095
        assert gap < 1.0


@pytest.mark.asyncio
async def test_stop_interrupts_retry_wait(tmp_path):
    config = _config(tmp_path)
    config.resilience.retry_delay_seconds = 30.0
    app = PtuBridgeApp(
        config,
        protocol_factory=lambda link: FakeProtocol(),
        link_opener=FakeLinkOpener(fail=True),
    )

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: app.state == SupervisorState.RETRY_WAIT)
    await _stop(app, task)

    assert app.attempts == 1


async def _mqtt_component(app: PtuBridgeApp) -> dict:
    snapshot = await app.health.snapshot()
    return {item["name"]: item for item in snapshot["components"]}["mqtt"]


@pytest.mark.asyncio
async def test_broker_drop_marks_mqtt_unhealthy_until_reconnect(tmp_path):
    transport = FakeTransport()
    app = PtuBridgeApp(
        _config(tmp_path, broker=True),
        protocol_factory=lambda link: FakeProtocol(),
        link_opener=FakeLinkOpener(),
        transport=transport,
    )

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: "ptu/head1/state" in transport.topics())

    transport.drop(rc=7)
    await asyncio.sleep(0.02)
    mqtt_status = await _mqtt_component(app)
    assert mqtt_status["healthy"] is False
    assert mqtt_status["detail"] == "disconnected (rc=7)"

    published_while_down = len(transport.published)
    await asyncio.sleep(0.05)
    assert len(transport.published) == published_while_down

    transport.restore()
    await asyncio.sleep(0.02)
    assert (await _mqtt_component(app))["healthy"] is True
    assert transport.subscriptions.count(("ptu/head1/cmd/#", 0)) == 2
    await _wait_until(lambda: len(transport.published) > published_while_down)

    await _stop(app, task)


@pytest.mark.asyncio
async def test_shutdown_unsubscribes_and_detaches_handler(tmp_path):
    transport = FakeTransport()
    app = PtuBridgeApp(
        _config(tmp_path, broker=True),
        protocol_factory=lambda link: FakeProtocol(),
        link_opener=FakeLinkOpener(),
        transport=transport,
    )

    task = asyncio.create_task(app.run())
    await _wait_until(lambda: app.state == SupervisorState.ACTIVE)
    await _stop(app, task)

    assert transport.unsubscribed == ["ptu/head1/cmd/#"]
    assert transport.handler is None
    assert transport.connected is False
    mqtt_status = await _mqtt_component(app)
    assert mqtt_status["detail"] == "shutdown"
