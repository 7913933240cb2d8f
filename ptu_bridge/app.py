"""Main application entry-point for ptu-bridge."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import time
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from . import constants
from .adapters import (
    LinkOpener,
    LinkTimeouts,
    MQTTClient,
    MQTTConnectionError,
    open_serial_link,
)
from .commands import CommandInbox, CommandRouter, CommandValidationError, parse_command
from .config import PtuConfig, load_config
from .core import (
    Clock,
    DiagnosticsSummary,
    ProtocolFactory,
    ProtocolLoadError,
    StateSnapshot,
    load_factory,
)
from .diagnostics import DiagnosticsReporter
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .session import SessionManager
from .telemetry import PollingPublisher

LOGGER = logging.getLogger(__name__)


class BridgeTransport(Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def publish(
        self, topic: str, payload: bytes, qos: int = 0, retain: bool = False
    ) -> None: ...

    def subscribe(self, topic: str, qos: int = 0) -> None: ...

    def unsubscribe(self, topic: str) -> None: ...

    def set_message_handler(self, handler) -> None: ...

    def register_connect_handler(self, handler) -> None: ...

    def register_disconnect_handler(self, handler) -> None: ...

    def is_connected(self) -> bool: ...


class SupervisorState(str, Enum):
    STARTING = "starting"
    CONNECTING = "connecting"
    ACTIVE = "active"
    RETRY_WAIT = "retry_wait"
    STOPPING = "stopping"


class PtuBridgeApp:
    """Supervises the pan-tilt session and reconnects after every failure.

    Each connection attempt gets a fresh :class:`SessionManager`, command
    router and polling publisher; only configuration survives between
    attempts. While a session is up, poll ticks and commands are handled one
    at a time on a single task. After a failed connect or a lost session the
    supervisor waits ``resilience.retry_delay_seconds`` and starts over,
    indefinitely.
    """

    def __init__(
        self,
        config: Optional[PtuConfig] = None,
        *,
        protocol_factory: Optional[ProtocolFactory] = None,
        link_opener: Optional[LinkOpener] = None,
        transport: Optional[BridgeTransport] = None,
        monotonic: Optional[Clock] = None,
    ) -> None:
        """Initialize the bridge.

        Args:
            config: Application configuration. If None, loads from default path.
            protocol_factory: Driver factory taking the opened link. If None,
                the ``device.protocol`` reference from the config is imported.
            link_opener: Coroutine opening the serial link; pyserial by default.
            transport: MQTT-like client. If None and the broker is enabled,
                an :class:`MQTTClient` is created from config.
            monotonic: Clock used for poll cadence and jog throttling.
        """
        self._config = config or load_config()
        self._protocol_factory = protocol_factory
        self._link_opener = link_opener or open_serial_link
        self._monotonic = monotonic or time.monotonic
        self._transport = transport
        self._transport_ready = False
        self._inbox = CommandInbox()
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._stop_event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._session: Optional[SessionManager] = None
        self._state = SupervisorState.STARTING
        self._attempts = 0
        self._calibration: Dict[str, float] = {}

        base = self._config.topic_base
        self._command_prefix = f"{base}/cmd/"
        self._command_subscription = f"{self._command_prefix}#"
        self._state_topic = f"{base}/state"
        self._diagnostics_topic = f"{base}/diagnostics"
        self._calibration_topic = f"{base}/calibration"
        self._status_topic = f"{base}/status"

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def session(self) -> Optional[SessionManager]:
        return self._session

    @property
    def inbox(self) -> CommandInbox:
        return self._inbox

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def calibration(self) -> Dict[str, float]:
        return dict(self._calibration)

    def request_stop(self) -> None:
        self._stop_event.set()

    @classmethod
    def start(cls, config: Optional[PtuConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run_forever())
        except KeyboardInterrupt:
            LOGGER.info("ptu-bridge received shutdown signal")

    async def run_forever(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_stop)
        await self.run()

    async def run(self) -> None:
        """Run the supervisor loop until :meth:`request_stop` is called."""

        self._loop = asyncio.get_running_loop()
        LOGGER.info("ptu-bridge starting with config: %s", self._config.path)

        await self._start_transport()
        await self._start_health_server()

        try:
            while not self._stop_event.is_set():
                await self._run_attempt()
                if self._stop_event.is_set():
                    break

                delay = self._config.resilience.retry_delay_seconds
                LOGGER.error(
                    "Pan-tilt unit disconnected, attempting reconnection in %.1fs",
                    delay,
                )
                await self._transition_state(
                    SupervisorState.RETRY_WAIT, detail=f"retrying in {delay:.1f}s"
                )
                await self._wait(delay)
        except asyncio.CancelledError:
            LOGGER.info("ptu-bridge received shutdown signal")
            raise
        finally:
            await self._stop_services()

    async def _transition_state(
        self, state: SupervisorState, *, detail: Optional[str] = None
    ) -> None:
        previous = self._state
        self._state = state
        if previous != state:
            LOGGER.info(
                "Supervisor state transition %s -> %s (%s)",
                previous.value,
                state.value,
                detail or state.value,
            )
        await self._health.set_supervisor_state(
            state.value,
            healthy=state == SupervisorState.ACTIVE,
            detail=detail or state.value,
        )

    async def _wait(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------------
    # Session attempts
    # ------------------------------------------------------------------

    async def _run_attempt(self) -> None:
        self._attempts += 1
        await self._transition_state(
            SupervisorState.CONNECTING, detail=f"attempt {self._attempts}"
        )

        try:
            factory = self._resolve_protocol_factory()
        except ProtocolLoadError as exc:
            LOGGER.error("Cannot load device driver: %s", exc)
            await self._health.update("device", False, str(exc))
            return

        manager = SessionManager(
            protocol_factory=factory,
            link_opener=self._link_opener,
            on_calibration=self._publish_calibration,
        )
        self._session = manager

        serial_config = self._config.serial
        device_config = self._config.device
        result = await manager.connect(
            serial_config.port,
            serial_config.baud,
            LinkTimeouts(
                read=serial_config.timeout_seconds,
                write=serial_config.write_timeout_seconds,
                connect=serial_config.connect_timeout_seconds,
            ),
            limits_enabled=device_config.limits_enabled,
            dry_run=device_config.dry_run,
        )
        if not result:
            await self._health.update("device", False, result.error)
            self._session = None
            return

        await self._health.update(
            "device", not result.dry_run, "dry run" if result.dry_run else None
        )

        router = CommandRouter.from_config(
            manager, self._config, monotonic=self._monotonic
        )
        publisher = PollingPublisher(
            manager,
            DiagnosticsReporter(manager, health=self._health),
            joint_name_prefix=device_config.joint_name_prefix,
            on_snapshot=self._publish_snapshot,
            on_diagnostics=self._publish_diagnostics,
        )

        self._inbox.clear()
        await self._transition_state(SupervisorState.ACTIVE, detail="session active")

        try:
            await self._serve(manager, router, publisher)
        finally:
            manager.disconnect()
            self._session = None
            await self._health.update("device", False, "disconnected")

    async def _serve(
        self,
        manager: SessionManager,
        router: CommandRouter,
        publisher: PollingPublisher,
    ) -> None:
        period = self._config.telemetry.period_seconds
        next_tick = self._monotonic()

        while not self._stop_event.is_set():
            now = self._monotonic()
            if now >= next_tick:
                if not await publisher.tick():
                    return
                next_tick += period
                if next_tick < now:
                    next_tick = now + period
                continue

            command = await self._inbox.get(timeout=next_tick - now)
            if command is None:
                continue
            await router.dispatch(command)
            if not manager.is_connected:
                return

    def _resolve_protocol_factory(self) -> ProtocolFactory:
        if self._protocol_factory is None:
            self._protocol_factory = load_factory(self._config.device.protocol)
        return self._protocol_factory

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _start_transport(self) -> None:
        if self._transport is None:
            if not self._config.broker.enabled:
                LOGGER.info("MQTT disabled; commands will not be received")
                return
            self._transport = MQTTClient(
                self._config.broker,
                client_id=_build_client_id(self._config),
                availability_topic=self._status_topic,
            )

        try:
            await self._transport.connect()
        except MQTTConnectionError as exc:
            LOGGER.error("MQTT connection failed: %s", exc)
            await self._health.update("mqtt", False, str(exc))
            return

        self._transport.set_message_handler(self._on_transport_message)
        self._transport.register_connect_handler(self._on_transport_connect)
        self._transport.register_disconnect_handler(self._on_transport_disconnect)
        self._subscribe_commands()
        self._transport_ready = True
        await self._health.update("mqtt", True, None)

    def _subscribe_commands(self) -> None:
        assert self._transport is not None
        self._transport.subscribe(self._command_subscription, qos=0)
        LOGGER.info("Subscribed to commands on %s", self._command_subscription)

    def _on_transport_connect(self, rc: int) -> None:
        if not self._transport_ready:
            return
        self._schedule_health_update("mqtt", True, None)
        try:
            self._subscribe_commands()
        except RuntimeError as exc:
            LOGGER.warning("Failed to resubscribe after reconnect: %s", exc)
        if self._calibration:
            self._publish(self._calibration_topic, self._calibration, qos=1, retain=True)

    def _on_transport_disconnect(self, rc: int) -> None:
        if not self._transport_ready:
            return
        self._schedule_health_update("mqtt", False, f"disconnected (rc={rc})")

    def _schedule_health_update(
        self, name: str, healthy: bool, detail: Optional[str]
    ) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return

        async def _runner() -> None:
            await self._health.update(name, healthy, detail)

        loop.call_soon_threadsafe(lambda: asyncio.create_task(_runner()))

    def _on_transport_message(self, topic: str, payload: bytes) -> None:
        """Decode a command; runs on the MQTT network thread."""
        if not topic.startswith(self._command_prefix):
            return
        kind = topic[len(self._command_prefix) :]

        try:
            command = parse_command(kind, payload)
        except CommandValidationError as exc:
            LOGGER.warning("Dropping %s command: %s", kind, exc)
            return

        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._inbox.put, command)

    def _publish(
        self, topic: str, document: Dict[str, Any], *, qos: int = 0, retain: bool = False
    ) -> None:
        transport = self._transport
        if not self._transport_ready or transport is None:
            return
        if not transport.is_connected():
            LOGGER.debug("Skipping publish to %s; broker not connected", topic)
            return
        payload = json.dumps(document, separators=(",", ":")).encode("utf-8")
        try:
            transport.publish(topic, payload, qos=qos, retain=retain)
        except RuntimeError as exc:
            LOGGER.debug("Failed to publish to %s: %s", topic, exc)

    def _publish_snapshot(self, snapshot: StateSnapshot) -> None:
        self._publish(self._state_topic, snapshot.as_dict())

    def _publish_diagnostics(self, summary: DiagnosticsSummary) -> None:
        self._publish(self._diagnostics_topic, summary.as_dict())

    def _publish_calibration(self, params: Dict[str, float]) -> None:
        self._calibration = dict(params)
        LOGGER.info(
            "Axis calibration: %s",
            ", ".join(f"{key}={value:.5f}" for key, value in sorted(params.items())),
        )
        self._publish(self._calibration_topic, params, qos=1, retain=True)

    # ------------------------------------------------------------------
    # Health endpoint
    # ------------------------------------------------------------------

    async def _start_health_server(self) -> None:
        resilience = self._config.resilience
        if not resilience.health_enabled or resilience.health_port <= 0:
            return

        server = HealthServer(
            self._health, resilience.health_host, resilience.health_port
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _stop_services(self) -> None:
        await self._transition_state(SupervisorState.STOPPING, detail="shutdown requested")

        if self._session is not None:
            self._session.disconnect()
            self._session = None

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._transport is not None and self._transport_ready:
            self._transport_ready = False
            self._transport.set_message_handler(None)
            try:
                self._transport.unsubscribe(self._command_subscription)
            except RuntimeError as exc:
                LOGGER.debug("Failed to unsubscribe from commands: %s", exc)
            try:
                await self._transport.disconnect()
            except MQTTConnectionError as exc:
                LOGGER.debug("Error disconnecting from MQTT: %s", exc)
            await self._health.update("mqtt", False, "shutdown")


def _build_client_id(config: PtuConfig) -> str:
    return f"{constants.APP_NAME}-{config.broker.device_id}"
