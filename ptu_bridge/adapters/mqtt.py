"""paho-mqtt client wrapped for use from the asyncio event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

import paho.mqtt.client as mqtt

from ..config import BrokerConfig

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
ReasonHandler = Callable[[int], None]

ONLINE_PAYLOAD = b"online"
OFFLINE_PAYLOAD = b"offline"


class MQTTConnectionError(RuntimeError):
    """Raised when the broker cannot be reached or refuses a request."""


def _reason_value(reason_code: Any) -> int:
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class MQTTClient:
    """Runs the paho network loop in its own thread and reports back to asyncio.

    paho invokes callbacks on its network thread. Connection state changes are
    forwarded to the event loop with ``call_soon_threadsafe``; message handlers
    run on the network thread, and coroutine handlers are scheduled onto the
    loop.

    When ``availability_topic`` is set, the broker holds a retained
    ``offline`` last-will on it and the client publishes a retained
    ``online`` after every successful (re)connect.
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        client_id: str,
        availability_topic: Optional[str] = None,
        reconnect_delay: tuple[int, int] = (1, 30),
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.availability_topic = availability_topic
        self._reconnect_delay = reconnect_delay

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Event] = None
        self._closed: Optional[asyncio.Event] = None
        self._connack_rc: Optional[int] = None
        self._connected = False
        self._message_handler: Optional[MessageHandler] = None
        self._connect_handlers: List[ReasonHandler] = []
        self._disconnect_handlers: List[ReasonHandler] = []

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        client.enable_logger(LOGGER)
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        if self.availability_topic:
            client.will_set(self.availability_topic, OFFLINE_PAYLOAD, qos=1, retain=True)
        client.reconnect_delay_set(*self._reconnect_delay)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    async def connect(self, timeout: float = 30.0) -> None:
        """Start the network loop and wait for the broker's CONNACK."""

        self._loop = asyncio.get_running_loop()
        self._connack = asyncio.Event()
        self._closed = asyncio.Event()
        self._connack_rc = None

        client = self._build_client()
        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s as %s",
            self.config.host,
            self.config.port,
            self.client_id,
        )
        client.connect_async(self.config.host, self.config.port, self.config.keepalive)
        client.loop_start()

        try:
            await asyncio.wait_for(self._connack.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._abort(client)
            raise MQTTConnectionError(
                f"No CONNACK from {self.config.host}:{self.config.port} "
                f"within {timeout:.0f}s"
            ) from exc

        if self._connack_rc != 0:
            self._abort(client)
            raise MQTTConnectionError(
                f"MQTT broker rejected connection (rc={self._connack_rc})"
            )

    def _abort(self, client: mqtt.Client) -> None:
        client.loop_stop()
        self._client = None
        self._connected = False

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Publish ``offline`` (if configured) and close the connection."""

        client = self._client
        if client is None:
            return
        assert self._closed is not None

        if self.availability_topic and self._connected:
            client.publish(self.availability_topic, OFFLINE_PAYLOAD, qos=1, retain=True)
        client.disconnect()

        try:
            await asyncio.wait_for(self._closed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Broker did not confirm disconnect within %.1fs", timeout)
        finally:
            client.loop_stop()
            self._client = None
            self._connected = False

    def _require_client(self) -> mqtt.Client:
        if self._client is None:
            raise RuntimeError("MQTT client not connected")
        return self._client

    def publish(
        self, topic: str, payload: bytes, qos: int = 0, retain: bool = False
    ) -> None:
        info = self._require_client().publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish to {topic} failed with rc={info.rc}")

    def subscribe(self, topic: str, qos: int = 0) -> None:
        result, _ = self._require_client().subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe to {topic} failed with rc={result}")

    def unsubscribe(self, topic: str) -> None:
        result, _ = self._require_client().unsubscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Unsubscribe from {topic} failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_connect_handler(self, handler: ReasonHandler) -> None:
        self._connect_handlers.append(handler)

    def register_disconnect_handler(self, handler: ReasonHandler) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        self._connack_rc = rc
        self._connected = rc == 0
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            if self.availability_topic:
                client.publish(self.availability_topic, ONLINE_PAYLOAD, qos=1, retain=True)
        else:
            LOGGER.error("MQTT connection refused with rc=%s", rc)
        self._set_event(self._connack)
        if rc == 0:
            self._dispatch(self._connect_handlers, rc)

    def _on_disconnect(
        self, client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        if rc == 0:
            LOGGER.info("Disconnected from MQTT broker")
        else:
            LOGGER.warning("Lost MQTT broker connection (rc=%s); paho will retry", rc)
        self._connected = False
        self._set_event(self._closed)
        self._dispatch(self._disconnect_handlers, rc)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        handler = self._message_handler
        loop = self._loop
        if handler is None or loop is None:
            return

        try:
            result = handler(message.topic, message.payload)
            if asyncio.iscoroutine(result):
                asyncio.run_coroutine_threadsafe(result, loop)
        except Exception:  # pragma: no cover
            LOGGER.exception("Handler for %s raised", message.topic)

    def _dispatch(self, handlers: List[ReasonHandler], rc: int) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        for handler in handlers:
            loop.call_soon_threadsafe(handler, rc)

    def _set_event(self, event: Optional[asyncio.Event]) -> None:
        if event is None:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            event.set()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)
