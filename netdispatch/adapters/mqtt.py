"""MQTT adapter encapsulating paho-mqtt client usage.

Consumer groups map onto MQTT 5 shared subscriptions
(``$share/<group>/<topic>``): members of one group compete for messages,
separate groups each receive every message. QoS 1 gives at-least-once
delivery and a persistent session keeps queued messages while a consumer is
briefly offline.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from ..config import BrokerConfig
from ..core.protocols import MessageHandler

LOGGER = logging.getLogger(__name__)
PAHO_LOGGER = logging.getLogger(f"{__name__}.paho")


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to establish a connection or publish."""


@dataclass(slots=True)
class _Subscription:
    topic: str
    handler: MessageHandler
    qos: int


def subscription_filter(topic: str, group: Optional[str] = None) -> str:
    """Return the MQTT filter for ``topic``, shared across ``group`` if given."""
    if group:
        return f"$share/{group}/{topic}"
    return topic


def _reason_value(reason_code) -> int:
    return int(getattr(reason_code, "value", reason_code) or 0)


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client."""

    def __init__(
        self,
        config: BrokerConfig,
        *,
        client_id: str,
        keepalive: Optional[int] = None,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = keepalive if keepalive is not None else config.keepalive

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._subscriptions: Dict[str, _Subscription] = {}
        self._handler_tasks: Set[asyncio.Future] = set()
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._connect_handlers: List[Callable[[int], None]] = []

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(PAHO_LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s as %s",
            self.config.host,
            self.config.port,
            self.client_id,
        )

        properties = Properties(PacketTypes.CONNECT)
        properties.SessionExpiryInterval = self.config.session_expiry_seconds

        client.connect_async(
            self.config.host,
            self.config.port,
            self.keepalive,
            clean_start=False,
            properties=properties,
        )
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        finally:
            self._client.loop_stop()
            self._client = None
        self._connected = False

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish to {topic} failed with rc={info.rc}")

    def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        group: Optional[str] = None,
        qos: int = 1,
    ) -> None:
        """Register ``handler`` for ``topic``.

        Subscriptions are remembered and re-sent after every reconnect.
        """
        sub_filter = subscription_filter(topic, group)
        self._subscriptions[sub_filter] = _Subscription(topic, handler, qos)
        if self._client is not None:
            self._send_subscribe(sub_filter, qos)

    def unsubscribe(self, topic: str, *, group: Optional[str] = None) -> None:
        sub_filter = subscription_filter(topic, group)
        self._subscriptions.pop(sub_filter, None)
        if not self._client:
            return

        result, _ = self._client.unsubscribe(sub_filter)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Unsubscribe failed with rc={result}")

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        self._connect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    def _send_subscribe(self, sub_filter: str, qos: int) -> None:
        assert self._client is not None
        result, _ = self._client.subscribe(sub_filter, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")
        LOGGER.debug("Subscribed to %s (qos=%d)", sub_filter, qos)

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
            for sub_filter, subscription in list(self._subscriptions.items()):
                try:
                    self._send_subscribe(sub_filter, subscription.qos)
                except MQTTConnectionError:
                    LOGGER.exception("Failed to restore subscription %s", sub_filter)
            if self._loop:
                if self._connected_event:
                    self._loop.call_soon_threadsafe(self._connected_event.set)
                for handler in self._connect_handlers:
                    self._loop.call_soon_threadsafe(handler, rc)
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
            if self._loop and self._connected_event:
                self._loop.call_soon_threadsafe(self._connected_event.set)

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code=0, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        self._connected = False
        if self._loop:
            if self._disconnect_event:
                self._loop.call_soon_threadsafe(self._disconnect_event.set)
            for handler in self._disconnect_handlers:
                self._loop.call_soon_threadsafe(handler, rc)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        loop = self._loop
        if loop is None:
            return

        handlers = [
            subscription.handler
            for subscription in self._subscriptions.values()
            if mqtt.topic_matches_sub(subscription.topic, message.topic)
        ]
        if not handlers:
            LOGGER.debug("No handler for message on %s", message.topic)
            return

        for handler in handlers:
            loop.call_soon_threadsafe(
                self._dispatch, handler, message.topic, bytes(message.payload)
            )

    def _dispatch(self, handler: MessageHandler, topic: str, payload: bytes) -> None:
        # Runs on the event loop thread; handlers never execute on paho's thread.
        try:
            result = handler(topic, payload)
        except Exception:
            LOGGER.exception("MQTT message handler raised an exception")
            return

        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Future) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "MQTT message handler raised an exception",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
