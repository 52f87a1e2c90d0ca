import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Set

import paho.mqtt.client as mqtt
from loguru import logger

from .config import settings
from .models import MqttMessage
from .utils.time import utc_now


class MQTTTransport:
    """paho-mqtt client bridged onto the asyncio loop.

    paho runs its network loop in a background thread; every callback hops
    back onto the event loop before touching state, and messages are handed
    to consumers through ``messages``.
    """

    def __init__(self, queue_size: Optional[int] = None):
        self.client: Optional[mqtt.Client] = None
        self.is_connected = False
        self.messages: "asyncio.Queue[MqttMessage]" = asyncio.Queue(
            maxsize=queue_size if queue_size is not None else settings.message_queue_size
        )
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscriptions: Set[str] = set()
        self._connect_listeners: List[Callable[[], None]] = []

    def add_connect_listener(self, listener: Callable[[], None]) -> None:
        self._connect_listeners.append(listener)

    async def connect(self):
        """Connect to MQTT broker with reconnection handling"""
        self._loop = asyncio.get_running_loop()
        try:
            self.client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=settings.mqtt_client_id,
            )

            # Set up authentication if provided
            if settings.mqtt_username and settings.mqtt_password:
                self.client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

            # Set up callbacks
            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect
            self.client.on_message = self._on_message

            # Broker may come up after us; paho keeps retrying in its loop thread
            self.client.connect_async(settings.mqtt_broker, settings.mqtt_port, settings.mqtt_keepalive)
            self.client.loop_start()

            logger.info(f"Connecting to MQTT broker at {settings.mqtt_broker}:{settings.mqtt_port}")

        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            raise

    async def disconnect(self):
        """Disconnect from MQTT broker"""
        if self.client:
            self.client.loop_stop()
            self.client.disconnect()
            self.is_connected = False
            self._subscriptions.clear()
            logger.info("Disconnected from MQTT broker")

    def subscribe(self, topic_filter: str) -> None:
        """Subscribe once per connection; repeats are no-ops."""
        if not self.client or not self.is_connected:
            logger.debug(f"Not connected, deferring subscription to {topic_filter}")
            return
        if topic_filter in self._subscriptions:
            return
        self.client.subscribe(topic_filter, settings.mqtt_qos)
        self._subscriptions.add(topic_filter)
        logger.info(f"Subscribed to topic: {topic_filter}")

    def unsubscribe(self, topic: str) -> None:
        if not self.client or not self.is_connected:
            return
        self.client.unsubscribe(topic)
        self._subscriptions.discard(topic)
        logger.info(f"Unsubscribed from topic: {topic}")

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if not self.client:
            raise RuntimeError("MQTT client not initialised")
        message = json.dumps(payload)
        info = self.client.publish(topic, message, qos=settings.mqtt_qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise RuntimeError(f"publish to {topic} failed: {mqtt.error_string(info.rc)}")

    # paho callbacks, run in the network thread

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """Callback for MQTT connection attempts"""
        if reason_code.is_failure:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")
            return
        self._call_soon(self._handle_connected)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        """Callback for MQTT disconnection"""
        if reason_code.is_failure:
            logger.warning(f"Unexpected MQTT disconnection ({reason_code}). Will auto-reconnect.")
        self._call_soon(self._handle_disconnected)

    def _on_message(self, client, userdata, msg):
        """Handle incoming MQTT messages"""
        try:
            payload = msg.payload.decode("utf-8", errors="replace")
            logger.debug(f"Received message on topic {msg.topic}: {payload}")
            self._call_soon(self._enqueue, MqttMessage(topic=msg.topic, payload=payload, received_at=utc_now()))
        except Exception as e:
            logger.error(f"Error processing MQTT message: {e}")

    # loop side

    def _call_soon(self, callback: Callable[..., None], *args: Any) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(callback, *args)

    def _handle_connected(self) -> None:
        self.is_connected = True
        self._subscriptions.clear()
        logger.info("Connected to MQTT broker successfully")
        for listener in list(self._connect_listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"MQTT connect listener failed: {e}")

    def _handle_disconnected(self) -> None:
        self.is_connected = False
        self._subscriptions.clear()

    def _enqueue(self, message: MqttMessage) -> None:
        try:
            self.messages.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(f"Message queue full, dropping message on {message.topic}")
