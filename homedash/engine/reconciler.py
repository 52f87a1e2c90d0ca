"""Single consumer of the MQTT message stream."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence

from loguru import logger

from ..models import DeviceCandidate, DeviceCreate, MqttMessage
from . import classifier
from .liveness import LivenessTracker
from .payloads import parse_payload
from .scheduling import Scheduler
from .store import ConfigRepository, DeviceStore, Transport
from .timeouts import SensorTimeoutCache, SensorTimeoutSource
from .topics import command_topic_for, is_command_topic, resolve_device


class Reconciler:
    """Applies incoming messages to the device store.

    Every non-command message lands in ``recent`` (most recent first) so
    auto-detect can look at topics nobody owns yet. Matching messages replace
    the device's data and keep it online.
    """

    def __init__(
        self,
        store: DeviceStore,
        transport: Transport,
        timeouts: SensorTimeoutCache,
        tracker: LivenessTracker,
        *,
        catch_all_topic: str = "#",
        recent_limit: int = 100,
    ):
        self.store = store
        self.transport = transport
        self.timeouts = timeouts
        self.tracker = tracker
        self.catch_all_topic = catch_all_topic
        self.recent_limit = recent_limit
        self.recent: Deque[MqttMessage] = deque(maxlen=recent_limit)

    async def start(self) -> None:
        seconds = await self.timeouts.get()
        logger.info(f"Reconciler started with sensor timeout {seconds}s")

    async def refresh_timeout(self) -> float:
        return await self.timeouts.refresh()

    def on_connected(self) -> None:
        """(Re)subscribe after every successful connect."""
        self.transport.subscribe(self.catch_all_topic)
        for device in self.store.valid_devices():
            self.transport.subscribe(device.topic)

    def handle_message(self, message: MqttMessage) -> Optional[str]:
        """Apply one message; returns the id of the device it was routed to."""
        if is_command_topic(message.topic):
            return None

        self.recent.appendleft(message)

        device = self.store.resolve(message.topic)
        if device is None:
            return None

        data = parse_payload(message.payload)
        self.store.apply_reading(device.id, data, message.received_at)
        self.tracker.touch(device.id)
        return device.id

    async def run(self, queue: "asyncio.Queue[MqttMessage]") -> None:
        """Consume ``queue`` until cancelled."""
        while True:
            message = await queue.get()
            try:
                self.handle_message(message)
            except Exception as e:
                logger.error(f"Error processing message for topic {message.topic}: {e}")
            finally:
                queue.task_done()

    def detect_devices(self) -> List[DeviceCandidate]:
        return classifier.detect_devices(
            self.recent,
            self.store.valid_devices(),
            self.store.deleted_topics,
            limit=self.recent_limit,
        )

    async def accept_detected(self, candidates: Optional[Sequence[DeviceCandidate]] = None) -> List[str]:
        """Add candidates as devices; defaults to everything detected right now."""
        if candidates is None:
            candidates = self.detect_devices()

        added: List[str] = []
        for candidate in candidates:
            if resolve_device(self.store.valid_devices(), candidate.topic) is not None:
                logger.debug(f"Skipping detected topic {candidate.topic}, already handled")
                continue
            device_id = await self.store.add_device(
                DeviceCreate(
                    name=candidate.name,
                    device_type=candidate.device_type,
                    topic=candidate.topic,
                    room=candidate.room,
                )
            )
            added.append(device_id)

        if added:
            logger.info(f"Auto-detect added {len(added)} devices")
        return added

    def control(self, device_id: str, payload: Dict[str, Any]) -> bool:
        """Publish ``payload`` unchanged on the device's command topic."""
        device = self.store.get(device_id)
        if device is None:
            logger.warning(f"Control ignored, device {device_id} not found")
            return False
        if not device.controllable:
            logger.warning(f"Control ignored, device {device_id} is not controllable")
            return False

        topic = command_topic_for(device)
        if topic is None:
            logger.warning(f"Control ignored, device {device_id} has no command topic")
            return False
        if not self.transport.is_connected:
            logger.warning(f"Control ignored, MQTT disconnected (device {device_id})")
            return False

        try:
            self.transport.publish(topic, payload)
        except Exception as exc:
            logger.error(f"Failed to publish control for {device_id} on {topic}: {exc}")
            return False
        logger.info(f"Published control to {topic}: {payload}")
        return True


def build_reconciler(
    repository: ConfigRepository,
    transport: Transport,
    timeout_source: SensorTimeoutSource,
    scheduler: Scheduler,
    *,
    user_id: str,
    catch_all_topic: str = "#",
    recent_limit: int = 100,
    timeout_default: float = 60.0,
    timeout_ttl: float = 300.0,
    cleanup_delay: float = 1.0,
) -> Reconciler:
    timeouts = SensorTimeoutCache(timeout_source, scheduler, ttl=timeout_ttl, default=timeout_default)
    tracker = LivenessTracker(scheduler, timeouts)
    store = DeviceStore(
        repository,
        transport,
        tracker,
        scheduler,
        user_id=user_id,
        cleanup_delay=cleanup_delay,
    )
    return Reconciler(
        store,
        transport,
        timeouts,
        tracker,
        catch_all_topic=catch_all_topic,
        recent_limit=recent_limit,
    )
