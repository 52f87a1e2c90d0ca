"""Heuristic classification of unrecognised topics into device proposals."""

from __future__ import annotations

import json
import re
from itertools import islice
from dataclasses import dataclass
from typing import Any, Collection, Dict, Iterable, List, Sequence, Tuple

from ..models import Device, DeviceCandidate, MqttMessage
from .payloads import parse_payload
from .topics import is_command_topic, is_valid_device, resolve_device

DEFAULT_TYPE = "temperature_sensor"
DEFAULT_LABEL = "Unknown Device"
DEFAULT_ROOM = "General"

GENERIC_SEGMENTS = {"home", "device", "sensor", "mqtt"}

# Tried in order, first structural match that is not a generic segment wins.
ROOM_PATTERNS = (
    re.compile(r"home/([^/]+)/"),
    re.compile(r"([^/]+)/[^/]+$"),
    re.compile(r"/([^/]+)/"),
)


@dataclass(frozen=True)
class ClassifierRule:
    device_type: str
    label: str
    topic_terms: Tuple[str, ...] = ()
    key_terms: Tuple[str, ...] = ()
    content_terms: Tuple[str, ...] = ()

    def matches(self, topic: str, keys: Sequence[str], content: str) -> bool:
        if any(term in topic for term in self.topic_terms):
            return True
        if any(term in key for key in keys for term in self.key_terms):
            return True
        return any(term in content for term in self.content_terms)


# Priority order is part of the detection contract; do not sort.
RULES: Tuple[ClassifierRule, ...] = (
    ClassifierRule("temperature_sensor", "Temperature Sensor",
                   ("temp", "temperature"), ("temp",), ("humidity",)),
    ClassifierRule("door_sensor", "Door Sensor",
                   ("door", "contact"), ("door",), ("open", "closed")),
    ClassifierRule("relay", "Smart Relay",
                   ("relay", "light", "switch"), ("relay",), ('"on"', '"off"')),
    ClassifierRule("motion_sensor", "Motion Sensor",
                   ("motion", "pir"), ("motion",), ("detected",)),
    ClassifierRule("distance_sensor", "Distance Sensor",
                   ("distance", "ultrasonic", "range"), ("distance",)),
    ClassifierRule("smart_thermostat", "Thermostat",
                   ("thermostat", "hvac", "climate"), ("target",)),
    ClassifierRule("smart_lock", "Smart Lock",
                   ("lock", "deadbolt"), ("lock",), ("locked", "unlocked")),
    ClassifierRule("air_quality", "Air Quality Sensor",
                   ("air", "quality", "co2"), ("co2", "pm", "aqi")),
    ClassifierRule("security_camera", "Security Camera",
                   ("camera", "video"), ("video", "recording")),
    ClassifierRule("water_leak_sensor", "Water Leak Sensor",
                   ("water", "leak", "flood"), ("water", "leak"), ("wet", "dry")),
)


def classify(topic: str, data: Dict[str, Any]) -> Tuple[str, str]:
    """Return ``(device_type, label)`` for a topic and its decoded payload."""
    topic_lower = topic.lower()
    keys = [str(key).lower() for key in data.keys()]
    content = json.dumps(data, separators=(",", ":"), ensure_ascii=False, default=str).lower()
    for rule in RULES:
        if rule.matches(topic_lower, keys, content):
            return rule.device_type, rule.label
    return DEFAULT_TYPE, DEFAULT_LABEL


def extract_room(topic: str) -> str:
    for pattern in ROOM_PATTERNS:
        match = pattern.search(topic)
        if not match or not match.group(1):
            continue
        segment = match.group(1)
        if segment.lower() in GENERIC_SEGMENTS:
            continue
        return segment[0].upper() + re.sub(r"[-_]", " ", segment[1:])
    return DEFAULT_ROOM


def display_name(label: str, topic: str) -> str:
    last = topic.split("/")[-1] or "Device"
    return f"{label} ({last[0].upper()}{last[1:]})"


def detect_devices(
    messages: Iterable[MqttMessage],
    devices: Iterable[Device],
    deleted_topics: Collection[str],
    *,
    limit: int = 100,
) -> List[DeviceCandidate]:
    """Propose devices for recently seen topics that nothing owns yet.

    ``messages`` must be most-recent-first; only the first ``limit`` are
    considered and the latest payload per topic is classified. Pure: nothing
    passed in is modified.
    """
    known = [device for device in devices if is_valid_device(device)]
    window = list(islice(messages, limit))

    latest: Dict[str, MqttMessage] = {}
    for message in window:
        topic = message.topic
        if topic in latest or is_command_topic(topic) or topic in deleted_topics:
            continue
        if resolve_device(known, topic) is not None:
            continue
        latest[topic] = message

    candidates: List[DeviceCandidate] = []
    for topic, message in latest.items():
        data = parse_payload(message.payload)
        device_type, label = classify(topic, data)
        candidates.append(
            DeviceCandidate(
                name=display_name(label, topic),
                device_type=device_type,
                topic=topic,
                room=extract_room(topic),
            )
        )
    return candidates