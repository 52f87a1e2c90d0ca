"""MQTT topic matching and topic -> device resolution."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, Optional, Pattern

from loguru import logger

from ..models import Device

COMMAND_SUFFIX = "_sub"
SINGLE_LEVEL = "+"
MULTI_LEVEL = "#"

_INVALID_LITERALS = {"null", "undefined"}


class InvalidTopicPattern(ValueError):
    pass


def is_wildcard(pattern: str) -> bool:
    return SINGLE_LEVEL in pattern or MULTI_LEVEL in pattern


def is_command_topic(topic: str) -> bool:
    """Topics ending in ``_sub`` carry outgoing commands, never device state."""
    return topic.endswith(COMMAND_SUFFIX)


def command_topic_for(device: Device) -> Optional[str]:
    """Topic that control payloads for ``device`` are published on."""
    if device.command_topic:
        return device.command_topic
    if not device.topic or is_wildcard(device.topic):
        return None
    return f"{device.topic}{COMMAND_SUFFIX}"


def translate_pattern(pattern: str) -> Pattern[str]:
    """Translate a wildcard filter to an anchored regex.

    ``+`` matches exactly one level and ``#`` any trailing levels. ``a/#``
    compiles to ``^a/.*$`` and therefore does not match bare ``a``.
    """
    levels = pattern.split("/")
    parts = []
    for index, level in enumerate(levels):
        if level == SINGLE_LEVEL:
            parts.append("[^/]+")
        elif level == MULTI_LEVEL:
            if index != len(levels) - 1:
                raise InvalidTopicPattern(f"'#' must be the last level in {pattern!r}")
            parts.append(".*")
        elif SINGLE_LEVEL in level or MULTI_LEVEL in level:
            raise InvalidTopicPattern(f"wildcard must occupy a whole level in {pattern!r}")
        else:
            parts.append(re.escape(level))
    return re.compile("^" + "/".join(parts) + "$")


@lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> Optional[Pattern[str]]:
    """Cached ``translate_pattern``; malformed patterns are logged once and cached as None."""
    try:
        return translate_pattern(pattern)
    except (InvalidTopicPattern, re.error) as exc:
        logger.warning(f"Ignoring malformed topic pattern {pattern!r}: {exc}")
        return None


def matches(pattern: str, topic: str) -> bool:
    if pattern == topic:
        return True
    if not is_wildcard(pattern):
        return False
    compiled = compile_pattern(pattern)
    return compiled is not None and compiled.match(topic) is not None


def is_valid_device(device: Optional[Device]) -> bool:
    """A record needs a usable id, name and topic to take part in anything."""
    if device is None:
        return False
    for value in (device.id, device.name, device.topic):
        if not isinstance(value, str):
            return False
        stripped = value.strip()
        if not stripped or stripped in _INVALID_LITERALS:
            return False
    return True


def resolve_device(devices: Iterable[Device], topic: str) -> Optional[Device]:
    """Return the first device whose topic pattern matches ``topic``.

    Devices are checked in the order given (the store passes insertion
    order), so when several patterns overlap the earliest registered device
    wins.
    """
    for device in devices:
        if not is_valid_device(device) or is_command_topic(device.topic):
            continue
        if matches(device.topic, topic):
            return device
    return None
