"""Payload decoding and typed views over device data."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

TIMESTAMP_KEYS = {"LastSeen", "LastCheck"}


def parse_payload(payload: Union[str, bytes, Mapping[str, Any], None]) -> Dict[str, Any]:
    """Decode an MQTT payload into a device data mapping.

    JSON objects are used as-is; any other JSON value, or text that is not
    JSON at all, is wrapped as ``{"value": ...}``.
    """
    if isinstance(payload, Mapping):
        return dict(payload)
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if payload is None:
        return {"value": None}
    try:
        parsed = json.loads(payload)
    except (json.JSONDecodeError, TypeError):
        return {"value": payload}
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}


class ValueKind(str, Enum):
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    OBJECT = "object"
    LIST = "list"
    NULL = "null"


@dataclass(frozen=True)
class TaggedValue:
    kind: ValueKind
    value: Any


def tag_value(value: Any) -> TaggedValue:
    # bool is an int subclass, check it first
    if isinstance(value, bool):
        return TaggedValue(ValueKind.BOOLEAN, value)
    if isinstance(value, (int, float)):
        return TaggedValue(ValueKind.NUMBER, value)
    if isinstance(value, str):
        return TaggedValue(ValueKind.STRING, value)
    if isinstance(value, Mapping):
        return TaggedValue(ValueKind.OBJECT, dict(value))
    if isinstance(value, (list, tuple)):
        return TaggedValue(ValueKind.LIST, list(value))
    if value is None:
        return TaggedValue(ValueKind.NULL, None)
    return TaggedValue(ValueKind.STRING, str(value))


def tag_data(data: Mapping[str, Any]) -> Dict[str, TaggedValue]:
    return {key: tag_value(value) for key, value in data.items()}


def format_value(key: str, tagged: TaggedValue, unit: Optional[str] = None) -> str:
    """Human readable rendering of one data field."""
    if tagged.kind is ValueKind.BOOLEAN:
        return "Yes" if tagged.value else "No"
    if tagged.kind is ValueKind.NUMBER:
        return f"{tagged.value} {unit}" if unit else str(tagged.value)
    if tagged.kind is ValueKind.NULL:
        return ""
    if tagged.kind in (ValueKind.OBJECT, ValueKind.LIST):
        return json.dumps(tagged.value, separators=(",", ":"), default=str)
    if key in TIMESTAMP_KEYS:
        try:
            return datetime.fromisoformat(tagged.value.replace("Z", "+00:00")).strftime("%Y-%m-%d %H:%M:%S")
        except ValueError:
            return tagged.value
    return tagged.value
