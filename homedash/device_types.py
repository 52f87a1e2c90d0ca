from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from loguru import logger

from .config import settings
from .engine.payloads import TaggedValue, format_value, tag_data


@dataclass(frozen=True)
class DeviceTypeConfig:
    key: str
    name: str
    icon: str
    controllable: bool = False
    units: Mapping[str, str] = field(default_factory=dict)
    states: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    controls: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)


UNKNOWN_TYPE = DeviceTypeConfig(key="unknown", name="Unknown Device", icon="device-unknown")

_BUILTIN: Dict[str, Dict[str, Any]] = {
    "temperature_sensor": {
        "name": "Temperature Sensor",
        "icon": "thermometer",
        "units": {"Temp": "°C", "Humidity": "%"},
    },
    "door_sensor": {
        "name": "Door Sensor",
        "icon": "door-open",
        "units": {"Battery": "%"},
        "states": {
            "Door": {
                "Open": {"color": "warning", "icon": "door-open"},
                "Closed": {"color": "success", "icon": "door-closed"},
            }
        },
    },
    "relay": {
        "name": "Smart Relay",
        "icon": "zap",
        "controllable": True,
        "states": {
            "Relay": {
                "ON": {"color": "success", "icon": "zap"},
                "OFF": {"color": "gray", "icon": "zap-off"},
            }
        },
        "controls": {"Relay": {"type": "toggle", "states": ["ON", "OFF"]}},
    },
    "motion_sensor": {
        "name": "Motion Sensor",
        "icon": "activity",
        "states": {
            "Motion": {
                "Detected": {"color": "warning", "icon": "activity"},
                "Clear": {"color": "success", "icon": "check"},
            }
        },
    },
    "distance_sensor": {
        "name": "Distance Sensor",
        "icon": "ruler",
        "units": {"Distance": "cm"},
    },
    "smart_thermostat": {
        "name": "Thermostat",
        "icon": "thermometer-snowflake",
        "controllable": True,
        "units": {"Temp": "°C", "Target": "°C", "Humidity": "%"},
        "controls": {"Target": {"type": "number", "min": 5, "max": 35, "step": 0.5}},
    },
    "smart_lock": {
        "name": "Smart Lock",
        "icon": "lock",
        "controllable": True,
        "units": {"Battery": "%"},
        "states": {
            "Lock": {
                "LOCKED": {"color": "success", "icon": "lock"},
                "UNLOCKED": {"color": "warning", "icon": "unlock"},
            }
        },
        "controls": {"Lock": {"type": "toggle", "states": ["LOCKED", "UNLOCKED"]}},
    },
    "air_quality": {
        "name": "Air Quality Sensor",
        "icon": "wind",
        "units": {"CO2": "ppm", "PM25": "µg/m³", "PM10": "µg/m³", "AQI": ""},
    },
    "security_camera": {
        "name": "Security Camera",
        "icon": "video",
        "controllable": True,
        "controls": {"Recording": {"type": "toggle", "states": ["ON", "OFF"]}},
    },
    "water_leak_sensor": {
        "name": "Water Leak Sensor",
        "icon": "droplets",
        "units": {"Battery": "%"},
        "states": {
            "Status": {
                "Wet": {"color": "danger", "icon": "droplets"},
                "Dry": {"color": "success", "icon": "check"},
            }
        },
    },
}


def _build(key: str, raw: Mapping[str, Any]) -> DeviceTypeConfig:
    return DeviceTypeConfig(
        key=key,
        name=raw.get("name") or key.replace("_", " ").title(),
        icon=raw.get("icon") or UNKNOWN_TYPE.icon,
        controllable=bool(raw.get("controllable", False)),
        units=dict(raw.get("units") or {}),
        states=dict(raw.get("states") or {}),
        controls=dict(raw.get("controls") or {}),
    )


def _load_device_types(path: Optional[str]) -> Dict[str, DeviceTypeConfig]:
    """Built-in table, extended or overridden by an optional JSON file."""
    table = dict(_BUILTIN)
    if path:
        try:
            with open(path, "r") as f:
                overrides = json.load(f)
            if isinstance(overrides, dict):
                table.update({k: v for k, v in overrides.items() if isinstance(v, dict)})
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(f"Could not load device types from {path}: {exc}")
    return {key: _build(key, raw) for key, raw in table.items()}


DEVICE_TYPES = _load_device_types(settings.device_types_path)


def get_device_type(key: Optional[str]) -> DeviceTypeConfig:
    if key and key in DEVICE_TYPES:
        return DEVICE_TYPES[key]
    return UNKNOWN_TYPE


def unit_for(config: DeviceTypeConfig, data_key: str) -> Optional[str]:
    return config.units.get(data_key) or None


def describe_data(device_type: Optional[str], data: Mapping[str, Any]) -> Dict[str, Tuple[TaggedValue, str]]:
    """Tag every data field and render it with the type's units."""
    config = get_device_type(device_type)
    described: Dict[str, Tuple[TaggedValue, str]] = {}
    for key, tagged in tag_data(data).items():
        described[key] = (tagged, format_value(key, tagged, unit_for(config, key)))
    return described
