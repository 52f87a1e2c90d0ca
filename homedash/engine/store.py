"""Authoritative in-memory device state with write-through persistence."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Set

from loguru import logger
from pydantic import ValidationError

from ..device_types import get_device_type
from ..models import Device, DeviceCreate, DeviceFilters, LayoutEntry
from ..utils.time import ensure_utc, iso_utc
from .liveness import LivenessTracker
from .scheduling import Scheduler, TimerHandle
from .topics import is_valid_device, resolve_device

GRID_MIN_W, GRID_MAX_W = 2, 12
GRID_MIN_H, GRID_MAX_H = 2, 8
DEFAULT_W, DEFAULT_H = 4, 4


class DeviceNotFoundError(LookupError):
    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id} not found")
        self.device_id = device_id


class ConfigRepository(Protocol):
    async def load_config(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    async def save_config(self, user_id: str, config: Dict[str, Any]) -> bool: ...


class Transport(Protocol):
    is_connected: bool

    def subscribe(self, topic_filter: str) -> None: ...

    def unsubscribe(self, topic: str) -> None: ...

    def publish(self, topic: str, payload: Dict[str, Any]) -> None: ...


def new_device_id() -> str:
    return f"device_{uuid.uuid4().hex[:16]}"


class DeviceStore:
    """Owns devices, layout, deleted topics and filters for one dashboard user.

    Every user-facing mutation writes the full snapshot through the
    repository before returning. Message-driven updates (data, liveness)
    stay in memory.
    """

    def __init__(
        self,
        repository: ConfigRepository,
        transport: Transport,
        tracker: LivenessTracker,
        scheduler: Scheduler,
        *,
        user_id: str,
        cleanup_delay: float = 1.0,
    ):
        self._repository = repository
        self._transport = transport
        self._tracker = tracker
        self._scheduler = scheduler
        self.user_id = user_id
        self.cleanup_delay = cleanup_delay

        self._devices: Dict[str, Device] = {}
        self._layout: List[LayoutEntry] = []
        self._deleted_topics: Set[str] = set()
        self.filters = DeviceFilters()

        self.last_save_ok = True
        self._cleanup_handle: Optional[TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

        tracker.add_listener(self.mark_offline)

    # ------------------------------------------------------------------ views

    @property
    def devices(self) -> Mapping[str, Device]:
        return MappingProxyType(self._devices)

    @property
    def deleted_topics(self) -> FrozenSet[str]:
        return frozenset(self._deleted_topics)

    @property
    def layout(self) -> List[LayoutEntry]:
        return [entry.model_copy() for entry in self._layout]

    def get(self, device_id: str) -> Optional[Device]:
        device = self._devices.get(device_id)
        if device is None or not self._is_valid(device_id, device):
            return None
        return device

    def valid_devices(self) -> List[Device]:
        return [d for key, d in self._devices.items() if self._is_valid(key, d)]

    def get_filtered(self) -> List[Device]:
        f = self.filters
        filtered = self.valid_devices()

        if f.type != "all":
            filtered = [d for d in filtered if d.device_type == f.type]

        if f.status == "online":
            filtered = [d for d in filtered if d.is_online is True]
        elif f.status == "offline":
            filtered = [d for d in filtered if d.is_online is not True]

        if f.room and f.room != "all":
            filtered = [d for d in filtered if d.room == f.room]

        if f.controllable == "true":
            filtered = [d for d in filtered if d.controllable is True]
        elif f.controllable == "false":
            filtered = [d for d in filtered if d.controllable is not True]

        if f.enabled == "true":
            filtered = [d for d in filtered if d.enabled is True]
        elif f.enabled == "false":
            filtered = [d for d in filtered if d.enabled is not True]

        if f.search:
            needle = f.search.lower()
            filtered = [
                d for d in filtered
                if needle in (d.name or "").lower()
                or needle in (d.room or "").lower()
                or needle in (d.topic or "").lower()
            ]

        return filtered

    def dashboard_devices(self) -> List[Device]:
        """Filtered devices minus disabled ones, as shown on the dashboard grid."""
        return [d for d in self.get_filtered() if d.enabled]

    # -------------------------------------------------------------- lifecycle

    async def load(self) -> None:
        """Replace in-memory state with the persisted snapshot."""
        try:
            config = await self._repository.load_config(self.user_id)
        except Exception as exc:
            logger.error(f"Failed to load dashboard config for {self.user_id}: {exc}")
            config = None
        config = config or {}

        self._tracker.cancel_all()
        self._devices = self._parse_devices(config.get("devices"))
        self._layout = self._parse_layout(config.get("deviceLayouts"))
        self._deleted_topics = {
            topic for topic in (config.get("deletedTopics") or []) if isinstance(topic, str)
        }
        try:
            self.filters = DeviceFilters.model_validate(config.get("deviceFilters") or {})
        except ValidationError as exc:
            logger.warning(f"Ignoring invalid stored device filters: {exc}")
            self.filters = DeviceFilters()

        self._sync_layout()
        self._schedule_cleanup()
        logger.info(f"Loaded {len(self._devices)} devices for user {self.user_id}")

    async def close(self) -> None:
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
            self._cleanup_handle = None
        await self.flush_pending()
        self._tracker.cancel_all()

    async def flush_pending(self) -> None:
        """Wait for background cleanup runs that have already started."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    # ---------------------------------------------------------- UI mutations

    async def add_device(self, new_device: DeviceCreate) -> str:
        config = get_device_type(new_device.device_type)
        device_id = new_device_id()
        device = Device(
            id=device_id,
            name=new_device.name or config.name,
            device_type=new_device.device_type,
            topic=new_device.topic,
            command_topic=new_device.command_topic,
            room=new_device.room or "General",
            icon=config.icon,
            controllable=config.controllable,
            enabled=True if new_device.enabled is None else new_device.enabled,
        )
        self._devices[device_id] = device

        if self._transport.is_connected:
            self._transport.subscribe(new_device.topic)

        # A manual add always wins over an earlier bulk deletion
        self._deleted_topics.discard(new_device.topic)

        self._sync_layout()
        self._schedule_cleanup()
        logger.info(f"Added device {device_id} ({device.name}) on {new_device.topic}")
        await self.save()
        return device_id

    async def remove_device(self, device_id: str) -> Device:
        if device_id not in self._devices:
            raise DeviceNotFoundError(device_id)
        device = self._drop(device_id)
        self._sync_layout()
        self._schedule_cleanup()
        logger.info(f"Removed device {device_id}")
        await self.save()
        return device

    async def remove_devices(self, device_ids: Iterable[str]) -> List[str]:
        """Bulk clear: remove devices and keep their topics out of auto-detect."""
        removed: List[str] = []
        for device_id in device_ids:
            if device_id not in self._devices:
                logger.warning(f"Bulk removal skipped unknown device {device_id}")
                continue
            device = self._drop(device_id)
            if isinstance(device.topic, str) and device.topic:
                self._deleted_topics.add(device.topic)
            removed.append(device_id)

        if removed:
            self._sync_layout()
            self._schedule_cleanup()
            logger.info(f"Bulk removed {len(removed)} devices")
            await self.save()
        return removed

    async def update_device(self, device_id: str, patch: Mapping[str, Any]) -> Device:
        """Shallow-merge ``patch`` into the record. ``id`` cannot change."""
        current = self._devices.get(device_id)
        if current is None:
            raise DeviceNotFoundError(device_id)

        merged = Device.model_validate({**current.model_dump(by_alias=True), **self._patch_aliases(patch)})
        if current.enabled and not merged.enabled:
            self._tracker.cancel(device_id)
            merged = merged.model_copy(update={"is_online": False})
        self._devices[device_id] = merged

        if merged.topic != current.topic:
            if self._transport.is_connected and self._is_valid(device_id, merged):
                self._transport.subscribe(merged.topic)
            if is_valid_device(current):
                self._release_topic(current.topic)

        self._sync_layout()
        self._schedule_cleanup()
        await self.save()
        return merged

    async def toggle_enabled(self, device_id: str) -> bool:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)

        enabled = not device.enabled
        updates: Dict[str, Any] = {"enabled": enabled}
        if not enabled:
            self._tracker.cancel(device_id)
            updates["is_online"] = False
        self._devices[device_id] = device.model_copy(update=updates)

        self._sync_layout()
        logger.info(f"Device {device_id} {'enabled' if enabled else 'disabled'}")
        await self.save()
        return enabled

    async def clear_all(self) -> None:
        self._tracker.cancel_all()
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
            self._cleanup_handle = None
        self._devices = {}
        self._layout = []
        self._deleted_topics = set()
        logger.info(f"Cleared all devices for user {self.user_id}")
        await self.save()

    async def clear_deleted_topics(self) -> None:
        self._deleted_topics = set()
        await self.save()

    async def cleanup_invalid(self) -> int:
        """Remove records with a missing or placeholder id, name or topic."""
        invalid = [key for key, device in self._devices.items() if not self._is_valid(key, device)]
        for key in invalid:
            self._drop(key)
        self._sync_layout()
        if invalid:
            logger.info(f"Cleaned up {len(invalid)} invalid devices")
            await self.save()
        return len(invalid)

    async def set_filters(self, filters: DeviceFilters) -> None:
        self.filters = filters
        await self.save()

    async def update_layout(self, entries: Iterable[LayoutEntry]) -> List[LayoutEntry]:
        self._layout = [
            entry.model_copy(
                update={
                    "x": max(0, entry.x),
                    "y": max(0, entry.y),
                    "w": max(GRID_MIN_W, min(GRID_MAX_W, entry.w)),
                    "h": max(GRID_MIN_H, min(GRID_MAX_H, entry.h)),
                    "min_w": GRID_MIN_W,
                    "max_w": GRID_MAX_W,
                    "min_h": GRID_MIN_H,
                    "max_h": GRID_MAX_H,
                }
            )
            for entry in entries
        ]
        self._sync_layout()
        await self.save()
        return self.layout

    # ------------------------------------------------------ message handling

    def resolve(self, topic: str) -> Optional[Device]:
        enabled = (d for key, d in self._devices.items() if d.enabled and self._is_valid(key, d))
        return resolve_device(enabled, topic)

    def apply_reading(self, device_id: str, data: Dict[str, Any], received_at: datetime) -> bool:
        """Replace a device's data from a message; False if it was not applied."""
        device = self._devices.get(device_id)
        if device is None:
            return False

        received_at = ensure_utc(received_at)
        if device.last_updated is not None and received_at < ensure_utc(device.last_updated):
            logger.debug(f"Keeping newer data for {device_id}; message from {received_at.isoformat()} arrived late")
            self._devices[device_id] = device.model_copy(update={"is_online": True})
            return False

        self._devices[device_id] = device.model_copy(
            update={"data": dict(data), "last_updated": received_at, "is_online": True}
        )
        return True

    def mark_offline(self, device_id: str) -> None:
        device = self._devices.get(device_id)
        if device is None or not device.is_online:
            return
        self._devices[device_id] = device.model_copy(update={"is_online": False})

    # ------------------------------------------------------------ persistence

    def snapshot(self) -> Dict[str, Any]:
        return {
            "devices": {
                key: device.model_dump(mode="json", by_alias=True)
                for key, device in self._devices.items()
            },
            "deviceLayouts": [entry.model_dump(by_alias=True) for entry in self._layout],
            "deletedTopics": sorted(self._deleted_topics),
            "deviceFilters": self.filters.model_dump(),
            "lastUpdated": iso_utc(),
        }

    async def save(self) -> bool:
        """Write the full snapshot; failures are logged and state is kept."""
        config = self.snapshot()
        try:
            ok = bool(await self._repository.save_config(self.user_id, config))
        except Exception as exc:
            logger.error(f"Failed to persist dashboard config for {self.user_id}: {exc}")
            ok = False
        else:
            if not ok:
                logger.error(f"Dashboard config for {self.user_id} was not saved; changes may not survive a reload")
        self.last_save_ok = ok
        return ok

    # --------------------------------------------------------------- helpers

    @staticmethod
    def _is_valid(key: str, device: Optional[Device]) -> bool:
        return is_valid_device(device) and device.id == key

    def _drop(self, device_id: str) -> Device:
        self._tracker.cancel(device_id)
        device = self._devices.pop(device_id)
        self._layout = [entry for entry in self._layout if entry.i != device_id]

        if is_valid_device(device):
            self._release_topic(device.topic)
        return device

    def _release_topic(self, topic: str) -> None:
        """Unsubscribe ``topic`` once no remaining device listens on it."""
        still_used = any(d.topic == topic for d in self._devices.values())
        if self._transport.is_connected and not still_used:
            self._transport.unsubscribe(topic)

    def _sync_layout(self) -> None:
        """One layout entry per valid enabled device, in existing order."""
        visible = [key for key, d in self._devices.items() if d.enabled and self._is_valid(key, d)]
        visible_ids = set(visible)

        kept: List[LayoutEntry] = []
        seen: Set[str] = set()
        for entry in self._layout:
            if entry.i in visible_ids and entry.i not in seen:
                kept.append(entry)
                seen.add(entry.i)

        for device_id in visible:
            if device_id not in seen:
                bottom = max((entry.y + entry.h for entry in kept), default=0)
                kept.append(LayoutEntry(i=device_id, x=0, y=bottom, w=DEFAULT_W, h=DEFAULT_H))
                seen.add(device_id)

        self._layout = kept

    def _schedule_cleanup(self) -> None:
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
        self._cleanup_handle = self._scheduler.call_later(self.cleanup_delay, self._on_cleanup_due)

    def _on_cleanup_due(self) -> None:
        self._cleanup_handle = None
        if all(self._is_valid(key, device) for key, device in self._devices.items()):
            return
        task = asyncio.get_running_loop().create_task(self.cleanup_invalid())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    def _patch_aliases(patch: Mapping[str, Any]) -> Dict[str, Any]:
        fields = Device.model_fields
        normalized: Dict[str, Any] = {}
        for key, value in patch.items():
            if key == "id":
                continue
            field = fields.get(key)
            normalized[field.alias or key if field else key] = value
        return normalized

    @staticmethod
    def _parse_devices(raw: Any) -> Dict[str, Device]:
        if not isinstance(raw, dict):
            return {}
        devices: Dict[str, Device] = {}
        for key, item in raw.items():
            device = Device()
            if isinstance(item, dict):
                try:
                    device = Device.model_validate(item)
                except ValidationError as exc:
                    logger.warning(f"Stored device {key!r} is invalid and will be cleaned up: {exc}")
            else:
                logger.warning(f"Stored device {key!r} is not an object and will be cleaned up")
            devices[str(key)] = device.model_copy(update={"is_online": False})
        return devices

    @staticmethod
    def _parse_layout(raw: Any) -> List[LayoutEntry]:
        if not isinstance(raw, list):
            return []
        layout: List[LayoutEntry] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            try:
                layout.append(LayoutEntry.model_validate(item))
            except ValidationError:
                logger.debug(f"Dropping invalid layout entry {item!r}")
        return layout
