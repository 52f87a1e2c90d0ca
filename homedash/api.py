import asyncio
from contextlib import suppress
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import ValidationError

from .config import settings
from .database import init_db
from .device_types import describe_data
from .engine.reconciler import Reconciler, build_reconciler
from .engine.scheduling import LoopScheduler
from .engine.store import DeviceNotFoundError
from .engine.topics import command_topic_for
from .models import (
    BulkRemoveRequest, ControlRequest,
    DashboardResponse, DataField, Device, DeviceCandidate, DeviceCreate,
    DeviceDetailResponse, DeviceFilters, DeviceResponse, DeviceUpdate,
    LayoutEntry, MutationResponse, SensorTimeoutUpdate,
)
from .mqtt_client import MQTTTransport
from .services.admin_settings import AdminSettingsProvider
from .services.persistence import SqlConfigRepository
from .utils.time import utc_now

app = FastAPI(title="Home Dashboard API", version="1.0.0")

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize database, load the dashboard and connect MQTT on startup"""
    await init_db()

    transport = MQTTTransport()
    admin_settings = AdminSettingsProvider(default_timeout=settings.sensor_timeout_default_seconds)
    reconciler = build_reconciler(
        SqlConfigRepository(),
        transport,
        admin_settings,
        LoopScheduler(),
        user_id=settings.dashboard_user_id,
        catch_all_topic=settings.mqtt_catch_all_topic,
        recent_limit=settings.recent_message_limit,
        timeout_default=settings.sensor_timeout_default_seconds,
        timeout_ttl=settings.sensor_timeout_cache_seconds,
        cleanup_delay=settings.cleanup_debounce_seconds,
    )
    await reconciler.store.load()
    await reconciler.start()

    transport.add_connect_listener(reconciler.on_connected)
    await transport.connect()

    app.state.transport = transport
    app.state.admin_settings = admin_settings
    app.state.reconciler = reconciler
    app.state.processor_task = asyncio.create_task(reconciler.run(transport.messages))

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        reconciler.refresh_timeout,
        "interval",
        seconds=settings.sensor_timeout_cache_seconds,
        id="refresh_sensor_timeout",
    )
    scheduler.start()
    app.state.scheduler = scheduler


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)

    task = getattr(app.state, "processor_task", None)
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        app.state.processor_task = None

    reconciler = getattr(app.state, "reconciler", None)
    if reconciler:
        await reconciler.store.close()
        app.state.reconciler = None

    transport = getattr(app.state, "transport", None)
    if transport:
        await transport.disconnect()


def get_reconciler(request: Request) -> Reconciler:
    reconciler = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        raise HTTPException(status_code=503, detail="Dashboard engine not started")
    return reconciler


def get_admin_settings(request: Request) -> AdminSettingsProvider:
    admin_settings = getattr(request.app.state, "admin_settings", None)
    if admin_settings is None:
        raise HTTPException(status_code=503, detail="Dashboard engine not started")
    return admin_settings


def _to_response(device: Device) -> DeviceResponse:
    return DeviceResponse.model_validate(device.model_dump())


def _not_found(exc: DeviceNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Device {exc.device_id} not found")


# Health check
@app.get("/api/health")
async def health_check(request: Request):
    """Health check endpoint"""
    reconciler: Optional[Reconciler] = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        return {"status": "starting", "mqtt_connected": False, "timestamp": utc_now()}
    return {
        "status": "healthy",
        "mqtt_connected": reconciler.transport.is_connected,
        "devices": len(reconciler.store.valid_devices()),
        "online": reconciler.tracker.online_count,
        "sensor_timeout_seconds": reconciler.timeouts.current,
        "last_save_ok": reconciler.store.last_save_ok,
        "timestamp": utc_now(),
    }


# ---------------- Device Endpoints ---------------- #


@app.get("/api/devices", response_model=List[DeviceResponse])
async def list_devices(reconciler: Reconciler = Depends(get_reconciler)):
    """Devices matching the saved filters, disabled ones included"""
    return [_to_response(device) for device in reconciler.store.get_filtered()]


@app.get("/api/dashboard", response_model=DashboardResponse)
async def get_dashboard(reconciler: Reconciler = Depends(get_reconciler)):
    devices = reconciler.store.dashboard_devices()
    visible = {device.id for device in devices}
    online = sum(1 for device in devices if device.is_online)
    return DashboardResponse(
        devices=[_to_response(device) for device in devices],
        layout=[entry for entry in reconciler.store.layout if entry.i in visible],
        online=online,
        offline=len(devices) - online,
    )


@app.get("/api/devices/{device_id}", response_model=DeviceDetailResponse)
async def get_device(device_id: str, reconciler: Reconciler = Depends(get_reconciler)):
    device = reconciler.store.get(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")

    readings = {
        key: DataField(kind=tagged.kind.value, value=tagged.value, display=display)
        for key, (tagged, display) in describe_data(device.device_type, device.data).items()
    }
    return DeviceDetailResponse(
        **device.model_dump(),
        readings=readings,
        command_topic_resolved=command_topic_for(device) if device.controllable else None,
    )


@app.post("/api/devices", response_model=MutationResponse)
async def create_device(payload: DeviceCreate, reconciler: Reconciler = Depends(get_reconciler)):
    device_id = await reconciler.store.add_device(payload)
    return MutationResponse(persisted=reconciler.store.last_save_ok, device_id=device_id)


@app.patch("/api/devices/{device_id}", response_model=MutationResponse)
async def update_device(
    device_id: str,
    payload: DeviceUpdate,
    reconciler: Reconciler = Depends(get_reconciler),
):
    patch = payload.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        await reconciler.store.update_device(device_id, patch)
    except DeviceNotFoundError as exc:
        raise _not_found(exc)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    return MutationResponse(persisted=reconciler.store.last_save_ok, device_id=device_id)


@app.delete("/api/devices/{device_id}", response_model=MutationResponse)
async def delete_device(device_id: str, reconciler: Reconciler = Depends(get_reconciler)):
    try:
        await reconciler.store.remove_device(device_id)
    except DeviceNotFoundError as exc:
        raise _not_found(exc)
    return MutationResponse(persisted=reconciler.store.last_save_ok, device_id=device_id)


@app.post("/api/devices/bulk-remove", response_model=MutationResponse)
async def bulk_remove_devices(payload: BulkRemoveRequest, reconciler: Reconciler = Depends(get_reconciler)):
    removed = await reconciler.store.remove_devices(payload.device_ids)
    return MutationResponse(
        persisted=reconciler.store.last_save_ok,
        removed=len(removed),
        device_ids=removed,
    )


@app.post("/api/devices/clear", response_model=MutationResponse)
async def clear_devices(reconciler: Reconciler = Depends(get_reconciler)):
    await reconciler.store.clear_all()
    return MutationResponse(persisted=reconciler.store.last_save_ok)


@app.post("/api/devices/cleanup", response_model=MutationResponse)
async def cleanup_devices(reconciler: Reconciler = Depends(get_reconciler)):
    removed = await reconciler.store.cleanup_invalid()
    return MutationResponse(persisted=reconciler.store.last_save_ok, removed=removed)


@app.post("/api/devices/{device_id}/toggle", response_model=MutationResponse)
async def toggle_device(device_id: str, reconciler: Reconciler = Depends(get_reconciler)):
    try:
        enabled = await reconciler.store.toggle_enabled(device_id)
    except DeviceNotFoundError as exc:
        raise _not_found(exc)
    return MutationResponse(persisted=reconciler.store.last_save_ok, device_id=device_id, enabled=enabled)


@app.post("/api/devices/{device_id}/control")
async def control_device(
    device_id: str,
    payload: ControlRequest,
    reconciler: Reconciler = Depends(get_reconciler),
):
    """Publish a control payload; ``published`` is False when nothing was sent"""
    return {"device_id": device_id, "published": reconciler.control(device_id, payload.payload)}


@app.delete("/api/deleted-topics", response_model=MutationResponse)
async def clear_deleted_topics(reconciler: Reconciler = Depends(get_reconciler)):
    await reconciler.store.clear_deleted_topics()
    return MutationResponse(persisted=reconciler.store.last_save_ok)


# ---------------- Dashboard Preferences ---------------- #


@app.get("/api/filters", response_model=DeviceFilters)
async def get_filters(reconciler: Reconciler = Depends(get_reconciler)):
    return reconciler.store.filters


@app.put("/api/filters", response_model=DeviceFilters)
async def set_filters(filters: DeviceFilters, reconciler: Reconciler = Depends(get_reconciler)):
    await reconciler.store.set_filters(filters)
    return reconciler.store.filters


@app.put("/api/layout", response_model=List[LayoutEntry])
async def update_layout(entries: List[LayoutEntry], reconciler: Reconciler = Depends(get_reconciler)):
    return await reconciler.store.update_layout(entries)


# ---------------- Auto-detect ---------------- #


@app.get("/api/auto-detect", response_model=List[DeviceCandidate])
async def detect_devices(reconciler: Reconciler = Depends(get_reconciler)):
    return reconciler.detect_devices()


@app.post("/api/auto-detect/accept", response_model=MutationResponse)
async def accept_detected(
    candidates: Optional[List[DeviceCandidate]] = Body(default=None),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """Add the given candidates, or everything currently detected when omitted"""
    added = await reconciler.accept_detected(candidates)
    return MutationResponse(
        persisted=reconciler.store.last_save_ok,
        device_ids=added,
    )


# ---------------- Admin Settings ---------------- #


@app.get("/api/settings/sensor-timeout")
async def get_sensor_timeout(
    reconciler: Reconciler = Depends(get_reconciler),
    admin_settings: AdminSettingsProvider = Depends(get_admin_settings),
):
    return {
        "seconds": await admin_settings.get_global_sensor_timeout_seconds(),
        "effective_seconds": reconciler.timeouts.current,
    }


@app.put("/api/settings/sensor-timeout")
async def set_sensor_timeout(
    payload: SensorTimeoutUpdate,
    reconciler: Reconciler = Depends(get_reconciler),
    admin_settings: AdminSettingsProvider = Depends(get_admin_settings),
):
    seconds = await admin_settings.set_global_sensor_timeout_seconds(payload.seconds)
    effective = await reconciler.refresh_timeout()
    logger.info(f"Sensor timeout updated to {seconds}s (effective {effective}s)")
    return {"seconds": seconds, "effective_seconds": effective}
