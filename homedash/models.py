from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

from pydantic import BaseModel, ConfigDict, Field

from .utils.time import utc_now

Base = declarative_base()


class DashboardConfig(Base):
    __tablename__ = "dashboard_config"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), unique=True, index=True, nullable=False)
    config_data = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class AdminSetting(Base):
    __tablename__ = "admin_settings"

    setting_key = Column(String(100), primary_key=True)
    setting_value = Column(Text, nullable=False)
    setting_type = Column(String(20), default='string', nullable=False)  # 'string', 'number', 'boolean'
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


@dataclass(frozen=True)
class MqttMessage:
    """A single message as delivered by the transport."""

    topic: str
    payload: Union[str, bytes, Dict[str, Any]]
    received_at: datetime = field(default_factory=utc_now)


class Device(BaseModel):
    """Device record as held in memory and persisted in the dashboard snapshot.

    Identity fields stay optional so that corrupt persisted records can still
    be represented and later removed by the store's cleanup.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: Optional[str] = None
    device_type: Optional[str] = Field(default=None, alias="type")
    topic: Optional[str] = None
    command_topic: Optional[str] = Field(default=None, alias="commandTopic")
    room: Optional[str] = "General"
    icon: Optional[str] = "device-unknown"
    controllable: bool = False
    enabled: bool = True
    data: Dict[str, Any] = Field(default_factory=dict)
    is_online: bool = Field(default=False, alias="isOnline")
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")


class DeviceCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    device_type: str = Field(..., alias="type")
    topic: str = Field(..., min_length=1)
    command_topic: Optional[str] = Field(default=None, alias="commandTopic")
    room: Optional[str] = None
    enabled: Optional[bool] = None


class DeviceCandidate(BaseModel):
    """Auto-detected device proposal."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    device_type: str = Field(..., alias="type")
    topic: str
    room: str = "General"


class DeviceFilters(BaseModel):
    type: str = "all"
    status: Literal["all", "online", "offline"] = "all"
    search: str = ""
    room: str = ""
    controllable: Literal["", "true", "false"] = ""
    enabled: Literal["all", "true", "false"] = "all"


class LayoutEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    i: str
    x: int = 0
    y: int = 0
    w: int = 4
    h: int = 4
    min_w: int = Field(default=2, alias="minW")
    max_w: int = Field(default=12, alias="maxW")
    min_h: int = Field(default=2, alias="minH")
    max_h: int = Field(default=8, alias="maxH")


class DeviceResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    device_type: Optional[str] = Field(default=None, alias="type")
    topic: str
    command_topic: Optional[str] = Field(default=None, alias="commandTopic")
    room: Optional[str] = None
    icon: Optional[str] = None
    controllable: bool
    enabled: bool
    data: Dict[str, Any]
    is_online: bool = Field(alias="isOnline")
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")


class DataField(BaseModel):
    kind: str
    value: Any = None
    display: str


class DeviceDetailResponse(DeviceResponse):
    readings: Dict[str, DataField] = Field(default_factory=dict)
    command_topic_resolved: Optional[str] = None


class DeviceUpdate(BaseModel):
    """Partial update; only explicitly provided fields are applied."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    device_type: Optional[str] = Field(default=None, alias="type")
    topic: Optional[str] = None
    command_topic: Optional[str] = Field(default=None, alias="commandTopic")
    room: Optional[str] = None
    icon: Optional[str] = None
    controllable: Optional[bool] = None
    enabled: Optional[bool] = None


class ControlRequest(BaseModel):
    payload: Dict[str, Any]


class BulkRemoveRequest(BaseModel):
    device_ids: List[str]


class SensorTimeoutUpdate(BaseModel):
    seconds: int = Field(..., ge=1, le=3600)


class MutationResponse(BaseModel):
    persisted: bool
    device_id: Optional[str] = None
    device_ids: Optional[List[str]] = None
    removed: Optional[int] = None
    enabled: Optional[bool] = None


class DashboardResponse(BaseModel):
    devices: List[DeviceResponse]
    layout: List[LayoutEntry]
    online: int
    offline: int
