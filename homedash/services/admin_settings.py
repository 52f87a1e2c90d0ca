from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker
from loguru import logger

from ..database import AsyncSessionLocal
from ..engine.timeouts import clamp_timeout
from ..models import AdminSetting
from ..utils.time import utc_now

SENSOR_TIMEOUT_KEY = "global_sensor_timeout"


class AdminSettingsProvider:
    """Admin-editable settings in the ``admin_settings`` table."""

    def __init__(self, session_factory: sessionmaker = AsyncSessionLocal, *, default_timeout: float = 60.0):
        self._session_factory = session_factory
        self.default_timeout = default_timeout

    async def get_setting(self, key: str) -> Optional[AdminSetting]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AdminSetting).where(AdminSetting.setting_key == key)
            )
            return result.scalar_one_or_none()

    async def get_global_sensor_timeout_seconds(self) -> float:
        setting = await self.get_setting(SENSOR_TIMEOUT_KEY)
        if setting is None:
            return self.default_timeout
        try:
            return float(setting.setting_value)
        except ValueError:
            logger.warning(f"Invalid {SENSOR_TIMEOUT_KEY} value {setting.setting_value!r}, using default")
            return self.default_timeout

    async def set_global_sensor_timeout_seconds(self, seconds: float) -> float:
        seconds = clamp_timeout(seconds)
        value = str(int(seconds)) if float(seconds).is_integer() else str(seconds)
        async with self._session_factory() as session:
            result = await session.execute(
                select(AdminSetting).where(AdminSetting.setting_key == SENSOR_TIMEOUT_KEY)
            )
            setting = result.scalar_one_or_none()
            if setting:
                setting.setting_value = value
                setting.updated_at = utc_now()
            else:
                session.add(
                    AdminSetting(
                        setting_key=SENSOR_TIMEOUT_KEY,
                        setting_value=value,
                        setting_type="number",
                        description="Seconds without messages before a sensor is shown offline",
                    )
                )
            await session.commit()
        logger.info(f"Global sensor timeout set to {value}s")
        return seconds
