from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from loguru import logger

from ..database import AsyncSessionLocal
from ..models import DashboardConfig
from ..utils.time import utc_now


class SqlConfigRepository:
    """Dashboard snapshots stored one row per user in ``dashboard_config``."""

    def __init__(self, session_factory: sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    async def load_config(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as session:
            row = await self._get_row(session, user_id)
            if row is None:
                return None
            if not isinstance(row.config_data, dict):
                logger.warning(f"Dashboard config for {user_id} is not an object, ignoring it")
                return None
            return dict(row.config_data)

    async def save_config(self, user_id: str, config: Dict[str, Any]) -> bool:
        """Insert or replace the user's snapshot."""
        try:
            async with self._session_factory() as session:
                row = await self._get_row(session, user_id)
                if row:
                    row.config_data = config
                    row.updated_at = utc_now()
                else:
                    session.add(DashboardConfig(user_id=user_id, config_data=config))
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to save dashboard config for {user_id}: {e}")
            return False
        return True

    @staticmethod
    async def _get_row(session: AsyncSession, user_id: str) -> Optional[DashboardConfig]:
        result = await session.execute(
            select(DashboardConfig).where(DashboardConfig.user_id == user_id)
        )
        return result.scalar_one_or_none()
