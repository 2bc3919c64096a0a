"""Durable string-under-a-key storage backed by SQLAlchemy."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.device_setting import DeviceSetting

logger = logging.getLogger(__name__)


class StorageUnavailableError(RuntimeError):
    """Raised when durable storage cannot be read or written."""


class KeyValueStore(ABC):
    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        raise NotImplementedError


class SqlKeyValueStore(KeyValueStore):
    """Stores values in the ``device_settings`` table."""

    def __init__(self, session_maker: async_sessionmaker) -> None:
        self._session_maker = session_maker

    async def get_item(self, key: str) -> Optional[str]:
        try:
            async with self._session_maker() as session:
                row = await self._load(session, key)
                return row.value if row else None
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError(f"Could not read '{key}': {exc}") from exc

    async def set_item(self, key: str, value: str) -> None:
        try:
            async with self._session_maker() as session:
                row = await self._load(session, key)
                if row is None:
                    session.add(DeviceSetting(key=key, value=value))
                else:
                    row.value = value
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError(f"Could not write '{key}': {exc}") from exc
        logger.debug("Stored device setting %s", key)

    async def remove_item(self, key: str) -> None:
        try:
            async with self._session_maker() as session:
                row = await self._load(session, key)
                if row is not None:
                    await session.delete(row)
                    await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError(f"Could not remove '{key}': {exc}") from exc

    @staticmethod
    async def _load(session: AsyncSession, key: str) -> Optional[DeviceSetting]:
        result = await session.execute(select(DeviceSetting).where(DeviceSetting.key == key))
        return result.scalar_one_or_none()
