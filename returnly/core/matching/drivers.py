# returnly/core/matching/drivers.py
"""
Реестр водителей и их местоположения.

Занятость водителя (active_order_id) хранится в БД и меняется
условным UPDATE. Координаты онлайн-водителей лежат в Redis Geo-индексе.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from returnly.common.constants import TypeMsg
from returnly.common.logger import log_info
from returnly.common.timeutils import utcnow
from returnly.infra.database import DatabaseManager
from returnly.infra.redis_client import RedisClient

DRIVERS_GEO_KEY = "drivers:locations"


class Driver(BaseModel):
    """Водитель."""

    id: str
    is_online: bool = False
    rating: float = Field(5.0, ge=0, le=5)
    active_order_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {"from_attributes": True}


class DriverRepository(ABC):
    @abstractmethod
    async def get(self, driver_id: str) -> Optional[Driver]:
        ...

    @abstractmethod
    async def set_online(self, driver_id: str, online: bool) -> Driver:
        """Меняет статус онлайн. Незнакомый водитель регистрируется."""

    @abstractmethod
    async def claim(self, driver_id: str, order_id: str) -> bool:
        """
        Занимает водителя заказом: только если он онлайн и свободен.

        Returns:
            True, если водитель теперь закреплён за order_id
        """

    @abstractmethod
    async def release(self, driver_id: str, order_id: str) -> bool:
        """Освобождает водителя, если он закреплён именно за order_id."""


class PostgresDriverRepository(DriverRepository):
    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get(self, driver_id: str) -> Optional[Driver]:
        row = await self._db.fetchrow(
            "SELECT id, is_online, rating, active_order_id, updated_at FROM drivers WHERE id = $1",
            driver_id,
        )
        return Driver.model_validate(dict(row)) if row else None

    async def set_online(self, driver_id: str, online: bool) -> Driver:
        row = await self._db.fetchrow(
            """
            INSERT INTO drivers (id, is_online, updated_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (id) DO UPDATE SET is_online = $2, updated_at = $3
            RETURNING id, is_online, rating, active_order_id, updated_at
            """,
            driver_id,
            online,
            utcnow(),
        )
        return Driver.model_validate(dict(row))

    async def claim(self, driver_id: str, order_id: str) -> bool:
        result = await self._db.execute(
            """
            UPDATE drivers
            SET active_order_id = $2, updated_at = $3
            WHERE id = $1 AND is_online AND active_order_id IS NULL
            """,
            driver_id,
            order_id,
            utcnow(),
        )
        return result.endswith(" 1")

    async def release(self, driver_id: str, order_id: str) -> bool:
        result = await self._db.execute(
            """
            UPDATE drivers
            SET active_order_id = NULL, updated_at = $3
            WHERE id = $1 AND active_order_id = $2
            """,
            driver_id,
            order_id,
            utcnow(),
        )
        return result.endswith(" 1")


class InMemoryDriverRepository(DriverRepository):
    def __init__(self) -> None:
        self._drivers: dict[str, Driver] = {}
        self._lock = asyncio.Lock()

    async def get(self, driver_id: str) -> Optional[Driver]:
        driver = self._drivers.get(driver_id)
        return driver.model_copy() if driver else None

    async def set_online(self, driver_id: str, online: bool) -> Driver:
        async with self._lock:
            driver = self._drivers.get(driver_id) or Driver(id=driver_id)
            driver = driver.model_copy(update={"is_online": online, "updated_at": utcnow()})
            self._drivers[driver_id] = driver
        return driver.model_copy()

    async def claim(self, driver_id: str, order_id: str) -> bool:
        async with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None or not driver.is_online or driver.active_order_id is not None:
                return False
            self._drivers[driver_id] = driver.model_copy(
                update={"active_order_id": order_id, "updated_at": utcnow()}
            )
        return True

    async def release(self, driver_id: str, order_id: str) -> bool:
        async with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None or driver.active_order_id != order_id:
                return False
            self._drivers[driver_id] = driver.model_copy(
                update={"active_order_id": None, "updated_at": utcnow()}
            )
        return True


# =============================================================================
# МЕСТОПОЛОЖЕНИЕ ВОДИТЕЛЕЙ
# =============================================================================

class DriverLocationStore(ABC):
    @abstractmethod
    async def update(self, driver_id: str, latitude: float, longitude: float) -> None:
        ...

    @abstractmethod
    async def get(self, driver_id: str) -> Optional[tuple[float, float]]:
        """Returns: (latitude, longitude) или None"""

    @abstractmethod
    async def remove(self, driver_id: str) -> None:
        ...


class RedisDriverLocationStore(DriverLocationStore):
    """Координаты в Redis Geo-индексе, время последнего обновления хранится в ключе с TTL."""

    def __init__(self, redis: RedisClient, ttl: int | None = None) -> None:
        if ttl is None:
            from returnly.config import settings
            ttl = settings.assignment.DRIVER_LOCATION_TTL
        self._redis = redis
        self._ttl = ttl

    async def update(self, driver_id: str, latitude: float, longitude: float) -> None:
        await self._redis.geoadd(DRIVERS_GEO_KEY, longitude, latitude, driver_id)
        await self._redis.set(f"driver:last_seen:{driver_id}", utcnow().isoformat(), ttl=self._ttl)

    async def get(self, driver_id: str) -> Optional[tuple[float, float]]:
        # Устаревшие координаты не используем
        if not await self._redis.exists(f"driver:last_seen:{driver_id}"):
            return None
        position = await self._redis.geopos(DRIVERS_GEO_KEY, driver_id)
        if position is None:
            return None
        longitude, latitude = position
        return latitude, longitude

    async def remove(self, driver_id: str) -> None:
        await self._redis.georem(DRIVERS_GEO_KEY, driver_id)
        await self._redis.delete(f"driver:last_seen:{driver_id}")
        await log_info(f"Водитель {driver_id} удалён из geo-индекса", type_msg=TypeMsg.DEBUG)


class InMemoryDriverLocationStore(DriverLocationStore):
    def __init__(self) -> None:
        self._positions: dict[str, tuple[float, float]] = {}

    async def update(self, driver_id: str, latitude: float, longitude: float) -> None:
        self._positions[driver_id] = (latitude, longitude)

    async def get(self, driver_id: str) -> Optional[tuple[float, float]]:
        return self._positions.get(driver_id)

    async def remove(self, driver_id: str) -> None:
        self._positions.pop(driver_id, None)
