# returnly/core/geo/service.py
"""
Определение расстояния маршрута.

Основной провайдер: Google Distance Matrix API. Для разработки без
ключа есть оценка по прямой с коэффициентом дорог.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx

from returnly.common.constants import TypeMsg
from returnly.common.logger import log_error, log_info
from returnly.core.errors import PricingUnavailable

EARTH_RADIUS_MILES = 3959.0
METERS_PER_MILE = Decimal("1609.344")
# Прямая линия * 1.3 приближает реальный путь по дорогам
ROAD_FACTOR = 1.3


@dataclass
class Location:
    """Точка маршрута."""
    address: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Расстояние между двумя точками по формуле Haversine (в милях)."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_MILES * c


def _round_miles(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class DistanceProvider(ABC):
    """Источник расстояния между точкой забора и магазином."""

    @abstractmethod
    async def resolve(self, pickup: Location, dropoff: Location) -> Decimal:
        """
        Returns:
            Расстояние в милях

        Raises:
            PricingUnavailable: расстояние определить не удалось
        """

    async def close(self) -> None:
        return None


class GoogleDistanceProvider(DistanceProvider):
    """Расстояние по дорогам через Google Distance Matrix API."""

    DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Args:
            api_key: API ключ Google Maps (берётся из конфига если None)
            timeout: Таймаут запроса (секунды)
            client: Готовый HTTP клиент (для тестов)
        """
        if api_key is None:
            from returnly.config import settings
            api_key = settings.google_maps.GOOGLE_MAPS_API_KEY
            timeout = settings.google_maps.REQUEST_TIMEOUT

        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _format_point(location: Location) -> str:
        if location.has_coordinates:
            return f"{location.latitude},{location.longitude}"
        return location.address

    async def resolve(self, pickup: Location, dropoff: Location) -> Decimal:
        if not self._api_key:
            await log_error("Google Maps API key не настроен")
            raise PricingUnavailable("Сервис расчёта расстояния не настроен")

        try:
            response = await self._client.get(
                self.DISTANCE_MATRIX_URL,
                params={
                    "origins": self._format_point(pickup),
                    "destinations": self._format_point(dropoff),
                    "units": "imperial",
                    "key": self._api_key,
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            await log_error(f"Ошибка запроса Distance Matrix: {e}")
            raise PricingUnavailable("Сервис расчёта расстояния недоступен") from e

        try:
            element = data["rows"][0]["elements"][0]
        except (KeyError, IndexError, TypeError):
            element = {}

        if data.get("status") != "OK" or element.get("status") != "OK":
            await log_info(
                f"Distance Matrix не нашёл маршрут: {pickup.address} -> {dropoff.address} "
                f"(status={data.get('status')}, element={element.get('status')})",
                type_msg=TypeMsg.WARNING,
            )
            raise PricingUnavailable("Не удалось построить маршрут между адресами")

        meters = Decimal(str(element["distance"]["value"]))
        return _round_miles(meters / METERS_PER_MILE)


class StraightLineDistanceProvider(DistanceProvider):
    """Оценка по прямой с коэффициентом дорог. Требует координаты обеих точек."""

    def __init__(self, road_factor: float = ROAD_FACTOR) -> None:
        self._road_factor = road_factor

    async def resolve(self, pickup: Location, dropoff: Location) -> Decimal:
        if not (pickup.has_coordinates and dropoff.has_coordinates):
            raise PricingUnavailable("Для оценки расстояния нужны координаты обеих точек")

        miles = haversine_miles(
            pickup.latitude, pickup.longitude,  # type: ignore[arg-type]
            dropoff.latitude, dropoff.longitude,  # type: ignore[arg-type]
        )
        return _round_miles(Decimal(str(miles * self._road_factor)))
