# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "test_api_key")

from returnly.common.constants import BoxSize, OrderStatus  # noqa: E402
from returnly.core.billing.processor import InMemoryPaymentProcessor  # noqa: E402
from returnly.core.errors import ProcessorRejected, ProcessorTimeout  # noqa: E402
from returnly.core.geo.service import DistanceProvider, Location  # noqa: E402
from returnly.core.orders.models import Order, OrderDraft  # noqa: E402
from returnly.core.pricing.models import BoxLine  # noqa: E402
from returnly.dependencies import Services, build_memory_services  # noqa: E402


# =============================================================================
# ТЕСТОВЫЕ РЕАЛИЗАЦИИ
# =============================================================================

class FixedDistanceProvider(DistanceProvider):
    """Всегда возвращает заданное расстояние."""

    def __init__(self, miles: str = "5") -> None:
        self.miles = Decimal(miles)

    async def resolve(self, pickup: Location, dropoff: Location) -> Decimal:
        return self.miles


class ScriptedPaymentProcessor(InMemoryPaymentProcessor):
    """Процессор, который можно заставить отказывать или молчать."""

    def __init__(self) -> None:
        super().__init__(auto_settle=True)
        self.refund_error: Exception | None = None
        self.charge_error: Exception | None = None
        self.refund_calls = 0

    async def charge(self, order_id, amount):
        if self.charge_error is not None:
            raise self.charge_error
        return await super().charge(order_id, amount)

    async def refund(self, payment_intent_id, amount, reason, idempotency_key):
        self.refund_calls += 1
        if self.refund_error is not None:
            raise self.refund_error
        return await super().refund(payment_intent_id, amount, reason, idempotency_key)

    def reject_refunds(self) -> None:
        self.refund_error = ProcessorRejected("Карта закрыта")

    def timeout_refunds(self) -> None:
        self.refund_error = ProcessorTimeout("Таймаут")


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "_comment_system": "Системные настройки",
        "PROJECT_NAME": "returnly_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "STORAGE_BACKEND": "memory",
        "LOG_LEVEL": "DEBUG",
        "LOG_TO_FILE": False,
        "LOG_FORMAT": "colored",
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "returnly_test",
        "BASE_PRICE": 3.99,
        "DISTANCE_RATE_PER_MILE": 0.50,
        "SIZE_UPCHARGES": {"S": 0, "M": 0, "L": 2.00, "XL": 4.00},
        "MULTI_BOX_FEE": 1.50,
        "SERVICE_FEE_RATE": 0.15,
        "RUSH_FEE": 3.00,
        "SERVICE_RADIUS_MILES": 15.0,
        "MAX_CAS_RETRIES": 5,
        "PROCESSOR_MAX_ATTEMPTS": 3,
        "BULK_MAX_ORDERS": 50,
        "DEV_ADMIN_USERS": ["admin"],
    }


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_connection() -> AsyncMock:
    """Мок соединения внутри транзакции."""
    conn = AsyncMock()
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)
    conn.execute = AsyncMock(return_value="INSERT 0 1")
    return conn


@pytest.fixture
def mock_db(mock_connection: AsyncMock) -> MagicMock:
    """Мок менеджера базы данных."""
    db = MagicMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="UPDATE 1")
    db.fetchval = AsyncMock(return_value=None)

    @asynccontextmanager
    async def transaction():
        yield mock_connection

    db.transaction = transaction
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.exists = AsyncMock(return_value=False)
    redis.geoadd = AsyncMock(return_value=1)
    redis.geopos = AsyncMock(return_value=None)
    redis.georem = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


@pytest.fixture
def no_backoff():
    """Отключает паузы между повторами запросов к процессору."""
    with patch("returnly.common.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


# =============================================================================
# ФИКСТУРЫ СЕРВИСОВ
# =============================================================================

@pytest.fixture
def distance_provider() -> FixedDistanceProvider:
    return FixedDistanceProvider("5")


@pytest.fixture
def processor() -> ScriptedPaymentProcessor:
    return ScriptedPaymentProcessor()


@pytest.fixture
def services(
    distance_provider: FixedDistanceProvider,
    processor: ScriptedPaymentProcessor,
    no_backoff,
) -> Services:
    """Все сервисы на хранилищах в памяти, admin является администратором."""
    return build_memory_services(
        admin_users=["admin"],
        distance_provider=distance_provider,
        processor=processor,
    )


# =============================================================================
# ФИКСТУРЫ МОДЕЛЕЙ
# =============================================================================

def _draft(**overrides: Any) -> OrderDraft:
    """Черновик заказа: одна коробка M, забор и магазин в Сан-Франциско."""
    data: dict[str, Any] = {
        "customer_id": "customer-1",
        "pickup_address": "1 Market St, San Francisco",
        "pickup_latitude": 37.7936,
        "pickup_longitude": -122.3958,
        "dropoff_address": "UPS Store, 2 Mission St",
        "dropoff_latitude": 37.7890,
        "dropoff_longitude": -122.4010,
        "retailer": "Acme",
        "boxes": [BoxLine(size=BoxSize.M, count=1)],
    }
    data.update(overrides)
    return OrderDraft(**data)


@pytest.fixture
def make_draft() -> Callable[..., OrderDraft]:
    return _draft


@pytest.fixture
def draft() -> OrderDraft:
    return _draft()


@pytest.fixture
def paid_order(services: Services) -> Callable[..., Awaitable[Order]]:
    """Оформляет и оплачивает заказ (статус confirmed)."""

    async def create(**overrides: Any) -> Order:
        order = await services.orders.create_order(_draft(**overrides))
        return await services.orders.charge_order(order.id)

    return create


@pytest.fixture
def deliver(services: Services) -> Callable[..., Awaitable[Order]]:
    """Проводит оплаченный заказ через водителя до delivered."""

    async def run(order_id: str, driver_id: str = "driver-1") -> Order:
        await services.assignment.set_online(driver_id, True)
        await services.assignment.accept(order_id, driver_id)
        for status in (OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED):
            order = await services.orders.transition(order_id, status, actor=driver_id)
        return order

    return run
