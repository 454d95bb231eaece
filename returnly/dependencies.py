# returnly/dependencies.py
"""
Dependency Injection: сборка сервисов под выбранное хранилище.

STORAGE_BACKEND=postgres: PostgreSQL, Redis, RabbitMQ, Google Maps
и HTTP-процессор платежей. STORAGE_BACKEND=memory: всё в памяти
процесса, для разработки без инфраструктуры.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from returnly.common.constants import TypeMsg, UserRole
from returnly.common.logger import log_info
from returnly.core.admin.authorization import (
    AuthorizationService,
    InMemoryAuthorizationService,
    PostgresAuthorizationService,
)
from returnly.core.admin.service import AdminService
from returnly.core.billing.processor import (
    HttpPaymentProcessor,
    InMemoryPaymentProcessor,
    PaymentProcessor,
)
from returnly.core.billing.service import SettlementService
from returnly.core.geo.service import (
    DistanceProvider,
    GoogleDistanceProvider,
    StraightLineDistanceProvider,
)
from returnly.core.matching.drivers import (
    InMemoryDriverLocationStore,
    InMemoryDriverRepository,
    PostgresDriverRepository,
    RedisDriverLocationStore,
)
from returnly.core.matching.service import AssignmentService
from returnly.core.orders.memory import InMemoryOrderRepository
from returnly.core.orders.repository import PostgresOrderRepository
from returnly.core.orders.service import OrderService
from returnly.core.pricing.promo import (
    InMemoryPromoRepository,
    PostgresPromoRepository,
    default_promo_codes,
)
from returnly.infra.event_bus import NullEventBus

if TYPE_CHECKING:
    from returnly.infra.event_bus import EventBus


@dataclass
class Services:
    """Собранные сервисы приложения."""
    backend: str
    orders: OrderService
    assignment: AssignmentService
    settlement: SettlementService
    admin: AdminService
    authorization: AuthorizationService
    distance_provider: DistanceProvider
    processor: PaymentProcessor
    event_bus: "EventBus | NullEventBus"


def _assemble(
    backend: str,
    order_repo,
    promo_repo,
    driver_repo,
    locations,
    distance_provider: DistanceProvider,
    processor: PaymentProcessor,
    authorization: AuthorizationService,
    event_bus: "EventBus | NullEventBus",
) -> Services:
    orders = OrderService(
        repository=order_repo,
        promo_repository=promo_repo,
        distance_provider=distance_provider,
        event_bus=event_bus,
        driver_repository=driver_repo,
        processor=processor,
    )
    settlement = SettlementService(orders, processor, event_bus)
    return Services(
        backend=backend,
        orders=orders,
        assignment=AssignmentService(orders, driver_repo, locations, event_bus),
        settlement=settlement,
        admin=AdminService(orders, settlement),
        authorization=authorization,
        distance_provider=distance_provider,
        processor=processor,
        event_bus=event_bus,
    )


def build_memory_services(
    admin_users: list[str] | None = None,
    distance_provider: DistanceProvider | None = None,
    processor: PaymentProcessor | None = None,
) -> Services:
    """
    Сервисы на хранилищах в памяти процесса.

    Args:
        admin_users: ID администраторов (из DEV_ADMIN_USERS если None)
        distance_provider: Источник расстояний (по умолчанию оценка по прямой)
        processor: Платёжный процессор (по умолчанию заглушка)
    """
    if admin_users is None:
        from returnly.config import settings
        admin_users = settings.admin.DEV_ADMIN_USERS

    return _assemble(
        backend="memory",
        order_repo=InMemoryOrderRepository(),
        promo_repo=InMemoryPromoRepository(default_promo_codes()),
        driver_repo=InMemoryDriverRepository(),
        locations=InMemoryDriverLocationStore(),
        distance_provider=distance_provider or StraightLineDistanceProvider(),
        processor=processor or InMemoryPaymentProcessor(),
        authorization=InMemoryAuthorizationService({user: UserRole.ADMIN for user in admin_users}),
        event_bus=NullEventBus(),
    )


async def build_postgres_services() -> Services:
    """Подключает инфраструктуру и собирает сервисы поверх неё."""
    from returnly.config import settings
    from returnly.infra.database import get_db, init_db
    from returnly.infra.event_bus import get_event_bus, init_event_bus
    from returnly.infra.redis_client import get_redis, init_redis

    await init_db()
    await init_redis()
    await init_event_bus()

    if not settings.payments.PAYMENT_WEBHOOK_SECRET:
        await log_info(
            "PAYMENT_WEBHOOK_SECRET не задан: уведомления процессора будут отклоняться",
            type_msg=TypeMsg.WARNING,
        )

    db = get_db()
    return _assemble(
        backend="postgres",
        order_repo=PostgresOrderRepository(db),
        promo_repo=PostgresPromoRepository(db),
        driver_repo=PostgresDriverRepository(db),
        locations=RedisDriverLocationStore(get_redis()),
        distance_provider=GoogleDistanceProvider(),
        processor=HttpPaymentProcessor(),
        authorization=PostgresAuthorizationService(db),
        event_bus=get_event_bus(),
    )


async def build_services(backend: str | None = None) -> Services:
    if backend is None:
        from returnly.config import settings
        backend = settings.system.STORAGE_BACKEND

    if backend == "memory":
        services = build_memory_services()
    else:
        services = await build_postgres_services()

    await log_info(f"Сервисы собраны (хранилище: {backend})", type_msg=TypeMsg.INFO)
    return services


async def close_services(services: Services) -> None:
    await services.distance_provider.close()
    await services.processor.close()

    if services.backend == "postgres":
        from returnly.infra.database import close_db
        from returnly.infra.event_bus import close_event_bus
        from returnly.infra.redis_client import close_redis

        await close_event_bus()
        await close_redis()
        await close_db()


# =============================================================================
# ГЛОБАЛЬНЫЙ КОНТЕЙНЕР
# =============================================================================

_services: Services | None = None


def init_dependencies(services: Services) -> None:
    """Регистрирует собранные сервисы при старте приложения."""
    global _services
    _services = services


def cleanup_dependencies() -> None:
    global _services
    _services = None


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("Сервисы не инициализированы. Вызовите init_dependencies()")
    return _services


def get_order_service() -> OrderService:
    return get_services().orders


def get_assignment_service() -> AssignmentService:
    return get_services().assignment


def get_settlement_service() -> SettlementService:
    return get_services().settlement


def get_admin_service() -> AdminService:
    return get_services().admin


def get_authorization_service() -> AuthorizationService:
    return get_services().authorization
