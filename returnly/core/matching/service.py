# returnly/core/matching/service.py
"""
Сервис назначения водителей на заказы.

Гонка за заказ решается условным UPDATE по паре (status, driver_id):
из нескольких одновременных accept выигрывает ровно один.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from returnly.common.constants import OrderStatus, TypeMsg
from returnly.common.logger import log_info
from returnly.common.timeutils import utcnow
from returnly.core.errors import AlreadyAssigned, DriverUnavailable, ReturnlyError, ValidationError
from returnly.core.geo.service import haversine_miles
from returnly.core.matching.drivers import Driver, DriverLocationStore, DriverRepository
from returnly.core.orders.models import Order, StatusChange
from returnly.core.orders.state_machine import OrderStateMachine
from returnly.shared.events import OrderAssigned, OrderStatusChanged, OrderUnassigned

if TYPE_CHECKING:
    from returnly.core.orders.service import OrderService
    from returnly.infra.event_bus import EventBus, NullEventBus


@dataclass
class AvailableOrder:
    """Заказ из пула с расстоянием до водителя."""
    order: Order
    distance_miles: float


class AssignmentService:
    """
    Пул заказов и назначение водителей.

    Водитель сначала занимается заказом (active_order_id), потом
    заказ. Если заказ уже ушёл другому, водитель освобождается.
    """

    def __init__(
        self,
        order_service: "OrderService",
        drivers: DriverRepository,
        locations: DriverLocationStore,
        event_bus: "EventBus | NullEventBus",
        service_radius_miles: float | None = None,
    ) -> None:
        """
        Args:
            order_service: Сервис заказов (статусы и хранилище)
            drivers: Реестр водителей
            locations: Координаты водителей
            event_bus: Шина событий
            service_radius_miles: Радиус обслуживания (из конфига если None)
        """
        if service_radius_miles is None:
            from returnly.config import settings
            service_radius_miles = settings.assignment.SERVICE_RADIUS_MILES

        self._orders = order_service
        self._repo = order_service.repository
        self._drivers = drivers
        self._locations = locations
        self._event_bus = event_bus
        self._radius = service_radius_miles

    # =========================================================================
    # ПУЛ ЗАКАЗОВ
    # =========================================================================

    async def list_available(
        self,
        latitude: float,
        longitude: float,
        radius_miles: float | None = None,
    ) -> list[AvailableOrder]:
        """
        Заказы confirmed без водителя в радиусе от точки.

        Returns:
            Список по возрастанию расстояния, при равенстве по времени создания
        """
        radius = self._radius if radius_miles is None else radius_miles

        result: list[AvailableOrder] = []
        for order in await self._repo.list_available():
            if order.pickup_latitude is None or order.pickup_longitude is None:
                continue
            distance = haversine_miles(latitude, longitude, order.pickup_latitude, order.pickup_longitude)
            if distance <= radius:
                result.append(AvailableOrder(order=order, distance_miles=round(distance, 2)))

        result.sort(key=lambda item: (item.distance_miles, item.order.created_at))

        await log_info(
            f"В радиусе {radius} миль найдено {len(result)} заказов",
            type_msg=TypeMsg.DEBUG,
        )
        return result

    async def list_available_for_driver(
        self,
        driver_id: str,
        radius_miles: float | None = None,
    ) -> list[AvailableOrder]:
        """
        Raises:
            DriverUnavailable: координаты водителя неизвестны
        """
        position = await self._locations.get(driver_id)
        if position is None:
            raise DriverUnavailable(
                f"Местоположение водителя {driver_id} неизвестно",
                driver_id=driver_id,
            )
        latitude, longitude = position
        return await self.list_available(latitude, longitude, radius_miles)

    # =========================================================================
    # НАЗНАЧЕНИЕ
    # =========================================================================

    async def accept(self, order_id: str, driver_id: str) -> Order:
        """
        Водитель принимает заказ.

        Args:
            order_id: ID заказа
            driver_id: ID водителя

        Returns:
            Заказ в статусе assigned

        Raises:
            OrderNotFound: заказа нет
            DriverUnavailable: водитель офлайн или занят другим заказом
            AlreadyAssigned: заказ уже принят или не в статусе confirmed
        """
        if not driver_id:
            raise ValidationError("Не указан водитель")

        # 404 для несуществующего заказа
        await self._orders.get_order(order_id)

        if not await self._drivers.claim(driver_id, order_id):
            driver = await self._drivers.get(driver_id)
            if driver is not None and driver.active_order_id == order_id:
                raise AlreadyAssigned(
                    f"Водитель {driver_id} уже принял заказ {order_id}",
                    order_id=order_id,
                )
            raise DriverUnavailable(
                f"Водитель {driver_id} офлайн или уже выполняет заказ",
                driver_id=driver_id,
            )

        now = utcnow()
        history = StatusChange(
            order_id=order_id,
            from_status=OrderStatus.CONFIRMED,
            to_status=OrderStatus.ASSIGNED,
            actor=driver_id,
            at=now,
        )
        order = await self._repo.claim_unassigned(order_id, driver_id, history)
        if order is None:
            await self._drivers.release(driver_id, order_id)
            await log_info(
                f"Водитель {driver_id} опоздал: заказ {order_id} уже недоступен",
                type_msg=TypeMsg.DEBUG,
            )
            raise AlreadyAssigned(
                f"Заказ {order_id} уже принят другим водителем",
                order_id=order_id,
            )

        await log_info(f"Заказ {order_id} принят водителем {driver_id}", type_msg=TypeMsg.INFO)
        await self._event_bus.publish(OrderAssigned(order_id=order_id, driver_id=driver_id))
        await self._event_bus.publish(OrderStatusChanged(
            order_id=order_id,
            from_status=OrderStatus.CONFIRMED.value,
            to_status=OrderStatus.ASSIGNED.value,
            at=now,
            actor=driver_id,
            driver_id=driver_id,
        ))
        return order

    async def unassign(self, order_id: str, actor: str | None = None) -> Order:
        """
        Снимает водителя с заказа, заказ возвращается в пул.

        Raises:
            IllegalTransition: заказ не в assigned/pickup_scheduled
        """
        previous = await self._orders.get_order(order_id)
        order = await self._orders.transition(
            order_id,
            OrderStatus.CONFIRMED,
            actor=actor,
            expected_from=OrderStateMachine.UNASSIGN_SOURCES,
        )

        if previous.driver_id:
            await self._event_bus.publish(OrderUnassigned(
                order_id=order_id,
                driver_id=previous.driver_id,
                actor=actor,
            ))
        return order

    async def release_stale_assignments(self, older_than: timedelta | None = None) -> int:
        """
        Возвращает в пул заказы, по которым водитель пропал.

        Заказ в assigned или pickup_scheduled, не менявшийся дольше
        older_than, снимается с водителя от имени system.

        Args:
            older_than: Срок бездействия (из конфига если None)

        Returns:
            Сколько заказов вернулось в пул
        """
        if older_than is None:
            from returnly.config import settings
            older_than = timedelta(minutes=settings.assignment.ASSIGNMENT_TIMEOUT_MINUTES)

        stale = await self._repo.list_stale_assignments(utcnow() - older_than)
        if not stale:
            return 0

        released = 0
        for order in stale:
            try:
                await self.unassign(order.id, actor="system")
                released += 1
            except ReturnlyError as e:
                # Водитель успел продвинуть заказ
                await log_info(
                    f"Заказ {order.id} не снят с водителя: {e.message}",
                    type_msg=TypeMsg.WARNING,
                )

        await log_info(
            f"Снято с водителей заказов без движения: {released} из {len(stale)}",
            type_msg=TypeMsg.INFO,
        )
        return released

    # =========================================================================
    # ВОДИТЕЛИ
    # =========================================================================

    async def set_online(self, driver_id: str, online: bool) -> Driver:
        driver = await self._drivers.set_online(driver_id, online)
        if not online:
            await self._locations.remove(driver_id)
        await log_info(
            f"Водитель {driver_id} {'онлайн' if online else 'офлайн'}",
            type_msg=TypeMsg.INFO,
        )
        return driver

    async def update_location(self, driver_id: str, latitude: float, longitude: float) -> Driver:
        """Обновляет координаты водителя. Офлайн-водитель в индекс не попадает."""
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            raise ValidationError(
                "Некорректные координаты",
                latitude=latitude,
                longitude=longitude,
            )
        driver = await self._drivers.get(driver_id)
        if driver is None or not driver.is_online:
            raise DriverUnavailable(f"Водитель {driver_id} офлайн", driver_id=driver_id)

        await self._locations.update(driver_id, latitude, longitude)
        return driver
