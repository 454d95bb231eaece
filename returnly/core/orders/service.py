# returnly/core/orders/service.py
"""
Сервис заказов: оформление, смена статусов, оплата.

Любое изменение заказа проходит цикл "прочитать -> проверить ->
compare-and-swap". Проигравший CAS перечитывает заказ и проверяет
переход заново, поэтому проверка всегда идёт по актуальному статусу.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from returnly.common.constants import OrderStatus, PaymentStatus, TypeMsg
from returnly.common.logger import log_error, log_info
from returnly.common.retry import call_with_backoff
from returnly.common.timeutils import utcnow
from returnly.core.billing.payout import PayoutCalculator
from returnly.core.errors import (
    ConcurrentModification,
    IllegalTransition,
    InvalidPromo,
    OrderNotFound,
    ProcessorRejected,
    ProcessorTimeout,
    ValidationError,
)
from returnly.core.geo.service import DistanceProvider, Location
from returnly.core.orders.models import Order, OrderDraft, StatusChange
from returnly.core.orders.repository import OrderRepository
from returnly.core.orders.state_machine import OrderStateMachine
from returnly.core.pricing.calculator import PricingCalculator
from returnly.core.pricing.models import PriceBreakdown, to_cents
from returnly.core.pricing.promo import PromoRepository
from returnly.core.pricing.tracking import generate_unique_tracking_number
from returnly.shared.events import OrderCreated, OrderStatusChanged, PaymentCaptured
from returnly.shared.events.base import DomainEvent

if TYPE_CHECKING:
    from returnly.config.loader import PaymentsSettings
    from returnly.core.billing.processor import PaymentProcessor
    from returnly.core.matching.drivers import DriverRepository
    from returnly.infra.event_bus import EventBus, NullEventBus

# Изменения заказа и запись истории; (None, None): менять нечего
OrderChange = tuple[Optional[dict], Optional[StatusChange]]

# При переходе в эти статусы водитель освобождается
RELEASE_TARGETS = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.RETURN_REFUSED,
})

# Завершённый заказ только для чтения: чаевые принимаются до закрытия
TIP_STATUSES = frozenset({OrderStatus.DELIVERED})


class OrderService:
    """
    Жизненный цикл заказа.

    Зависимости передаются явно (Dependency Injection), хранилище
    выбирается при старте: PostgreSQL или память процесса.
    """

    def __init__(
        self,
        repository: OrderRepository,
        promo_repository: PromoRepository,
        distance_provider: DistanceProvider,
        event_bus: "EventBus | NullEventBus",
        calculator: PricingCalculator | None = None,
        payout_calculator: PayoutCalculator | None = None,
        driver_repository: "DriverRepository | None" = None,
        processor: "PaymentProcessor | None" = None,
        max_cas_retries: int | None = None,
        payments_config: "PaymentsSettings | None" = None,
    ) -> None:
        from returnly.config import settings

        self._repo = repository
        self._promos = promo_repository
        self._distance = distance_provider
        self._event_bus = event_bus
        self._calculator = calculator or PricingCalculator()
        self._payout = payout_calculator or PayoutCalculator()
        self._drivers = driver_repository
        self._processor = processor
        self._max_cas_retries = max_cas_retries or settings.assignment.MAX_CAS_RETRIES
        self._payments = payments_config or settings.payments

    @property
    def repository(self) -> OrderRepository:
        return self._repo

    # =========================================================================
    # ОФОРМЛЕНИЕ
    # =========================================================================

    async def _price(self, draft: OrderDraft) -> tuple[Decimal, PriceBreakdown]:
        pickup = Location(draft.pickup_address, draft.pickup_latitude, draft.pickup_longitude)
        dropoff = Location(draft.dropoff_address, draft.dropoff_latitude, draft.dropoff_longitude)
        distance = await self._distance.resolve(pickup, dropoff)

        promo = await self._promos.get(draft.promo_code) if draft.promo_code else None
        price = self._calculator.calculate(
            draft.boxes,
            distance,
            is_rush=draft.is_rush,
            promo=promo,
            promo_code=draft.promo_code,
        )
        return distance, price

    async def quote(self, draft: OrderDraft) -> PriceBreakdown:
        """Расчёт цены без создания заказа."""
        _, price = await self._price(draft)
        return price

    async def create_order(self, draft: OrderDraft) -> Order:
        """
        Оформляет заказ.

        Args:
            draft: Данные клиента

        Returns:
            Заказ в статусе created с зафиксированной ценой

        Raises:
            PricingUnavailable: не удалось определить расстояние
            InvalidPromo: промокод недействителен
            ValidationError: некорректный состав заказа
        """
        distance, price = await self._price(draft)
        tracking_number = await generate_unique_tracking_number(self._repo.tracking_number_exists)

        now = utcnow()
        if price.promo_code and not await self._promos.redeem(price.promo_code, now):
            raise InvalidPromo(f"Промокод {price.promo_code} больше недоступен", code=price.promo_code)

        order = Order(
            tracking_number=tracking_number,
            customer_id=draft.customer_id,
            pickup_address=draft.pickup_address,
            pickup_latitude=draft.pickup_latitude,
            pickup_longitude=draft.pickup_longitude,
            dropoff_address=draft.dropoff_address,
            retailer=draft.retailer,
            item_description=draft.item_description,
            boxes=draft.boxes,
            distance_miles=distance,
            is_rush=draft.is_rush,
            promo_code=price.promo_code,
            base_price=price.base_price,
            distance_fee=price.distance_fee,
            size_fee=price.size_fee,
            multi_box_fee=price.multi_box_fee,
            subtotal=price.subtotal,
            discount=price.discount,
            service_fee=price.service_fee,
            rush_fee=price.rush_fee,
            total_price=price.total_price,
            scheduled_pickup_time=draft.scheduled_pickup_time,
            created_at=now,
            updated_at=now,
        )
        history = StatusChange(
            order_id=order.id,
            from_status=None,
            to_status=OrderStatus.CREATED,
            actor=draft.customer_id,
            at=now,
        )
        order = await self._repo.create(order, history)

        await log_info(
            f"Заказ {order.id} ({order.tracking_number}) оформлен: {order.total_price} {price.currency}",
            type_msg=TypeMsg.INFO,
        )
        await self._publish(OrderCreated(
            order_id=order.id,
            tracking_number=order.tracking_number,
            customer_id=order.customer_id,
            total_price=order.total_price,
            is_rush=order.is_rush,
        ))
        return order

    async def get_order(self, order_id: str) -> Order:
        order = await self._repo.get(order_id)
        if order is None:
            raise OrderNotFound(f"Заказ {order_id} не найден", order_id=order_id)
        return order

    async def get_history(self, order_id: str) -> list[StatusChange]:
        await self.get_order(order_id)
        return await self._repo.get_history(order_id)

    # =========================================================================
    # СМЕНА СТАТУСА
    # =========================================================================

    async def update_with_retry(
        self,
        order_id: str,
        build: Callable[[Order], OrderChange],
    ) -> tuple[Order, Order]:
        """
        Цикл compare-and-swap.

        Args:
            order_id: ID заказа
            build: По текущему заказу возвращает (изменения, запись истории).
                Исключение из build прерывает цикл без записи

        Returns:
            (заказ до изменения, заказ после изменения)

        Raises:
            ConcurrentModification: все попытки проиграли гонку
        """
        for attempt in range(1, self._max_cas_retries + 1):
            current = await self.get_order(order_id)
            changes, history = build(current)
            if changes is None:
                return current, current

            updated = await self._repo.compare_and_swap(order_id, current.version, changes, history)
            if updated is not None:
                return current, updated

            await log_info(
                f"Конфликт версий заказа {order_id} (попытка {attempt}/{self._max_cas_retries})",
                type_msg=TypeMsg.DEBUG,
            )

        raise ConcurrentModification(
            f"Заказ {order_id} меняется слишком часто, повторите запрос",
            order_id=order_id,
        )

    def _transition_changes(self, current: Order, target: OrderStatus, now: datetime) -> dict:
        changes: dict = {"status": target}

        match target:
            case OrderStatus.CONFIRMED if OrderStateMachine.is_unassign(current.status, target):
                changes["driver_id"] = None
            case OrderStatus.PICKUP_SCHEDULED:
                if current.scheduled_pickup_time is None:
                    changes["scheduled_pickup_time"] = now
            case OrderStatus.PICKED_UP:
                changes["picked_up_at"] = now
            case OrderStatus.DELIVERED:
                changes["actual_delivery_time"] = now
            case OrderStatus.COMPLETED:
                payout = self._payout.calculate(current)
                changes["completed_at"] = now
                changes["driver_earning"] = payout.driver_earning
                changes["platform_fee"] = payout.platform_fee
            case OrderStatus.CANCELLED:
                changes["cancelled_at"] = now

        return changes

    async def transition(
        self,
        order_id: str,
        target: OrderStatus | str,
        actor: str | None = None,
        expected_from: Iterable[OrderStatus] | None = None,
    ) -> Order:
        """
        Переводит заказ в новый статус.

        Args:
            order_id: ID заказа
            target: Новый статус
            actor: Кто меняет статус (для истории)
            expected_from: Допустимые исходные статусы (сужают таблицу переходов)

        Returns:
            Обновлённый заказ

        Raises:
            OrderNotFound, IllegalTransition, ConcurrentModification
            ValidationError: назначение водителя идёт только через accept,
                возврат средств только через SettlementService
        """
        try:
            target = OrderStatus(target)
        except ValueError:
            raise ValidationError(f"Неизвестный статус: {target}", status=str(target)) from None

        if target == OrderStatus.ASSIGNED:
            raise ValidationError("Водитель назначается только через принятие заказа", status=target.value)
        if target == OrderStatus.REFUNDED:
            raise ValidationError(
                "Статус refunded выставляется только подтверждённым возвратом средств",
                status=target.value,
            )

        allowed_from = frozenset(expected_from) if expected_from is not None else None
        now = utcnow()

        def build(current: Order) -> OrderChange:
            if allowed_from is not None and current.status not in allowed_from:
                raise IllegalTransition(current.status.value, target.value)
            OrderStateMachine.validate(current.status, target)
            history = StatusChange(
                order_id=current.id,
                from_status=current.status,
                to_status=target,
                actor=actor,
                at=now,
            )
            return self._transition_changes(current, target, now), history

        previous, updated = await self.update_with_retry(order_id, build)

        await log_info(
            f"Заказ {order_id}: {previous.status.value} -> {updated.status.value} (actor={actor})",
            type_msg=TypeMsg.INFO,
        )

        if previous.driver_id and target in RELEASE_TARGETS:
            await self._release_driver(previous.driver_id, order_id)

        await self._publish(OrderStatusChanged(
            order_id=order_id,
            from_status=previous.status.value,
            to_status=updated.status.value,
            at=now,
            actor=actor,
            driver_id=previous.driver_id,
        ))
        return updated

    async def record_tip(self, order_id: str, amount: Decimal) -> Order:
        """Чаевые водителю после доставки. Доля платформы не меняется."""
        amount = to_cents(amount)
        if amount <= 0:
            raise ValidationError("Сумма чаевых должна быть больше нуля", amount=str(amount))

        def build(current: Order) -> OrderChange:
            if current.status not in TIP_STATUSES:
                raise ValidationError(
                    f"Чаевые принимаются только по доставленному заказу (статус {current.status.value})",
                    status=current.status.value,
                )
            return {"driver_tip": current.driver_tip + amount}, None

        _, updated = await self.update_with_retry(order_id, build)
        await log_info(f"Чаевые {amount} по заказу {order_id}", type_msg=TypeMsg.INFO)
        return updated

    # =========================================================================
    # ОПЛАТА
    # =========================================================================

    async def charge_order(self, order_id: str) -> Order:
        """
        Списывает стоимость заказа через платёжный процессор.

        Повторяет запрос при таймаутах. Если процессор подтвердил
        списание сразу, заказ переходит в confirmed; иначе ждём webhook.

        Raises:
            IllegalTransition: заказ не в статусе created
            ProcessorRejected: процессор отказал (payment_status=failed)
            ProcessorTimeout: процессор не ответил за все попытки
        """
        if self._processor is None:
            raise RuntimeError("Платёжный процессор не настроен")

        order = await self.get_order(order_id)
        if order.payment_status == PaymentStatus.COMPLETED:
            return order
        if order.status != OrderStatus.CREATED:
            raise IllegalTransition(
                order.status.value,
                OrderStatus.CONFIRMED.value,
                f"Оплатить можно только новый заказ (статус {order.status.value})",
            )

        try:
            result = await call_with_backoff(
                self._processor.charge,
                order.id,
                order.total_price,
                retry_on=(ProcessorTimeout,),
                max_attempts=self._payments.PROCESSOR_MAX_ATTEMPTS,
                base_delay=self._payments.PROCESSOR_BACKOFF_BASE,
                max_delay=self._payments.PROCESSOR_BACKOFF_MAX,
                operation=f"Списание по заказу {order_id}",
            )
        except ProcessorRejected:
            await self.apply_charge_result(order_id, succeeded=False)
            raise

        if result.status == "succeeded":
            return await self.apply_charge_result(order_id, True, result.payment_intent_id)
        if result.status == "failed":
            return await self.apply_charge_result(order_id, False, result.payment_intent_id)

        def build(current: Order) -> OrderChange:
            if current.payment_intent_id == result.payment_intent_id:
                return None, None
            return {"payment_intent_id": result.payment_intent_id}, None

        _, updated = await self.update_with_retry(order_id, build)
        await log_info(
            f"Списание по заказу {order_id} в обработке ({result.payment_intent_id})",
            type_msg=TypeMsg.INFO,
        )
        return updated

    async def apply_charge_result(
        self,
        order_id: str,
        succeeded: bool,
        payment_intent_id: str | None = None,
    ) -> Order:
        """
        Фиксирует результат списания (ответ процессора или webhook).

        Повторный вызов с тем же результатом ничего не меняет.
        """
        now = utcnow()

        def build(current: Order) -> OrderChange:
            if current.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                return None, None

            if not succeeded:
                if current.payment_status == PaymentStatus.FAILED:
                    return None, None
                changes: dict = {"payment_status": PaymentStatus.FAILED}
                if payment_intent_id:
                    changes["payment_intent_id"] = payment_intent_id
                return changes, None

            changes = {
                "payment_status": PaymentStatus.COMPLETED,
                "customer_paid": current.total_price,
            }
            if payment_intent_id:
                changes["payment_intent_id"] = payment_intent_id
            if current.status != OrderStatus.CREATED:
                return changes, None

            changes["status"] = OrderStatus.CONFIRMED
            history = StatusChange(
                order_id=current.id,
                from_status=current.status,
                to_status=OrderStatus.CONFIRMED,
                actor="payment_processor",
                at=now,
            )
            return changes, history

        previous, updated = await self.update_with_retry(order_id, build)
        if updated.version == previous.version:
            return updated

        await log_info(
            f"Оплата заказа {order_id}: {updated.payment_status.value}",
            type_msg=TypeMsg.INFO if succeeded else TypeMsg.WARNING,
        )
        await self._publish(PaymentCaptured(
            order_id=order_id,
            amount=updated.total_price,
            succeeded=succeeded,
            payment_intent_id=updated.payment_intent_id,
        ))

        if previous.status != updated.status:
            await self._publish(OrderStatusChanged(
                order_id=order_id,
                from_status=previous.status.value,
                to_status=updated.status.value,
                at=now,
                actor="payment_processor",
            ))
        elif succeeded:
            # Деньги пришли по заказу, который уже отменён
            await log_info(
                f"Оплата получена по заказу {order_id} в статусе {updated.status.value}",
                type_msg=TypeMsg.WARNING,
            )
        return updated

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _release_driver(self, driver_id: str, order_id: str) -> None:
        if self._drivers is None:
            return
        try:
            released = await self._drivers.release(driver_id, order_id)
        except Exception as e:
            # Статус заказа уже зафиксирован
            await log_error(f"Не удалось освободить водителя {driver_id} после заказа {order_id}: {e}")
            return
        if released:
            await log_info(f"Водитель {driver_id} освобождён (заказ {order_id})", type_msg=TypeMsg.DEBUG)

    async def _publish(self, event: DomainEvent) -> None:
        await self._event_bus.publish(event)
