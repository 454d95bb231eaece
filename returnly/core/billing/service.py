# returnly/core/billing/service.py
"""
Сервис расчётов: возвраты клиенту и отметка о выплате водителю.

Возврат резервируется в заказе (refunded_to_date) в той же записи,
где создаётся сам возврат. Окончательный статус приходит от процессора
(webhook или опрос) и применяется один раз.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from returnly.common.constants import OrderStatus, PaymentStatus, RefundStatus, TypeMsg
from returnly.common.logger import log_error, log_info
from returnly.common.retry import call_with_backoff
from returnly.common.timeutils import utcnow
from returnly.core.billing.models import Refund
from returnly.core.billing.processor import PaymentProcessor
from returnly.core.errors import (
    ConcurrentModification,
    ProcessorRejected,
    ProcessorTimeout,
    RefundExceedsBalance,
    RefundNotFound,
    ReturnlyError,
    ValidationError,
)
from returnly.core.orders.models import Order, StatusChange
from returnly.core.orders.state_machine import OrderStateMachine
from returnly.core.pricing.models import ZERO, to_cents
from returnly.shared.events import OrderStatusChanged, RefundRequested, RefundResolved

if TYPE_CHECKING:
    from returnly.config.loader import PaymentsSettings
    from returnly.core.orders.service import OrderService
    from returnly.infra.event_bus import EventBus, NullEventBus

SETTLEMENT_ACTOR = "settlement"


def default_idempotency_key(order_id: str, amount: Decimal, reason: str) -> str:
    return f"{order_id}:{amount}:{reason}"


class SettlementService:
    """
    Возвраты и выплаты.

    Ответственности:
    - Резервирование и отправка возвратов в процессор
    - Применение окончательного статуса возврата
    - Сверка зависших возвратов
    - Отметка о выплате водителю
    """

    def __init__(
        self,
        order_service: "OrderService",
        processor: PaymentProcessor,
        event_bus: "EventBus | NullEventBus",
        max_cas_retries: int | None = None,
        payments_config: "PaymentsSettings | None" = None,
    ) -> None:
        from returnly.config import settings

        self._orders = order_service
        self._repo = order_service.repository
        self._processor = processor
        self._event_bus = event_bus
        self._max_cas_retries = max_cas_retries or settings.assignment.MAX_CAS_RETRIES
        self._payments = payments_config or settings.payments

    # =========================================================================
    # ЗАПРОС ВОЗВРАТА
    # =========================================================================

    async def request_refund(
        self,
        order_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: str | None = None,
        actor: str | None = None,
    ) -> Refund:
        """
        Создаёт возврат и отправляет его в процессор.

        Повтор с тем же ключом возвращает уже созданный возврат
        и ничего не меняет.

        Args:
            order_id: ID заказа
            amount: Сумма возврата
            reason: Причина
            idempotency_key: Ключ идемпотентности (по умолчанию order_id:amount:reason)
            actor: Кто запросил возврат

        Returns:
            Возврат (processing, succeeded или failed)

        Raises:
            ValidationError: сумма <= 0, пустая причина, заказ не оплачен
                или ключ уже использован с другими параметрами
            RefundExceedsBalance: сумма больше остатка к возврату
        """
        amount = to_cents(amount)
        reason = (reason or "").strip()
        if amount <= 0:
            raise ValidationError("Сумма возврата должна быть больше нуля", amount=str(amount))
        if not reason:
            raise ValidationError("Укажите причину возврата")

        key = idempotency_key or default_idempotency_key(order_id, amount, reason)

        reserved: Optional[Order] = None
        refund: Optional[Refund] = None
        for attempt in range(1, self._max_cas_retries + 1):
            existing = await self._repo.get_refund_by_key(key)
            if existing is not None:
                return self._check_replay(existing, order_id, amount, reason)

            order = await self._orders.get_order(order_id)
            if order.payment_intent_id is None or order.customer_paid <= 0:
                raise ValidationError(f"Заказ {order_id} не оплачен", order_id=order_id)
            if amount > order.refundable_balance:
                raise RefundExceedsBalance(
                    f"Сумма возврата {amount} больше остатка {order.refundable_balance}",
                    amount=str(amount),
                    refundable_balance=str(order.refundable_balance),
                )

            refund = Refund(
                order_id=order_id,
                amount=amount,
                reason=reason,
                idempotency_key=key,
                requested_by=actor,
            )
            reserved = await self._repo.reserve_refund(
                refund,
                order.version,
                {
                    "payment_status": PaymentStatus.REFUND_PROCESSING,
                    "refunded_to_date": order.refunded_to_date + amount,
                },
            )
            if reserved is not None:
                break

            await log_info(
                f"Конфликт при резервировании возврата по заказу {order_id} "
                f"(попытка {attempt}/{self._max_cas_retries})",
                type_msg=TypeMsg.DEBUG,
            )

        if reserved is None or refund is None:
            raise ConcurrentModification(
                f"Не удалось зарезервировать возврат по заказу {order_id}",
                order_id=order_id,
            )

        await log_info(
            f"Возврат {refund.id} на {amount} по заказу {order_id} зарезервирован ({reason})",
            type_msg=TypeMsg.INFO,
        )
        await self._event_bus.publish(RefundRequested(
            order_id=order_id,
            refund_id=refund.id,
            amount=amount,
            reason=reason,
        ))

        return await self._submit(refund, reserved.payment_intent_id)

    @staticmethod
    def _check_replay(existing: Refund, order_id: str, amount: Decimal, reason: str) -> Refund:
        if existing.order_id != order_id or existing.amount != amount or existing.reason != reason:
            raise ValidationError(
                "Ключ идемпотентности уже использован для другого возврата",
                idempotency_key=existing.idempotency_key,
            )
        return existing

    async def _submit(self, refund: Refund, payment_intent_id: Optional[str]) -> Refund:
        """Отправляет возврат в процессор с повторами при таймаутах."""
        attempts = refund.attempts

        async def send() -> str:
            nonlocal attempts
            attempts += 1
            return await self._processor.refund(
                payment_intent_id,
                refund.amount,
                refund.reason,
                refund.idempotency_key,
            )

        try:
            processor_refund_id = await call_with_backoff(
                send,
                retry_on=(ProcessorTimeout,),
                max_attempts=self._payments.PROCESSOR_MAX_ATTEMPTS,
                base_delay=self._payments.PROCESSOR_BACKOFF_BASE,
                max_delay=self._payments.PROCESSOR_BACKOFF_MAX,
                operation=f"Возврат {refund.id}",
            )
        except ProcessorRejected as e:
            return await self.apply_refund_result(
                refund_id=refund.id,
                succeeded=False,
                error=e.message,
                attempts=attempts,
            )
        except ProcessorTimeout as e:
            # Статус неизвестен: возврат остаётся processing до сверки
            updated = await self._repo.update_refund(
                refund.id,
                {"attempts": attempts, "last_error": e.message, "needs_reconciliation": True},
            )
            await log_info(
                f"Возврат {refund.id} ждёт сверки: процессор не ответил за {attempts} попыток",
                type_msg=TypeMsg.WARNING,
            )
            return updated or await self._get_refund(refund.id)

        updated = await self._repo.update_refund(
            refund.id,
            {
                "processor_refund_id": processor_refund_id,
                "attempts": attempts,
                "needs_reconciliation": False,
            },
        )
        await log_info(
            f"Возврат {refund.id} принят процессором: {processor_refund_id}",
            type_msg=TypeMsg.INFO,
        )
        return updated or await self._get_refund(refund.id)

    # =========================================================================
    # РЕЗУЛЬТАТ ВОЗВРАТА
    # =========================================================================

    async def _get_refund(self, refund_id: str) -> Refund:
        refund = await self._repo.get_refund(refund_id)
        if refund is None:
            raise RefundNotFound(f"Возврат {refund_id} не найден", refund_id=refund_id)
        return refund

    async def _find_refund(self, refund_id: str | None, processor_refund_id: str | None) -> Refund:
        if refund_id:
            return await self._get_refund(refund_id)
        if processor_refund_id:
            refund = await self._repo.get_refund_by_processor_id(processor_refund_id)
            if refund is None:
                raise RefundNotFound(
                    f"Возврат процессора {processor_refund_id} не найден",
                    processor_refund_id=processor_refund_id,
                )
            return refund
        raise ValidationError("Нужен refund_id или processor_refund_id")

    async def list_refunds(self, order_id: str) -> list[Refund]:
        await self._orders.get_order(order_id)
        return await self._repo.list_refunds(order_id)

    async def apply_refund_result(
        self,
        refund_id: str | None = None,
        processor_refund_id: str | None = None,
        succeeded: bool = True,
        error: str | None = None,
        attempts: int | None = None,
    ) -> Refund:
        """
        Применяет окончательный статус возврата.

        Меняется только возврат в статусе processing, повторные
        уведомления возвращают возврат как есть.

        Успех: полный возврат по доставленному заказу до выплаты
        водителю переводит заказ в refunded; после выплаты заказ
        помечается для ручной сверки. Отказ снимает резерв суммы.
        """
        refund = await self._find_refund(refund_id, processor_refund_id)
        if refund.is_final:
            return refund

        now = utcnow()
        refund_changes: dict = {
            "status": RefundStatus.SUCCEEDED if succeeded else RefundStatus.FAILED,
            "resolved_at": now,
            "needs_reconciliation": False,
        }
        if error:
            refund_changes["last_error"] = error
        if attempts is not None:
            refund_changes["attempts"] = attempts
        if processor_refund_id and refund.processor_refund_id is None:
            refund_changes["processor_refund_id"] = processor_refund_id

        for attempt in range(1, self._max_cas_retries + 1):
            order = await self._orders.get_order(refund.order_id)
            siblings = await self._repo.list_refunds(order.id)
            others_in_flight = any(
                r.status == RefundStatus.PROCESSING and r.id != refund.id for r in siblings
            )

            order_changes: dict = {}
            history: Optional[StatusChange] = None

            if succeeded:
                order_changes["payment_status"] = (
                    PaymentStatus.REFUND_PROCESSING if others_in_flight else PaymentStatus.REFUNDED
                )
                fully_refunded = not others_in_flight and order.refunded_to_date >= order.customer_paid
                if fully_refunded and OrderStateMachine.can_transition(order.status, OrderStatus.REFUNDED):
                    if order.driver_paid_out_at is None:
                        order_changes["status"] = OrderStatus.REFUNDED
                        history = StatusChange(
                            order_id=order.id,
                            from_status=order.status,
                            to_status=OrderStatus.REFUNDED,
                            actor=SETTLEMENT_ACTOR,
                            at=now,
                        )
                    else:
                        order_changes["needs_manual_reconciliation"] = True
            else:
                order_changes["refunded_to_date"] = max(order.refunded_to_date - refund.amount, ZERO)
                order_changes["payment_status"] = (
                    PaymentStatus.REFUND_PROCESSING if others_in_flight else PaymentStatus.REFUND_FAILED
                )

            updated = await self._repo.resolve_refund(
                refund.id,
                refund_changes,
                order.version,
                order_changes,
                history,
            )
            if updated is not None:
                break

            current = await self._get_refund(refund.id)
            if current.is_final:
                return current
            await log_info(
                f"Конфликт при фиксации возврата {refund.id} (попытка {attempt}/{self._max_cas_retries})",
                type_msg=TypeMsg.DEBUG,
            )
        else:
            raise ConcurrentModification(
                f"Не удалось зафиксировать результат возврата {refund.id}",
                refund_id=refund.id,
            )

        resolved = await self._get_refund(refund.id)

        if succeeded:
            await log_info(
                f"Возврат {refund.id} на {refund.amount} по заказу {order.id} выполнен",
                type_msg=TypeMsg.INFO,
            )
        else:
            await log_error(f"Возврат {refund.id} по заказу {order.id} отклонён: {error}")

        if updated.needs_manual_reconciliation and not order.needs_manual_reconciliation:
            await log_info(
                f"Заказ {order.id} полностью возвращён после выплаты водителю, нужна ручная сверка",
                type_msg=TypeMsg.WARNING,
            )

        await self._event_bus.publish(RefundResolved(
            order_id=order.id,
            refund_id=refund.id,
            amount=refund.amount,
            status=resolved.status.value,
            needs_manual_reconciliation=updated.needs_manual_reconciliation,
        ))
        if history is not None:
            await self._event_bus.publish(OrderStatusChanged(
                order_id=order.id,
                from_status=order.status.value,
                to_status=updated.status.value,
                at=now,
                actor=SETTLEMENT_ACTOR,
                driver_id=order.driver_id,
            ))
        return resolved

    # =========================================================================
    # СВЕРКА
    # =========================================================================

    async def reconcile_pending_refunds(self, older_than: timedelta | None = None) -> int:
        """
        Опрашивает процессор по возвратам, которые давно в processing.

        Возвраты без processor_refund_id отправляются повторно с тем же
        ключом идемпотентности.

        Args:
            older_than: Минимальный возраст возврата (из конфига если None)

        Returns:
            Сколько возвратов получили окончательный статус
        """
        if older_than is None:
            older_than = timedelta(seconds=self._payments.RECONCILIATION_MIN_AGE)

        pending = await self._repo.list_pending_refunds(utcnow() - older_than)
        if not pending:
            return 0

        await log_info(f"Сверка возвратов: {len(pending)} в обработке", type_msg=TypeMsg.DEBUG)

        resolved = 0
        for refund in pending:
            try:
                if refund.processor_refund_id is None:
                    order = await self._orders.get_order(refund.order_id)
                    result = await self._submit(refund, order.payment_intent_id)
                    resolved += int(result.is_final)
                    continue

                status = await call_with_backoff(
                    self._processor.get_refund_status,
                    refund.processor_refund_id,
                    retry_on=(ProcessorTimeout,),
                    max_attempts=self._payments.PROCESSOR_MAX_ATTEMPTS,
                    base_delay=self._payments.PROCESSOR_BACKOFF_BASE,
                    max_delay=self._payments.PROCESSOR_BACKOFF_MAX,
                    operation=f"Статус возврата {refund.processor_refund_id}",
                )
                if status.status == "succeeded":
                    await self.apply_refund_result(refund_id=refund.id, succeeded=True)
                    resolved += 1
                elif status.status == "failed":
                    await self.apply_refund_result(refund_id=refund.id, succeeded=False, error=status.error)
                    resolved += 1
            except ReturnlyError as e:
                await log_error(f"Сверка возврата {refund.id} не удалась: {e.message}")

        if resolved:
            await log_info(f"Сверка возвратов: завершено {resolved}", type_msg=TypeMsg.INFO)
        return resolved

    # =========================================================================
    # ВЫПЛАТА ВОДИТЕЛЮ
    # =========================================================================

    async def record_driver_payout(self, order_id: str) -> Order:
        """
        Отмечает, что водителю перечислен заработок по заказу.

        Raises:
            ValidationError: заказ не завершён
        """
        now = utcnow()

        def build(current: Order):
            if current.status != OrderStatus.COMPLETED:
                raise ValidationError(
                    f"Выплата возможна только по завершённому заказу (статус {current.status.value})",
                    status=current.status.value,
                )
            if current.driver_paid_out_at is not None:
                return None, None
            return {"driver_paid_out_at": now}, None

        previous, updated = await self._orders.update_with_retry(order_id, build)
        if previous.version != updated.version:
            total = (updated.driver_earning or ZERO) + updated.driver_tip
            await log_info(
                f"Выплата водителю {updated.driver_id} по заказу {order_id}: {total}",
                type_msg=TypeMsg.INFO,
            )
        return updated
