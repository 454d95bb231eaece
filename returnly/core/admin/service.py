# returnly/core/admin/service.py
"""
Массовые операции администратора.

Каждый заказ обрабатывается отдельно обычной одиночной операцией,
ошибка одного заказа не прерывает остальные.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Optional

from returnly.common.constants import OrderStatus, RefundStatus, TypeMsg
from returnly.common.logger import log_error, log_info
from returnly.core.billing.service import SettlementService
from returnly.core.errors import ProcessorRejected, ReturnlyError, ValidationError
from returnly.core.orders.service import OrderService


@dataclass
class BulkFailure:
    order_id: str
    reason: str
    message: str


@dataclass
class BulkResult:
    """Итог массовой операции."""
    succeeded: list[str] = field(default_factory=list)
    failed: list[BulkFailure] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": [
                {"order_id": f.order_id, "reason": f.reason, "message": f.message}
                for f in self.failed
            ],
        }


@dataclass
class RefundItem:
    """Позиция массового возврата."""
    order_id: str
    amount: Decimal
    reason: str
    idempotency_key: Optional[str] = None


class AdminService:
    """Массовая смена статусов и возвраты."""

    def __init__(
        self,
        order_service: OrderService,
        settlement_service: SettlementService,
        max_orders: int | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        """
        Args:
            order_service: Сервис заказов
            settlement_service: Сервис возвратов
            max_orders: Максимальный размер пакета (из конфига если None)
            max_concurrency: Сколько заказов обрабатывать одновременно
        """
        from returnly.config import settings

        self._orders = order_service
        self._settlement = settlement_service
        self._max_orders = max_orders or settings.admin.BULK_MAX_ORDERS
        self._max_concurrency = max_concurrency or settings.admin.BULK_MAX_CONCURRENCY

    def _check_batch_size(self, size: int) -> None:
        if size == 0:
            raise ValidationError("Пустой список заказов")
        if size > self._max_orders:
            raise ValidationError(
                f"Слишком много заказов в одном запросе: {size} (максимум {self._max_orders})",
                count=size,
                max_orders=self._max_orders,
            )

    async def _run_batch(
        self,
        order_ids: list[str],
        operation: Callable[[str], Awaitable[Any]],
        label: str,
    ) -> BulkResult:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run_one(order_id: str) -> Optional[BulkFailure]:
            async with semaphore:
                try:
                    await operation(order_id)
                except ReturnlyError as e:
                    return BulkFailure(order_id=order_id, reason=e.error_code, message=e.message)
                except Exception as e:
                    await log_error(f"{label}: ошибка по заказу {order_id}: {e}", exc_info=True)
                    return BulkFailure(order_id=order_id, reason="INTERNAL_ERROR", message=str(e))
            return None

        outcomes = await asyncio.gather(*(run_one(order_id) for order_id in order_ids))

        result = BulkResult()
        for order_id, failure in zip(order_ids, outcomes):
            if failure is None:
                result.succeeded.append(order_id)
            else:
                result.failed.append(failure)

        await log_info(
            f"{label}: успешно {len(result.succeeded)}, с ошибкой {len(result.failed)}",
            type_msg=TypeMsg.INFO,
        )
        return result

    async def bulk_transition(
        self,
        order_ids: Iterable[str],
        target: OrderStatus | str,
        actor: str | None = None,
    ) -> BulkResult:
        """
        Переводит заказы в статус target.

        Args:
            order_ids: ID заказов (повторы обрабатываются один раз)
            target: Новый статус
            actor: Администратор

        Returns:
            Успешные ID и ошибки по каждому заказу
        """
        unique_ids = list(dict.fromkeys(order_ids))
        self._check_batch_size(len(unique_ids))

        try:
            target = OrderStatus(target)
        except ValueError:
            raise ValidationError(f"Неизвестный статус: {target}", status=str(target)) from None

        async def apply(order_id: str) -> None:
            await self._orders.transition(order_id, target, actor=actor)

        return await self._run_batch(unique_ids, apply, f"Массовая смена статуса на {target.value}")

    async def bulk_refund(self, items: Iterable[RefundItem], actor: str | None = None) -> BulkResult:
        """Возвраты по нескольким заказам. На каждый заказ одна позиция."""
        by_order: dict[str, RefundItem] = {}
        for item in items:
            by_order.setdefault(item.order_id, item)
        self._check_batch_size(len(by_order))

        async def apply(order_id: str) -> None:
            item = by_order[order_id]
            refund = await self._settlement.request_refund(
                order_id,
                item.amount,
                item.reason,
                idempotency_key=item.idempotency_key,
                actor=actor,
            )
            if refund.status == RefundStatus.FAILED:
                raise ProcessorRejected(refund.last_error or "Процессор отклонил возврат", refund_id=refund.id)

        return await self._run_batch(list(by_order), apply, "Массовый возврат")
