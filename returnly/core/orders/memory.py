# returnly/core/orders/memory.py
"""
Репозиторий заказов в памяти процесса.

Используется в режиме STORAGE_BACKEND=memory и в тестах. Каждый заказ
защищён своим asyncio.Lock, глобальной блокировки нет.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

from returnly.common.constants import OrderStatus, RefundStatus
from returnly.common.timeutils import utcnow
from returnly.core.billing.models import Refund
from returnly.core.orders.models import MUTABLE_FIELDS, Order, StatusChange
from returnly.core.orders.repository import REFUND_MUTABLE_FIELDS, OrderRepository, check_changes
from returnly.core.orders.state_machine import OrderStateMachine


class InMemoryOrderRepository(OrderRepository):
    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._history: dict[str, list[StatusChange]] = defaultdict(list)
        self._refunds: dict[str, Refund] = {}
        self._refund_keys: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock_for(self, order_id: str) -> asyncio.Lock:
        return self._locks[order_id]

    def _apply(self, order: Order, changes: dict[str, Any]) -> Order:
        updated = order.model_copy(
            update={**changes, "version": order.version + 1, "updated_at": utcnow()}
        )
        self._orders[order.id] = updated
        return updated

    # -------------------------------------------------------------------------
    # Заказы
    # -------------------------------------------------------------------------

    async def get(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy() if order else None

    async def create(self, order: Order, history: StatusChange) -> Order:
        async with self._lock_for(order.id):
            if order.id in self._orders:
                raise ValueError(f"Заказ {order.id} уже существует")
            self._orders[order.id] = order
            self._history[order.id].append(history)
        return order.model_copy()

    async def tracking_number_exists(self, tracking_number: str) -> bool:
        return any(o.tracking_number == tracking_number for o in self._orders.values())

    async def compare_and_swap(
        self,
        order_id: str,
        expected_version: int,
        changes: dict[str, Any],
        history: Optional[StatusChange] = None,
    ) -> Optional[Order]:
        check_changes(changes, MUTABLE_FIELDS)
        async with self._lock_for(order_id):
            current = self._orders.get(order_id)
            if current is None or current.version != expected_version:
                return None
            updated = self._apply(current, changes)
            if history is not None:
                self._history[order_id].append(history)
        return updated.model_copy()

    async def claim_unassigned(
        self,
        order_id: str,
        driver_id: str,
        history: StatusChange,
    ) -> Optional[Order]:
        async with self._lock_for(order_id):
            current = self._orders.get(order_id)
            if current is None:
                return None
            if current.status != OrderStatus.CONFIRMED or current.driver_id is not None:
                return None
            updated = self._apply(current, {"status": OrderStatus.ASSIGNED, "driver_id": driver_id})
            self._history[order_id].append(history)
        return updated.model_copy()

    async def list_available(self) -> list[Order]:
        available = [
            o.model_copy()
            for o in self._orders.values()
            if o.status == OrderStatus.CONFIRMED and o.driver_id is None
        ]
        available.sort(key=lambda o: o.created_at)
        return available

    async def list_stale_assignments(self, updated_before: datetime) -> list[Order]:
        stale = [
            o.model_copy()
            for o in self._orders.values()
            if o.status in OrderStateMachine.UNASSIGN_SOURCES
            and o.driver_id is not None
            and o.updated_at <= updated_before
        ]
        stale.sort(key=lambda o: o.updated_at)
        return stale

    async def get_history(self, order_id: str) -> list[StatusChange]:
        return list(self._history.get(order_id, []))

    # -------------------------------------------------------------------------
    # Возвраты
    # -------------------------------------------------------------------------

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        refund = self._refunds.get(refund_id)
        return refund.model_copy() if refund else None

    async def get_refund_by_key(self, idempotency_key: str) -> Optional[Refund]:
        refund_id = self._refund_keys.get(idempotency_key)
        return await self.get_refund(refund_id) if refund_id else None

    async def get_refund_by_processor_id(self, processor_refund_id: str) -> Optional[Refund]:
        for refund in self._refunds.values():
            if refund.processor_refund_id == processor_refund_id:
                return refund.model_copy()
        return None

    async def list_refunds(self, order_id: str) -> list[Refund]:
        refunds = [r.model_copy() for r in self._refunds.values() if r.order_id == order_id]
        refunds.sort(key=lambda r: r.created_at)
        return refunds

    async def list_pending_refunds(self, created_before: datetime) -> list[Refund]:
        pending = [
            r.model_copy()
            for r in self._refunds.values()
            if r.status == RefundStatus.PROCESSING and r.created_at <= created_before
        ]
        pending.sort(key=lambda r: r.created_at)
        return pending

    async def reserve_refund(
        self,
        refund: Refund,
        expected_version: int,
        order_changes: dict[str, Any],
    ) -> Optional[Order]:
        check_changes(order_changes, MUTABLE_FIELDS)
        async with self._lock_for(refund.order_id):
            current = self._orders.get(refund.order_id)
            if current is None or current.version != expected_version:
                return None
            if refund.idempotency_key in self._refund_keys:
                return None
            updated = self._apply(current, order_changes)
            self._refunds[refund.id] = refund.model_copy()
            self._refund_keys[refund.idempotency_key] = refund.id
        return updated.model_copy()

    async def update_refund(self, refund_id: str, changes: dict[str, Any]) -> Optional[Refund]:
        check_changes(changes, REFUND_MUTABLE_FIELDS)
        refund = self._refunds.get(refund_id)
        if refund is None:
            return None
        async with self._lock_for(refund.order_id):
            refund = self._refunds[refund_id]
            if refund.status != RefundStatus.PROCESSING:
                return None
            updated = refund.model_copy(update=changes)
            self._refunds[refund_id] = updated
        return updated.model_copy()

    async def resolve_refund(
        self,
        refund_id: str,
        refund_changes: dict[str, Any],
        expected_version: int,
        order_changes: dict[str, Any],
        history: Optional[StatusChange] = None,
    ) -> Optional[Order]:
        check_changes(refund_changes, REFUND_MUTABLE_FIELDS)
        check_changes(order_changes, MUTABLE_FIELDS)
        refund = self._refunds.get(refund_id)
        if refund is None:
            return None
        async with self._lock_for(refund.order_id):
            refund = self._refunds[refund_id]
            if refund.status != RefundStatus.PROCESSING:
                return None
            current = self._orders.get(refund.order_id)
            if current is None or current.version != expected_version:
                return None
            self._refunds[refund_id] = refund.model_copy(update=refund_changes)
            updated = self._apply(current, order_changes)
            if history is not None:
                self._history[refund.order_id].append(history)
        return updated.model_copy()
