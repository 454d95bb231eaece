# returnly/core/orders/repository.py
"""
Репозиторий заказов.

Все изменения заказа делаются через compare-and-swap по полю version
(или условным UPDATE по паре status/driver_id), запись истории статусов
и возвратов идёт в той же транзакции, что и изменение заказа.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import asyncpg

from returnly.common.constants import OrderStatus, RefundStatus
from returnly.common.logger import log_error
from returnly.common.timeutils import utcnow
from returnly.core.billing.models import Refund
from returnly.core.orders.models import MUTABLE_FIELDS, Order, StatusChange
from returnly.core.orders.state_machine import OrderStateMachine
from returnly.infra.database import DatabaseManager

REFUND_MUTABLE_FIELDS = frozenset({
    "status",
    "processor_refund_id",
    "attempts",
    "last_error",
    "needs_reconciliation",
    "resolved_at",
})


def check_changes(changes: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Недопустимые поля для изменения: {sorted(unknown)}")


class OrderRepository(ABC):
    """Хранилище заказов, истории статусов и возвратов."""

    # -------------------------------------------------------------------------
    # Заказы
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        """Возвращает заказ или None."""

    @abstractmethod
    async def create(self, order: Order, history: StatusChange) -> Order:
        """Сохраняет новый заказ вместе с первой записью истории."""

    @abstractmethod
    async def tracking_number_exists(self, tracking_number: str) -> bool:
        ...

    @abstractmethod
    async def compare_and_swap(
        self,
        order_id: str,
        expected_version: int,
        changes: dict[str, Any],
        history: Optional[StatusChange] = None,
    ) -> Optional[Order]:
        """
        Применяет изменения, только если версия заказа не изменилась.

        Args:
            order_id: ID заказа
            expected_version: Версия, прочитанная перед валидацией
            changes: Поля заказа и новые значения (из MUTABLE_FIELDS)
            history: Запись истории, если меняется статус

        Returns:
            Обновлённый заказ или None, если версия уже другая
        """

    @abstractmethod
    async def claim_unassigned(
        self,
        order_id: str,
        driver_id: str,
        history: StatusChange,
    ) -> Optional[Order]:
        """
        Атомарно назначает водителя: только если status == confirmed
        и driver_id пуст. Переводит заказ в assigned.

        Returns:
            Обновлённый заказ или None, если условие не выполнено
        """

    @abstractmethod
    async def list_available(self) -> list[Order]:
        """Заказы в статусе confirmed без водителя."""

    @abstractmethod
    async def list_stale_assignments(self, updated_before: datetime) -> list[Order]:
        """Заказы с водителем, не продвинувшиеся с updated_before (assigned, pickup_scheduled)."""

    @abstractmethod
    async def get_history(self, order_id: str) -> list[StatusChange]:
        ...

    # -------------------------------------------------------------------------
    # Возвраты
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        ...

    @abstractmethod
    async def get_refund_by_key(self, idempotency_key: str) -> Optional[Refund]:
        ...

    @abstractmethod
    async def get_refund_by_processor_id(self, processor_refund_id: str) -> Optional[Refund]:
        ...

    @abstractmethod
    async def list_refunds(self, order_id: str) -> list[Refund]:
        ...

    @abstractmethod
    async def list_pending_refunds(self, created_before: datetime) -> list[Refund]:
        """Возвраты в статусе processing, созданные раньше created_before."""

    @abstractmethod
    async def reserve_refund(
        self,
        refund: Refund,
        expected_version: int,
        order_changes: dict[str, Any],
    ) -> Optional[Order]:
        """
        Атомарно создаёт возврат и резервирует сумму в заказе.

        Returns:
            Обновлённый заказ или None, если версия заказа изменилась
            или возврат с таким ключом уже существует
        """

    @abstractmethod
    async def update_refund(self, refund_id: str, changes: dict[str, Any]) -> Optional[Refund]:
        """Обновляет служебные поля возврата, пока он в статусе processing."""

    @abstractmethod
    async def resolve_refund(
        self,
        refund_id: str,
        refund_changes: dict[str, Any],
        expected_version: int,
        order_changes: dict[str, Any],
        history: Optional[StatusChange] = None,
    ) -> Optional[Order]:
        """
        Атомарно переводит возврат из processing в итоговый статус
        и применяет изменения к заказу.

        Returns:
            Обновлённый заказ или None, если возврат уже не в processing
            либо версия заказа изменилась
        """


# =============================================================================
# POSTGRESQL
# =============================================================================

class _Rollback(Exception):
    """Откат транзакции без ошибки (условие CAS не выполнено)."""


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class PostgresOrderRepository(OrderRepository):
    """Репозиторий заказов в PostgreSQL."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    # -------------------------------------------------------------------------
    # Маппинг
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_order(row: Any) -> Order:
        data = dict(row)
        boxes = data.get("boxes")
        if isinstance(boxes, str):
            data["boxes"] = json.loads(boxes)
        return Order.model_validate(data)

    @staticmethod
    def _row_to_refund(row: Any) -> Refund:
        return Refund.model_validate(dict(row))

    @staticmethod
    def _build_set_clause(changes: dict[str, Any], start: int) -> tuple[str, list[Any]]:
        parts: list[str] = []
        params: list[Any] = []
        for offset, (field, value) in enumerate(changes.items()):
            parts.append(f"{field} = ${start + offset}")
            params.append(_to_db(value))
        return ", ".join(parts), params

    @staticmethod
    async def _insert_history(conn: asyncpg.Connection, history: StatusChange) -> None:
        await conn.execute(
            """
            INSERT INTO order_status_history (order_id, from_status, to_status, actor, at)
            VALUES ($1, $2, $3, $4, $5)
            """,
            history.order_id,
            _to_db(history.from_status),
            _to_db(history.to_status),
            history.actor,
            history.at,
        )

    async def _cas_order(
        self,
        conn: asyncpg.Connection,
        order_id: str,
        expected_version: int,
        changes: dict[str, Any],
    ) -> Optional[asyncpg.Record]:
        check_changes(changes, MUTABLE_FIELDS)
        set_clause, params = self._build_set_clause(changes, start=4)
        set_sql = f"{set_clause}, " if set_clause else ""
        return await conn.fetchrow(
            f"""
            UPDATE orders
            SET {set_sql}version = version + 1, updated_at = $3
            WHERE id = $1 AND version = $2
            RETURNING *
            """,
            order_id,
            expected_version,
            utcnow(),
            *params,
        )

    # -------------------------------------------------------------------------
    # Заказы
    # -------------------------------------------------------------------------

    async def get(self, order_id: str) -> Optional[Order]:
        row = await self._db.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
        if row is None:
            return None
        return self._row_to_order(row)

    async def create(self, order: Order, history: StatusChange) -> Order:
        try:
            async with self._db.transaction() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO orders (
                        id, tracking_number, status, payment_status,
                        customer_id, driver_id,
                        pickup_address, pickup_latitude, pickup_longitude,
                        dropoff_address, retailer, item_description,
                        boxes, distance_miles, is_rush, promo_code,
                        base_price, distance_fee, size_fee, multi_box_fee, subtotal,
                        discount, service_fee, rush_fee, total_price,
                        version, created_at, scheduled_pickup_time, updated_at
                    )
                    VALUES (
                        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
                        $16, $17, $18, $19, $20, $21, $22, $23, $24, $25, $26, $27, $28, $29
                    )
                    RETURNING *
                    """,
                    order.id,
                    order.tracking_number,
                    order.status.value,
                    order.payment_status.value,
                    order.customer_id,
                    order.driver_id,
                    order.pickup_address,
                    order.pickup_latitude,
                    order.pickup_longitude,
                    order.dropoff_address,
                    order.retailer,
                    order.item_description,
                    json.dumps([line.model_dump(mode="json") for line in order.boxes]),
                    order.distance_miles,
                    order.is_rush,
                    order.promo_code,
                    order.base_price,
                    order.distance_fee,
                    order.size_fee,
                    order.multi_box_fee,
                    order.subtotal,
                    order.discount,
                    order.service_fee,
                    order.rush_fee,
                    order.total_price,
                    order.version,
                    order.created_at,
                    order.scheduled_pickup_time,
                    order.updated_at,
                )
                await self._insert_history(conn, history)
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка создания заказа {order.id}: {e}")
            raise
        return self._row_to_order(row)

    async def tracking_number_exists(self, tracking_number: str) -> bool:
        value = await self._db.fetchval(
            "SELECT EXISTS(SELECT 1 FROM orders WHERE tracking_number = $1)",
            tracking_number,
        )
        return bool(value)

    async def compare_and_swap(
        self,
        order_id: str,
        expected_version: int,
        changes: dict[str, Any],
        history: Optional[StatusChange] = None,
    ) -> Optional[Order]:
        try:
            async with self._db.transaction() as conn:
                row = await self._cas_order(conn, order_id, expected_version, changes)
                if row is None:
                    return None
                if history is not None:
                    await self._insert_history(conn, history)
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка обновления заказа {order_id}: {e}")
            raise
        return self._row_to_order(row)

    async def claim_unassigned(
        self,
        order_id: str,
        driver_id: str,
        history: StatusChange,
    ) -> Optional[Order]:
        try:
            async with self._db.transaction() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE orders
                    SET driver_id = $2, status = $3, version = version + 1, updated_at = $4
                    WHERE id = $1 AND status = $5 AND driver_id IS NULL
                    RETURNING *
                    """,
                    order_id,
                    driver_id,
                    OrderStatus.ASSIGNED.value,
                    history.at,
                    OrderStatus.CONFIRMED.value,
                )
                if row is None:
                    return None
                await self._insert_history(conn, history)
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка назначения водителя {driver_id} на заказ {order_id}: {e}")
            raise
        return self._row_to_order(row)

    async def list_available(self) -> list[Order]:
        rows = await self._db.fetch(
            """
            SELECT * FROM orders
            WHERE status = $1 AND driver_id IS NULL
            ORDER BY created_at ASC
            """,
            OrderStatus.CONFIRMED.value,
        )
        return [self._row_to_order(row) for row in rows]

    async def list_stale_assignments(self, updated_before: datetime) -> list[Order]:
        rows = await self._db.fetch(
            """
            SELECT * FROM orders
            WHERE status = ANY($1::text[]) AND driver_id IS NOT NULL AND updated_at <= $2
            ORDER BY updated_at ASC
            """,
            sorted(status.value for status in OrderStateMachine.UNASSIGN_SOURCES),
            updated_before,
        )
        return [self._row_to_order(row) for row in rows]

    async def get_history(self, order_id: str) -> list[StatusChange]:
        rows = await self._db.fetch(
            """
            SELECT order_id, from_status, to_status, actor, at
            FROM order_status_history
            WHERE order_id = $1
            ORDER BY at ASC, id ASC
            """,
            order_id,
        )
        return [StatusChange.model_validate(dict(row)) for row in rows]

    # -------------------------------------------------------------------------
    # Возвраты
    # -------------------------------------------------------------------------

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        row = await self._db.fetchrow("SELECT * FROM refunds WHERE id = $1", refund_id)
        return self._row_to_refund(row) if row else None

    async def get_refund_by_key(self, idempotency_key: str) -> Optional[Refund]:
        row = await self._db.fetchrow("SELECT * FROM refunds WHERE idempotency_key = $1", idempotency_key)
        return self._row_to_refund(row) if row else None

    async def get_refund_by_processor_id(self, processor_refund_id: str) -> Optional[Refund]:
        row = await self._db.fetchrow(
            "SELECT * FROM refunds WHERE processor_refund_id = $1",
            processor_refund_id,
        )
        return self._row_to_refund(row) if row else None

    async def list_refunds(self, order_id: str) -> list[Refund]:
        rows = await self._db.fetch(
            "SELECT * FROM refunds WHERE order_id = $1 ORDER BY created_at ASC",
            order_id,
        )
        return [self._row_to_refund(row) for row in rows]

    async def list_pending_refunds(self, created_before: datetime) -> list[Refund]:
        rows = await self._db.fetch(
            """
            SELECT * FROM refunds
            WHERE status = $1 AND created_at <= $2
            ORDER BY created_at ASC
            """,
            RefundStatus.PROCESSING.value,
            created_before,
        )
        return [self._row_to_refund(row) for row in rows]

    async def reserve_refund(
        self,
        refund: Refund,
        expected_version: int,
        order_changes: dict[str, Any],
    ) -> Optional[Order]:
        try:
            async with self._db.transaction() as conn:
                row = await self._cas_order(conn, refund.order_id, expected_version, order_changes)
                if row is None:
                    raise _Rollback()
                inserted = await conn.fetchval(
                    """
                    INSERT INTO refunds (
                        id, order_id, amount, reason, idempotency_key, status,
                        attempts, needs_reconciliation, requested_by, created_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    ON CONFLICT (idempotency_key) DO NOTHING
                    RETURNING id
                    """,
                    refund.id,
                    refund.order_id,
                    refund.amount,
                    refund.reason,
                    refund.idempotency_key,
                    refund.status.value,
                    refund.attempts,
                    refund.needs_reconciliation,
                    refund.requested_by,
                    refund.created_at,
                )
                if inserted is None:
                    raise _Rollback()
        except _Rollback:
            return None
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка резервирования возврата по заказу {refund.order_id}: {e}")
            raise
        return self._row_to_order(row)

    async def update_refund(self, refund_id: str, changes: dict[str, Any]) -> Optional[Refund]:
        check_changes(changes, REFUND_MUTABLE_FIELDS)
        set_clause, params = self._build_set_clause(changes, start=3)
        row = await self._db.fetchrow(
            f"""
            UPDATE refunds SET {set_clause}
            WHERE id = $1 AND status = $2
            RETURNING *
            """,
            refund_id,
            RefundStatus.PROCESSING.value,
            *params,
        )
        return self._row_to_refund(row) if row else None

    async def resolve_refund(
        self,
        refund_id: str,
        refund_changes: dict[str, Any],
        expected_version: int,
        order_changes: dict[str, Any],
        history: Optional[StatusChange] = None,
    ) -> Optional[Order]:
        check_changes(refund_changes, REFUND_MUTABLE_FIELDS)
        set_clause, params = self._build_set_clause(refund_changes, start=3)
        try:
            async with self._db.transaction() as conn:
                resolved = await conn.fetchrow(
                    f"""
                    UPDATE refunds SET {set_clause}
                    WHERE id = $1 AND status = $2
                    RETURNING order_id
                    """,
                    refund_id,
                    RefundStatus.PROCESSING.value,
                    *params,
                )
                if resolved is None:
                    raise _Rollback()
                row = await self._cas_order(conn, resolved["order_id"], expected_version, order_changes)
                if row is None:
                    raise _Rollback()
                if history is not None:
                    await self._insert_history(conn, history)
        except _Rollback:
            return None
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка фиксации результата возврата {refund_id}: {e}")
            raise
        return self._row_to_order(row)
