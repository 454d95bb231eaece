# tests/core/test_admin_service.py
"""
Тесты массовых операций администратора.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from returnly.common.constants import OrderStatus, RefundStatus, UserRole
from returnly.core.admin.authorization import InMemoryAuthorizationService, PostgresAuthorizationService
from returnly.core.admin.service import AdminService, BulkResult, RefundItem
from returnly.core.errors import Forbidden, ValidationError


class TestBulkTransition:
    """Тесты массовой смены статуса."""

    @pytest.mark.asyncio
    async def test_partial_success(self, services, draft, paid_order, deliver) -> None:
        """Пять заказов, один уже завершён: 4 отменены, 1 с ошибкой."""
        pending = [await services.orders.create_order(draft) for _ in range(2)]
        confirmed = [await paid_order() for _ in range(2)]
        completed = await paid_order()
        await deliver(completed.id)
        await services.orders.transition(completed.id, OrderStatus.COMPLETED)
        before = await services.orders.get_order(completed.id)

        ids = [o.id for o in pending + confirmed] + [completed.id]
        result = await services.admin.bulk_transition(ids, OrderStatus.CANCELLED, actor="admin")

        assert sorted(result.succeeded) == sorted(o.id for o in pending + confirmed)
        assert len(result.failed) == 1
        assert result.failed[0].order_id == completed.id
        assert result.failed[0].reason == "ILLEGAL_TRANSITION"

        for order in pending + confirmed:
            assert (await services.orders.get_order(order.id)).status == OrderStatus.CANCELLED

        after = await services.orders.get_order(completed.id)
        assert after.status == OrderStatus.COMPLETED
        assert after.version == before.version

    @pytest.mark.asyncio
    async def test_history_records_admin(self, services, draft) -> None:
        order = await services.orders.create_order(draft)

        await services.admin.bulk_transition([order.id], "cancelled", actor="admin")

        history = await services.orders.get_history(order.id)
        assert history[-1].actor == "admin"

    @pytest.mark.asyncio
    async def test_missing_order_is_reported(self, services, draft) -> None:
        order = await services.orders.create_order(draft)

        result = await services.admin.bulk_transition([order.id, "missing"], OrderStatus.CANCELLED)

        assert result.succeeded == [order.id]
        assert result.failed[0].reason == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_duplicates_processed_once(self, services, draft) -> None:
        order = await services.orders.create_order(draft)

        result = await services.admin.bulk_transition([order.id, order.id], OrderStatus.CANCELLED)

        assert result.succeeded == [order.id]
        assert result.failed == []

    @pytest.mark.asyncio
    async def test_batch_limits(self, services) -> None:
        admin = AdminService(services.orders, services.settlement, max_orders=3)

        with pytest.raises(ValidationError):
            await admin.bulk_transition([], OrderStatus.CANCELLED)
        with pytest.raises(ValidationError):
            await admin.bulk_transition(["a", "b", "c", "d"], OrderStatus.CANCELLED)

    @pytest.mark.asyncio
    async def test_unknown_status(self, services, draft) -> None:
        order = await services.orders.create_order(draft)

        with pytest.raises(ValidationError):
            await services.admin.bulk_transition([order.id], "teleported")

    @pytest.mark.asyncio
    async def test_assigned_is_rejected_per_order(self, services, paid_order) -> None:
        order = await paid_order()

        result = await services.admin.bulk_transition([order.id], OrderStatus.ASSIGNED)

        assert result.failed[0].reason == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_refunded_is_rejected_per_order(self, services, paid_order, deliver) -> None:
        order = await paid_order()
        await deliver(order.id)

        result = await services.admin.bulk_transition([order.id], OrderStatus.REFUNDED)

        assert result.failed[0].reason == "VALIDATION_ERROR"
        assert (await services.orders.get_order(order.id)).status == OrderStatus.DELIVERED


class TestBulkRefund:
    """Тесты массового возврата."""

    @pytest.mark.asyncio
    async def test_bulk_refund(self, services, paid_order, draft) -> None:
        first = await paid_order()
        second = await paid_order()
        unpaid = await services.orders.create_order(draft)

        result = await services.admin.bulk_refund(
            [
                RefundItem(order_id=first.id, amount=Decimal("2.00"), reason="late"),
                RefundItem(order_id=second.id, amount=Decimal("100"), reason="late"),
                RefundItem(order_id=unpaid.id, amount=Decimal("1"), reason="late"),
            ],
            actor="admin",
        )

        assert result.succeeded == [first.id]
        reasons = {f.order_id: f.reason for f in result.failed}
        assert reasons == {second.id: "REFUND_EXCEEDS_BALANCE", unpaid.id: "VALIDATION_ERROR"}

        refunds = await services.settlement.list_refunds(first.id)
        assert refunds[0].requested_by == "admin"

    @pytest.mark.asyncio
    async def test_rejected_refund_is_failure(self, services, processor, paid_order) -> None:
        order = await paid_order()
        processor.reject_refunds()

        result = await services.admin.bulk_refund(
            [RefundItem(order_id=order.id, amount=Decimal("1"), reason="late")]
        )

        assert result.failed[0].reason == "PROCESSOR_REJECTED"
        refunds = await services.settlement.list_refunds(order.id)
        assert refunds[0].status == RefundStatus.FAILED

    @pytest.mark.asyncio
    async def test_one_item_per_order(self, services, processor, paid_order) -> None:
        order = await paid_order()

        result = await services.admin.bulk_refund([
            RefundItem(order_id=order.id, amount=Decimal("1"), reason="late"),
            RefundItem(order_id=order.id, amount=Decimal("2"), reason="damaged"),
        ])

        assert result.succeeded == [order.id]
        assert processor.refund_calls == 1


class TestBulkResult:
    def test_as_dict(self) -> None:
        result = BulkResult(succeeded=["a"])
        assert result.as_dict() == {"succeeded": ["a"], "failed": []}


class TestAuthorization:
    """Тесты проверки ролей и прав на смену статуса."""

    @pytest.mark.asyncio
    async def test_admin_allowed(self) -> None:
        auth = InMemoryAuthorizationService({"root": UserRole.ADMIN})
        await auth.require_admin("root")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", [None, "", "stranger", "driver-1"])
    async def test_others_forbidden(self, user_id) -> None:
        auth = InMemoryAuthorizationService({"driver-1": UserRole.DRIVER})

        with pytest.raises(Forbidden):
            await auth.require_admin(user_id)

    @pytest.mark.asyncio
    async def test_driver_steps_for_own_order(self, paid_order) -> None:
        order = (await paid_order()).model_copy(update={"driver_id": "driver-1"})
        auth = InMemoryAuthorizationService()

        for target in (OrderStatus.PICKED_UP, OrderStatus.DELIVERED, OrderStatus.CONFIRMED):
            await auth.authorize_transition("driver-1", order, target)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", [OrderStatus.CANCELLED, OrderStatus.COMPLETED])
    async def test_driver_cannot_close_order(self, paid_order, target) -> None:
        order = (await paid_order()).model_copy(update={"driver_id": "driver-1"})
        auth = InMemoryAuthorizationService({"driver-1": UserRole.DRIVER})

        with pytest.raises(Forbidden):
            await auth.authorize_transition("driver-1", order, target)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", [None, "driver-2", "customer-1"])
    async def test_steps_forbidden_for_others(self, paid_order, user_id) -> None:
        order = (await paid_order()).model_copy(update={"driver_id": "driver-1"})
        auth = InMemoryAuthorizationService()

        with pytest.raises(Forbidden):
            await auth.authorize_transition(user_id, order, OrderStatus.PICKED_UP)

    @pytest.mark.asyncio
    async def test_admin_may_cancel(self, paid_order) -> None:
        order = await paid_order()
        auth = InMemoryAuthorizationService({"root": UserRole.ADMIN})

        await auth.authorize_transition("root", order, OrderStatus.CANCELLED)

    @pytest.mark.asyncio
    async def test_role_from_users_table(self, mock_db) -> None:
        mock_db.fetchval.return_value = "admin"
        auth = PostgresAuthorizationService(mock_db)

        assert await auth.get_role("u1") == UserRole.ADMIN
        query, user_id = mock_db.fetchval.await_args.args
        assert "FROM users" in query
        assert user_id == "u1"

    @pytest.mark.asyncio
    async def test_unknown_role_value(self, mock_db) -> None:
        mock_db.fetchval.return_value = "superuser"
        auth = PostgresAuthorizationService(mock_db)

        assert await auth.get_role("u1") is None
