# tests/core/test_billing_service.py
"""
Тесты сервиса расчётов: возвраты, сверка, выплата водителю.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from returnly.common.constants import BoxSize, OrderStatus, PaymentStatus, RefundStatus
from returnly.core.errors import (
    RefundExceedsBalance,
    RefundNotFound,
    ValidationError,
)
from returnly.core.pricing.models import BoxLine
from returnly.shared.events import RefundRequested, RefundResolved


NOW_AGE = timedelta(0)


@pytest.fixture
def large_order(paid_order, distance_provider):
    """Оплаченный заказ на 19.54: три коробки L, 8 миль."""
    distance_provider.miles = Decimal("8")

    async def create():
        return await paid_order(boxes=[BoxLine(size=BoxSize.L, count=3)])

    return create


class TestRequestRefund:
    """Тесты запроса возврата."""

    @pytest.mark.asyncio
    async def test_refund_reserves_amount(self, services, large_order) -> None:
        order = await large_order()
        assert order.total_price == Decimal("19.54")

        with patch.object(services.event_bus, "publish", new=AsyncMock()) as publish:
            refund = await services.settlement.request_refund(
                order.id, Decimal("10.00"), "damaged", idempotency_key="K1", actor="admin"
            )

        assert refund.status == RefundStatus.PROCESSING
        assert refund.processor_refund_id.startswith("re_")
        assert refund.attempts == 1
        assert refund.requested_by == "admin"
        assert isinstance(publish.await_args_list[0].args[0], RefundRequested)

        stored = await services.orders.get_order(order.id)
        assert stored.refunded_to_date == Decimal("10.00")
        assert stored.payment_status == PaymentStatus.REFUND_PROCESSING
        assert stored.refundable_balance == Decimal("9.54")

    @pytest.mark.asyncio
    async def test_same_key_refunds_once(self, services, processor, large_order) -> None:
        """Повтор с тем же ключом возвращает тот же возврат, деньги не двигаются."""
        order = await large_order()

        first = await services.settlement.request_refund(order.id, Decimal("10"), "damaged", idempotency_key="K")
        second = await services.settlement.request_refund(order.id, Decimal("10"), "damaged", idempotency_key="K")

        assert second.id == first.id
        assert processor.refund_calls == 1
        assert len(await services.settlement.list_refunds(order.id)) == 1
        assert (await services.orders.get_order(order.id)).refunded_to_date == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_concurrent_replay_refunds_once(self, services, processor, paid_order, distance_provider) -> None:
        """Заказ на 15.00 (18.1 мили, коробка M), два одновременных запроса с одним ключом."""
        distance_provider.miles = Decimal("18.1")
        order = await paid_order()
        assert order.customer_paid == Decimal("15.00")

        first, second = await asyncio.gather(
            services.settlement.request_refund(order.id, Decimal("10"), "late", idempotency_key="K"),
            services.settlement.request_refund(order.id, Decimal("10"), "late", idempotency_key="K"),
        )

        assert first.id == second.id
        assert processor.refund_calls == 1
        assert len(await services.settlement.list_refunds(order.id)) == 1
        stored = await services.orders.get_order(order.id)
        assert stored.refunded_to_date == Decimal("10.00")
        assert stored.refundable_balance == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_default_key(self, services, processor, large_order) -> None:
        order = await large_order()

        first = await services.settlement.request_refund(order.id, Decimal("5"), "late")
        second = await services.settlement.request_refund(order.id, Decimal("5.00"), " late ")

        assert second.id == first.id
        assert first.idempotency_key == f"{order.id}:5.00:late"
        assert processor.refund_calls == 1

    @pytest.mark.asyncio
    async def test_key_reused_with_other_amount(self, services, large_order) -> None:
        order = await large_order()
        await services.settlement.request_refund(order.id, Decimal("5"), "late", idempotency_key="K")

        with pytest.raises(ValidationError):
            await services.settlement.request_refund(order.id, Decimal("6"), "late", idempotency_key="K")

    @pytest.mark.asyncio
    async def test_exceeds_balance(self, services, large_order) -> None:
        order = await large_order()
        await services.settlement.request_refund(order.id, Decimal("10"), "damaged", idempotency_key="K1")

        with pytest.raises(RefundExceedsBalance):
            await services.settlement.request_refund(order.id, Decimal("10"), "damaged", idempotency_key="K2")

        stored = await services.orders.get_order(order.id)
        assert stored.refunded_to_date == Decimal("10.00")
        assert len(await services.settlement.list_refunds(order.id)) == 1

    @pytest.mark.asyncio
    async def test_unpaid_order(self, services, draft) -> None:
        order = await services.orders.create_order(draft)

        with pytest.raises(ValidationError):
            await services.settlement.request_refund(order.id, Decimal("1"), "test")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,reason", [("0", "late"), ("-5", "late"), ("1", "  ")])
    async def test_invalid_input(self, services, paid_order, amount: str, reason: str) -> None:
        order = await paid_order()

        with pytest.raises(ValidationError):
            await services.settlement.request_refund(order.id, Decimal(amount), reason)

    @pytest.mark.asyncio
    async def test_rejected_releases_reservation(self, services, processor, large_order) -> None:
        order = await large_order()
        processor.reject_refunds()

        refund = await services.settlement.request_refund(order.id, Decimal("10"), "damaged")

        assert refund.status == RefundStatus.FAILED
        assert refund.last_error
        assert refund.resolved_at is not None

        stored = await services.orders.get_order(order.id)
        assert stored.refunded_to_date == Decimal("0")
        assert stored.payment_status == PaymentStatus.REFUND_FAILED

    @pytest.mark.asyncio
    async def test_timeout_leaves_refund_for_reconciliation(
        self,
        services,
        processor,
        large_order,
        no_backoff,
    ) -> None:
        order = await large_order()
        processor.timeout_refunds()

        refund = await services.settlement.request_refund(order.id, Decimal("10"), "damaged")

        assert refund.status == RefundStatus.PROCESSING
        assert refund.needs_reconciliation is True
        assert refund.processor_refund_id is None
        assert refund.attempts == 4
        assert processor.refund_calls == 4
        assert no_backoff.await_count == 3

        stored = await services.orders.get_order(order.id)
        assert stored.refunded_to_date == Decimal("10.00")


class TestRefundResult:
    """Тесты применения окончательного статуса возврата."""

    @pytest.mark.asyncio
    async def test_partial_refund_succeeded(self, services, large_order) -> None:
        order = await large_order()
        refund = await services.settlement.request_refund(order.id, Decimal("10"), "damaged")

        with patch.object(services.event_bus, "publish", new=AsyncMock()) as publish:
            resolved = await services.settlement.apply_refund_result(refund_id=refund.id, succeeded=True)

        assert resolved.status == RefundStatus.SUCCEEDED
        assert isinstance(publish.await_args_list[0].args[0], RefundResolved)

        stored = await services.orders.get_order(order.id)
        assert stored.status == OrderStatus.CONFIRMED
        assert stored.payment_status == PaymentStatus.REFUNDED
        assert stored.refunded_to_date == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_lookup_by_processor_id(self, services, large_order) -> None:
        order = await large_order()
        refund = await services.settlement.request_refund(order.id, Decimal("10"), "damaged")

        resolved = await services.settlement.apply_refund_result(
            processor_refund_id=refund.processor_refund_id,
            succeeded=False,
            error="card_closed",
        )

        assert resolved.id == refund.id
        assert resolved.status == RefundStatus.FAILED
        assert resolved.last_error == "card_closed"
        assert (await services.orders.get_order(order.id)).refunded_to_date == Decimal("0")

    @pytest.mark.asyncio
    async def test_replayed_result_is_ignored(self, services, large_order) -> None:
        """Повторное уведомление не меняет ни возврат, ни заказ."""
        order = await large_order()
        refund = await services.settlement.request_refund(order.id, Decimal("10"), "damaged")
        await services.settlement.apply_refund_result(refund_id=refund.id, succeeded=True)
        before = await services.orders.get_order(order.id)

        replay = await services.settlement.apply_refund_result(refund_id=refund.id, succeeded=False)

        assert replay.status == RefundStatus.SUCCEEDED
        after = await services.orders.get_order(order.id)
        assert after.version == before.version
        assert after.refunded_to_date == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_other_refund_in_flight(self, services, large_order) -> None:
        order = await large_order()
        first = await services.settlement.request_refund(order.id, Decimal("5"), "damaged")
        await services.settlement.request_refund(order.id, Decimal("4"), "late")

        await services.settlement.apply_refund_result(refund_id=first.id, succeeded=True)

        stored = await services.orders.get_order(order.id)
        assert stored.payment_status == PaymentStatus.REFUND_PROCESSING
        assert stored.refunded_to_date == Decimal("9.00")

    @pytest.mark.asyncio
    async def test_full_refund_of_delivered_order(self, services, paid_order, deliver) -> None:
        order = await paid_order()
        await deliver(order.id)
        refund = await services.settlement.request_refund(order.id, order.total_price, "lost")

        await services.settlement.apply_refund_result(refund_id=refund.id, succeeded=True)

        stored = await services.orders.get_order(order.id)
        assert stored.status == OrderStatus.REFUNDED
        assert stored.needs_manual_reconciliation is False
        history = await services.orders.get_history(order.id)
        assert history[-1].to_status == OrderStatus.REFUNDED
        assert history[-1].actor == "settlement"

    @pytest.mark.asyncio
    async def test_full_refund_after_payout(self, services, paid_order, deliver) -> None:
        """Водителю уже заплатили: статус не меняется, заказ уходит на ручную сверку."""
        order = await paid_order()
        await deliver(order.id)
        await services.orders.transition(order.id, OrderStatus.COMPLETED)
        await services.settlement.record_driver_payout(order.id)
        refund = await services.settlement.request_refund(order.id, order.total_price, "lost")

        await services.settlement.apply_refund_result(refund_id=refund.id, succeeded=True)

        stored = await services.orders.get_order(order.id)
        assert stored.status == OrderStatus.COMPLETED
        assert stored.needs_manual_reconciliation is True
        assert stored.driver_earning == Decimal("6.08")

    @pytest.mark.asyncio
    async def test_full_refund_of_confirmed_order_keeps_status(self, services, paid_order) -> None:
        order = await paid_order()
        refund = await services.settlement.request_refund(order.id, order.total_price, "changed mind")

        await services.settlement.apply_refund_result(refund_id=refund.id, succeeded=True)

        stored = await services.orders.get_order(order.id)
        assert stored.status == OrderStatus.CONFIRMED
        assert stored.payment_status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_unknown_refund(self, services) -> None:
        with pytest.raises(RefundNotFound):
            await services.settlement.apply_refund_result(refund_id="missing")

        with pytest.raises(RefundNotFound):
            await services.settlement.apply_refund_result(processor_refund_id="re_missing")

        with pytest.raises(ValidationError):
            await services.settlement.apply_refund_result()


class TestReconciliation:
    """Тесты сверки зависших возвратов."""

    @pytest.mark.asyncio
    async def test_polls_processor(self, services, large_order) -> None:
        order = await large_order()
        await services.settlement.request_refund(order.id, Decimal("10"), "damaged")

        resolved = await services.settlement.reconcile_pending_refunds(older_than=NOW_AGE)

        assert resolved == 1
        refunds = await services.settlement.list_refunds(order.id)
        assert refunds[0].status == RefundStatus.SUCCEEDED
        assert (await services.orders.get_order(order.id)).payment_status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_young_refunds_are_skipped(self, services, large_order) -> None:
        order = await large_order()
        await services.settlement.request_refund(order.id, Decimal("10"), "damaged")

        assert await services.settlement.reconcile_pending_refunds(older_than=timedelta(hours=1)) == 0

    @pytest.mark.asyncio
    async def test_pending_at_processor(self, services, processor, large_order) -> None:
        processor._auto_settle = False
        order = await large_order()
        refund = await services.settlement.request_refund(order.id, Decimal("10"), "damaged")

        assert await services.settlement.reconcile_pending_refunds(older_than=NOW_AGE) == 0

        processor.settle_refund(refund.processor_refund_id, succeeded=False, error="expired_card")
        assert await services.settlement.reconcile_pending_refunds(older_than=NOW_AGE) == 1

        refunds = await services.settlement.list_refunds(order.id)
        assert refunds[0].status == RefundStatus.FAILED
        assert refunds[0].last_error == "expired_card"

    @pytest.mark.asyncio
    async def test_resubmits_unanswered_refund(self, services, processor, large_order) -> None:
        """Возврат без ответа процессора отправляется снова с тем же ключом."""
        order = await large_order()
        processor.timeout_refunds()
        refund = await services.settlement.request_refund(order.id, Decimal("10"), "damaged")
        processor.refund_error = None

        assert await services.settlement.reconcile_pending_refunds(older_than=NOW_AGE) == 0

        resubmitted = (await services.settlement.list_refunds(order.id))[0]
        assert resubmitted.id == refund.id
        assert resubmitted.processor_refund_id is not None
        assert resubmitted.needs_reconciliation is False

        assert await services.settlement.reconcile_pending_refunds(older_than=NOW_AGE) == 1


class TestDriverPayout:
    """Тесты отметки о выплате водителю."""

    @pytest.mark.asyncio
    async def test_payout_requires_completed(self, services, paid_order, deliver) -> None:
        order = await paid_order()
        await deliver(order.id)

        with pytest.raises(ValidationError):
            await services.settlement.record_driver_payout(order.id)

    @pytest.mark.asyncio
    async def test_payout_is_recorded_once(self, services, paid_order, deliver) -> None:
        order = await paid_order()
        await deliver(order.id)
        await services.orders.transition(order.id, OrderStatus.COMPLETED)

        first = await services.settlement.record_driver_payout(order.id)
        second = await services.settlement.record_driver_payout(order.id)

        assert first.driver_paid_out_at is not None
        assert second.driver_paid_out_at == first.driver_paid_out_at
        assert second.version == first.version
