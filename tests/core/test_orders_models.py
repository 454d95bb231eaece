# tests/core/test_orders_models.py
"""
Тесты для моделей заказов.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from returnly.common.constants import BoxSize, OrderStatus, PaymentStatus, ServiceTier
from returnly.core.orders.models import MUTABLE_FIELDS, Order
from returnly.core.pricing.models import BoxLine


@pytest.fixture
def order() -> Order:
    return Order(
        tracking_number="RTN-ABCDEFGH",
        customer_id="customer-1",
        pickup_address="1 Market St",
        dropoff_address="2 Mission St",
        boxes=[BoxLine(size=BoxSize.L, count=2), BoxLine(size=BoxSize.S, count=1)],
        distance_miles=Decimal("5"),
        base_price=Decimal("3.99"),
        distance_fee=Decimal("2.50"),
        size_fee=Decimal("4.00"),
        multi_box_fee=Decimal("3.00"),
        subtotal=Decimal("13.49"),
        service_fee=Decimal("2.02"),
        total_price=Decimal("15.51"),
    )


class TestOrder:
    def test_defaults(self, order: Order) -> None:
        assert order.status == OrderStatus.CREATED
        assert order.payment_status == PaymentStatus.PENDING
        assert order.version == 1
        assert order.driver_id is None
        assert order.refunded_to_date == Decimal("0")

    def test_box_count(self, order: Order) -> None:
        assert order.box_count == 3

    def test_service_tier(self, order: Order) -> None:
        assert order.service_tier == ServiceTier.STANDARD
        assert order.model_copy(update={"is_rush": True}).service_tier == ServiceTier.RUSH

    def test_refundable_balance(self, order: Order) -> None:
        paid = order.model_copy(update={
            "customer_paid": Decimal("15.51"),
            "refunded_to_date": Decimal("5.00"),
        })
        assert paid.refundable_balance == Decimal("10.51")

    def test_price_matches_stored_fields(self, order: Order) -> None:
        price = order.price

        assert price.total_price == order.total_price
        assert price.components_total == order.total_price

    def test_boxes_required(self, order: Order) -> None:
        data = order.model_dump()
        data["boxes"] = []

        with pytest.raises(ValidationError):
            Order(**data)

    def test_negative_balance_fields_rejected(self, order: Order) -> None:
        data = order.model_dump()
        data["customer_paid"] = Decimal("-1")

        with pytest.raises(ValidationError):
            Order(**data)

    def test_price_fields_are_not_mutable(self) -> None:
        for field in ("total_price", "base_price", "discount", "boxes", "distance_miles"):
            assert field not in MUTABLE_FIELDS


class TestOrderDraft:
    def test_blank_promo_is_none(self, make_draft) -> None:
        assert make_draft(promo_code="  ").promo_code is None

    def test_rush(self, make_draft) -> None:
        assert make_draft(service_tier="rush").is_rush is True
        assert make_draft().is_rush is False

    @pytest.mark.parametrize("count", [0, -1])
    def test_box_count_positive(self, count: int) -> None:
        with pytest.raises(ValidationError):
            BoxLine(size=BoxSize.M, count=count)

    def test_unknown_box_size(self) -> None:
        with pytest.raises(ValidationError):
            BoxLine(size="XXL", count=1)

    def test_coordinates_validated(self, make_draft) -> None:
        with pytest.raises(ValidationError):
            make_draft(pickup_latitude=91.0)
