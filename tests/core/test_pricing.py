# tests/core/test_pricing.py
"""
Тесты калькулятора стоимости и промокодов.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from returnly.common.constants import BoxSize, DiscountType
from returnly.config.loader import PricingSettings
from returnly.core.errors import InvalidPromo, PricingUnavailable, ValidationError
from returnly.core.pricing.calculator import PricingCalculator
from returnly.core.pricing.models import BoxLine, PromoCode, to_cents
from returnly.core.pricing.promo import InMemoryPromoRepository, compute_discount


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def calculator() -> PricingCalculator:
    return PricingCalculator(PricingSettings())


def boxes(size: BoxSize, count: int = 1) -> list[BoxLine]:
    return [BoxLine(size=size, count=count)]


class TestToCents:
    def test_rounds_half_up(self) -> None:
        assert to_cents(Decimal("0.9735")) == Decimal("0.97")
        assert to_cents(Decimal("0.125")) == Decimal("0.13")
        assert to_cents(Decimal("2.5485")) == Decimal("2.55")

    def test_accepts_float_without_artifacts(self) -> None:
        assert to_cents(0.1 + 0.2) == Decimal("0.30")


class TestPricingCalculator:
    """Базовые сценарии из тарифной сетки."""

    def test_single_medium_box(self, calculator: PricingCalculator) -> None:
        """1 коробка M, 5 миль: 3.99 + 2.50 = 6.49, сбор 0.97, итого 7.46."""
        price = calculator.calculate(boxes(BoxSize.M), Decimal("5"), now=NOW)

        assert price.base_price == Decimal("3.99")
        assert price.distance_fee == Decimal("2.50")
        assert price.size_fee == Decimal("0.00")
        assert price.multi_box_fee == Decimal("0.00")
        assert price.subtotal == Decimal("6.49")
        assert price.service_fee == Decimal("0.97")
        assert price.total_price == Decimal("7.46")

    def test_three_large_boxes(self, calculator: PricingCalculator) -> None:
        """3 коробки L, 8 миль: subtotal 16.99, сбор 2.55, итого 19.54."""
        price = calculator.calculate(boxes(BoxSize.L, 3), Decimal("8"), now=NOW)

        assert price.size_fee == Decimal("6.00")
        assert price.multi_box_fee == Decimal("3.00")
        assert price.distance_fee == Decimal("4.00")
        assert price.subtotal == Decimal("16.99")
        assert price.service_fee == Decimal("2.55")
        assert price.total_price == Decimal("19.54")

    def test_rush_fee_added_after_service_fee(self, calculator: PricingCalculator) -> None:
        price = calculator.calculate(boxes(BoxSize.M), Decimal("5"), is_rush=True, now=NOW)

        assert price.rush_fee == Decimal("3.00")
        assert price.service_fee == Decimal("0.97")
        assert price.total_price == Decimal("10.46")

    def test_mixed_sizes(self, calculator: PricingCalculator) -> None:
        lines = [BoxLine(size=BoxSize.S, count=1), BoxLine(size=BoxSize.XL, count=2)]
        price = calculator.calculate(lines, Decimal("0"), now=NOW)

        assert price.size_fee == Decimal("8.00")
        assert price.multi_box_fee == Decimal("3.00")
        assert price.subtotal == Decimal("14.99")

    @pytest.mark.parametrize("distance", ["0", "0.01", "3.33", "12.7", "49.99"])
    @pytest.mark.parametrize("rush", [False, True])
    def test_total_equals_sum_of_components(
        self,
        calculator: PricingCalculator,
        distance: str,
        rush: bool,
    ) -> None:
        price = calculator.calculate(boxes(BoxSize.L, 2), Decimal(distance), is_rush=rush, now=NOW)
        assert price.total_price == price.components_total

    def test_unknown_distance(self, calculator: PricingCalculator) -> None:
        with pytest.raises(PricingUnavailable):
            calculator.calculate(boxes(BoxSize.M), None, now=NOW)

    def test_negative_distance(self, calculator: PricingCalculator) -> None:
        with pytest.raises(ValidationError):
            calculator.calculate(boxes(BoxSize.M), Decimal("-1"), now=NOW)

    def test_no_boxes(self, calculator: PricingCalculator) -> None:
        with pytest.raises(ValidationError):
            calculator.calculate([], Decimal("5"), now=NOW)


class TestPromoCodes:
    def test_percentage_discount(self, calculator: PricingCalculator) -> None:
        promo = PromoCode(code="STUDENT15", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("15"))
        price = calculator.calculate(boxes(BoxSize.L, 3), Decimal("8"), promo=promo, now=NOW)

        # 16.99 * 0.15 = 2.5485 -> 2.55; сбор (16.99 - 2.55) * 0.15 = 2.166 -> 2.17
        assert price.discount == Decimal("2.55")
        assert price.service_fee == Decimal("2.17")
        assert price.total_price == Decimal("16.61")
        assert price.promo_code == "STUDENT15"

    def test_floor_shrinks_discount(self, calculator: PricingCalculator) -> None:
        promo = PromoCode(code="RETURN50", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("50"))
        price = calculator.calculate(boxes(BoxSize.M), Decimal("5"), promo=promo, now=NOW)

        # 6.49 - 3.25 + 0.49 = 3.73 < 3.99; скидка 3.02, сбор 3.47 * 0.15 = 0.5205 -> 0.52
        assert price.discount == Decimal("3.02")
        assert price.service_fee == Decimal("0.52")
        assert price.total_price == Decimal("3.99")
        assert price.total_price == price.components_total

    @pytest.mark.parametrize("code, kind, value", [
        ("RETURN50", DiscountType.PERCENTAGE, Decimal("50")),
        ("RETURN90", DiscountType.PERCENTAGE, Decimal("90")),
        ("BIG", DiscountType.FIXED, Decimal("100")),
    ])
    def test_service_fee_follows_floored_discount(self, calculator: PricingCalculator, code, kind, value) -> None:
        promo = PromoCode(code=code, discount_type=kind, discount_value=value)
        price = calculator.calculate(boxes(BoxSize.M), Decimal("5"), promo=promo, now=NOW)

        assert price.service_fee == to_cents((price.subtotal - price.discount) * Decimal("0.15"))
        assert price.total_price >= price.base_price
        assert price.total_price == price.components_total

    def test_floor_with_rush(self, calculator: PricingCalculator) -> None:
        promo = PromoCode(code="BIG", discount_type=DiscountType.FIXED, discount_value=Decimal("100"))
        price = calculator.calculate(boxes(BoxSize.M), Decimal("5"), is_rush=True, promo=promo, now=NOW)

        # 0.86 + 0.13 + 3.00 = 3.99
        assert price.rush_fee == Decimal("3.00")
        assert price.discount == Decimal("5.63")
        assert price.service_fee == Decimal("0.13")
        assert price.total_price == Decimal("3.99")
        assert price.total_price == price.components_total

    def test_fixed_discount_below_minimum(self, calculator: PricingCalculator) -> None:
        promo = PromoCode(
            code="BUNDLE25",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("2.50"),
            min_order_value=Decimal("10.00"),
        )
        with pytest.raises(InvalidPromo):
            calculator.calculate(boxes(BoxSize.M), Decimal("5"), promo=promo, now=NOW)

    def test_free_delivery_discount_is_base_price(self) -> None:
        promo = PromoCode(code="FREESHIP", discount_type=DiscountType.FREE_DELIVERY)
        assert compute_discount(promo, Decimal("6.49"), Decimal("3.99")) == Decimal("3.99")

    def test_discount_capped_at_subtotal(self) -> None:
        promo = PromoCode(code="BIG", discount_type=DiscountType.FIXED, discount_value=Decimal("100"))
        assert compute_discount(promo, Decimal("6.49"), Decimal("3.99")) == Decimal("6.49")

    def test_total_never_below_base_price(self, calculator: PricingCalculator) -> None:
        promo = PromoCode(code="BIG", discount_type=DiscountType.FIXED, discount_value=Decimal("100"))
        price = calculator.calculate(boxes(BoxSize.M), Decimal("5"), promo=promo, now=NOW)

        assert price.total_price == Decimal("3.99")
        assert price.total_price == price.components_total

    def test_expired_promo(self, calculator: PricingCalculator) -> None:
        promo = PromoCode(
            code="OLD",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
            valid_until=NOW - timedelta(days=1),
        )
        with pytest.raises(InvalidPromo):
            calculator.calculate(boxes(BoxSize.M), Decimal("5"), promo=promo, now=NOW)

    def test_exhausted_promo(self, calculator: PricingCalculator) -> None:
        promo = PromoCode(
            code="ONCE",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
            max_uses=1,
            current_uses=1,
        )
        with pytest.raises(InvalidPromo):
            calculator.calculate(boxes(BoxSize.M), Decimal("5"), promo=promo, now=NOW)

    def test_unknown_code(self, calculator: PricingCalculator) -> None:
        with pytest.raises(InvalidPromo) as exc_info:
            calculator.calculate(boxes(BoxSize.M), Decimal("5"), promo_code="NOPE", now=NOW)
        assert exc_info.value.details["code"] == "NOPE"


class TestInMemoryPromoRepository:
    @pytest.mark.asyncio
    async def test_lookup_is_case_insensitive(self) -> None:
        repo = InMemoryPromoRepository([
            PromoCode(code="STUDENT15", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("15")),
        ])
        promo = await repo.get(" student15 ")
        assert promo is not None
        assert promo.code == "STUDENT15"

    @pytest.mark.asyncio
    async def test_redeem_respects_max_uses(self) -> None:
        repo = InMemoryPromoRepository([
            PromoCode(code="ONCE", discount_type=DiscountType.FIXED, discount_value=Decimal("1"), max_uses=1),
        ])

        assert await repo.redeem("ONCE", NOW) is True
        assert await repo.redeem("ONCE", NOW) is False
        assert (await repo.get("ONCE")).current_uses == 1
