# returnly/core/pricing/promo.py
"""
Промокоды: проверка, расчёт скидки и хранилище с атомарным погашением.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Optional

from returnly.common.constants import DiscountType, TypeMsg
from returnly.common.logger import log_info
from returnly.core.errors import InvalidPromo
from returnly.core.pricing.models import ZERO, PromoCode, to_cents
from returnly.infra.database import DatabaseManager


def normalize_code(code: str) -> str:
    return code.strip().upper()


def check_promo(
    promo: Optional[PromoCode],
    subtotal: Decimal,
    now: datetime,
    code: str | None = None,
) -> PromoCode:
    """
    Проверяет, что промокод можно применить к заказу.

    Args:
        promo: Найденный промокод или None
        subtotal: Сумма до скидки
        now: Текущее время
        code: Введённый код (для сообщения об ошибке)

    Returns:
        Тот же промокод

    Raises:
        InvalidPromo: код не найден, неактивен, истёк, исчерпан
            или сумма заказа ниже минимальной
    """
    label = code or (promo.code if promo else "")
    if promo is None:
        raise InvalidPromo(f"Промокод {label} не найден", code=label)
    if not promo.is_active:
        raise InvalidPromo(f"Промокод {label} неактивен", code=label)
    if promo.valid_until is not None and now > promo.valid_until:
        raise InvalidPromo(f"Срок действия промокода {label} истёк", code=label)
    if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
        raise InvalidPromo(f"Промокод {label} исчерпан", code=label)
    if promo.min_order_value is not None and subtotal < promo.min_order_value:
        raise InvalidPromo(
            f"Промокод {label} действует от суммы {promo.min_order_value}",
            code=label,
            min_order_value=str(promo.min_order_value),
        )
    return promo


def compute_discount(promo: Optional[PromoCode], subtotal: Decimal, base_price: Decimal) -> Decimal:
    """Скидка по промокоду, не больше subtotal."""
    if promo is None:
        return ZERO

    match promo.discount_type:
        case DiscountType.PERCENTAGE:
            discount = to_cents(subtotal * promo.discount_value / Decimal(100))
        case DiscountType.FIXED:
            discount = to_cents(promo.discount_value)
        case DiscountType.FREE_DELIVERY:
            discount = base_price
        case _:
            discount = ZERO

    return min(discount, subtotal)


# =============================================================================
# ХРАНИЛИЩЕ ПРОМОКОДОВ
# =============================================================================

class PromoRepository(ABC):
    """Хранилище промокодов."""

    @abstractmethod
    async def get(self, code: str) -> Optional[PromoCode]:
        """Возвращает промокод по коду или None."""

    @abstractmethod
    async def redeem(self, code: str, now: datetime) -> bool:
        """
        Атомарно увеличивает current_uses, если код ещё действует.

        Returns:
            False, если код за это время стал недействительным
        """


class PostgresPromoRepository(PromoRepository):
    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get(self, code: str) -> Optional[PromoCode]:
        row = await self._db.fetchrow(
            """
            SELECT code, discount_type, discount_value, min_order_value,
                   valid_until, max_uses, current_uses, is_active
            FROM promo_codes
            WHERE code = $1
            """,
            normalize_code(code),
        )
        if row is None:
            return None
        return PromoCode.model_validate(dict(row))

    async def redeem(self, code: str, now: datetime) -> bool:
        # Условный UPDATE: гонка за последнее использование решается в БД
        result = await self._db.execute(
            """
            UPDATE promo_codes
            SET current_uses = current_uses + 1
            WHERE code = $1
              AND is_active
              AND (valid_until IS NULL OR valid_until >= $2)
              AND (max_uses IS NULL OR current_uses < max_uses)
            """,
            normalize_code(code),
            now,
        )
        return result.endswith(" 1")


class InMemoryPromoRepository(PromoRepository):
    """Промокоды в памяти процесса (разработка и тесты)."""

    def __init__(self, promos: list[PromoCode] | None = None) -> None:
        self._promos: dict[str, PromoCode] = {}
        self._lock = asyncio.Lock()
        for promo in promos or []:
            self._promos[normalize_code(promo.code)] = promo

    async def get(self, code: str) -> Optional[PromoCode]:
        promo = self._promos.get(normalize_code(code))
        return promo.model_copy() if promo else None

    async def redeem(self, code: str, now: datetime) -> bool:
        async with self._lock:
            key = normalize_code(code)
            promo = self._promos.get(key)
            if promo is None or not promo.is_active:
                return False
            if promo.valid_until is not None and now > promo.valid_until:
                return False
            if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
                return False
            self._promos[key] = promo.model_copy(update={"current_uses": promo.current_uses + 1})
        await log_info(f"Промокод {key} погашен", type_msg=TypeMsg.DEBUG)
        return True


def default_promo_codes() -> list[PromoCode]:
    """Стартовый набор промокодов для режима разработки."""
    return [
        PromoCode(code="RETURN50", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("50")),
        PromoCode(
            code="BUNDLE25",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("2.50"),
            min_order_value=Decimal("5.00"),
        ),
        PromoCode(code="STUDENT15", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("15")),
        PromoCode(code="FREESHIP", discount_type=DiscountType.FREE_DELIVERY, discount_value=Decimal("3.99")),
    ]
