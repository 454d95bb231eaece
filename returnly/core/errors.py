# returnly/core/errors.py
"""
Доменные ошибки.

Каждая ошибка несёт машиночитаемый код (error_code) и HTTP статус,
которым её отдаёт API. Ошибки валидации и переходов состояния
выбрасываются до любой записи и не меняют состояние заказа.
"""

from __future__ import annotations

from typing import Any


class ReturnlyError(Exception):
    """Базовая доменная ошибка."""

    error_code: str = "INTERNAL_ERROR"
    http_status: int = 500

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.error_code)
        self.message = message or self.error_code
        self.details = details


class ValidationError(ReturnlyError):
    """Некорректные входные данные."""
    error_code = "VALIDATION_ERROR"
    http_status = 422


class PricingUnavailable(ReturnlyError):
    """Не удалось определить расстояние, цену посчитать нельзя."""
    error_code = "PRICING_UNAVAILABLE"
    http_status = 503


class InvalidPromo(ReturnlyError):
    """Промокод не существует, неактивен, истёк или исчерпан."""
    error_code = "INVALID_PROMO"
    http_status = 422


class OrderNotFound(ReturnlyError):
    error_code = "ORDER_NOT_FOUND"
    http_status = 404


class RefundNotFound(ReturnlyError):
    error_code = "REFUND_NOT_FOUND"
    http_status = 404


class IllegalTransition(ReturnlyError):
    """Переход отсутствует в таблице допустимых переходов."""
    error_code = "ILLEGAL_TRANSITION"
    http_status = 409

    def __init__(self, current: str, target: str, message: str = "") -> None:
        super().__init__(
            message or f"Переход {current} -> {target} недопустим",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class AlreadyAssigned(ReturnlyError):
    """Заказ уже принят другим водителем или не в статусе confirmed."""
    error_code = "ORDER_ALREADY_ASSIGNED"
    http_status = 409


class DriverUnavailable(ReturnlyError):
    """Водитель офлайн, не найден или уже занят другим заказом."""
    error_code = "DRIVER_UNAVAILABLE"
    http_status = 409


class ConcurrentModification(ReturnlyError):
    """Не удалось применить изменение после нескольких конфликтов версий."""
    error_code = "CONCURRENT_MODIFICATION"
    http_status = 409


class RefundExceedsBalance(ReturnlyError):
    """Сумма возврата больше, чем осталось от оплаченного."""
    error_code = "REFUND_EXCEEDS_BALANCE"
    http_status = 422


class ProcessorTimeout(ReturnlyError):
    """Платёжный процессор не ответил вовремя. Повторяемая ошибка."""
    error_code = "PROCESSOR_TIMEOUT"
    http_status = 504


class ProcessorRejected(ReturnlyError):
    """Платёжный процессор отклонил операцию. Окончательная ошибка."""
    error_code = "PROCESSOR_REJECTED"
    http_status = 502


class Forbidden(ReturnlyError):
    error_code = "FORBIDDEN"
    http_status = 403
