# returnly/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class UserRole(str, Enum):
    """Роли пользователей."""
    CUSTOMER = "customer"
    DRIVER = "driver"
    ADMIN = "admin"


class OrderStatus(str, Enum):
    """Статусы заказа на возврат."""
    CREATED = "created"
    CONFIRMED = "confirmed"
    ASSIGNED = "assigned"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RETURN_REFUSED = "return_refused"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Статусы оплаты заказа."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUND_PROCESSING = "refund_processing"
    REFUNDED = "refunded"
    REFUND_FAILED = "refund_failed"


class RefundStatus(str, Enum):
    """Статусы возврата средств."""
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BoxSize(str, Enum):
    """Размеры коробок."""
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"


class ServiceTier(str, Enum):
    """Уровень обслуживания."""
    STANDARD = "standard"
    RUSH = "rush"


class DiscountType(str, Enum):
    """Типы промокодов."""
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_DELIVERY = "free_delivery"
