# returnly/core/admin/authorization.py
"""
Проверка прав пользователей.
Роль берётся из таблицы users, а не из списка в конфиге.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

from returnly.common.constants import OrderStatus, TypeMsg, UserRole
from returnly.common.logger import log_info
from returnly.core.errors import Forbidden
from returnly.infra.database import DatabaseManager

if TYPE_CHECKING:
    from returnly.core.orders.models import Order

# Шаги, которые отмечает назначенный на заказ водитель
DRIVER_STEPS = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PICKUP_SCHEDULED,
    OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
    OrderStatus.RETURN_REFUSED,
})


class AuthorizationService(ABC):
    """Источник ролей пользователей."""

    @abstractmethod
    async def get_role(self, user_id: str) -> Optional[UserRole]:
        """Возвращает роль пользователя или None, если он неизвестен."""

    async def require_role(self, user_id: str | None, role: UserRole) -> None:
        """
        Raises:
            Forbidden: у пользователя нет роли role
        """
        if not user_id:
            raise Forbidden("Не указан пользователь")

        actual = await self.get_role(user_id)
        if actual != role:
            await log_info(
                f"Отказано в доступе: пользователь {user_id} ({actual.value if actual else 'unknown'}) "
                f"требуется {role.value}",
                type_msg=TypeMsg.WARNING,
            )
            raise Forbidden(f"Недостаточно прав: требуется роль {role.value}", user_id=user_id)

    async def require_admin(self, user_id: str | None) -> None:
        await self.require_role(user_id, UserRole.ADMIN)

    async def authorize_transition(self, user_id: str | None, order: Order, target: OrderStatus) -> None:
        """
        Проверяет, может ли пользователь перевести заказ в статус target.

        Администратор меняет любой статус. Водитель заказа отмечает шаги
        забора и доставки и может отказаться от заказа (confirmed).
        Отмена и закрытие заказа только за администратором.

        Raises:
            Forbidden: действие пользователю не разрешено
        """
        if not user_id:
            raise Forbidden("Не указан пользователь")

        if target in DRIVER_STEPS and order.driver_id is not None and order.driver_id == user_id:
            return

        if await self.get_role(user_id) == UserRole.ADMIN:
            return

        await log_info(
            f"Отказано в смене статуса заказа {order.id} на {target.value}: пользователь {user_id}",
            type_msg=TypeMsg.WARNING,
        )
        raise Forbidden(
            f"Нет прав на перевод заказа в статус {target.value}",
            user_id=user_id,
            order_id=order.id,
        )


class PostgresAuthorizationService(AuthorizationService):
    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    async def get_role(self, user_id: str) -> Optional[UserRole]:
        role = await self._db.fetchval(
            "SELECT role FROM users WHERE id = $1 AND NOT is_blocked",
            user_id,
        )
        if role is None:
            return None
        try:
            return UserRole(role)
        except ValueError:
            return None


class InMemoryAuthorizationService(AuthorizationService):
    def __init__(self, roles: dict[str, UserRole] | None = None) -> None:
        self._roles: dict[str, UserRole] = dict(roles or {})

    async def get_role(self, user_id: str) -> Optional[UserRole]:
        return self._roles.get(user_id)
