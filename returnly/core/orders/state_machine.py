# returnly/core/orders/state_machine.py
"""
Таблица допустимых переходов статусов заказа.
"""

from __future__ import annotations

from returnly.common.constants import OrderStatus
from returnly.core.errors import IllegalTransition


class OrderStateMachine:
    ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
        OrderStatus.CREATED: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
        OrderStatus.CONFIRMED: frozenset({OrderStatus.ASSIGNED, OrderStatus.CANCELLED}),
        OrderStatus.ASSIGNED: frozenset({
            OrderStatus.PICKUP_SCHEDULED,
            OrderStatus.PICKED_UP,
            OrderStatus.CONFIRMED,
            OrderStatus.CANCELLED,
        }),
        OrderStatus.PICKUP_SCHEDULED: frozenset({
            OrderStatus.PICKED_UP,
            OrderStatus.CONFIRMED,
            OrderStatus.CANCELLED,
        }),
        OrderStatus.PICKED_UP: frozenset({OrderStatus.IN_TRANSIT, OrderStatus.RETURN_REFUSED}),
        OrderStatus.IN_TRANSIT: frozenset({OrderStatus.DELIVERED, OrderStatus.RETURN_REFUSED}),
        OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED, OrderStatus.REFUNDED}),
        OrderStatus.COMPLETED: frozenset({OrderStatus.REFUNDED}),
        OrderStatus.CANCELLED: frozenset(),
        OrderStatus.RETURN_REFUSED: frozenset(),
        OrderStatus.REFUNDED: frozenset(),
    }

    TERMINAL_STATES = frozenset({
        OrderStatus.CANCELLED,
        OrderStatus.RETURN_REFUSED,
        OrderStatus.REFUNDED,
    })

    # Переход в confirmed из этих статусов снимает водителя с заказа
    UNASSIGN_SOURCES = frozenset({OrderStatus.ASSIGNED, OrderStatus.PICKUP_SCHEDULED})

    # Статусы, в которых за заказом закреплён водитель
    DRIVER_HELD_STATES = frozenset({
        OrderStatus.ASSIGNED,
        OrderStatus.PICKUP_SCHEDULED,
        OrderStatus.PICKED_UP,
        OrderStatus.IN_TRANSIT,
    })

    @staticmethod
    def can_transition(current_status: str, new_status: str) -> bool:
        try:
            curr = OrderStatus(current_status)
            new = OrderStatus(new_status)
        except ValueError:
            return False
        return new in OrderStateMachine.ALLOWED_TRANSITIONS.get(curr, frozenset())

    @staticmethod
    def validate(current_status: OrderStatus, new_status: OrderStatus) -> None:
        """
        Raises:
            IllegalTransition: перехода нет в таблице
        """
        if not OrderStateMachine.can_transition(current_status, new_status):
            raise IllegalTransition(OrderStatus(current_status).value, OrderStatus(new_status).value)

    @staticmethod
    def is_terminal(status: OrderStatus) -> bool:
        return status in OrderStateMachine.TERMINAL_STATES

    @staticmethod
    def is_unassign(current_status: OrderStatus, new_status: OrderStatus) -> bool:
        return new_status == OrderStatus.CONFIRMED and current_status in OrderStateMachine.UNASSIGN_SOURCES
