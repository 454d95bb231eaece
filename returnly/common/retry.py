# returnly/common/retry.py
"""
Повторные вызовы с экспоненциальной задержкой.
Используется для обращений к внешним сервисам (платёжный процессор).
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from returnly.common.constants import TypeMsg
from returnly.common.logger import log_error, log_info

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Задержка перед следующей попыткой.

    Args:
        attempt: Номер неудачной попытки (с 1)
        base_delay: Базовая задержка (секунды)
        max_delay: Потолок задержки (секунды)
    """
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def call_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    retry_on: tuple[type[BaseException], ...],
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    operation: str = "",
    **kwargs: Any,
) -> T:
    """
    Вызывает корутину, повторяя её при ошибках из retry_on.

    После исчерпания попыток пробрасывает последнюю ошибку.
    Ошибки, не входящие в retry_on, пробрасываются сразу.

    Args:
        func: Асинхронная функция
        retry_on: Классы исключений, при которых нужен повтор
        max_attempts: Максимальное количество попыток
        base_delay: Начальная задержка (секунды)
        max_delay: Максимальная задержка (секунды)
        operation: Название операции для логов
    """
    name = operation or getattr(func, "__name__", "operation")

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt >= max_attempts:
                await log_error(f"{name}: исчерпаны попытки ({max_attempts}): {e}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            await log_info(
                f"{name}: ошибка (попытка {attempt}/{max_attempts}), повтор через {delay:.2f}с: {e}",
                type_msg=TypeMsg.WARNING,
            )
            await asyncio.sleep(delay)

    raise RuntimeError(f"{name}: max_attempts должен быть >= 1")
