# returnly/core/pricing/tracking.py
"""
Трекинг-номера заказов: RTN- и 8-10 символов без похожих букв и цифр.
"""

from __future__ import annotations

import re
import secrets
from typing import Awaitable, Callable

from returnly.common.constants import TypeMsg
from returnly.common.logger import log_info

TRACKING_PREFIX = "RTN-"
# Без I, O, 0, 1: их легко перепутать при диктовке
TRACKING_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
TRACKING_PATTERN = re.compile(r"^RTN-[A-Z0-9]{8,12}$")
MAX_TRACKING_RETRIES = 10


def generate_tracking_number() -> str:
    length = 8 + secrets.randbelow(3)
    suffix = "".join(secrets.choice(TRACKING_ALPHABET) for _ in range(length))
    return f"{TRACKING_PREFIX}{suffix}"


def validate_tracking_number(value: str) -> bool:
    return bool(TRACKING_PATTERN.match(value or ""))


async def generate_unique_tracking_number(
    exists: Callable[[str], Awaitable[bool]],
    max_retries: int = MAX_TRACKING_RETRIES,
) -> str:
    """
    Генерирует трекинг-номер, которого ещё нет в хранилище.

    Args:
        exists: Проверка занятости номера
        max_retries: Сколько раз пробовать

    Raises:
        RuntimeError: все попытки дали коллизию
    """
    for attempt in range(1, max_retries + 1):
        candidate = generate_tracking_number()
        if not await exists(candidate):
            return candidate
        await log_info(
            f"Коллизия трекинг-номера {candidate} (попытка {attempt}/{max_retries})",
            type_msg=TypeMsg.WARNING,
        )
    raise RuntimeError(f"Не удалось сгенерировать уникальный трекинг-номер за {max_retries} попыток")
