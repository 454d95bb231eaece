# returnly/common/timeutils.py
"""
Работа со временем. Все метки времени хранятся в UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Текущее время в UTC (timezone-aware)."""
    return datetime.now(timezone.utc)
