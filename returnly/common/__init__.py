"""
Общие утилиты, константы и логгер.
"""

from returnly.common.logger import get_logger, log_info, log_error, log_warning, log_debug
from returnly.common.constants import TypeMsg

__all__ = [
    "get_logger",
    "log_info",
    "log_error",
    "log_warning",
    "log_debug",
    "TypeMsg",
]
