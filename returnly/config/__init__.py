"""
Модуль конфигурации.
Экспортирует настройки приложения.
"""

from returnly.config.loader import Settings, get_settings, settings

__all__ = ["Settings", "get_settings", "settings"]
