# returnly/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины: config/config.json.
Секретные данные переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


def _to_decimal(value: Any) -> Any:
    """Приводит число из JSON к Decimal без артефактов float."""
    if isinstance(value, (int, float, str)) and not isinstance(value, bool):
        return Decimal(str(value))
    return value


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "returnly"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    COMPONENT_MODE: str = "all"
    STORAGE_BACKEND: str = "postgres"  # postgres | memory
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    @field_validator("STORAGE_BACKEND")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Проверяет, что выбран известный тип хранилища."""
        if v not in ("postgres", "memory"):
            raise ValueError(f"Неизвестный STORAGE_BACKEND: {v}")
        return v


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = True
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760
    LOG_BACKUP_COUNT: int = 5


class GoogleMapsSettings(BaseModel):
    """Настройки Google Maps API (Distance Matrix)."""
    GOOGLE_MAPS_API_KEY: str = ""
    REQUEST_TIMEOUT: float = 10.0

    @field_validator("GOOGLE_MAPS_API_KEY", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает API ключ из переменных окружения."""
        if not v:
            return os.getenv("GOOGLE_MAPS_API_KEY", "")
        return v


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "returnly"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "returnly"
    REDIS_MAX_CONNECTIONS: int = 50

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "returnly.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        env_pass = os.getenv("RABBITMQ_PASSWORD", "")
        if env_pass:
            return env_pass
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class PricingSettings(BaseModel):
    """Тарифы для клиента. Все суммы в долларах."""
    BASE_PRICE: Decimal = Decimal("3.99")
    DISTANCE_RATE_PER_MILE: Decimal = Decimal("0.50")
    SIZE_UPCHARGES: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "S": Decimal("0"),
            "M": Decimal("0"),
            "L": Decimal("2.00"),
            "XL": Decimal("4.00"),
        }
    )
    MULTI_BOX_FEE: Decimal = Decimal("1.50")
    SERVICE_FEE_RATE: Decimal = Decimal("0.15")
    RUSH_FEE: Decimal = Decimal("3.00")
    CURRENCY: str = "USD"

    @field_validator(
        "BASE_PRICE",
        "DISTANCE_RATE_PER_MILE",
        "MULTI_BOX_FEE",
        "SERVICE_FEE_RATE",
        "RUSH_FEE",
        mode="before",
    )
    @classmethod
    def parse_decimal(cls, v: Any) -> Any:
        return _to_decimal(v)

    @field_validator("SIZE_UPCHARGES", mode="before")
    @classmethod
    def parse_decimal_map(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {k: _to_decimal(val) for k, val in v.items()}
        return v


class PayoutSettings(BaseModel):
    """Формула выплаты водителю."""
    DRIVER_BASE_PAY: Decimal = Decimal("3.00")
    DRIVER_PER_MILE: Decimal = Decimal("0.35")
    DRIVER_SIZE_BONUS: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "S": Decimal("0"),
            "M": Decimal("0"),
            "L": Decimal("1.00"),
            "XL": Decimal("2.00"),
        }
    )
    DRIVER_TIME_RATE_PER_HOUR: Decimal = Decimal("8.00")
    AVERAGE_SPEED_MPH: Decimal = Decimal("30")
    HANDLING_MINUTES: int = 10
    TIME_TOLERANCE_MINUTES: int = 10

    @field_validator(
        "DRIVER_BASE_PAY",
        "DRIVER_PER_MILE",
        "DRIVER_TIME_RATE_PER_HOUR",
        "AVERAGE_SPEED_MPH",
        mode="before",
    )
    @classmethod
    def parse_decimal(cls, v: Any) -> Any:
        return _to_decimal(v)

    @field_validator("DRIVER_SIZE_BONUS", mode="before")
    @classmethod
    def parse_decimal_map(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {k: _to_decimal(val) for k, val in v.items()}
        return v


class AssignmentSettings(BaseModel):
    """Настройки назначения водителей."""
    SERVICE_RADIUS_MILES: float = 15.0
    DRIVER_LOCATION_TTL: int = 300
    MAX_CAS_RETRIES: int = 5
    # Заказ с водителем без движения дольше этого срока возвращается в пул
    ASSIGNMENT_TIMEOUT_MINUTES: int = 30
    ASSIGNMENT_SWEEP_INTERVAL: int = 300


class PaymentsSettings(BaseModel):
    """Настройки платёжного процессора."""
    PAYMENT_PROCESSOR_URL: str = "https://payments.example.com/v1"
    PAYMENT_PROCESSOR_API_KEY: str = ""
    PAYMENT_WEBHOOK_SECRET: str = ""
    PROCESSOR_TIMEOUT_SECONDS: float = 10.0
    PROCESSOR_MAX_ATTEMPTS: int = 4
    PROCESSOR_BACKOFF_BASE: float = 0.5
    PROCESSOR_BACKOFF_MAX: float = 8.0
    RECONCILIATION_INTERVAL: int = 60
    RECONCILIATION_MIN_AGE: int = 120

    @field_validator("PAYMENT_PROCESSOR_API_KEY", "PAYMENT_WEBHOOK_SECRET", mode="before")
    @classmethod
    def get_from_env(cls, v: str, info) -> str:
        """Получает секреты из переменных окружения, если не заданы."""
        if not v:
            return os.getenv(info.field_name, "")
        return v


class AdminSettings(BaseModel):
    """Настройки массовых операций администратора."""
    BULK_MAX_ORDERS: int = 500
    BULK_MAX_CONCURRENCY: int = 10
    # Администраторы для STORAGE_BACKEND=memory (в PostgreSQL роль берётся из users)
    DEV_ADMIN_USERS: list[str] = Field(default_factory=list)


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    google_maps: GoogleMapsSettings = Field(default_factory=GoogleMapsSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    payout: PayoutSettings = Field(default_factory=PayoutSettings)
    assignment: AssignmentSettings = Field(default_factory=AssignmentSettings)
    payments: PaymentsSettings = Field(default_factory=PaymentsSettings)
    admin: AdminSettings = Field(default_factory=AdminSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def from_config_json(cls, config_data: dict[str, Any] | None = None) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты переопределяются из переменных окружения.

        Args:
            config_data: Готовый словарь конфигурации (если None, читается файл)
        """
        if config_data is None:
            config_data = load_config_json()

        # Фильтруем комментарии (ключи, начинающиеся с _comment_)
        filtered_data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        pricing_defaults = PricingSettings()
        payout_defaults = PayoutSettings()

        # Маппинг полей в секции
        return cls(
            system=SystemSettings(
                PROJECT_NAME=filtered_data.get("PROJECT_NAME", "returnly"),
                VERSION=filtered_data.get("VERSION", "1.0.0"),
                DEBUG=filtered_data.get("DEBUG", True),
                ENVIRONMENT=filtered_data.get("ENVIRONMENT", "development"),
                COMPONENT_MODE=os.getenv("COMPONENT_MODE", filtered_data.get("COMPONENT_MODE", "all")),
                STORAGE_BACKEND=os.getenv("STORAGE_BACKEND", filtered_data.get("STORAGE_BACKEND", "postgres")),
                API_HOST=filtered_data.get("API_HOST", "0.0.0.0"),
                API_PORT=int(os.getenv("API_PORT", filtered_data.get("API_PORT", 8000))),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=filtered_data.get("LOG_LEVEL", "DEBUG"),
                LOG_TO_FILE=filtered_data.get("LOG_TO_FILE", True),
                LOG_FILE_PATH=filtered_data.get("LOG_FILE_PATH", "logs/app.log"),
                LOG_FORMAT=filtered_data.get("LOG_FORMAT", "json"),
                LOG_MAX_BYTES=filtered_data.get("LOG_MAX_BYTES", 10485760),
                LOG_BACKUP_COUNT=filtered_data.get("LOG_BACKUP_COUNT", 5),
            ),
            google_maps=GoogleMapsSettings(
                GOOGLE_MAPS_API_KEY=os.getenv("GOOGLE_MAPS_API_KEY", filtered_data.get("GOOGLE_MAPS_API_KEY", "")),
                REQUEST_TIMEOUT=filtered_data.get("GOOGLE_MAPS_REQUEST_TIMEOUT", 10.0),
            ),
            database=DatabaseSettings(
                DB_HOST=os.getenv("DB_HOST", filtered_data.get("DB_HOST", "localhost")),
                DB_PORT=int(os.getenv("DB_PORT", filtered_data.get("DB_PORT", 5432))),
                DB_NAME=os.getenv("DB_NAME", filtered_data.get("DB_NAME", "returnly")),
                DB_USER=os.getenv("DB_USER", filtered_data.get("DB_USER", "postgres")),
                DB_PASSWORD=os.getenv("DB_PASSWORD", filtered_data.get("DB_PASSWORD", "")),
                DB_MIN_POOL_SIZE=filtered_data.get("DB_MIN_POOL_SIZE", 5),
                DB_MAX_POOL_SIZE=filtered_data.get("DB_MAX_POOL_SIZE", 20),
                DB_COMMAND_TIMEOUT=filtered_data.get("DB_COMMAND_TIMEOUT", 60),
                DB_RETRY_ATTEMPTS=filtered_data.get("DB_RETRY_ATTEMPTS", 3),
                DB_RETRY_DELAY=filtered_data.get("DB_RETRY_DELAY", 1.0),
            ),
            redis=RedisSettings(
                REDIS_HOST=os.getenv("REDIS_HOST", filtered_data.get("REDIS_HOST", "localhost")),
                REDIS_PORT=int(os.getenv("REDIS_PORT", filtered_data.get("REDIS_PORT", 6379))),
                REDIS_DB=filtered_data.get("REDIS_DB", 0),
                REDIS_PASSWORD=os.getenv("REDIS_PASSWORD", filtered_data.get("REDIS_PASSWORD", "")),
                REDIS_NAMESPACE=filtered_data.get("REDIS_NAMESPACE", "returnly"),
                REDIS_MAX_CONNECTIONS=filtered_data.get("REDIS_MAX_CONNECTIONS", 50),
            ),
            rabbitmq=RabbitMQSettings(
                RABBITMQ_HOST=os.getenv("RABBITMQ_HOST", filtered_data.get("RABBITMQ_HOST", "localhost")),
                RABBITMQ_PORT=int(os.getenv("RABBITMQ_PORT", filtered_data.get("RABBITMQ_PORT", 5672))),
                RABBITMQ_USER=os.getenv("RABBITMQ_USER", filtered_data.get("RABBITMQ_USER", "guest")),
                RABBITMQ_PASSWORD=os.getenv("RABBITMQ_PASSWORD", filtered_data.get("RABBITMQ_PASSWORD", "guest")),
                RABBITMQ_VHOST=filtered_data.get("RABBITMQ_VHOST", "/"),
                RABBITMQ_EXCHANGE=filtered_data.get("RABBITMQ_EXCHANGE", "returnly.events"),
                RABBITMQ_PREFETCH_COUNT=filtered_data.get("RABBITMQ_PREFETCH_COUNT", 10),
            ),
            pricing=PricingSettings(
                BASE_PRICE=filtered_data.get("BASE_PRICE", pricing_defaults.BASE_PRICE),
                DISTANCE_RATE_PER_MILE=filtered_data.get("DISTANCE_RATE_PER_MILE", pricing_defaults.DISTANCE_RATE_PER_MILE),
                SIZE_UPCHARGES=filtered_data.get("SIZE_UPCHARGES", pricing_defaults.SIZE_UPCHARGES),
                MULTI_BOX_FEE=filtered_data.get("MULTI_BOX_FEE", pricing_defaults.MULTI_BOX_FEE),
                SERVICE_FEE_RATE=filtered_data.get("SERVICE_FEE_RATE", pricing_defaults.SERVICE_FEE_RATE),
                RUSH_FEE=filtered_data.get("RUSH_FEE", pricing_defaults.RUSH_FEE),
                CURRENCY=filtered_data.get("CURRENCY", "USD"),
            ),
            payout=PayoutSettings(
                DRIVER_BASE_PAY=filtered_data.get("DRIVER_BASE_PAY", payout_defaults.DRIVER_BASE_PAY),
                DRIVER_PER_MILE=filtered_data.get("DRIVER_PER_MILE", payout_defaults.DRIVER_PER_MILE),
                DRIVER_SIZE_BONUS=filtered_data.get("DRIVER_SIZE_BONUS", payout_defaults.DRIVER_SIZE_BONUS),
                DRIVER_TIME_RATE_PER_HOUR=filtered_data.get("DRIVER_TIME_RATE_PER_HOUR", payout_defaults.DRIVER_TIME_RATE_PER_HOUR),
                AVERAGE_SPEED_MPH=filtered_data.get("AVERAGE_SPEED_MPH", payout_defaults.AVERAGE_SPEED_MPH),
                HANDLING_MINUTES=filtered_data.get("HANDLING_MINUTES", 10),
                TIME_TOLERANCE_MINUTES=filtered_data.get("TIME_TOLERANCE_MINUTES", 10),
            ),
            assignment=AssignmentSettings(
                SERVICE_RADIUS_MILES=filtered_data.get("SERVICE_RADIUS_MILES", 15.0),
                DRIVER_LOCATION_TTL=filtered_data.get("DRIVER_LOCATION_TTL", 300),
                MAX_CAS_RETRIES=filtered_data.get("MAX_CAS_RETRIES", 5),
                ASSIGNMENT_TIMEOUT_MINUTES=filtered_data.get("ASSIGNMENT_TIMEOUT_MINUTES", 30),
                ASSIGNMENT_SWEEP_INTERVAL=filtered_data.get("ASSIGNMENT_SWEEP_INTERVAL", 300),
            ),
            payments=PaymentsSettings(
                PAYMENT_PROCESSOR_URL=os.getenv(
                    "PAYMENT_PROCESSOR_URL",
                    filtered_data.get("PAYMENT_PROCESSOR_URL", "https://payments.example.com/v1"),
                ),
                PAYMENT_PROCESSOR_API_KEY=os.getenv("PAYMENT_PROCESSOR_API_KEY", filtered_data.get("PAYMENT_PROCESSOR_API_KEY", "")),
                PAYMENT_WEBHOOK_SECRET=os.getenv("PAYMENT_WEBHOOK_SECRET", filtered_data.get("PAYMENT_WEBHOOK_SECRET", "")),
                PROCESSOR_TIMEOUT_SECONDS=filtered_data.get("PROCESSOR_TIMEOUT_SECONDS", 10.0),
                PROCESSOR_MAX_ATTEMPTS=filtered_data.get("PROCESSOR_MAX_ATTEMPTS", 4),
                PROCESSOR_BACKOFF_BASE=filtered_data.get("PROCESSOR_BACKOFF_BASE", 0.5),
                PROCESSOR_BACKOFF_MAX=filtered_data.get("PROCESSOR_BACKOFF_MAX", 8.0),
                RECONCILIATION_INTERVAL=filtered_data.get("RECONCILIATION_INTERVAL", 60),
                RECONCILIATION_MIN_AGE=filtered_data.get("RECONCILIATION_MIN_AGE", 120),
            ),
            admin=AdminSettings(
                BULK_MAX_ORDERS=filtered_data.get("BULK_MAX_ORDERS", 500),
                BULK_MAX_CONCURRENCY=filtered_data.get("BULK_MAX_CONCURRENCY", 10),
                DEV_ADMIN_USERS=filtered_data.get("DEV_ADMIN_USERS", []),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    # Загружаем .env файл
    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
