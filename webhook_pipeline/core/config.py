"""Конфигурация сервиса.

Все настройки приходят из переменных окружения (опционально через `.env`).
Секреты в репозиторий не попадают: локально `.env`, в проде секрет-менеджер.

Группы настроек
---------------
- приложение и логи (`APP_*`, `LOG_*`);
- пайплайн: ретраи, lease, окно метрик, модуль обработчиков (`WEBHOOK_*`);
- фоновый worker ретраев (`RETRY_*`);
- хранилища: Postgres, Redis (кеш статусов), RabbitMQ (dead-letter алерты).
"""

from __future__ import annotations

from functools import lru_cache
from urllib.parse import quote

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

# Драйверы для AsyncEngine: sync URL из env -> async URL.
_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgresql+psycopg2://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
    "sqlite+pysqlite://": "sqlite+aiosqlite://",
}


def _require_secret(value: SecretStr | None, env_name: str, purpose: str) -> str:
    if value is None:
        raise ValueError(f"{env_name} is required {purpose}")
    return value.get_secret_value()


class Settings(BaseSettings):
    """Настройки сервиса из переменных окружения."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = Field("webhook-pipeline")
    app_env: str = Field("local")
    log_level: str = Field("INFO")
    log_json: bool = Field(False)

    api_host: str = Field("0.0.0.0")
    api_port: int = Field(8000)

    run_migrations_on_startup: bool = Field(False)
    migrations_wait_tries: int = Field(60, ge=1)
    migrations_wait_sleep_seconds: float = Field(1.0, gt=0)

    # Токен для операционных эндпоинтов (`X-Ops-Token`).
    ops_api_token: SecretStr = Field(..., min_length=16)

    rate_limit_enabled: bool = Field(True)
    rate_limit_capacity: int = Field(100, ge=1)
    rate_limit_refill_rate: float = Field(50.0, gt=0)

    webhook_max_attempts: int = Field(3, ge=1)
    webhook_retry_base_seconds: float = Field(1.0, gt=0)
    webhook_retry_max_delay_seconds: float | None = Field(None, gt=0)
    processing_lease_seconds: int = Field(300, ge=1)
    metrics_window_hours: int = Field(24, ge=1)
    # `package.module:register_handlers`
    webhook_handlers: str | None = Field(None)

    retry_worker_enabled: bool = Field(False)
    retry_worker_poll_seconds: float = Field(30.0, gt=0)
    retry_worker_batch_size: int = Field(10, ge=1)
    retry_reconcile_interval_seconds: float = Field(300.0, gt=0)

    # Postgres (если не задан DATABASE_URL)
    postgres_host: str = "db"
    postgres_port: int = Field(5432, ge=1, le=65535)
    postgres_db: str = "webhook_pipeline"
    postgres_user: str = "postgres"
    postgres_password: SecretStr | None = None
    database_url: str | None = None
    database_async_url: str | None = None

    # Redis: кеш статусов событий, best-effort
    redis_host: str = "redis"
    redis_port: int = Field(6379, ge=1, le=65535)
    redis_db: int = Field(0, ge=0)
    webhook_status_cache_enabled: bool = Field(False)
    webhook_status_cache_ttl_seconds: int = Field(86400, ge=1)

    # RabbitMQ: алерты по dead-letter событиям
    rabbitmq_host: str = "rabbitmq"
    rabbitmq_port: int = Field(5672, ge=1, le=65535)
    rabbitmq_user: str = "guest"
    rabbitmq_password: SecretStr | None = None
    rabbitmq_vhost: str = Field("/")
    dead_letter_alerts_enabled: bool = Field(False)
    dead_letter_alerts_queue: str = Field("webhook_dead_letters")

    @field_validator("ops_api_token")
    @classmethod
    def _validate_ops_token(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value().strip()) < 16:
            raise ValueError("OPS_API_TOKEN must be at least 16 characters long")
        return value

    @field_validator("postgres_password", "rabbitmq_password")
    @classmethod
    def _validate_non_empty_secret(cls, value: SecretStr | None) -> SecretStr | None:
        if value is not None and not value.get_secret_value().strip():
            raise ValueError("secret value must not be empty")
        return value

    @property
    def postgres_dsn(self) -> str:
        """DSN Postgres из компонентных настроек (пароль экранируется)."""

        password = _require_secret(
            self.postgres_password,
            "POSTGRES_PASSWORD",
            "when DATABASE_URL is not set",
        )
        url = URL.create(
            "postgresql",
            username=self.postgres_user,
            password=password,
            host=self.postgres_host,
            port=self.postgres_port,
            database=self.postgres_db,
        )
        return url.render_as_string(hide_password=False)

    @property
    def redis_dsn(self) -> str:
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def rabbitmq_dsn(self) -> str:
        """Собрать AMQP DSN.

        Raises
        ------
        ValueError
            Если пароль RabbitMQ не задан.
        """

        password = _require_secret(
            self.rabbitmq_password,
            "RABBITMQ_PASSWORD",
            "when dead-letter alerts are enabled",
        )
        vhost = quote(self.rabbitmq_vhost.lstrip("/"), safe="")
        return (
            f"amqp://{quote(self.rabbitmq_user, safe='')}:{quote(password, safe='')}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/{vhost}"
        )

    @property
    def sqlalchemy_url(self) -> str:
        """Sync URL БД: `DATABASE_URL` или собранный DSN Postgres.

        Используется Alembic'ом и ожиданием БД перед миграциями.
        """

        return self.database_url or self.postgres_dsn

    @property
    def sqlalchemy_async_url(self) -> str:
        """Async URL БД для AsyncEngine.

        `DATABASE_ASYNC_URL` берётся как есть; иначе драйвер в sync URL
        подменяется на async (`asyncpg` / `aiosqlite`).
        """

        if self.database_async_url:
            return self.database_async_url
        url = self.sqlalchemy_url
        for sync_prefix, async_prefix in _ASYNC_DRIVERS.items():
            if url.startswith(sync_prefix):
                return async_prefix + url[len(sync_prefix):]
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Вернуть кэшированный экземпляр настроек."""

    return Settings()
