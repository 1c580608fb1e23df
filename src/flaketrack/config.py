"""Конфигурация приложения, загружаемая из переменных окружения."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Конфигурация приложения flaketrack.

    Все значения задаются через переменные окружения с префиксом ``FLAKETRACK_``
    или через файл ``.env`` в рабочей директории.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLAKETRACK_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    db_backend: str = Field(default="sqlite", description="Бэкенд хранилища: sqlite или postgres")
    db_path: str = Field(default="out/flaketrack.db", description="Путь к файлу SQLite (для db_backend=sqlite)")
    db_host: str = Field(default="", description="Хост PostgreSQL (подставляется в DSN как host=...)")
    db_dsn: str = Field(
        default="",
        description="Строка подключения PostgreSQL в формате libpq, например 'user=ci dbname=flakes sslmode=disable'",
    )

    log_level: str = Field(default="INFO", description="Уровень логирования")

    request_timeout: int = Field(default=20, ge=1, description="Таймаут скачивания одного summary в секундах")
    crawl_concurrency: int = Field(default=6, ge=1, description="Макс. параллельных задач при загрузке истории джобов")
    max_error_samples: int = Field(default=10, ge=0, description="Сколько примеров ошибок возвращать в отчёте загрузки")

    job_index_url: str = Field(default="https://prow.k8s.io", description="URL индекса джобов (Prow)")
    job_index_bucket: str = Field(default="kubernetes-jenkins", description="GCS-бакет с логами джобов")
    storage_url: str = Field(
        default="https://storage.googleapis.com",
        description="Базовый URL хранилища артефактов",
    )
    dashboards_config: str = Field(default="", description="Путь к YAML/JSON файлу с конфигурацией дашбордов")

    flake_window_days: int = Field(default=15, ge=1, description="Размер окна (в днях с данными) для расчёта flake rate")
    view_window_days: int = Field(default=90, ge=1, description="Глубина материализованных представлений в днях")
    tests_in_top: int = Field(default=10, ge=1, description="Сколько самых нестабильных тестов показывать на графиках окружения")

    server_host: str = Field(default="0.0.0.0", description="Хост для HTTP-сервера")
    server_port: int = Field(default=8080, ge=1, le=65535, description="Порт для HTTP-сервера")

    build: str = Field(default="", description="Идентификатор сборки (commit sha / дата), попадает в summary")
