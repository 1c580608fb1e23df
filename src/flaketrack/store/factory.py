"""Выбор бэкенда хранилища по настройкам."""

from __future__ import annotations

import logging

from flaketrack.config import Settings
from flaketrack.exceptions import ConfigurationError
from flaketrack.store.base import ResultStore

logger = logging.getLogger(__name__)

# Подключение через управляемый коннектор (IAM / proxy) живёт вне flaketrack.
_MANAGED_BACKENDS = frozenset({"cloudsql", "cloudsql-iam"})


def build_postgres_dsn(settings: Settings) -> str:
    """DSN для psycopg: ``db_dsn`` с подставленным ``host=``, если задан ``db_host``."""
    parts = []
    if settings.db_host:
        parts.append(f"host={settings.db_host}")
    if settings.db_dsn:
        parts.append(settings.db_dsn)
    return " ".join(parts)


def create_store(settings: Settings) -> ResultStore:
    """Создать хранилище по ``settings.db_backend``. Схема не инициализируется.

    Raises:
        ConfigurationError: Неизвестный бэкенд или не хватает параметров подключения.
    """
    backend = settings.db_backend.strip().lower()

    if backend == "sqlite":
        from flaketrack.store.sqlite_store import SQLiteStore

        if not settings.db_path:
            raise ConfigurationError("FLAKETRACK_DB_PATH is required for the sqlite backend")
        logger.info("Хранилище: SQLite %s", settings.db_path)
        return SQLiteStore(settings.db_path)

    if backend == "postgres":
        from flaketrack.store.postgres_store import PostgresStore

        dsn = build_postgres_dsn(settings)
        if not dsn:
            raise ConfigurationError(
                "FLAKETRACK_DB_DSN or FLAKETRACK_DB_HOST is required for the postgres backend"
            )
        logger.info("Хранилище: PostgreSQL (host=%s)", settings.db_host or "<dsn>")
        return PostgresStore(
            dsn,
            window=settings.flake_window_days,
            view_window_days=settings.view_window_days,
        )

    if backend in _MANAGED_BACKENDS:
        raise ConfigurationError(
            f"backend {backend!r} requires a managed connector; connect it outside flaketrack "
            "and use db_backend=postgres with a DSN"
        )

    raise ConfigurationError(f"unknown db_backend {settings.db_backend!r}: expected sqlite or postgres")
