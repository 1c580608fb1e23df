"""Абстрактный интерфейс хранилища результатов прогонов."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from flaketrack.models.db import EnvironmentRun, TestCaseRow


class QueryStatus(str, Enum):
    """Исход чтения: есть данные, данных нет, бэкенд не поддерживает запрос."""

    DATA = "data"
    EMPTY = "empty"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class QueryResult:
    """Явный трёхзначный результат чтения из хранилища.

    ``data`` заполнен только при ``status == QueryStatus.DATA``.
    """

    status: QueryStatus
    data: dict[str, Any] | None = None

    @classmethod
    def of(cls, data: dict[str, Any]) -> QueryResult:
        return cls(QueryStatus.DATA, data)

    @classmethod
    def empty(cls) -> QueryResult:
        return cls(QueryStatus.EMPTY)

    @classmethod
    def unsupported(cls) -> QueryResult:
        return cls(QueryStatus.UNSUPPORTED)

    @property
    def ok(self) -> bool:
        return self.status is QueryStatus.DATA


@runtime_checkable
class ResultStore(Protocol):
    """Протокол хранилища прогонов и результатов тестов.

    Реализации:
    - SQLiteStore: встраиваемое хранилище, без аналитических чтений
    - PostgresStore: клиент-серверное хранилище, все чтения через
      материализованные представления

    Каждый вызов ``set`` — отдельная транзакция: один прогон и все его тесты
    либо записываются целиком, либо не записываются вовсе.
    """

    def initialize(self) -> None:
        """Создать схему и выполнить миграции. Идемпотентно.

        Raises:
            MigrationError: Если миграция не удалась; хранилищем пользоваться нельзя.
        """
        ...

    def set(self, env_run: EnvironmentRun, test_rows: list[TestCaseRow]) -> None:
        """Upsert прогона окружения и всех его тестов в одной транзакции.

        Raises:
            StoreError: Любая ошибка записи; транзакция откатывается целиком.
        """
        ...

    def get_environment_tests_and_test_cases(self, days: int = 1) -> QueryResult:
        """Последние строки обеих таблиц: ``{"environmentTests", "testCases"}``."""
        ...

    def get_test_charts(self, env: str, env_group: str, test_name: str) -> QueryResult:
        """Flake rate одного теста по дням/неделям/месяцам."""
        ...

    def get_env_charts(self, env: str, env_group: str, tests_in_top: int) -> QueryResult:
        """Графики окружения для ``tests_in_top`` самых нестабильных тестов."""
        ...

    def get_overview(self, date_range: int) -> QueryResult:
        """Сводная таблица по всем окружениям."""
        ...

    def refresh_views(self) -> QueryResult:
        """Обновить материализованные представления (для внешнего планировщика)."""
        ...
