"""SQLite-реализация хранилища прогонов (встраиваемая, один писатель).

Аналитические чтения (графики, обзор) не поддерживаются: для них нужен
PostgresStore с материализованными представлениями.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from flaketrack.exceptions import MigrationError, StoreError
from flaketrack.models.db import EnvironmentRun, TestCaseRow
from flaketrack.store.base import QueryResult
from flaketrack.store.migrations import (
    ENV_LAYOUT,
    ENV_TABLE,
    TEST_LAYOUT,
    TEST_TABLE,
    MigrationReport,
    SQLiteDialect,
    run_migrations,
)

logger = logging.getLogger(__name__)


def _to_iso(value: datetime) -> str:
    """Время в UTC ISO-8601: строки сравниваются лексикографически."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _insert_sql(table: str, columns: list[str]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    return f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


class SQLiteStore:
    """Реализация ResultStore для SQLite.

    Каждый метод открывает собственное соединение (short-lived connections),
    транзакции явные: ``BEGIN IMMEDIATE`` … ``COMMIT``/``ROLLBACK``.
    """

    def __init__(self, path: str | Path, *, timeout: float = 30.0) -> None:
        self._path = Path(path)
        self._timeout = timeout
        self._dialect = SQLiteDialect()

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        conn = sqlite3.connect(self._path, timeout=self._timeout, isolation_level=None)
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # ResultStore Protocol
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Создать файл БД и выполнить миграции схемы."""
        self.migrate()

    def migrate(self) -> MigrationReport:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._transaction() as cur:
                return run_migrations(cur, self._dialect)
        except MigrationError:
            raise
        except (OSError, sqlite3.Error) as exc:
            raise MigrationError(f"Не удалось открыть SQLite {self._path}: {exc}") from exc

    def set(self, env_run: EnvironmentRun, test_rows: list[TestCaseRow]) -> None:
        """INSERT OR REPLACE прогона и всех его тестов одной транзакцией."""
        test_sql = _insert_sql(TEST_TABLE, TEST_LAYOUT.column_names)
        env_sql = _insert_sql(ENV_TABLE, ENV_LAYOUT.column_names)
        try:
            with self._transaction() as cur:
                cur.executemany(
                    test_sql,
                    [
                        (
                            r.pr,
                            r.commit_id,
                            r.env_name,
                            r.env_group,
                            r.test_name,
                            r.result,
                            _to_iso(r.test_time),
                            r.duration,
                            r.test_order,
                        )
                        for r in test_rows
                    ],
                )
                cur.execute(
                    env_sql,
                    (
                        env_run.commit_id,
                        env_run.env_name,
                        env_run.env_group,
                        _to_iso(env_run.ingested_at),
                        _to_iso(env_run.test_time),
                        env_run.number_of_fail,
                        env_run.number_of_pass,
                        env_run.number_of_skip,
                        env_run.total_duration,
                        env_run.tool_version,
                        env_run.artifact_path,
                    ),
                )
        except sqlite3.Error as exc:
            raise StoreError(
                f"Ошибка записи прогона {env_run.env_name}/{env_run.commit_id} в SQLite: {exc}"
            ) from exc

        logger.debug(
            "Stored run %s/%s [%s]: %d test rows",
            env_run.env_name,
            env_run.commit_id,
            env_run.env_group,
            len(test_rows),
        )

    def get_environment_tests_and_test_cases(self, days: int = 1) -> QueryResult:
        """Строки за последние ``days`` дней относительно самого свежего прогона."""
        try:
            with self._transaction() as cur:
                cur.execute(f"SELECT MAX(test_time) FROM {ENV_TABLE}")
                latest = cur.fetchone()[0]
                if latest is None:
                    return QueryResult.empty()
                cutoff = _to_iso(datetime.fromisoformat(latest) - timedelta(days=days))

                cur.execute(
                    f"SELECT {', '.join(ENV_LAYOUT.column_names)} FROM {ENV_TABLE} "
                    "WHERE test_time >= ? ORDER BY test_time DESC, env_name",
                    (cutoff,),
                )
                env_rows = [
                    EnvironmentRun(**dict(zip(ENV_LAYOUT.column_names, row)))
                    for row in cur.fetchall()
                ]
                cur.execute(
                    f"SELECT {', '.join(TEST_LAYOUT.column_names)} FROM {TEST_TABLE} "
                    "WHERE test_time >= ? ORDER BY test_time DESC, env_name, test_name",
                    (cutoff,),
                )
                test_rows = [
                    TestCaseRow(**dict(zip(TEST_LAYOUT.column_names, _none_order(row))))
                    for row in cur.fetchall()
                ]
        except sqlite3.Error as exc:
            raise StoreError(f"Ошибка чтения из SQLite: {exc}") from exc

        return QueryResult.of(
            {
                "environmentTests": [r.model_dump(mode="json") for r in env_rows],
                "testCases": [r.model_dump(mode="json") for r in test_rows],
            }
        )

    def get_test_charts(self, env: str, env_group: str, test_name: str) -> QueryResult:
        return QueryResult.unsupported()

    def get_env_charts(self, env: str, env_group: str, tests_in_top: int) -> QueryResult:
        return QueryResult.unsupported()

    def get_overview(self, date_range: int) -> QueryResult:
        return QueryResult.unsupported()

    def refresh_views(self) -> QueryResult:
        return QueryResult.unsupported()


def _none_order(row: tuple) -> tuple:
    # test_order у строк, добавленных до появления колонки, равен NULL.
    *head, order = row
    return (*head, order or 0)
