"""PostgreSQL-реализация хранилища прогонов с аналитическими чтениями.

Графики строятся поверх материализованных представлений: одно на пару
(окружение, группа) с результатами тестов за ``view_window_days`` дней
и одно общее по прогонам окружений. Представления создаются при первом
обращении (``CREATE MATERIALIZED VIEW IF NOT EXISTS``) и здесь не обновляются:
для этого есть :meth:`PostgresStore.refresh_views`, который вызывает внешний
планировщик.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import psycopg
from psycopg import sql

from flaketrack.analytics.flake_engine import (
    DEFAULT_WINDOW,
    ENV_OVERVIEW_VIEW,
    FLAKE_VIEW_PREFIX,
    build_env_charts,
    build_overview,
    build_test_charts,
    commits_from_json,
    flake_view_name,
    resolve_env_group,
)
from flaketrack.exceptions import FlakeTrackError, MigrationError, StoreError
from flaketrack.models.analytics import DailyEnvCounts, DailyTestCounts
from flaketrack.models.db import EnvironmentRun, TestCaseRow
from flaketrack.store.base import QueryResult
from flaketrack.store.migrations import (
    ENV_LAYOUT,
    ENV_TABLE,
    TEST_LAYOUT,
    TEST_TABLE,
    MigrationReport,
    PostgresDialect,
    run_migrations,
)

logger = logging.getLogger(__name__)

_UPSERT_TEST_SQL = f"""
    INSERT INTO {TEST_TABLE}
        (pr, commit_id, env_name, env_group, test_name, result, test_time, duration, test_order)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (commit_id, env_name, env_group, test_name)
    DO UPDATE SET
        pr = EXCLUDED.pr,
        result = EXCLUDED.result,
        test_time = EXCLUDED.test_time,
        duration = EXCLUDED.duration,
        test_order = EXCLUDED.test_order
"""

_UPSERT_ENV_SQL = f"""
    INSERT INTO {ENV_TABLE}
        (commit_id, env_name, env_group, ingested_at, test_time, number_of_fail,
         number_of_pass, number_of_skip, total_duration, tool_version, artifact_path)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (commit_id, env_name, env_group)
    DO UPDATE SET
        ingested_at = EXCLUDED.ingested_at,
        test_time = EXCLUDED.test_time,
        number_of_fail = EXCLUDED.number_of_fail,
        number_of_pass = EXCLUDED.number_of_pass,
        number_of_skip = EXCLUDED.number_of_skip,
        total_duration = EXCLUDED.total_duration,
        tool_version = EXCLUDED.tool_version,
        artifact_path = EXCLUDED.artifact_path
"""

_DAILY_TESTS_SQL = """
    SELECT test_name,
           day,
           SUM(CASE WHEN result = 'fail' THEN 1 ELSE 0 END) AS fail_count,
           COUNT(*) AS total_count,
           COALESCE(SUM(duration), 0) AS duration_sum,
           json_agg(json_build_object(
               'commit_id', commit_id,
               'result', result,
               'duration', COALESCE(duration, 0),
               'artifact_path', artifact_path
           ) ORDER BY test_time) AS commits
    FROM {view}
    {where}
    GROUP BY test_name, day
    ORDER BY test_name, day
"""

_DAILY_ENV_SQL = """
    SELECT env_name,
           env_group,
           day,
           COUNT(*) AS run_count,
           SUM(number_of_fail + number_of_pass + number_of_skip) AS test_count_sum,
           SUM(number_of_fail) AS fail_count_sum,
           COALESCE(SUM(total_duration), 0) AS duration_sum,
           json_agg(json_build_object(
               'commit_id', commit_id,
               'result', CASE WHEN number_of_fail > 0 THEN 'fail' ELSE 'pass' END,
               'duration', COALESCE(total_duration, 0),
               'artifact_path', artifact_path
           ) ORDER BY test_time) AS commits
    FROM {view}
    {where}
    GROUP BY env_name, env_group, day
    ORDER BY env_name, env_group, day
"""


class PostgresStore:
    """Реализация ResultStore для PostgreSQL.

    Использует синхронный psycopg3; каждый метод открывает и закрывает
    соединение (short-lived connections). Контекст соединения psycopg
    фиксирует транзакцию при выходе и откатывает её при исключении.
    """

    def __init__(
        self,
        dsn: str,
        *,
        window: int = DEFAULT_WINDOW,
        view_window_days: int = 90,
    ) -> None:
        """
        Args:
            dsn: Строка подключения PostgreSQL в формате libpq / URI.
            window: Размер окна flake rate по умолчанию (в днях с данными).
            view_window_days: Глубина материализованных представлений в днях.
        """
        self._dsn = dsn
        self._window = window
        self._view_window_days = view_window_days
        self._dialect = PostgresDialect()

    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                yield cur

    # ------------------------------------------------------------------
    # ResultStore Protocol
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        self.migrate()

    def migrate(self) -> MigrationReport:
        try:
            with self._cursor() as cur:
                return run_migrations(cur, self._dialect)
        except MigrationError:
            raise
        except psycopg.Error as exc:
            raise MigrationError(f"Не удалось подключиться к PostgreSQL: {exc}") from exc

    def set(self, env_run: EnvironmentRun, test_rows: list[TestCaseRow]) -> None:
        try:
            with self._cursor() as cur:
                cur.executemany(
                    _UPSERT_TEST_SQL,
                    [
                        (
                            r.pr,
                            r.commit_id,
                            r.env_name,
                            r.env_group,
                            r.test_name,
                            r.result,
                            r.test_time,
                            r.duration,
                            r.test_order,
                        )
                        for r in test_rows
                    ],
                )
                cur.execute(
                    _UPSERT_ENV_SQL,
                    (
                        env_run.commit_id,
                        env_run.env_name,
                        env_run.env_group,
                        env_run.ingested_at,
                        env_run.test_time,
                        env_run.number_of_fail,
                        env_run.number_of_pass,
                        env_run.number_of_skip,
                        env_run.total_duration,
                        env_run.tool_version,
                        env_run.artifact_path,
                    ),
                )
        except psycopg.Error as exc:
            raise StoreError(
                f"Ошибка записи прогона {env_run.env_name}/{env_run.commit_id} в PostgreSQL: {exc}"
            ) from exc

        logger.debug(
            "Stored run %s/%s [%s]: %d test rows",
            env_run.env_name,
            env_run.commit_id,
            env_run.env_group,
            len(test_rows),
        )

    def get_environment_tests_and_test_cases(self, days: int = 1) -> QueryResult:
        env_cols = ", ".join(ENV_LAYOUT.column_names)
        test_cols = ", ".join(TEST_LAYOUT.column_names)
        cutoff = f"(SELECT MAX(test_time) FROM {ENV_TABLE}) - make_interval(days => %s)"
        try:
            with self._cursor() as cur:
                cur.execute(
                    f"SELECT {env_cols} FROM {ENV_TABLE} WHERE test_time >= {cutoff} "
                    "ORDER BY test_time DESC, env_name",
                    (days,),
                )
                env_rows = [
                    EnvironmentRun(**dict(zip(ENV_LAYOUT.column_names, row)))
                    for row in cur.fetchall()
                ]
                if not env_rows:
                    return QueryResult.empty()
                cur.execute(
                    f"SELECT {test_cols} FROM {TEST_TABLE} WHERE test_time >= {cutoff} "
                    "ORDER BY test_time DESC, env_name, test_name",
                    (days,),
                )
                test_rows = []
                for row in cur.fetchall():
                    values = dict(zip(TEST_LAYOUT.column_names, row))
                    values["test_order"] = values["test_order"] or 0
                    test_rows.append(TestCaseRow(**values))
        except psycopg.Error as exc:
            raise StoreError(f"Ошибка чтения из PostgreSQL: {exc}") from exc

        return QueryResult.of(
            {
                "environmentTests": [r.model_dump(mode="json") for r in env_rows],
                "testCases": [r.model_dump(mode="json") for r in test_rows],
            }
        )

    def get_test_charts(self, env: str, env_group: str, test_name: str) -> QueryResult:
        daily = self._run_analytics(
            env, env_group, lambda cur, view, group: self._daily_tests(cur, view, test_name)
        )
        if not daily:
            return QueryResult.empty()
        return QueryResult.of(build_test_charts(daily))

    def get_env_charts(self, env: str, env_group: str, tests_in_top: int) -> QueryResult:
        def load(cur: psycopg.Cursor, view: sql.Identifier, group: str) -> tuple[list, list]:
            return self._daily_tests(cur, view), self._daily_env(cur, env, group)

        loaded = self._run_analytics(env, env_group, load)
        if loaded is None or not any(loaded):
            return QueryResult.empty()
        daily_tests, daily_env = loaded
        return QueryResult.of(
            build_env_charts(daily_tests, daily_env, tests_in_top=tests_in_top, window=self._window)
        )

    def get_overview(self, date_range: int) -> QueryResult:
        try:
            with self._cursor() as cur:
                self._ensure_env_view(cur)
                daily_env = self._daily_env(cur)
        except psycopg.Error as exc:
            raise StoreError(f"Ошибка расчёта обзора окружений: {exc}") from exc
        if not daily_env:
            return QueryResult.empty()
        return QueryResult.of(build_overview(daily_env, date_range))

    def refresh_views(self) -> QueryResult:
        """REFRESH всех материализованных представлений flaketrack."""
        refreshed: list[str] = []
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    SELECT matviewname FROM pg_matviews
                    WHERE schemaname = current_schema()
                      AND (matviewname LIKE %s OR matviewname = %s)
                    ORDER BY matviewname
                    """,
                    (f"{FLAKE_VIEW_PREFIX}%", ENV_OVERVIEW_VIEW),
                )
                for (name,) in cur.fetchall():
                    cur.execute(sql.SQL("REFRESH MATERIALIZED VIEW {}").format(sql.Identifier(name)))
                    refreshed.append(name)
        except psycopg.Error as exc:
            raise StoreError(f"Ошибка обновления представлений: {exc}") from exc

        logger.info("Refreshed %d materialized views", len(refreshed))
        if not refreshed:
            return QueryResult.empty()
        return QueryResult.of({"refreshed": refreshed})

    # ------------------------------------------------------------------
    # Внутренние методы
    # ------------------------------------------------------------------

    def _run_analytics(self, env: str, env_group: str, load: Any) -> Any:
        """Разрешить группу, создать представление и выполнить ``load(cur, view, group)``.

        Для окружения без прогонов возвращает ``None`` и представление не создаёт.
        """
        try:
            with self._cursor() as cur:
                cur.execute(
                    f"SELECT DISTINCT env_group FROM {ENV_TABLE} WHERE env_name = %s",
                    (env,),
                )
                available = [row[0] for row in cur.fetchall()]
                if not available and not env_group.strip():
                    return None
                group = resolve_env_group(env, env_group, available)
                view = self._ensure_flake_view(cur, env, group)
                self._ensure_env_view(cur)
                return load(cur, view, group)
        except FlakeTrackError:
            raise
        except psycopg.Error as exc:
            raise StoreError(f"Ошибка расчёта flake rate для {env!r}: {exc}") from exc

    def _ensure_flake_view(self, cur: psycopg.Cursor, env: str, env_group: str) -> sql.Identifier:
        view = sql.Identifier(flake_view_name(env, env_group))
        cur.execute(
            sql.SQL(
                """
                CREATE MATERIALIZED VIEW IF NOT EXISTS {view} AS
                SELECT tc.test_name,
                       tc.result,
                       tc.duration,
                       tc.commit_id,
                       tc.test_time,
                       DATE_TRUNC('day', tc.test_time)::date AS day,
                       COALESCE(et.artifact_path, '') AS artifact_path
                FROM {tests} tc
                LEFT JOIN {envs} et
                  ON et.commit_id = tc.commit_id
                 AND et.env_name = tc.env_name
                 AND et.env_group = tc.env_group
                WHERE tc.env_name = {env}
                  AND tc.env_group = {group}
                  AND tc.result <> 'skip'
                  AND tc.test_time > NOW() - make_interval(days => {days})
                """
            ).format(
                view=view,
                tests=sql.Identifier(TEST_TABLE),
                envs=sql.Identifier(ENV_TABLE),
                env=sql.Literal(env),
                group=sql.Literal(env_group),
                days=sql.Literal(self._view_window_days),
            )
        )
        return view

    def _ensure_env_view(self, cur: psycopg.Cursor) -> None:
        cur.execute(
            sql.SQL(
                """
                CREATE MATERIALIZED VIEW IF NOT EXISTS {view} AS
                SELECT env_name,
                       env_group,
                       commit_id,
                       test_time,
                       DATE_TRUNC('day', test_time)::date AS day,
                       number_of_fail,
                       number_of_pass,
                       number_of_skip,
                       total_duration,
                       artifact_path
                FROM {envs}
                WHERE test_time > NOW() - make_interval(days => {days})
                """
            ).format(
                view=sql.Identifier(ENV_OVERVIEW_VIEW),
                envs=sql.Identifier(ENV_TABLE),
                days=sql.Literal(self._view_window_days),
            )
        )

    @staticmethod
    def _daily_tests(
        cur: psycopg.Cursor, view: sql.Identifier, test_name: str | None = None
    ) -> list[DailyTestCounts]:
        where = sql.SQL("WHERE test_name = %s") if test_name is not None else sql.SQL("")
        params = (test_name,) if test_name is not None else None
        cur.execute(sql.SQL(_DAILY_TESTS_SQL).format(view=view, where=where), params)
        return [
            DailyTestCounts(
                test_name=row[0],
                day=row[1],
                fail_count=int(row[2]),
                total_count=int(row[3]),
                duration_sum=float(row[4]),
                commits=commits_from_json(row[5]),
            )
            for row in cur.fetchall()
        ]

    @staticmethod
    def _daily_env(
        cur: psycopg.Cursor, env: str | None = None, env_group: str | None = None
    ) -> list[DailyEnvCounts]:
        if env is not None:
            where = sql.SQL("WHERE env_name = %s AND env_group = %s")
            params: tuple | None = (env, env_group)
        else:
            where = sql.SQL("")
            params = None
        cur.execute(
            sql.SQL(_DAILY_ENV_SQL).format(view=sql.Identifier(ENV_OVERVIEW_VIEW), where=where),
            params,
        )
        return [
            DailyEnvCounts(
                env_name=row[0],
                env_group=row[1],
                day=row[2],
                run_count=int(row[3]),
                test_count_sum=int(row[4] or 0),
                fail_count_sum=int(row[5] or 0),
                duration_sum=float(row[6]),
                commits=commits_from_json(row[7]),
            )
            for row in cur.fetchall()
        ]
