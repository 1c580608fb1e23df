"""Эволюция схемы: переход ключа ``(commit, env)`` → ``(commit, env, env_group)``.

Миграция выполняется поэтапно внутри одной транзакции, открытой хранилищем:

1. создать таблицы в текущей раскладке, если их нет;
2. добавить недостающие колонки (``env_group``, ``artifact_path``, ``test_order``);
3. заполнить значения по умолчанию там, где они NULL/пустые;
4. вывести группу для ``Legacy``-строк ``test_cases``, если у пары
   (commit, env) в ``environment_tests`` ровно одна не-Legacy группа;
5. удалить ``Legacy``-дубликаты, у которых есть разрешённый двойник;
6. расширить первичный ключ (Postgres: drop/add constraint,
   SQLite: create-new / copy / drop / rename).

Каждый этап идемпотентен, повторный запуск на мигрированной базе ничего не меняет.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from psycopg import sql

from flaketrack.exceptions import MigrationError
from flaketrack.models.common import DEFAULT_ENV_GROUP

logger = logging.getLogger(__name__)

ENV_TABLE = "environment_tests"
TEST_TABLE = "test_cases"


@dataclass(frozen=True)
class Column:
    name: str
    sqlite_type: str
    postgres_type: str


@dataclass(frozen=True)
class TableLayout:
    """Текущая раскладка таблицы: колонки в порядке создания и первичный ключ."""

    name: str
    columns: tuple[Column, ...]
    primary_key: tuple[str, ...]

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> Column:
        for col in self.columns:
            if col.name == name:
                return col
        raise KeyError(name)


_GROUP_DDL = f"TEXT NOT NULL DEFAULT '{DEFAULT_ENV_GROUP}'"

ENV_LAYOUT = TableLayout(
    name=ENV_TABLE,
    columns=(
        Column("commit_id", "TEXT", "TEXT"),
        Column("env_name", "TEXT", "TEXT"),
        Column("env_group", _GROUP_DDL, _GROUP_DDL),
        Column("ingested_at", "TEXT", "TIMESTAMPTZ"),
        Column("test_time", "TEXT", "TIMESTAMPTZ"),
        Column("number_of_fail", "INTEGER", "INTEGER"),
        Column("number_of_pass", "INTEGER", "INTEGER"),
        Column("number_of_skip", "INTEGER", "INTEGER"),
        Column("total_duration", "REAL", "DOUBLE PRECISION"),
        Column("tool_version", "TEXT", "TEXT"),
        Column("artifact_path", "TEXT NOT NULL DEFAULT ''", "TEXT NOT NULL DEFAULT ''"),
    ),
    primary_key=("commit_id", "env_name", "env_group"),
)

TEST_LAYOUT = TableLayout(
    name=TEST_TABLE,
    columns=(
        Column("pr", "TEXT", "TEXT"),
        Column("commit_id", "TEXT", "TEXT"),
        Column("env_name", "TEXT", "TEXT"),
        Column("env_group", _GROUP_DDL, _GROUP_DDL),
        Column("test_name", "TEXT", "TEXT"),
        Column("result", "TEXT", "TEXT"),
        Column("test_time", "TEXT", "TIMESTAMPTZ"),
        Column("duration", "REAL", "DOUBLE PRECISION"),
        Column("test_order", "INTEGER", "INTEGER"),
    ),
    primary_key=("commit_id", "env_name", "env_group", "test_name"),
)

LAYOUTS = (ENV_LAYOUT, TEST_LAYOUT)

# Колонки, которых нет в исходной (v0) раскладке.
ADDED_COLUMNS: tuple[tuple[TableLayout, str], ...] = (
    (ENV_LAYOUT, "env_group"),
    (ENV_LAYOUT, "artifact_path"),
    (TEST_LAYOUT, "env_group"),
    (TEST_LAYOUT, "test_order"),
)

_BACKFILL_SQL = (
    f"UPDATE {ENV_TABLE} SET env_group = '{DEFAULT_ENV_GROUP}' WHERE env_group IS NULL OR env_group = ''",
    f"UPDATE {TEST_TABLE} SET env_group = '{DEFAULT_ENV_GROUP}' WHERE env_group IS NULL OR env_group = ''",
    f"UPDATE {ENV_TABLE} SET artifact_path = '' WHERE artifact_path IS NULL",
)

# Legacy-строка теста наследует группу, если у (commit, env) ровно одна
# не-Legacy группа и строки с выведенным ключом ещё нет.
_INFER_GROUP_SQL = f"""
    UPDATE {TEST_TABLE}
    SET env_group = (
        SELECT MIN(e.env_group) FROM {ENV_TABLE} e
        WHERE e.commit_id = {TEST_TABLE}.commit_id
          AND e.env_name = {TEST_TABLE}.env_name
          AND e.env_group <> '{DEFAULT_ENV_GROUP}'
    )
    WHERE {TEST_TABLE}.env_group = '{DEFAULT_ENV_GROUP}'
      AND (
        SELECT COUNT(DISTINCT e.env_group) FROM {ENV_TABLE} e
        WHERE e.commit_id = {TEST_TABLE}.commit_id
          AND e.env_name = {TEST_TABLE}.env_name
          AND e.env_group <> '{DEFAULT_ENV_GROUP}'
      ) = 1
      AND NOT EXISTS (
        SELECT 1 FROM {TEST_TABLE} t2, {ENV_TABLE} e
        WHERE e.commit_id = {TEST_TABLE}.commit_id
          AND e.env_name = {TEST_TABLE}.env_name
          AND e.env_group <> '{DEFAULT_ENV_GROUP}'
          AND t2.commit_id = {TEST_TABLE}.commit_id
          AND t2.env_name = {TEST_TABLE}.env_name
          AND t2.test_name = {TEST_TABLE}.test_name
          AND t2.env_group = e.env_group
      )
"""

_DEDUP_SQL = (
    f"""
    DELETE FROM {ENV_TABLE}
    WHERE env_group = '{DEFAULT_ENV_GROUP}'
      AND (
        SELECT COUNT(DISTINCT e2.env_group) FROM {ENV_TABLE} e2
        WHERE e2.commit_id = {ENV_TABLE}.commit_id
          AND e2.env_name = {ENV_TABLE}.env_name
          AND e2.env_group <> '{DEFAULT_ENV_GROUP}'
      ) = 1
    """,
    f"""
    DELETE FROM {TEST_TABLE}
    WHERE env_group = '{DEFAULT_ENV_GROUP}'
      AND (
        SELECT COUNT(DISTINCT t2.env_group) FROM {TEST_TABLE} t2
        WHERE t2.commit_id = {TEST_TABLE}.commit_id
          AND t2.env_name = {TEST_TABLE}.env_name
          AND t2.test_name = {TEST_TABLE}.test_name
          AND t2.env_group <> '{DEFAULT_ENV_GROUP}'
      ) = 1
    """,
)


@dataclass
class MigrationReport:
    """Что изменил каждый этап миграции."""

    created_tables: list[str] = field(default_factory=list)
    added_columns: list[str] = field(default_factory=list)
    backfilled_rows: int = 0
    inferred_rows: int = 0
    deduplicated_rows: int = 0
    widened_keys: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.created_tables
            or self.added_columns
            or self.backfilled_rows
            or self.inferred_rows
            or self.deduplicated_rows
            or self.widened_keys
        )


# ------------------------------------------------------------------
# Диалекты
# ------------------------------------------------------------------


class SQLiteDialect:
    """Операции со схемой для sqlite3 (курсор внутри открытой транзакции)."""

    name = "sqlite"

    def create_table_sql(self, layout: TableLayout, table_name: str | None = None) -> str:
        cols = ",\n    ".join(f"{c.name} {c.sqlite_type}" for c in layout.columns)
        pk = ", ".join(layout.primary_key)
        return (
            f"CREATE TABLE IF NOT EXISTS {table_name or layout.name} (\n"
            f"    {cols},\n    PRIMARY KEY ({pk})\n)"
        )

    def table_exists(self, cur: Any, table: str) -> bool:
        cur.execute("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,))
        return cur.fetchone() is not None

    def columns(self, cur: Any, table: str) -> set[str]:
        cur.execute(f"PRAGMA table_info({table})")
        return {row[1] for row in cur.fetchall()}

    def add_column(self, cur: Any, layout: TableLayout, column: str) -> None:
        ddl = layout.column(column).sqlite_type
        try:
            cur.execute(f"ALTER TABLE {layout.name} ADD COLUMN {column} {ddl}")
        except sqlite3.OperationalError as exc:
            if "duplicate column name" in str(exc):
                return
            raise

    def primary_key(self, cur: Any, table: str) -> tuple[str, ...]:
        cur.execute(f"PRAGMA table_info({table})")
        keyed = sorted((row[5], row[1]) for row in cur.fetchall() if row[5] > 0)
        return tuple(name for _, name in keyed)

    def widen_primary_key(self, cur: Any, layout: TableLayout) -> None:
        # SQLite не умеет менять PK на месте: пересоздаём таблицу.
        tmp = f"{layout.name}__migrating"
        cols = ", ".join(layout.column_names)
        cur.execute(f"DROP TABLE IF EXISTS {tmp}")
        cur.execute(self.create_table_sql(layout, tmp))
        cur.execute(f"INSERT INTO {tmp} ({cols}) SELECT {cols} FROM {layout.name}")
        cur.execute(f"DROP TABLE {layout.name}")
        cur.execute(f"ALTER TABLE {tmp} RENAME TO {layout.name}")


class PostgresDialect:
    """Операции со схемой для psycopg 3 (курсор внутри открытой транзакции)."""

    name = "postgres"

    _PK_QUERY = """
        SELECT con.conname, array_agg(att.attname ORDER BY k.ord)
        FROM pg_constraint con
        JOIN pg_class rel ON rel.oid = con.conrelid
        JOIN pg_namespace nsp ON nsp.oid = rel.relnamespace
        CROSS JOIN LATERAL unnest(con.conkey) WITH ORDINALITY AS k(attnum, ord)
        JOIN pg_attribute att ON att.attrelid = rel.oid AND att.attnum = k.attnum
        WHERE con.contype = 'p'
          AND rel.relname = %s
          AND nsp.nspname = current_schema()
        GROUP BY con.conname
    """

    def create_table_sql(self, layout: TableLayout) -> str:
        cols = ",\n    ".join(f"{c.name} {c.postgres_type}" for c in layout.columns)
        pk = ", ".join(layout.primary_key)
        return f"CREATE TABLE IF NOT EXISTS {layout.name} (\n    {cols},\n    PRIMARY KEY ({pk})\n)"

    def table_exists(self, cur: Any, table: str) -> bool:
        cur.execute("SELECT to_regclass(%s) IS NOT NULL", (table,))
        row = cur.fetchone()
        return bool(row and row[0])

    def columns(self, cur: Any, table: str) -> set[str]:
        cur.execute(
            """
            SELECT column_name FROM information_schema.columns
            WHERE table_schema = current_schema() AND table_name = %s
            """,
            (table,),
        )
        return {row[0] for row in cur.fetchall()}

    def add_column(self, cur: Any, layout: TableLayout, column: str) -> None:
        ddl = layout.column(column).postgres_type
        cur.execute(f"ALTER TABLE {layout.name} ADD COLUMN IF NOT EXISTS {column} {ddl}")

    def _primary_key_constraint(self, cur: Any, table: str) -> tuple[str | None, tuple[str, ...]]:
        cur.execute(self._PK_QUERY, (table,))
        row = cur.fetchone()
        if row is None:
            return None, ()
        return row[0], tuple(row[1])

    def primary_key(self, cur: Any, table: str) -> tuple[str, ...]:
        return self._primary_key_constraint(cur, table)[1]

    def widen_primary_key(self, cur: Any, layout: TableLayout) -> None:
        constraint, _ = self._primary_key_constraint(cur, layout.name)
        table = sql.Identifier(layout.name)
        if constraint is not None:
            cur.execute(
                sql.SQL("ALTER TABLE {} DROP CONSTRAINT {}").format(table, sql.Identifier(constraint))
            )
        cur.execute(
            sql.SQL("ALTER TABLE {} ADD PRIMARY KEY ({})").format(
                table, sql.SQL(", ").join(sql.Identifier(c) for c in layout.primary_key)
            )
        )


Dialect = SQLiteDialect | PostgresDialect


# ------------------------------------------------------------------
# Этапы
# ------------------------------------------------------------------


def run_migrations(cur: Any, dialect: Dialect) -> MigrationReport:
    """Выполнить все этапы миграции на курсоре внутри открытой транзакции.

    Транзакцию открывает и фиксирует вызывающая сторона; при исключении она
    должна откатить её целиком.

    Raises:
        MigrationError: Ошибка на любом этапе (исходная ошибка в ``__cause__``).
    """
    report = MigrationReport()
    stages = (
        ("create tables", _create_tables),
        ("add columns", _add_columns),
        ("backfill defaults", _backfill_defaults),
        ("infer env groups", _infer_groups),
        ("deduplicate legacy rows", _deduplicate),
        ("widen primary keys", _widen_primary_keys),
    )
    for stage, step in stages:
        try:
            step(cur, dialect, report)
        except Exception as exc:
            raise MigrationError(f"{dialect.name} migration failed at '{stage}': {exc}") from exc

    if report.changed:
        logger.info(
            "Schema migrated (%s): created=%s, columns=%s, backfilled=%d, inferred=%d, "
            "deduplicated=%d, widened=%s",
            dialect.name,
            report.created_tables,
            report.added_columns,
            report.backfilled_rows,
            report.inferred_rows,
            report.deduplicated_rows,
            report.widened_keys,
        )
    else:
        logger.debug("Schema is up to date (%s)", dialect.name)
    return report


def _create_tables(cur: Any, dialect: Dialect, report: MigrationReport) -> None:
    for layout in LAYOUTS:
        if not dialect.table_exists(cur, layout.name):
            cur.execute(dialect.create_table_sql(layout))
            report.created_tables.append(layout.name)


def _add_columns(cur: Any, dialect: Dialect, report: MigrationReport) -> None:
    for layout, column in ADDED_COLUMNS:
        if column in dialect.columns(cur, layout.name):
            continue
        dialect.add_column(cur, layout, column)
        report.added_columns.append(f"{layout.name}.{column}")


def _backfill_defaults(cur: Any, dialect: Dialect, report: MigrationReport) -> None:
    for statement in _BACKFILL_SQL:
        cur.execute(statement)
        report.backfilled_rows += max(cur.rowcount, 0)


def _infer_groups(cur: Any, dialect: Dialect, report: MigrationReport) -> None:
    cur.execute(_INFER_GROUP_SQL)
    report.inferred_rows += max(cur.rowcount, 0)


def _deduplicate(cur: Any, dialect: Dialect, report: MigrationReport) -> None:
    for statement in _DEDUP_SQL:
        cur.execute(statement)
        report.deduplicated_rows += max(cur.rowcount, 0)


def _widen_primary_keys(cur: Any, dialect: Dialect, report: MigrationReport) -> None:
    for layout in LAYOUTS:
        if dialect.primary_key(cur, layout.name) == layout.primary_key:
            continue
        dialect.widen_primary_key(cur, layout)
        report.widened_keys.append(layout.name)
