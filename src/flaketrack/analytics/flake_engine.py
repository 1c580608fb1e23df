"""Расчёт flake rate и производных графиков поверх дневных агрегатов.

Бэкенд считает агрегаты по (тест, день) и (окружение, группа, день),
а окна, рост и бакетирование вычисляются здесь одинаково для любого бакенда.

Окна задаются по датам, на которые есть данные (а не по календарю):
берутся ``2W`` последних различных дат по убыванию, ``recent`` — дата на
позиции ``W-1``, ``prev`` — на позиции ``2W-1``. Свежее окно — всё, что
новее ``recent``; предыдущее — ``(prev, recent]``. Если дат меньше, чем нужно,
соответствующая граница отсутствует и окно не ограничено.
"""

from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from flaketrack.exceptions import ValidationError
from flaketrack.models.analytics import (
    CommitResult,
    DailyEnvCounts,
    DailyTestCounts,
    EnvDurationRow,
    EnvOverviewRow,
    FlakeByBucket,
    FlakeRow,
)
from flaketrack.models.common import DEFAULT_ENV_GROUP, TimeBucket

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 15

ENV_OVERVIEW_VIEW = "flake_env_overview"
FLAKE_VIEW_PREFIX = "flake_rate_"


@dataclass(frozen=True)
class Cutoffs:
    """Границы окон. ``None`` — граница отсутствует (окно не ограничено)."""

    recent: date | None
    prev: date | None

    def in_recent(self, day: date) -> bool:
        return self.recent is None or day > self.recent

    def in_previous(self, day: date) -> bool:
        if self.recent is None:
            return False
        return day <= self.recent and (self.prev is None or day > self.prev)


def compute_cutoffs(days: Iterable[date], window: int = DEFAULT_WINDOW) -> Cutoffs:
    if window < 1:
        raise ValidationError(f"window must be positive, got {window}")
    distinct = sorted(set(days), reverse=True)[: 2 * window]
    recent = distinct[window - 1] if len(distinct) >= window else None
    prev = distinct[2 * window - 1] if len(distinct) >= 2 * window else None
    return Cutoffs(recent=recent, prev=prev)


def flake_percentage(fails: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(100.0 * fails / total, 2)


def _avg(total: float, count: int) -> float:
    return round(total / count, 2) if count else 0.0


def bucket_start(day: date, bucket: TimeBucket) -> date:
    """Начало бакета: сам день, понедельник недели или первое число месяца."""
    if bucket is TimeBucket.WEEK:
        return day - timedelta(days=day.weekday())
    if bucket is TimeBucket.MONTH:
        return day.replace(day=1)
    return day


# --- Flake rate по тестам ---


def compute_flake_rates(
    daily: Sequence[DailyTestCounts],
    window: int = DEFAULT_WINDOW,
) -> list[FlakeRow]:
    """Flake rate каждого теста в свежем окне и его рост относительно предыдущего.

    ``daily`` должен быть ограничен одним окружением и группой; skip-результаты
    исключаются заранее. Тесты без прогонов в обоих окнах не попадают в ответ.
    Сортировка: самые нестабильные первыми, при равенстве — по имени теста.
    """
    cutoffs = compute_cutoffs((d.day for d in daily), window)

    recent: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    previous: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for row in daily:
        if cutoffs.in_recent(row.day):
            acc = recent[row.test_name]
        elif cutoffs.in_previous(row.day):
            acc = previous[row.test_name]
        else:
            continue
        acc[0] += row.fail_count
        acc[1] += row.total_count

    rows: list[FlakeRow] = []
    for test_name in set(recent) | set(previous):
        recent_pct = flake_percentage(*recent.get(test_name, (0, 0)))
        prev_pct = flake_percentage(*previous.get(test_name, (0, 0)))
        rows.append(
            FlakeRow(
                test_name=test_name,
                recent_flake_percentage=recent_pct,
                growth_rate=round(recent_pct - prev_pct, 2),
            )
        )
    rows.sort(key=lambda r: (-r.recent_flake_percentage, r.test_name))
    return rows


def bucket_flake_series(
    daily: Sequence[DailyTestCounts],
    bucket: TimeBucket,
) -> list[FlakeByBucket]:
    """Flake rate и средняя длительность по бакетам для каждого теста."""
    acc: dict[tuple[str, date], dict[str, Any]] = {}
    for row in daily:
        key = (row.test_name, bucket_start(row.day, bucket))
        item = acc.setdefault(key, {"fails": 0, "total": 0, "duration": 0.0, "commits": []})
        item["fails"] += row.fail_count
        item["total"] += row.total_count
        item["duration"] += row.duration_sum
        item["commits"].extend(row.commits)

    return [
        FlakeByBucket(
            test_name=test_name,
            start_of_bucket=start,
            flake_percentage=flake_percentage(item["fails"], item["total"]),
            avg_duration=_avg(item["duration"], item["total"]),
            commits=item["commits"],
        )
        for (test_name, start), item in sorted(acc.items())
    ]


# --- Окружения ---


def bucket_env_durations(
    daily_env: Sequence[DailyEnvCounts],
    bucket: TimeBucket,
) -> list[EnvDurationRow]:
    """Среднее число тестов, длительность и число падений на прогон по бакетам."""
    acc: dict[date, dict[str, Any]] = {}
    for row in daily_env:
        item = acc.setdefault(
            bucket_start(row.day, bucket),
            {"runs": 0, "tests": 0, "fails": 0, "duration": 0.0, "commits": []},
        )
        item["runs"] += row.run_count
        item["tests"] += row.test_count_sum
        item["fails"] += row.fail_count_sum
        item["duration"] += row.duration_sum
        item["commits"].extend(row.commits)

    return [
        EnvDurationRow(
            start_of_bucket=start,
            avg_test_count=_avg(item["tests"], item["runs"]),
            avg_duration=_avg(item["duration"], item["runs"]),
            avg_fail_count=_avg(item["fails"], item["runs"]),
            commits=item["commits"],
        )
        for start, item in sorted(acc.items())
    ]


def _per_day_averages(rows: Sequence[DailyEnvCounts]) -> tuple[float, float]:
    """(падений, длительность) на прогон, усреднённые по дням."""
    by_day: dict[date, list[float]] = defaultdict(lambda: [0, 0, 0.0])
    for row in rows:
        acc = by_day[row.day]
        acc[0] += row.run_count
        acc[1] += row.fail_count_sum
        acc[2] += row.duration_sum
    days = [acc for acc in by_day.values() if acc[0]]
    if not days:
        return 0.0, 0.0
    fail_avg = sum(acc[1] / acc[0] for acc in days) / len(days)
    duration_avg = sum(acc[2] / acc[0] for acc in days) / len(days)
    return round(fail_avg, 2), round(duration_avg, 2)


def compute_env_overview(
    daily_env: Sequence[DailyEnvCounts],
    window: int = DEFAULT_WINDOW,
) -> list[EnvOverviewRow]:
    """Сводка по окружениям.

    Среднее число падений и средняя длительность считаются по дням за всю
    глубину переданных данных (90-дневное представление): для каждого дня
    берётся среднее на прогон, затем среднее по дням. Рост — разница таких
    же средних между свежим и предыдущим окном.

    Окна считаются отдельно для каждой пары (окружение, группа).
    """
    by_env: dict[tuple[str, str], list[DailyEnvCounts]] = defaultdict(list)
    for row in daily_env:
        by_env[(row.env_name, row.env_group)].append(row)

    result: list[EnvOverviewRow] = []
    for (env_name, env_group), rows in by_env.items():
        cutoffs = compute_cutoffs((r.day for r in rows), window)
        recent = [r for r in rows if cutoffs.in_recent(r.day)]
        previous = [r for r in rows if cutoffs.in_previous(r.day)]

        avg_fail, avg_duration = _per_day_averages(rows)
        recent_fail, recent_duration = _per_day_averages(recent)
        prev_fail, prev_duration = _per_day_averages(previous)
        result.append(
            EnvOverviewRow(
                env_name=env_name,
                env_group=env_group,
                avg_fail_count=avg_fail,
                avg_duration=avg_duration,
                fail_count_growth=round(recent_fail - prev_fail, 2),
                duration_growth=round(recent_duration - prev_duration, 2),
            )
        )
    result.sort(key=lambda r: (-r.avg_fail_count, r.env_name, r.env_group))
    return result


def resolve_env_group(env: str, requested: str | None, available: Iterable[str]) -> str:
    """Выбрать группу окружения для запроса.

    Явно указанная группа должна существовать. Без указания группа выводится,
    только если у окружения она одна.

    Raises:
        ValidationError: Неизвестная группа или неоднозначное окружение.
    """
    groups = sorted(set(available))
    requested = (requested or "").strip()
    if requested:
        if requested not in groups:
            raise ValidationError(
                f"unknown env_group {requested!r} for environment {env!r}; available: {groups}"
            )
        return requested
    if not groups:
        return DEFAULT_ENV_GROUP
    if len(groups) > 1:
        raise ValidationError(
            f"environment {env!r} is ambiguous, specify env_group (one of {groups})"
        )
    return groups[0]


def flake_view_name(env: str, env_group: str) -> str:
    """Детерминированное имя материализованного представления для (окружение, группа).

    Имя строится из хэша, поэтому не зависит от символов в названиях.
    """
    digest = hashlib.sha1(f"{env}\x00{env_group}".encode()).hexdigest()[:16]
    return f"{FLAKE_VIEW_PREFIX}{digest}"


# --- Сборка ответов ---


def _dump(rows: Iterable[Any]) -> list[dict[str, Any]]:
    return [r.model_dump(mode="json", by_alias=True) for r in rows]


def build_test_charts(daily: Sequence[DailyTestCounts]) -> dict[str, Any]:
    """``{"flakeByDay", "flakeByWeek", "flakeByMonth"}`` для одного теста."""
    return {
        "flakeByDay": _dump(bucket_flake_series(daily, TimeBucket.DAY)),
        "flakeByWeek": _dump(bucket_flake_series(daily, TimeBucket.WEEK)),
        "flakeByMonth": _dump(bucket_flake_series(daily, TimeBucket.MONTH)),
    }


def build_env_charts(
    daily_tests: Sequence[DailyTestCounts],
    daily_env: Sequence[DailyEnvCounts],
    *,
    tests_in_top: int,
    window: int = DEFAULT_WINDOW,
) -> dict[str, Any]:
    """Графики окружения по ``tests_in_top`` самым нестабильным тестам."""
    rates = compute_flake_rates(daily_tests, window)
    top = {r.test_name for r in rates[:tests_in_top]}
    top_daily = [d for d in daily_tests if d.test_name in top]
    logger.debug("Env charts: %d tests total, top %d selected", len(rates), len(top))
    return {
        "recentFlakePercentTable": _dump(rates),
        "flakeRateByDay": _dump(bucket_flake_series(top_daily, TimeBucket.DAY)),
        "flakeRateByWeek": _dump(bucket_flake_series(top_daily, TimeBucket.WEEK)),
        "flakeRateByMonth": _dump(bucket_flake_series(top_daily, TimeBucket.MONTH)),
        "countsAndDurations": _dump(bucket_env_durations(daily_env, TimeBucket.DAY)),
    }


def build_overview(daily_env: Sequence[DailyEnvCounts], window: int = DEFAULT_WINDOW) -> dict[str, Any]:
    """``{"summaryAvgFail", "summaryTable"}`` по всем окружениям."""
    rows = compute_env_overview(daily_env, window)
    return {
        "summaryAvgFail": _avg(sum(r.avg_fail_count for r in rows), len(rows)),
        "summaryTable": _dump(rows),
    }


def commits_from_json(items: Iterable[dict[str, Any]] | None) -> list[CommitResult]:
    """Разобрать ``json_agg`` коммитов из SQL-агрегата."""
    return [CommitResult.model_validate(item) for item in items or []]
