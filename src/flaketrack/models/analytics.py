"""Модели производных аналитических данных (flake rate, графики, обзор).

Эти записи никогда не сохраняются как базовые факты: они вычисляются на чтении
из строк ``test_cases`` / ``environment_tests``.
"""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, ConfigDict, Field


class CommitResult(BaseModel):
    """Результат теста (или прогона окружения) в одном коммите — для drill-down."""

    model_config = ConfigDict(populate_by_name=True)

    commit_id: str = Field(alias="commitId")
    result: str = ""
    duration: float = 0.0
    artifact_path: str = Field("", alias="artifactPath")


class DailyTestCounts(BaseModel):
    """Агрегат по (тест, день): сколько падений из скольких прогонов.

    Результаты ``skip`` исключаются заранее и в ``total_count`` не входят.
    """

    test_name: str
    day: date
    fail_count: int = 0
    total_count: int = 0
    duration_sum: float = 0.0
    commits: list[CommitResult] = Field(default_factory=list)


class DailyEnvCounts(BaseModel):
    """Агрегат по (окружение, группа, день) из ``environment_tests``."""

    env_name: str
    env_group: str
    day: date
    run_count: int = 0
    test_count_sum: int = 0
    fail_count_sum: int = 0
    duration_sum: float = 0.0
    commits: list[CommitResult] = Field(default_factory=list)


class FlakeRow(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    test_name: str = Field(alias="testName")
    recent_flake_percentage: float = Field(alias="recentFlakePercentage")
    growth_rate: float = Field(alias="growthRate")


class FlakeByBucket(BaseModel):
    """Flake rate одного теста в одном временном бакете (день/неделя/месяц)."""

    model_config = ConfigDict(populate_by_name=True)

    test_name: str = Field(alias="testName")
    start_of_bucket: date = Field(alias="startOfDate")
    flake_percentage: float = Field(alias="flakePercentage")
    avg_duration: float = Field(alias="avgDuration")
    commits: list[CommitResult] = Field(default_factory=list, alias="commitResultsAndDurations")


class EnvDurationRow(BaseModel):
    """Средние количество тестов, длительность и число падений окружения в бакете."""

    model_config = ConfigDict(populate_by_name=True)

    start_of_bucket: date = Field(alias="startOfDate")
    avg_test_count: float = Field(alias="testCount")
    avg_duration: float = Field(alias="duration")
    avg_fail_count: float = Field(alias="failCount")
    commits: list[CommitResult] = Field(default_factory=list, alias="commitCountsAndDurations")


class EnvOverviewRow(BaseModel):
    """Строка сводной таблицы по окружениям."""

    model_config = ConfigDict(populate_by_name=True)

    env_name: str = Field(alias="envName")
    env_group: str = Field(alias="envGroup")
    avg_fail_count: float = Field(alias="avgFailCount")
    avg_duration: float = Field(alias="avgDuration")
    fail_count_growth: float = Field(alias="failCountGrowth")
    duration_growth: float = Field(alias="durationGrowth")
