"""Сводка прогона: разбиение групп на pass/fail/skip, порядок, длительность."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from flaketrack.models.common import DEFAULT_ENV_GROUP, TestResult
from flaketrack.models.db import EnvironmentRun, TestCaseRow
from flaketrack.models.events import TestGroup
from flaketrack.models.summary import ReportDetail, Summary

logger = logging.getLogger(__name__)


class RunReport(BaseModel):
    """Результат одного прогона после группировки и разбиения по статусам."""

    detail: ReportDetail
    passed: list[TestGroup] = Field(default_factory=list)
    failed: list[TestGroup] = Field(default_factory=list)
    skipped: list[TestGroup] = Field(default_factory=list)
    total_tests: int = 0
    total_duration: float = 0.0
    start: datetime | None = None
    tool_version: str = ""
    tool_build: str = ""
    created_at: datetime

    @property
    def build_version(self) -> str:
        return f"{self.tool_version}_{self.tool_build}"

    def short_summary(self) -> Summary:
        """Переносимая сводка без логов.

        Длительности skip-тестов в ``durations`` не попадают: они почти
        нулевые и портят графики трендов.
        """
        durations: dict[str, float] = {}
        for group in self.passed:
            durations[group.test_name] = group.duration
        for group in self.failed:
            durations[group.test_name] = group.duration

        return Summary(
            number_of_tests=len(self.passed) + len(self.failed) + len(self.skipped),
            number_of_fail=len(self.failed),
            number_of_pass=len(self.passed),
            number_of_skip=len(self.skipped),
            failed_tests=[g.test_name for g in self.failed],
            passed_tests=[g.test_name for g in self.passed],
            skipped_tests=[g.test_name for g in self.skipped],
            durations=durations,
            total_duration=self.total_duration,
            tool_version=self.tool_version,
            tool_build=self.tool_build,
            detail=self.detail,
        )

    def short_summary_json(self) -> str:
        return self.short_summary().to_json()

    def to_db_rows(
        self,
        *,
        env_group: str = DEFAULT_ENV_GROUP,
        artifact_path: str = "",
        ingested_at: datetime | None = None,
    ) -> tuple[EnvironmentRun, list[TestCaseRow]]:
        """Строки для локальной загрузки: в отличие от сводки, сохраняют порядок тестов."""
        test_time = self.start or self.created_at
        rows = [
            TestCaseRow(
                pr=self.detail.pr,
                commit_id=self.detail.details,
                env_name=self.detail.name,
                env_group=env_group,
                test_name=group.test_name,
                result=result.value,
                test_time=test_time,
                duration=group.duration,
                test_order=group.test_order,
            )
            for result, bucket in (
                (TestResult.PASS, self.passed),
                (TestResult.FAIL, self.failed),
                (TestResult.SKIP, self.skipped),
            )
            for group in bucket
        ]
        env_run = EnvironmentRun(
            commit_id=self.detail.details,
            env_name=self.detail.name,
            env_group=env_group,
            ingested_at=ingested_at or datetime.now(timezone.utc),
            test_time=test_time,
            number_of_fail=len(self.failed),
            number_of_pass=len(self.passed),
            number_of_skip=len(self.skipped),
            total_duration=self.total_duration,
            tool_version=self.tool_version,
            artifact_path=artifact_path,
        )
        return env_run, rows


def summarize(
    detail: ReportDetail,
    groups: Sequence[TestGroup],
    *,
    version: str,
    build: str = "",
    now: datetime | None = None,
) -> RunReport:
    """Разбить группы на pass/fail/skip и посчитать итоги прогона.

    Порядковый номер группы — её позиция в порядке обнаружения (с 1);
    скрытые группы тоже занимают номер, но в отчёт не попадают.
    Общая длительность — разница между самым ранним стартом и самым поздним
    окончанием среди видимых групп, а не сумма длительностей.

    Args:
        detail: Идентификация прогона.
        groups: Результат :func:`~flaketrack.services.event_grouper.group_events`.
        version: Версия инструмента, попадает в сводку.
        build: Идентификатор сборки инструмента.
        now: Время формирования отчёта (для тестов).
    """
    buckets: dict[str, list[TestGroup]] = {value: [] for value in TestResult.values()}
    start: datetime | None = None
    end: datetime | None = None

    for order, group in enumerate(groups, start=1):
        if group.hidden:
            continue
        visible = group.model_copy(update={"test_order": order})
        if visible.start is not None and (start is None or visible.start < start):
            start = visible.start
        if visible.end is not None and (end is None or visible.end > end):
            end = visible.end
        bucket = buckets.get(visible.status)
        if bucket is not None:
            bucket.append(visible)

    total_duration = 0.0
    if start is not None and end is not None:
        total_duration = round((end - start).total_seconds(), 2)

    report = RunReport(
        detail=detail,
        passed=buckets[TestResult.PASS.value],
        failed=buckets[TestResult.FAIL.value],
        skipped=buckets[TestResult.SKIP.value],
        total_tests=sum(len(b) for b in buckets.values()),
        total_duration=total_duration,
        start=start,
        tool_version=version,
        tool_build=build,
        created_at=now or datetime.now(timezone.utc),
    )
    logger.info(
        "Run %s/%s: %d tests (pass=%d, fail=%d, skip=%d), %.2fs",
        detail.name or "?",
        detail.details or "?",
        report.total_tests,
        len(report.passed),
        len(report.failed),
        len(report.skipped),
        report.total_duration,
    )
    return report
