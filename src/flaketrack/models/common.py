"""Общие перечисления и константы."""

from __future__ import annotations

from enum import Enum

# Группа окружения для данных, загруженных до появления env_group.
DEFAULT_ENV_GROUP = "Legacy"


class TestResult(str, Enum):
    """Итоговые статусы теста, которые попадают в отчёт и в хранилище."""

    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"

    @classmethod
    def values(cls) -> tuple[str, ...]:
        return tuple(member.value for member in cls)


class TimeBucket(str, Enum):
    """Гранулярность временных рядов на графиках."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"


def normalize_env_group(value: str | None) -> str:
    """Пустая или отсутствующая группа трактуется как ``Legacy``."""
    value = (value or "").strip()
    return value or DEFAULT_ENV_GROUP
