"""Строки таблиц хранилища."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from flaketrack.models.common import DEFAULT_ENV_GROUP, normalize_env_group


class EnvironmentRun(BaseModel):
    """Строка ``environment_tests``: один завершённый прогон окружения.

    Ключ: ``(commit_id, env_name, env_group)``.
    """

    commit_id: str
    env_name: str
    env_group: str = DEFAULT_ENV_GROUP
    ingested_at: datetime
    test_time: datetime
    number_of_fail: int = 0
    number_of_pass: int = 0
    number_of_skip: int = 0
    total_duration: float = 0.0
    tool_version: str = ""
    artifact_path: str = ""

    @field_validator("env_group", mode="before")
    @classmethod
    def _normalize_group(cls, value: object) -> object:
        return normalize_env_group(value if isinstance(value, str) else None)

    @property
    def number_of_tests(self) -> int:
        return self.number_of_fail + self.number_of_pass + self.number_of_skip


class TestCaseRow(BaseModel):
    """Строка ``test_cases``: результат одного теста в одном прогоне.

    Ключ: ``(commit_id, env_name, env_group, test_name)``.
    """

    pr: str = ""
    commit_id: str
    env_name: str
    env_group: str = DEFAULT_ENV_GROUP
    test_name: str
    result: str
    test_time: datetime
    duration: float = 0.0
    test_order: int = Field(0, description="Порядковый номер теста в прогоне, 0 — неизвестен")

    @field_validator("env_group", mode="before")
    @classmethod
    def _normalize_group(cls, value: object) -> object:
        return normalize_env_group(value if isinstance(value, str) else None)
