"""Переносимая сводка прогона (``test_summary.json``) и её конвертация в строки БД."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from flaketrack.exceptions import ValidationError
from flaketrack.models.common import DEFAULT_ENV_GROUP, TestResult
from flaketrack.models.db import EnvironmentRun, TestCaseRow


class ReportDetail(BaseModel):
    """Идентификация прогона: окружение, коммит/детали, PR, репозиторий."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field("", alias="Name")
    details: str = Field("", alias="Details")
    pr: str = Field("", alias="PR")
    repo_name: str = Field("", alias="RepoName")

    @field_validator("name", "details", "pr", "repo_name", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return "" if value is None else value


class Summary(BaseModel):
    """Краткая сводка прогона без логов.

    Формат JSON совместим с производителями ``test_summary.json``: ключи
    в PascalCase, пустые списки могут прийти как ``null``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    number_of_tests: int = Field(0, alias="NumberOfTests")
    number_of_fail: int = Field(0, alias="NumberOfFail")
    number_of_pass: int = Field(0, alias="NumberOfPass")
    number_of_skip: int = Field(0, alias="NumberOfSkip")
    failed_tests: list[str] = Field(default_factory=list, alias="FailedTests")
    passed_tests: list[str] = Field(default_factory=list, alias="PassedTests")
    skipped_tests: list[str] = Field(default_factory=list, alias="SkippedTests")
    durations: dict[str, float] = Field(default_factory=dict, alias="Durations")
    total_duration: float = Field(0.0, alias="TotalDuration")
    # Производитель сводок пишет GopoghVersion/GopoghBuild, ToolVersion/ToolBuild
    # принимаются от ранних версий flaketrack.
    tool_version: str = Field(
        "",
        validation_alias=AliasChoices("GopoghVersion", "ToolVersion", "tool_version"),
        serialization_alias="GopoghVersion",
    )
    tool_build: str = Field(
        "",
        validation_alias=AliasChoices("GopoghBuild", "ToolBuild", "tool_build"),
        serialization_alias="GopoghBuild",
    )
    detail: ReportDetail = Field(default_factory=ReportDetail, alias="Detail")

    @field_validator("failed_tests", "passed_tests", "skipped_tests", mode="before")
    @classmethod
    def _null_list(cls, value: object) -> object:
        return [] if value is None else value

    @field_validator("durations", mode="before")
    @classmethod
    def _null_map(cls, value: object) -> object:
        return {} if value is None else value

    @field_validator("detail", mode="before")
    @classmethod
    def _null_detail(cls, value: object) -> object:
        return {} if value is None else value

    @classmethod
    def from_json(cls, payload: str | bytes) -> Summary:
        """Распарсить JSON-документ сводки (без бизнес-валидации)."""
        return cls.model_validate_json(payload)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=4)

    def validate_summary(self) -> None:
        """Проверить внутреннюю согласованность сводки.

        Raises:
            ValidationError: Пустая идентификация, нет тестов или счётчики
                не совпадают с длинами списков.
        """
        if not self.detail.name:
            raise ValidationError("missing detail name")
        if not self.detail.details:
            raise ValidationError("missing detail id")
        listed = len(self.failed_tests) + len(self.passed_tests) + len(self.skipped_tests)
        if listed == 0:
            raise ValidationError("no tests listed")
        if self.number_of_fail != len(self.failed_tests):
            raise ValidationError(
                f"failed count mismatch: expected {len(self.failed_tests)}, got {self.number_of_fail}"
            )
        if self.number_of_pass != len(self.passed_tests):
            raise ValidationError(
                f"pass count mismatch: expected {len(self.passed_tests)}, got {self.number_of_pass}"
            )
        if self.number_of_skip != len(self.skipped_tests):
            raise ValidationError(
                f"skip count mismatch: expected {len(self.skipped_tests)}, got {self.number_of_skip}"
            )
        expected_total = self.number_of_fail + self.number_of_pass + self.number_of_skip
        if self.number_of_tests != expected_total:
            raise ValidationError(
                f"total test count mismatch: expected {expected_total}, got {self.number_of_tests}"
            )

    def to_db_rows(
        self,
        test_time: datetime,
        *,
        env_group: str = DEFAULT_ENV_GROUP,
        artifact_path: str = "",
        ingested_at: datetime | None = None,
    ) -> tuple[EnvironmentRun, list[TestCaseRow]]:
        """Сконвертировать валидную сводку в строку окружения и строки тестов.

        Порядковые номера тестов в сводке не сохраняются, поэтому ``test_order``
        у полученных строк равен 0.

        Raises:
            ValidationError: Если сводка не проходит :meth:`validate_summary`.
        """
        self.validate_summary()

        rows: list[TestCaseRow] = []
        for result, names in (
            (TestResult.PASS, self.passed_tests),
            (TestResult.FAIL, self.failed_tests),
            (TestResult.SKIP, self.skipped_tests),
        ):
            for test_name in names:
                rows.append(
                    TestCaseRow(
                        pr=self.detail.pr,
                        commit_id=self.detail.details,
                        env_name=self.detail.name,
                        env_group=env_group,
                        test_name=test_name,
                        result=result.value,
                        test_time=test_time,
                        duration=self.durations.get(test_name, 0.0),
                    )
                )

        env_run = EnvironmentRun(
            commit_id=self.detail.details,
            env_name=self.detail.name,
            env_group=env_group,
            ingested_at=ingested_at or datetime.now(timezone.utc),
            test_time=test_time,
            number_of_fail=self.number_of_fail,
            number_of_pass=self.number_of_pass,
            number_of_skip=self.number_of_skip,
            total_duration=self.total_duration,
            tool_version=self.tool_version,
            artifact_path=artifact_path,
        )
        return env_run, rows
