"""Модели пайплайна загрузки истории джобов из индекса (Prow job history)."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Статусы Prow, которые означают, что джоб ещё не завершён.
PENDING_STATUSES = frozenset({"PENDING", "TRIGGERED", "RUNNING", ""})


class ProwJob(BaseModel):
    """Один завершённый (или ещё выполняющийся) запуск джоба из job history.

    Поля соответствуют элементам массива ``allBuilds`` на странице истории.
    ``Duration`` приходит в наносекундах.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(alias="ID")
    spyglass_link: str = Field("", alias="SpyglassLink")
    started: str = Field("", alias="Started")
    duration_ns: int = Field(0, alias="Duration")
    result: str = Field("", alias="Result")

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: object) -> object:
        return str(value) if isinstance(value, int) else value

    @field_validator("spyglass_link", "started", "result", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("duration_ns", mode="before")
    @classmethod
    def _none_as_zero(cls, value: object) -> object:
        return 0 if value is None else value

    @property
    def duration_seconds(self) -> float:
        return self.duration_ns / 1e9

    @property
    def is_pending(self) -> bool:
        return self.result.strip().upper() in PENDING_STATUSES

    def started_at(self) -> datetime:
        """Время старта джоба (RFC3339).

        Raises:
            ValueError: Если ``Started`` не парсится.
        """
        return datetime.fromisoformat(self.started.replace("Z", "+00:00"))


class CrawlReport(BaseModel):
    """Итог загрузки одного дашборда.

    Сериализуется в camelCase (``by_alias=True``) для HTTP-ответа.
    """

    model_config = ConfigDict(populate_by_name=True)

    dashboard: str
    job_name: str = Field(alias="jobName")
    total_jobs: int = Field(0, alias="totalJobs")
    inserted: int = 0
    missing_summary: int = Field(0, alias="missingSummary")
    invalid_summary: int = Field(0, alias="invalidSummary")
    errors: int = 0
    error_samples: list[str] = Field(default_factory=list, alias="errorSamples")
    duration: float = Field(0.0, description="Длительность загрузки в секундах")
    max_pages: int = Field(0, alias="maxPages")
    concurrency: int = 0
    cancelled: bool = False
