"""Pydantic-модели событий ``go test -json`` и сгруппированных результатов."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

# RFC3339Nano допускает до 9 знаков дробной части, datetime только 6.
_NANOS_RE = re.compile(r"(\.\d{6})\d+")


class TestEvent(BaseModel):
    """Одно событие жизненного цикла теста (одна строка test2json).

    Имена полей в JSON совпадают с форматом test2json (``Time``, ``Action``...).
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    time: datetime | None = Field(None, alias="Time")
    action: str = Field("", alias="Action")
    package: str = Field("", alias="Package")
    test: str = Field("", alias="Test")
    elapsed: float = Field(0.0, alias="Elapsed")
    output: str = Field("", alias="Output")

    @field_validator("time", mode="before")
    @classmethod
    def _truncate_nanoseconds(cls, value: object) -> object:
        if isinstance(value, str):
            return _NANOS_RE.sub(r"\1", value)
        return value

    @field_validator("time")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # Время без смещения считается UTC, иначе его нельзя сравнить с остальными
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("action", "package", "test", "output", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("elapsed", mode="before")
    @classmethod
    def _none_as_zero(cls, value: object) -> object:
        return 0.0 if value is None else value


class TestGroup(BaseModel):
    """Все события одного теста в рамках одного прогона.

    Родитель/потомок определяется только по префиксу имени с разделителем ``/``.
    """

    test_name: str
    test_order: int = 0
    hidden: bool = False
    status: str = ""
    start: datetime | None = None
    end: datetime | None = None
    duration: float = 0.0
    events: list[TestEvent] = Field(default_factory=list)
