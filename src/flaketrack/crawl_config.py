"""Конфигурация дашбордов для загрузки истории джобов.

Файл — YAML или JSON со списком ``dashboards``::

    dashboards:
      - id: "minikube-periodics#ci-minikube-integration"
        label: "Integration"
        skip_statuses: [abort]
        min_duration: "10m"
        max_pages: 5
        env_group: "Periodic"

Пустые поля заполняются при нормализации: ``job_name`` выводится из части
``id`` после ``#``, ``label`` по умолчанию равен ``id``, статусы приводятся
к верхнему регистру (``ABORT`` → ``ABORTED``).
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from flaketrack.exceptions import ConfigurationError
from flaketrack.models.common import DEFAULT_ENV_GROUP, normalize_env_group

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 20
DEFAULT_SKIP_STATUSES = ("ABORTED",)

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> timedelta:
    """Разобрать длительность в синтаксисе ``1h30m``, ``90s``, ``250ms``.

    Пустая строка — нулевая длительность.

    Raises:
        ConfigurationError: Строка не соответствует формату.
    """
    text = (value or "").strip()
    if not text or text == "0":
        return timedelta(0)

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    pos = 0
    seconds = 0.0
    while pos < len(text):
        match = _DURATION_PART_RE.match(text, pos)
        if match is None:
            raise ConfigurationError(f"invalid duration {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0:
        raise ConfigurationError(f"invalid duration {value!r}")
    return timedelta(seconds=sign * seconds)


def normalize_statuses(values: list[str]) -> list[str]:
    out: list[str] = []
    for value in values:
        status = value.strip().upper()
        if not status:
            continue
        if status == "ABORT":
            status = "ABORTED"
        out.append(status)
    return out


class DashboardConfig(BaseModel):
    """Одна запись дашборда: какой джоб сканировать и как фильтровать запуски."""

    id: str = ""
    job_name: str = ""
    label: str = ""
    skip_statuses: list[str] = Field(default_factory=list)
    min_duration: str = ""
    max_pages: int = 0
    env_group: str = DEFAULT_ENV_GROUP

    @field_validator("id", "job_name", "label", "min_duration", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value

    @field_validator("skip_statuses", mode="before")
    @classmethod
    def _null_list(cls, value: object) -> object:
        return [] if value is None else value

    @field_validator("env_group", mode="before")
    @classmethod
    def _normalize_group(cls, value: object) -> object:
        return normalize_env_group(value if isinstance(value, str) else None)

    def normalized(self) -> DashboardConfig:
        """Копия с заполненными значениями по умолчанию."""
        dashboard_id = self.id
        job_name = self.job_name
        if not job_name and dashboard_id:
            _, sep, tail = dashboard_id.partition("#")
            job_name = tail.strip() if sep and tail.strip() else dashboard_id
        if not dashboard_id:
            dashboard_id = job_name
        return self.model_copy(
            update={
                "id": dashboard_id,
                "job_name": job_name,
                "label": self.label or dashboard_id,
                "skip_statuses": normalize_statuses(self.skip_statuses),
                "max_pages": self.max_pages if self.max_pages > 0 else DEFAULT_MAX_PAGES,
            }
        )

    def effective_skip_statuses(self) -> frozenset[str]:
        return frozenset(self.skip_statuses or DEFAULT_SKIP_STATUSES)

    def min_duration_delta(self) -> timedelta:
        """Raises: ConfigurationError — неверный формат ``min_duration``."""
        return parse_duration(self.min_duration)


class CrawlConfig(BaseModel):
    """Набор дашбордов, доступных для загрузки."""

    dashboards: list[DashboardConfig] = Field(default_factory=list)

    @field_validator("dashboards", mode="before")
    @classmethod
    def _null_list(cls, value: object) -> object:
        return [] if value is None else value

    def normalized(self) -> CrawlConfig:
        dashboards = [
            d.normalized() for d in self.dashboards if d.id or d.job_name
        ]
        return CrawlConfig(dashboards=dashboards)

    def find_dashboard(self, key: str) -> DashboardConfig | None:
        """Найти дашборд по ``id`` или имени джоба."""
        if not key:
            return None
        for dashboard in self.dashboards:
            if key in (dashboard.id, dashboard.job_name):
                return dashboard
        return None

    @classmethod
    def default(cls) -> CrawlConfig:
        return cls(
            dashboards=[
                DashboardConfig(
                    id="minikube-periodics#ci-minikube-integration",
                    skip_statuses=list(DEFAULT_SKIP_STATUSES),
                )
            ]
        ).normalized()


def load_crawl_config(path: str | Path | None, *, strict: bool = False) -> CrawlConfig:
    """Загрузить конфигурацию дашбордов из YAML/JSON файла.

    При отсутствующем или некорректном файле возвращается конфигурация
    по умолчанию (с предупреждением в лог).

    Args:
        path: Путь к файлу. Пустой путь — конфигурация по умолчанию.
        strict: Бросать ``ConfigurationError`` вместо отката к умолчанию.

    Raises:
        ConfigurationError: Только при ``strict=True``.
    """
    if not path:
        if strict:
            raise ConfigurationError("dashboards config path is not set")
        return CrawlConfig.default()

    try:
        # JSON является подмножеством YAML
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        if isinstance(raw, list):
            raw = {"dashboards": raw}
        config = CrawlConfig.model_validate(raw or {}).normalized()
        if not config.dashboards:
            raise ValueError("no dashboards configured")
    except Exception as exc:
        if strict:
            raise ConfigurationError(f"Ошибка загрузки конфигурации дашбордов {path}: {exc}") from exc
        logger.warning(
            "Не удалось загрузить конфигурацию дашбордов %s: %s. Используется конфигурация по умолчанию.",
            path,
            exc,
        )
        return CrawlConfig.default()

    logger.info("Загружено %d дашбордов из %s", len(config.dashboards), path)
    return config
