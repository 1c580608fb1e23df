"""Абстрактные интерфейсы внешних источников для пайплайна загрузки истории."""

from __future__ import annotations

from datetime import timedelta
from typing import Protocol, runtime_checkable

from flaketrack.models.crawl import ProwJob
from flaketrack.models.summary import Summary


@runtime_checkable
class JobIndexProvider(Protocol):
    """Протокол индекса джобов: список исторических запусков одного джоба.

    Реализации:
    - ProwJobHistoryClient: страницы job history Prow
    """

    async def list_jobs(
        self,
        job_name: str,
        *,
        max_pages: int,
        skip_statuses: frozenset[str],
        min_duration: timedelta,
    ) -> list[ProwJob]:
        """Завершённые запуски джоба, отфильтрованные по статусу и длительности.

        Raises:
            JobIndexError: Индекс недоступен или ответ не разбирается.
        """
        ...


@runtime_checkable
class SummaryProvider(Protocol):
    """Протокол получения ``test_summary.json`` одного запуска."""

    async def fetch_summary(self, url: str) -> Summary:
        """Скачать и разобрать сводку.

        Raises:
            SummaryNotFoundError: Сводки нет (HTTP 404).
            JobIndexError: Прочие HTTP-ошибки, таймауты, неразбираемый JSON.
        """
        ...
