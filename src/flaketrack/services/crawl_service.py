"""Загрузка исторических сводок из индекса джобов в хранилище.

Каждый запуск обрабатывается независимо: ошибка одного не прерывает
остальные, итог собирается в :class:`CrawlStats` и возвращается как
:class:`~flaketrack.models.crawl.CrawlReport`.

Исходы одного запуска:

- ``inserted`` — сводка записана в хранилище;
- ``missing`` — у запуска нет ``test_summary.json`` (HTTP 404);
- ``invalid`` — сводка есть, но не проходит валидацию;
- ``error`` — ссылка неизвестной формы, транспортная ошибка, неожиданный
  статус, ошибка записи.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time

from flaketrack.clients.base import JobIndexProvider, SummaryProvider
from flaketrack.crawl_config import DashboardConfig
from flaketrack.exceptions import (
    ConfigurationError,
    CrawlCancelledError,
    SummaryNotFoundError,
    ValidationError,
)
from flaketrack.models.crawl import CrawlReport, ProwJob
from flaketrack.store.base import ResultStore
from flaketrack.utils.job_links import (
    DEFAULT_INDEX_URL,
    DEFAULT_STORAGE_URL,
    ensure_job_details,
    summary_url_to_artifact_path,
    viewer_link_to_summary_url,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ERROR_SAMPLES = 10


class CrawlStats:
    """Счётчики загрузки, общие для всех задач.

    Каждое изменение выполняется под одной блокировкой: запись в хранилище
    идёт в рабочих потоках, а счётчики обновляются из задач event loop.
    """

    def __init__(self, total_jobs: int = 0, *, max_error_samples: int = DEFAULT_MAX_ERROR_SAMPLES) -> None:
        self._lock = threading.Lock()
        self._max_error_samples = max_error_samples
        self.total_jobs = total_jobs
        self.inserted = 0
        self.missing_summary = 0
        self.invalid_summary = 0
        self.errors = 0
        self.cancelled = 0
        self.error_samples: list[str] = []

    def add_inserted(self) -> None:
        with self._lock:
            self.inserted += 1

    def add_missing_summary(self) -> None:
        with self._lock:
            self.missing_summary += 1

    def add_invalid_summary(self, message: str) -> None:
        with self._lock:
            self.invalid_summary += 1
            self._add_sample_locked(message)

    def add_error(self, message: str) -> None:
        with self._lock:
            self.errors += 1
            self._add_sample_locked(message)

    def add_cancelled(self) -> None:
        with self._lock:
            self.cancelled += 1

    def _add_sample_locked(self, message: str) -> None:
        if len(self.error_samples) < self._max_error_samples:
            self.error_samples.append(message)

    def report(
        self,
        *,
        dashboard: str,
        job_name: str,
        duration: float,
        max_pages: int,
        concurrency: int,
    ) -> CrawlReport:
        with self._lock:
            return CrawlReport(
                dashboard=dashboard,
                job_name=job_name,
                total_jobs=self.total_jobs,
                inserted=self.inserted,
                missing_summary=self.missing_summary,
                invalid_summary=self.invalid_summary,
                errors=self.errors,
                error_samples=list(self.error_samples),
                duration=round(duration, 3),
                max_pages=max_pages,
                concurrency=concurrency,
                cancelled=self.cancelled > 0,
            )


class CrawlIngestService:
    """Загружает сводки запусков одного дашборда с ограниченным параллелизмом."""

    def __init__(
        self,
        store: ResultStore,
        job_index: JobIndexProvider,
        summaries: SummaryProvider,
        *,
        index_url: str = DEFAULT_INDEX_URL,
        storage_url: str = DEFAULT_STORAGE_URL,
        max_error_samples: int = DEFAULT_MAX_ERROR_SAMPLES,
    ) -> None:
        self._store = store
        self._job_index = job_index
        self._summaries = summaries
        self._index_url = index_url
        self._storage_url = storage_url
        self._max_error_samples = max_error_samples

    async def load(
        self,
        dashboard: DashboardConfig,
        *,
        max_pages: int | None = None,
        concurrency: int = 6,
        cancel_event: asyncio.Event | None = None,
    ) -> CrawlReport:
        """Просканировать историю джоба и загрузить все найденные сводки.

        Ошибки отдельных запусков не пробрасываются, они отражаются
        в счётчиках отчёта.

        Args:
            dashboard: Запись дашборда (нормализуется здесь же).
            max_pages: Сколько страниц истории сканировать; ``None`` — из дашборда.
            concurrency: Сколько запусков обрабатывается одновременно.
            cancel_event: Сигнал отмены; проверяется перед каждым запуском
                и перед каждым сетевым вызовом внутри него.

        Raises:
            ConfigurationError: У дашборда нет джоба или неверный ``min_duration``.
            JobIndexError: Не удалось получить список запусков из индекса.
        """
        dashboard = dashboard.normalized()
        if not dashboard.job_name:
            raise ConfigurationError(f"dashboard {dashboard.id!r} has no job_name")
        if concurrency < 1:
            raise ConfigurationError(f"concurrency must be positive, got {concurrency}")
        min_duration = dashboard.min_duration_delta()
        pages = max_pages if max_pages and max_pages > 0 else dashboard.max_pages
        skip_statuses = dashboard.effective_skip_statuses()

        logger.info(
            "Загрузка дашборда %s (джоб %s): max_pages=%d, concurrency=%d, min_duration=%s, skip=%s",
            dashboard.id,
            dashboard.job_name,
            pages,
            concurrency,
            min_duration,
            sorted(skip_statuses),
        )

        jobs = await self._job_index.list_jobs(
            dashboard.job_name,
            max_pages=pages,
            skip_statuses=skip_statuses,
            min_duration=min_duration,
        )
        stats = CrawlStats(len(jobs), max_error_samples=self._max_error_samples)
        started = time.monotonic()
        semaphore = asyncio.Semaphore(concurrency)

        async def run_one(job: ProwJob) -> None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    stats.add_cancelled()
                    return
                try:
                    await self._process_job(job, dashboard, stats, cancel_event)
                except CrawlCancelledError:
                    stats.add_cancelled()
                except Exception as exc:
                    logger.warning("Джоб %s: %s", job.id, exc)
                    stats.add_error(f"job {job.id}: {exc}")

        await asyncio.gather(*(run_one(job) for job in jobs))

        report = stats.report(
            dashboard=dashboard.id,
            job_name=dashboard.job_name,
            duration=time.monotonic() - started,
            max_pages=pages,
            concurrency=concurrency,
        )
        logger.info(
            "Дашборд %s загружен: всего=%d, записано=%d, без сводки=%d, невалидных=%d, ошибок=%d за %.1fs",
            report.dashboard,
            report.total_jobs,
            report.inserted,
            report.missing_summary,
            report.invalid_summary,
            report.errors,
            report.duration,
        )
        return report

    async def _process_job(
        self,
        job: ProwJob,
        dashboard: DashboardConfig,
        stats: CrawlStats,
        cancel_event: asyncio.Event | None,
    ) -> None:
        _check_cancelled(cancel_event)

        summary_url = viewer_link_to_summary_url(
            job.spyglass_link, index_url=self._index_url, storage_url=self._storage_url,
        )
        try:
            started_at = job.started_at()
        except ValueError as exc:
            raise ValueError(f"failed to parse start time {job.started!r}") from exc

        _check_cancelled(cancel_event)
        try:
            summary = await self._summaries.fetch_summary(summary_url)
        except SummaryNotFoundError:
            logger.debug("Джоб %s: нет сводки по %s", job.id, summary_url)
            stats.add_missing_summary()
            return

        try:
            artifact_path = summary_url_to_artifact_path(summary_url)
        except ValueError as exc:
            logger.warning("Джоб %s: не удалось получить путь к артефактам: %s", job.id, exc)
            artifact_path = ""

        detail = summary.detail.model_copy(
            update={"details": ensure_job_details(summary.detail.details, dashboard.job_name, job.id)}
        )
        summary = summary.model_copy(update={"detail": detail})

        try:
            env_run, test_rows = summary.to_db_rows(
                started_at, env_group=dashboard.env_group, artifact_path=artifact_path,
            )
        except ValidationError as exc:
            stats.add_invalid_summary(f"job {job.id}: invalid summary: {exc}")
            return

        await asyncio.to_thread(self._store.set, env_run, test_rows)
        stats.add_inserted()
        logger.debug("Джоб %s: записано %d тестов", job.id, len(test_rows))


def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CrawlCancelledError("crawl cancelled")
