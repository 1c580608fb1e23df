"""HTTP-клиент истории джобов Prow (страницы ``/job-history``).

Страница истории — HTML с встроенным JSON-массивом ``var allBuilds = [...]``
и ссылкой «Older Runs» на предыдущую страницу.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import timedelta
from urllib.parse import urljoin

import httpx
from pydantic import ValidationError as PydanticValidationError

from flaketrack.exceptions import JobIndexError
from flaketrack.models.crawl import ProwJob

logger = logging.getLogger(__name__)

_ALL_BUILDS_RE = re.compile(r"var\s+allBuilds\s*=\s*(\[.*?\]);", re.DOTALL)
_OLDER_RUNS_RE = re.compile(r'<a[^>]+href="([^"]+)"[^>]*>\s*(?:&lt;|<)-\s*Older Runs', re.IGNORECASE)


def parse_job_history_page(html: str) -> tuple[list[ProwJob], str | None]:
    """Разобрать страницу истории: запуски и ссылка на более старую страницу.

    Raises:
        ValueError: На странице нет ``allBuilds`` или JSON не разбирается.
    """
    match = _ALL_BUILDS_RE.search(html)
    if match is None:
        raise ValueError("allBuilds not found on job history page")
    builds = json.loads(match.group(1)) or []
    jobs = [ProwJob.model_validate(item) for item in builds]

    older = _OLDER_RUNS_RE.search(html)
    return jobs, older.group(1).replace("&amp;", "&") if older else None


class ProwJobHistoryClient:
    """Реализует протокол :class:`~flaketrack.clients.base.JobIndexProvider`."""

    JOB_HISTORY_PATH = "/job-history/gs/{bucket}/logs/{job}"

    def __init__(
        self,
        index_url: str,
        bucket: str,
        *,
        timeout: float = 30.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._index_url = index_url.rstrip("/")
        self._bucket = bucket
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def list_jobs(
        self,
        job_name: str,
        *,
        max_pages: int,
        skip_statuses: frozenset[str],
        min_duration: timedelta,
    ) -> list[ProwJob]:
        url: str | None = self._index_url + self.JOB_HISTORY_PATH.format(
            bucket=self._bucket, job=job_name,
        )
        seen: set[str] = set()
        jobs: list[ProwJob] = []
        skipped = 0
        pages = 0

        while url and pages < max_pages:
            html = await self._get_page(url)
            pages += 1
            try:
                page_jobs, older = parse_job_history_page(html)
            except (ValueError, PydanticValidationError) as exc:
                raise JobIndexError(200, f"Не удалось разобрать страницу истории: {exc}", url) from exc

            for job in page_jobs:
                if job.id in seen:
                    continue
                seen.add(job.id)
                if self._should_skip(job, skip_statuses, min_duration):
                    skipped += 1
                    continue
                jobs.append(job)

            logger.debug("Job history %s: страница %d, %d запусков", job_name, pages, len(page_jobs))
            url = urljoin(url, older) if older else None

        logger.info(
            "Job history %s: %d запусков (%d пропущено) на %d страницах",
            job_name, len(jobs), skipped, pages,
        )
        return jobs

    @staticmethod
    def _should_skip(job: ProwJob, skip_statuses: frozenset[str], min_duration: timedelta) -> bool:
        if job.is_pending:
            return True
        if job.result.strip().upper() in skip_statuses:
            return True
        return job.duration_seconds < min_duration.total_seconds()

    async def _get_page(self, url: str) -> str:
        try:
            resp = await self._http.get(url)
        except httpx.RequestError as exc:
            raise JobIndexError(0, str(exc) or type(exc).__name__, url) from exc
        if resp.status_code >= 400:
            raise JobIndexError(resp.status_code, resp.text[:500], url)
        return resp.text

    # --- Жизненный цикл ---

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> ProwJobHistoryClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
