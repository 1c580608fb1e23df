"""HTTP-клиент хранилища артефактов: скачивание ``test_summary.json``."""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError as PydanticValidationError

from flaketrack.exceptions import JobIndexError, SummaryNotFoundError
from flaketrack.models.summary import Summary

logger = logging.getLogger(__name__)


class SummaryClient:
    """Скачивает сводки прогонов с фиксированным таймаутом.

    Реализует протокол :class:`~flaketrack.clients.base.SummaryProvider`.
    404 означает «сводки нет» и отличается от прочих ошибок.
    """

    def __init__(
        self,
        *,
        timeout: float = 20.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def fetch_summary(self, url: str) -> Summary:
        logger.debug("GET summary %s", url)
        try:
            resp = await self._http.get(url)
        except httpx.TimeoutException as exc:
            raise JobIndexError(0, f"timeout: {exc}", url) from exc
        except httpx.RequestError as exc:
            raise JobIndexError(0, str(exc) or type(exc).__name__, url) from exc

        if resp.status_code == 404:
            raise SummaryNotFoundError(url)
        if not resp.is_success:
            raise JobIndexError(resp.status_code, "unexpected status", url)

        try:
            return Summary.from_json(resp.content)
        except PydanticValidationError as exc:
            raise JobIndexError(
                resp.status_code,
                f"Ответ не является валидной сводкой: {exc.error_count()} ошибок",
                url,
            ) from exc

    # --- Жизненный цикл ---

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> SummaryClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
