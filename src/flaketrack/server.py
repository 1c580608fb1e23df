"""HTTP-сервер flaketrack — REST API для графиков flake rate и загрузки истории."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from flaketrack import __version__
from flaketrack.exceptions import (
    ConfigurationError,
    JobIndexError,
    StoreError,
    ValidationError,
)
from flaketrack.store.base import QueryResult, QueryStatus

logger = logging.getLogger(__name__)


# --- Модели ответов ---


class HealthResponse(BaseModel):
    """JSON-ответ GET /health."""

    status: str
    version: str


class ErrorResponse(BaseModel):
    """Стандартный ответ при ошибке."""

    detail: str


_READ_ERRORS: dict[int | str, dict[str, Any]] = {
    404: {"model": ErrorResponse, "description": "Нет данных"},
    422: {"model": ErrorResponse, "description": "Неоднозначное окружение или неизвестная группа"},
    500: {"model": ErrorResponse, "description": "Ошибка хранилища"},
    501: {"model": ErrorResponse, "description": "Бэкенд не поддерживает запрос"},
}


# --- Состояние приложения ---


class _AppState:
    """Долгоживущие объекты, разделяемые между запросами."""

    def __init__(self) -> None:
        self.settings: Any = None
        self.store: Any = None
        self.crawl_config: Any = None


_state = _AppState()


# --- Lifespan ---


@asynccontextmanager
async def _lifespan(app: FastAPI):  # noqa: ARG001
    """Инициализация при старте: настройки, хранилище, миграция схемы."""
    from flaketrack.config import Settings
    from flaketrack.crawl_config import load_crawl_config
    from flaketrack.logging_config import setup_logging
    from flaketrack.store.factory import create_store

    settings = Settings()
    setup_logging(settings.log_level)

    logger.info("flaketrack server v%s запускается", __version__)

    store = create_store(settings)
    # Без успешной миграции сервер не стартует
    await asyncio.to_thread(store.initialize)

    _state.settings = settings
    _state.store = store
    _state.crawl_config = load_crawl_config(settings.dashboards_config)

    yield

    logger.info("flaketrack server останавливается")


# --- FastAPI ---


app = FastAPI(
    title="flaketrack",
    description="Аналитика нестабильных тестов — REST API",
    version=__version__,
    lifespan=_lifespan,
)


async def _read(method: Any, *args: Any) -> dict[str, Any]:
    """Выполнить чтение из хранилища и перевести трёхзначный результат в HTTP."""
    try:
        result: QueryResult = await asyncio.to_thread(method, *args)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc))

    if result.status is QueryStatus.UNSUPPORTED:
        raise HTTPException(status_code=501, detail="not supported by this backend")
    if result.status is QueryStatus.EMPTY or result.data is None:
        raise HTTPException(status_code=404, detail="data not found")
    return result.data


# --- Маршруты ---


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Проверка работоспособности сервера."""
    return HealthResponse(status="ok", version=__version__)


@app.get("/version")
async def version() -> dict[str, str]:
    return {"version": __version__, "build": getattr(_state.settings, "build", "") or ""}


@app.get("/api/v1/env", responses=_READ_ERRORS)
async def environment_tests(days: int = Query(1, ge=1)) -> dict[str, Any]:
    """Последние прогоны окружений и результаты тестов."""
    return await _read(_state.store.get_environment_tests_and_test_cases, days)


@app.get("/api/v1/test", responses=_READ_ERRORS)
async def test_charts(
    env: str = Query(..., min_length=1),
    test: str = Query(..., min_length=1),
    env_group: str = "",
) -> dict[str, Any]:
    """Flake rate одного теста по дням, неделям и месяцам."""
    return await _read(_state.store.get_test_charts, env, env_group, test)


@app.get("/api/v1/env-charts", responses=_READ_ERRORS)
async def env_charts(
    env: str = Query(..., min_length=1),
    env_group: str = "",
    tests_in_top: int | None = Query(None, ge=1),
) -> dict[str, Any]:
    """Графики окружения по самым нестабильным тестам."""
    top = tests_in_top or _state.settings.tests_in_top
    return await _read(_state.store.get_env_charts, env, env_group, top)


@app.get("/api/v1/overview", responses=_READ_ERRORS)
async def overview(date_range: int | None = Query(None, ge=1)) -> dict[str, Any]:
    """Сводная таблица по всем окружениям."""
    window = date_range or _state.settings.flake_window_days
    return await _read(_state.store.get_overview, window)


@app.post(
    "/api/v1/crawl",
    responses={
        400: {"model": ErrorResponse, "description": "Неизвестный дашборд или неверная конфигурация"},
        502: {"model": ErrorResponse, "description": "Индекс джобов недоступен"},
    },
)
async def crawl(
    dashboard: str = "",
    max_pages: int | None = Query(None, ge=1),
    concurrency: int | None = Query(None, ge=1),
) -> dict[str, Any]:
    """Загрузить историю джобов дашборда в хранилище.

    Ошибки отдельных запусков отражаются в счётчиках ответа, а не в HTTP-статусе.
    """
    from flaketrack.clients.prow_client import ProwJobHistoryClient
    from flaketrack.clients.summary_client import SummaryClient
    from flaketrack.services.crawl_service import CrawlIngestService

    settings = _state.settings
    config = _state.crawl_config
    if not config.dashboards:
        raise HTTPException(status_code=400, detail="no dashboards configured")
    selected = config.find_dashboard(dashboard) if dashboard else config.dashboards[0]
    if selected is None:
        raise HTTPException(status_code=400, detail=f"unknown dashboard {dashboard!r}")

    try:
        async with ProwJobHistoryClient(
            settings.job_index_url, settings.job_index_bucket, timeout=settings.request_timeout,
        ) as job_index, SummaryClient(timeout=settings.request_timeout) as summaries:
            service = CrawlIngestService(
                _state.store,
                job_index,
                summaries,
                index_url=settings.job_index_url,
                storage_url=settings.storage_url,
                max_error_samples=settings.max_error_samples,
            )
            report = await service.load(
                selected,
                max_pages=max_pages,
                concurrency=concurrency or settings.crawl_concurrency,
            )
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except JobIndexError as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    return report.model_dump(by_alias=True)


def main() -> None:
    """Точка входа консольного скрипта flaketrack-server."""
    import sys

    from flaketrack.config import Settings

    try:
        settings = Settings()
    except Exception as exc:
        print(f"Ошибка конфигурации: {exc}", file=sys.stderr)
        sys.exit(2)

    import uvicorn

    uvicorn.run(
        "flaketrack.server:app",
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
