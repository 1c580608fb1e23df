"""Точка входа CLI flaketrack."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from flaketrack import __version__

if TYPE_CHECKING:
    from flaketrack.config import Settings
    from flaketrack.store.base import ResultStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flaketrack",
        description="Сводки прогонов go test -json и аналитика нестабильных тестов",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Уровень логирования (переопределяет FLAKETRACK_LOG_LEVEL)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"flaketrack {__version__}",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    report = sub.add_parser("report", help="Построить сводку по файлу событий test2json")
    report.add_argument("--in", dest="in_path", required=True, help="Файл с выводом go test -json")
    report.add_argument("--out-summary", default="", help="Куда записать test_summary.json (по умолчанию stdout)")
    report.add_argument("--name", default="", help="Имя окружения")
    report.add_argument("--details", default="", help="Коммит / идентификатор прогона")
    report.add_argument("--pr", default="", help="Номер pull request")
    report.add_argument("--repo", default="", help="Репозиторий")
    report.add_argument("--env-group", default="", help="Группа окружения для загрузки в БД")
    report.add_argument("--upload", action="store_true", help="Сразу записать прогон в хранилище")

    upload = sub.add_parser("upload", help="Записать готовый test_summary.json в хранилище")
    upload.add_argument("summary", help="Путь к test_summary.json")
    upload.add_argument("--test-time", default="", help="Время прогона (ISO-8601), по умолчанию — сейчас")
    upload.add_argument("--env-group", default="", help="Группа окружения")
    upload.add_argument("--artifact-path", default="", help="Путь к артефактам прогона")

    crawl = sub.add_parser("crawl", help="Загрузить историю джобов дашборда")
    crawl.add_argument("--dashboard", default="", help="id дашборда или имя джоба (по умолчанию первый)")
    crawl.add_argument("--max-pages", type=int, default=None, help="Страниц истории (переопределяет конфиг)")
    crawl.add_argument("--concurrency", type=int, default=None, help="Параллельных загрузок")

    sub.add_parser("migrate", help="Создать/мигрировать схему хранилища")
    sub.add_parser("refresh-views", help="Обновить материализованные представления")
    return parser


async def async_main(args: argparse.Namespace) -> int:
    """Собрать зависимости и выполнить команду. Возвращает код выхода."""
    # Отложенные импорты: --help не должен тянуть тяжёлые зависимости
    from flaketrack.config import Settings
    from flaketrack.exceptions import ConfigurationError, FlakeTrackError, ValidationError
    from flaketrack.logging_config import setup_logging

    try:
        settings = Settings()
    except Exception as exc:
        print(f"Ошибка конфигурации: {exc}", file=sys.stderr)
        return 2

    setup_logging(args.log_level or settings.log_level)

    commands = {
        "report": _cmd_report,
        "upload": _cmd_upload,
        "crawl": _cmd_crawl,
        "migrate": _cmd_migrate,
        "refresh-views": _cmd_refresh_views,
    }
    try:
        return await commands[args.command](args, settings)
    except ConfigurationError as exc:
        logger.error("Ошибка конфигурации: %s", exc)
        return 2
    except ValidationError as exc:
        logger.error("Невалидные данные: %s", exc)
        return 1
    except FlakeTrackError as exc:
        logger.error("Ошибка: %s", exc)
        return 1
    except OSError as exc:
        logger.error("Ошибка ввода-вывода: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Прервано пользователем")
        return 130


def _open_store(settings: Settings) -> ResultStore:
    from flaketrack.store.factory import create_store

    store = create_store(settings)
    store.initialize()
    return store


async def _cmd_report(args: argparse.Namespace, settings: Settings) -> int:
    from flaketrack.models.summary import ReportDetail
    from flaketrack.services.event_grouper import group_events, parse_events_file
    from flaketrack.services.summarizer import summarize

    detail = ReportDetail(name=args.name, details=args.details, pr=args.pr, repo_name=args.repo)
    groups = group_events(parse_events_file(args.in_path))
    report = summarize(detail, groups, version=__version__, build=settings.build)

    payload = report.short_summary_json()
    if args.out_summary:
        out = Path(args.out_summary)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(payload, encoding="utf-8")
        logger.info("Сводка записана в %s", out)
    else:
        print(payload)

    if args.upload:
        report.short_summary().validate_summary()
        env_run, test_rows = report.to_db_rows(env_group=args.env_group)
        store = _open_store(settings)
        store.set(env_run, test_rows)
        logger.info("Прогон %s/%s записан (%d тестов)", env_run.env_name, env_run.commit_id, len(test_rows))
    return 0


async def _cmd_upload(args: argparse.Namespace, settings: Settings) -> int:
    from datetime import datetime, timezone

    from pydantic import ValidationError as PydanticValidationError

    from flaketrack.exceptions import ValidationError
    from flaketrack.models.summary import Summary

    try:
        summary = Summary.from_json(Path(args.summary).read_bytes())
    except PydanticValidationError as exc:
        raise ValidationError(f"{args.summary}: не является сводкой прогона: {exc}") from exc
    if args.test_time:
        try:
            test_time = datetime.fromisoformat(args.test_time.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"--test-time: {exc}") from exc
        if test_time.tzinfo is None:
            test_time = test_time.replace(tzinfo=timezone.utc)
    else:
        test_time = datetime.now(timezone.utc)

    env_run, test_rows = summary.to_db_rows(
        test_time, env_group=args.env_group, artifact_path=args.artifact_path,
    )
    store = _open_store(settings)
    store.set(env_run, test_rows)
    logger.info("Прогон %s/%s записан (%d тестов)", env_run.env_name, env_run.commit_id, len(test_rows))
    return 0


async def _cmd_crawl(args: argparse.Namespace, settings: Settings) -> int:
    from flaketrack.clients.prow_client import ProwJobHistoryClient
    from flaketrack.clients.summary_client import SummaryClient
    from flaketrack.crawl_config import load_crawl_config
    from flaketrack.exceptions import ConfigurationError
    from flaketrack.services.crawl_service import CrawlIngestService

    config = load_crawl_config(settings.dashboards_config)
    if args.dashboard:
        dashboard = config.find_dashboard(args.dashboard)
        if dashboard is None:
            raise ConfigurationError(f"unknown dashboard {args.dashboard!r}")
    else:
        dashboard = config.dashboards[0]

    store = _open_store(settings)
    async with ProwJobHistoryClient(
        settings.job_index_url, settings.job_index_bucket, timeout=settings.request_timeout,
    ) as job_index, SummaryClient(timeout=settings.request_timeout) as summaries:
        service = CrawlIngestService(
            store,
            job_index,
            summaries,
            index_url=settings.job_index_url,
            storage_url=settings.storage_url,
            max_error_samples=settings.max_error_samples,
        )
        report = await service.load(
            dashboard,
            max_pages=args.max_pages,
            concurrency=args.concurrency or settings.crawl_concurrency,
        )

    print(json.dumps(report.model_dump(by_alias=True), indent=2, ensure_ascii=False))
    return 0


async def _cmd_migrate(args: argparse.Namespace, settings: Settings) -> int:  # noqa: ARG001
    _open_store(settings)
    logger.info("Схема хранилища актуальна")
    return 0


async def _cmd_refresh_views(args: argparse.Namespace, settings: Settings) -> int:  # noqa: ARG001
    from flaketrack.store.base import QueryStatus

    result = _open_store(settings).refresh_views()
    if result.status is QueryStatus.UNSUPPORTED:
        logger.error("Бэкенд %s не поддерживает материализованные представления", settings.db_backend)
        return 1
    refreshed = result.data["refreshed"] if result.data else []
    logger.info("Обновлено представлений: %d", len(refreshed))
    return 0


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    exit_code = asyncio.run(async_main(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
