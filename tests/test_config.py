"""Тесты загрузки конфигурации Settings из переменных окружения."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from flaketrack.config import Settings


def test_settings_loads_from_env_vars(monkeypatch, tmp_path) -> None:
    """Settings корректно читает FLAKETRACK_* переменные окружения."""
    monkeypatch.chdir(tmp_path)  # изоляция от .env в корне проекта
    monkeypatch.setenv("FLAKETRACK_DB_BACKEND", "postgres")
    monkeypatch.setenv("FLAKETRACK_DB_DSN", "user=ci dbname=flakes")
    monkeypatch.setenv("FLAKETRACK_CRAWL_CONCURRENCY", "12")
    monkeypatch.setenv("FLAKETRACK_FLAKE_WINDOW_DAYS", "7")

    settings = Settings()

    assert settings.db_backend == "postgres"
    assert settings.db_dsn == "user=ci dbname=flakes"
    assert settings.crawl_concurrency == 12
    assert settings.flake_window_days == 7


def test_settings_defaults_are_applied(monkeypatch, tmp_path) -> None:
    """Без переменных окружения все поля имеют дефолты."""
    monkeypatch.chdir(tmp_path)

    settings = Settings()

    assert settings.db_backend == "sqlite"
    assert settings.db_path == "out/flaketrack.db"
    assert settings.request_timeout == 20
    assert settings.crawl_concurrency == 6
    assert settings.max_error_samples == 10
    assert settings.flake_window_days == 15
    assert settings.tests_in_top == 10
    assert settings.job_index_url == "https://prow.k8s.io"
    assert settings.server_port == 8080
    assert settings.log_level == "INFO"


def test_settings_reads_dotenv_file(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("FLAKETRACK_DB_PATH=/var/lib/flakes.db\n", encoding="utf-8")

    assert Settings().db_path == "/var/lib/flakes.db"


def test_settings_rejects_invalid_values(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FLAKETRACK_CRAWL_CONCURRENCY", "0")

    with pytest.raises(PydanticValidationError):
        Settings()
