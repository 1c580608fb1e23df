"""Общие фабрики и фикстуры для тестов flaketrack."""

from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone

import pytest

from flaketrack.models.analytics import DailyEnvCounts, DailyTestCounts
from flaketrack.models.crawl import ProwJob
from flaketrack.models.db import EnvironmentRun, TestCaseRow
from flaketrack.models.events import TestEvent
from flaketrack.models.summary import ReportDetail, Summary
from flaketrack.store.sqlite_store import SQLiteStore

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_event(test: str, action: str, *, offset: float = 0.0, elapsed: float = 0.0, **overrides) -> TestEvent:
    """Фабрика TestEvent: время задаётся смещением в секундах от BASE_TIME."""
    defaults: dict = {
        "Time": BASE_TIME + timedelta(seconds=offset),
        "Action": action,
        "Package": "example.com/pkg",
        "Test": test,
        "Elapsed": elapsed,
        "Output": "",
    }
    defaults.update(overrides)
    return TestEvent.model_validate(defaults)


def event_line(test: str, action: str, *, offset: float = 0.0, elapsed: float = 0.0) -> str:
    """Одна строка вывода ``go test -json``."""
    return json.dumps(
        {
            "Time": (BASE_TIME + timedelta(seconds=offset)).isoformat(),
            "Action": action,
            "Package": "example.com/pkg",
            "Test": test,
            "Elapsed": elapsed,
        }
    )


def make_detail(**overrides) -> ReportDetail:
    defaults: dict = {
        "Name": "Docker_Linux",
        "Details": "abc123",
        "PR": "42",
        "RepoName": "github.com/example/repo",
    }
    defaults.update(overrides)
    return ReportDetail.model_validate(defaults)


def make_summary(**overrides) -> Summary:
    """Фабрика согласованной Summary: 2 pass, 1 fail, 1 skip."""
    defaults: dict = {
        "NumberOfTests": 4,
        "NumberOfFail": 1,
        "NumberOfPass": 2,
        "NumberOfSkip": 1,
        "FailedTests": ["TestB"],
        "PassedTests": ["TestA", "TestC"],
        "SkippedTests": ["TestD"],
        "Durations": {"TestA": 1.5, "TestB": 2.0, "TestC": 0.5},
        "TotalDuration": 4.0,
        "GopoghVersion": "v0.3.0",
        "GopoghBuild": "deadbeef",
        "Detail": make_detail().model_dump(by_alias=True),
    }
    defaults.update(overrides)
    return Summary.model_validate(defaults)


def make_env_run(**overrides) -> EnvironmentRun:
    defaults: dict = {
        "commit_id": "abc123",
        "env_name": "Docker_Linux",
        "env_group": "Legacy",
        "ingested_at": BASE_TIME,
        "test_time": BASE_TIME,
        "number_of_fail": 1,
        "number_of_pass": 1,
        "number_of_skip": 0,
        "total_duration": 10.0,
        "tool_version": "v0.3.0",
        "artifact_path": "",
    }
    defaults.update(overrides)
    return EnvironmentRun.model_validate(defaults)


def make_test_row(**overrides) -> TestCaseRow:
    defaults: dict = {
        "pr": "42",
        "commit_id": "abc123",
        "env_name": "Docker_Linux",
        "env_group": "Legacy",
        "test_name": "TestA",
        "result": "pass",
        "test_time": BASE_TIME,
        "duration": 1.0,
        "test_order": 1,
    }
    defaults.update(overrides)
    return TestCaseRow.model_validate(defaults)


def make_prow_job(job_id: str = "1001", **overrides) -> ProwJob:
    defaults: dict = {
        "ID": job_id,
        "SpyglassLink": f"/view/gs/kubernetes-jenkins/logs/ci-minikube-integration/{job_id}",
        "Started": "2024-05-01T12:00:00Z",
        "Duration": 3600 * 10**9,
        "Result": "SUCCESS",
    }
    defaults.update(overrides)
    return ProwJob.model_validate(defaults)


def make_daily(test_name: str, day: date, fails: int, total: int, **overrides) -> DailyTestCounts:
    defaults: dict = {
        "test_name": test_name,
        "day": day,
        "fail_count": fails,
        "total_count": total,
        "duration_sum": float(total),
    }
    defaults.update(overrides)
    return DailyTestCounts.model_validate(defaults)


def make_daily_env(day: date, runs: int, fails: int, duration: float, **overrides) -> DailyEnvCounts:
    defaults: dict = {
        "env_name": "Docker_Linux",
        "env_group": "Legacy",
        "day": day,
        "run_count": runs,
        "test_count_sum": runs * 10,
        "fail_count_sum": fails,
        "duration_sum": duration,
    }
    defaults.update(overrides)
    return DailyEnvCounts.model_validate(defaults)


@pytest.fixture
def sqlite_store(tmp_path) -> SQLiteStore:
    """Инициализированное SQLite-хранилище во временной директории."""
    store = SQLiteStore(tmp_path / "flaketrack.db")
    store.initialize()
    return store
