"""Тесты сводки прогона: разбиение на бакеты, порядок, общая длительность."""

from __future__ import annotations

import json

import pytest

from flaketrack.exceptions import ValidationError
from flaketrack.services.event_grouper import group_events
from flaketrack.services.summarizer import summarize
from conftest import BASE_TIME, make_detail, make_event


def _run_events():
    """Прогон с параллельными тестами и скрытым родителем."""
    return [
        make_event("TestParent", "run", offset=0),
        make_event("TestParent/one", "run", offset=1),
        make_event("TestParent/two", "run", offset=1),
        make_event("TestParent/one", "pass", offset=4, elapsed=3),
        make_event("TestParent/two", "fail", offset=6, elapsed=5),
        make_event("TestParent", "fail", offset=6, elapsed=6),
        make_event("TestSkip", "run", offset=2),
        make_event("TestSkip", "skip", offset=2, elapsed=0),
        make_event("TestSlow", "run", offset=1),
        make_event("TestSlow", "pass", offset=10, elapsed=9),
    ]


def _report():
    return summarize(make_detail(), group_events(_run_events()), version="v0.3.0", build="b1", now=BASE_TIME)


def test_summarize_excludes_hidden_groups_from_buckets() -> None:
    report = _report()

    assert [g.test_name for g in report.passed] == ["TestParent/one", "TestSlow"]
    assert [g.test_name for g in report.failed] == ["TestParent/two"]
    assert [g.test_name for g in report.skipped] == ["TestSkip"]
    assert report.total_tests == 4


def test_summarize_assigns_discovery_order() -> None:
    """Порядок — позиция в порядке обнаружения; скрытый родитель занимает №1."""
    report = _report()
    orders = {g.test_name: g.test_order for g in report.passed + report.failed + report.skipped}

    assert orders == {"TestParent/one": 2, "TestParent/two": 3, "TestSkip": 4, "TestSlow": 5}


def test_total_duration_is_wall_clock_not_sum() -> None:
    """Длительность = последний конец − первый старт среди видимых групп."""
    report = _report()

    # Видимые группы: старт от +1с, конец до +10с
    assert report.total_duration == 9.0
    assert report.total_duration < sum(
        g.duration for g in report.passed + report.failed + report.skipped
    )


def test_summarize_empty_run() -> None:
    report = summarize(make_detail(), [], version="v0.3.0", now=BASE_TIME)

    assert report.total_tests == 0
    assert report.total_duration == 0.0


def test_short_summary_excludes_skip_durations() -> None:
    summary = _report().short_summary()

    assert summary.number_of_tests == 4
    assert summary.number_of_skip == 1
    assert "TestSkip" not in summary.durations
    assert summary.durations["TestSlow"] == 9
    assert summary.tool_version == "v0.3.0"
    assert summary.tool_build == "b1"
    assert summary.detail.name == "Docker_Linux"
    summary.validate_summary()


def test_short_summary_json_uses_pascal_case_keys() -> None:
    payload = json.loads(_report().short_summary_json())

    assert payload["NumberOfFail"] == 1
    assert payload["FailedTests"] == ["TestParent/two"]
    assert payload["Detail"]["Name"] == "Docker_Linux"
    assert payload["Detail"]["Details"] == "abc123"


def test_report_to_db_rows_keeps_test_order() -> None:
    env_run, rows = _report().to_db_rows(env_group="Periodic", artifact_path="bucket/logs/1")

    assert env_run.env_group == "Periodic"
    assert env_run.artifact_path == "bucket/logs/1"
    assert env_run.number_of_fail == 1
    assert env_run.number_of_pass == 2
    assert {r.test_name: r.test_order for r in rows}["TestSlow"] == 5
    assert all(r.env_group == "Periodic" for r in rows)


def test_short_summary_without_detail_is_invalid() -> None:
    report = summarize(
        make_detail(Name="", Details=""), group_events(_run_events()), version="v0.3.0", now=BASE_TIME,
    )

    with pytest.raises(ValidationError, match="missing detail name"):
        report.short_summary().validate_summary()
