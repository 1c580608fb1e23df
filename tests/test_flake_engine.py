"""Тесты расчёта flake rate: окна по датам, рост, бакеты, обзор окружений."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from flaketrack.analytics.flake_engine import (
    FLAKE_VIEW_PREFIX,
    bucket_env_durations,
    bucket_flake_series,
    bucket_start,
    build_env_charts,
    build_overview,
    build_test_charts,
    commits_from_json,
    compute_cutoffs,
    compute_env_overview,
    compute_flake_rates,
    flake_percentage,
    flake_view_name,
    resolve_env_group,
)
from flaketrack.exceptions import ValidationError
from flaketrack.models.analytics import CommitResult
from flaketrack.models.common import TimeBucket
from conftest import make_daily, make_daily_env

APRIL = [date(2024, 4, 1) + timedelta(days=i) for i in range(30)]


def _thirty_days():
    """30 дат с данными: свежее окно 17–30 апреля, предыдущее 2–16 апреля."""
    rows = []
    for day in APRIL:
        rows.append(make_daily("TestA", day, fails=1 if day.day >= 17 else 0, total=2))
        rows.append(make_daily("TestB", day, fails=0 if day.day >= 17 else 1, total=1))
    return rows


# ---------------------------------------------------------------------------
# Окна
# ---------------------------------------------------------------------------


def test_cutoffs_follow_distinct_data_dates() -> None:
    # Дубликаты дат не сдвигают границы
    cutoffs = compute_cutoffs(APRIL + APRIL[:5], window=15)

    assert cutoffs.recent == date(2024, 4, 16)
    assert cutoffs.prev == date(2024, 4, 1)
    assert cutoffs.in_recent(date(2024, 4, 17))
    assert not cutoffs.in_recent(date(2024, 4, 16))
    assert cutoffs.in_previous(date(2024, 4, 16))
    assert cutoffs.in_previous(date(2024, 4, 2))
    assert not cutoffs.in_previous(date(2024, 4, 1))


def test_cutoffs_without_enough_dates_are_unbounded() -> None:
    cutoffs = compute_cutoffs(APRIL[:20], window=15)

    assert cutoffs.recent == date(2024, 4, 6)
    assert cutoffs.prev is None
    assert cutoffs.in_previous(date(2024, 4, 1))

    short = compute_cutoffs(APRIL[:3], window=15)
    assert short.recent is None
    assert short.in_recent(date(2000, 1, 1))
    assert not short.in_previous(date(2024, 4, 1))


def test_cutoffs_reject_non_positive_window() -> None:
    with pytest.raises(ValidationError):
        compute_cutoffs(APRIL, window=0)


def test_flake_percentage_zero_denominator_is_zero() -> None:
    assert flake_percentage(0, 0) == 0.0
    assert flake_percentage(1, 3) == 33.33
    assert flake_percentage(3, 3) == 100.0


# ---------------------------------------------------------------------------
# Flake rate
# ---------------------------------------------------------------------------


def test_compute_flake_rates_hand_computed() -> None:
    """TestA: 14 падений из 28 в свежем окне (50%), 0% в предыдущем.
    TestB: 0% сейчас, 15 из 15 в предыдущем; падение 1 апреля вне окон."""
    rows = {r.test_name: r for r in compute_flake_rates(_thirty_days(), window=15)}

    assert rows["TestA"].recent_flake_percentage == 50.0
    assert rows["TestA"].growth_rate == 50.0
    assert rows["TestB"].recent_flake_percentage == 0.0
    assert rows["TestB"].growth_rate == -100.0


def test_compute_flake_rates_sorted_by_rate_then_name() -> None:
    day = date(2024, 5, 1)
    daily = [
        make_daily("TestZeta", day, fails=1, total=2),
        make_daily("TestAlpha", day, fails=1, total=2),
        make_daily("TestStable", day, fails=0, total=5),
        make_daily("TestBroken", day, fails=4, total=4),
    ]

    rates = compute_flake_rates(daily)

    assert [r.test_name for r in rates] == ["TestBroken", "TestAlpha", "TestZeta", "TestStable"]


def test_compute_flake_rates_single_window_growth_equals_rate() -> None:
    """Без предыдущего окна рост равен текущему проценту."""
    daily = [make_daily("TestA", APRIL[i], fails=1, total=4) for i in range(3)]

    (row,) = compute_flake_rates(daily)

    assert row.recent_flake_percentage == 25.0
    assert row.growth_rate == 25.0


def test_compute_flake_rates_empty_input() -> None:
    assert compute_flake_rates([]) == []


# ---------------------------------------------------------------------------
# Бакеты
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("bucket", "expected"),
    [
        (TimeBucket.DAY, date(2024, 5, 1)),
        (TimeBucket.WEEK, date(2024, 4, 29)),
        (TimeBucket.MONTH, date(2024, 5, 1)),
    ],
)
def test_bucket_start(bucket, expected) -> None:
    # 1 мая 2024 года была средой
    assert bucket_start(date(2024, 5, 1), bucket) == expected


def test_bucket_flake_series_merges_days_of_one_week() -> None:
    commit = CommitResult(commit_id="c1", result="fail", duration=3.0)
    daily = [
        make_daily("TestA", date(2024, 4, 29), fails=1, total=2, duration_sum=6.0, commits=[commit]),
        make_daily("TestA", date(2024, 5, 1), fails=1, total=2, duration_sum=2.0),
        make_daily("TestA", date(2024, 5, 6), fails=0, total=1, duration_sum=1.0),
    ]

    weekly = bucket_flake_series(daily, TimeBucket.WEEK)

    assert [(b.start_of_bucket, b.flake_percentage, b.avg_duration) for b in weekly] == [
        (date(2024, 4, 29), 50.0, 2.0),
        (date(2024, 5, 6), 0.0, 1.0),
    ]
    assert weekly[0].commits == [commit]


def test_bucket_env_durations_averages_per_run() -> None:
    daily_env = [
        make_daily_env(date(2024, 5, 1), runs=2, fails=3, duration=100.0),
        make_daily_env(date(2024, 5, 2), runs=1, fails=0, duration=20.0),
    ]

    (month,) = bucket_env_durations(daily_env, TimeBucket.MONTH)

    assert month.start_of_bucket == date(2024, 5, 1)
    assert month.avg_test_count == 10.0
    assert month.avg_duration == 40.0
    assert month.avg_fail_count == 1.0


# ---------------------------------------------------------------------------
# Обзор окружений
# ---------------------------------------------------------------------------


def test_env_overview_averages_per_day_and_grows_by_window() -> None:
    daily_env = []
    for day in APRIL:
        recent = day.day >= 17
        daily_env.append(make_daily_env(day, runs=1, fails=4 if recent else 2, duration=60.0 if recent else 30.0))
    daily_env.append(make_daily_env(date(2024, 4, 30), runs=2, fails=1, duration=10.0, env_name="KVM_Linux"))

    rows = compute_env_overview(daily_env, window=15)

    assert [(r.env_name, r.avg_fail_count) for r in rows] == [("Docker_Linux", 2.93), ("KVM_Linux", 0.5)]
    docker = rows[0]
    # Средние по всем дням: (16 * 2 + 14 * 4) / 30 и (16 * 30 + 14 * 60) / 30
    assert docker.avg_duration == 44.0
    # Рост: 4 падения в день в свежем окне против 2 в предыдущем
    assert docker.fail_count_growth == 2.0
    assert docker.duration_growth == 30.0
    # У KVM одна дата: предыдущего окна нет
    assert rows[1].fail_count_growth == 0.5


def test_env_overview_weights_days_equally() -> None:
    """День с двумя прогонами весит столько же, сколько день с одним."""
    rows = compute_env_overview([
        make_daily_env(date(2024, 5, 1), runs=2, fails=4, duration=20.0),
        make_daily_env(date(2024, 5, 2), runs=1, fails=0, duration=30.0),
    ])

    (row,) = rows
    assert row.avg_fail_count == 1.0
    assert row.avg_duration == 20.0


def test_env_overview_keeps_groups_apart() -> None:
    day = date(2024, 5, 1)
    rows = compute_env_overview([
        make_daily_env(day, runs=1, fails=1, duration=1.0, env_group="Periodic"),
        make_daily_env(day, runs=1, fails=3, duration=1.0, env_group="Presubmit"),
    ])

    assert [(r.env_group, r.avg_fail_count) for r in rows] == [("Presubmit", 3.0), ("Periodic", 1.0)]


def test_build_overview_summary_average() -> None:
    day = date(2024, 5, 1)
    overview = build_overview([
        make_daily_env(day, runs=1, fails=1, duration=1.0),
        make_daily_env(day, runs=1, fails=2, duration=1.0, env_name="KVM_Linux"),
    ])

    assert overview["summaryAvgFail"] == 1.5
    assert overview["summaryTable"][0]["envName"] == "KVM_Linux"
    assert set(overview["summaryTable"][0]) == {
        "envName", "envGroup", "avgFailCount", "avgDuration", "failCountGrowth", "durationGrowth",
    }


def test_build_overview_empty() -> None:
    assert build_overview([]) == {"summaryAvgFail": 0.0, "summaryTable": []}


# ---------------------------------------------------------------------------
# Ответы графиков
# ---------------------------------------------------------------------------


def test_build_env_charts_limits_series_to_top_tests() -> None:
    day = date(2024, 5, 1)
    daily = [
        make_daily("TestA", day, fails=2, total=2),
        make_daily("TestB", day, fails=1, total=2),
        make_daily("TestC", day, fails=0, total=2),
    ]

    charts = build_env_charts(daily, [make_daily_env(day, runs=1, fails=1, duration=5.0)], tests_in_top=2)

    assert [r["testName"] for r in charts["recentFlakePercentTable"]] == ["TestA", "TestB", "TestC"]
    assert {r["testName"] for r in charts["flakeRateByDay"]} == {"TestA", "TestB"}
    assert {r["testName"] for r in charts["flakeRateByMonth"]} == {"TestA", "TestB"}
    assert charts["countsAndDurations"][0]["startOfDate"] == "2024-05-01"


def test_build_test_charts_has_three_granularities() -> None:
    charts = build_test_charts([make_daily("TestA", date(2024, 5, 1), fails=1, total=4)])

    assert set(charts) == {"flakeByDay", "flakeByWeek", "flakeByMonth"}
    assert charts["flakeByWeek"][0]["startOfDate"] == "2024-04-29"
    assert charts["flakeByDay"][0]["flakePercentage"] == 25.0


# ---------------------------------------------------------------------------
# Группы и представления
# ---------------------------------------------------------------------------


def test_resolve_env_group_explicit_must_exist() -> None:
    assert resolve_env_group("Docker_Linux", "Periodic", ["Periodic", "Presubmit"]) == "Periodic"

    with pytest.raises(ValidationError, match="unknown env_group"):
        resolve_env_group("Docker_Linux", "Nightly", ["Periodic"])


def test_resolve_env_group_infers_single_group() -> None:
    assert resolve_env_group("Docker_Linux", None, ["Periodic", "Periodic"]) == "Periodic"
    assert resolve_env_group("Docker_Linux", "  ", []) == "Legacy"


def test_resolve_env_group_ambiguous_without_request() -> None:
    with pytest.raises(ValidationError, match="ambiguous"):
        resolve_env_group("Docker_Linux", "", ["Periodic", "Presubmit"])


def test_flake_view_name_is_stable_and_safe() -> None:
    name = flake_view_name("Docker Linux/arm64", "Periodic")

    assert name == flake_view_name("Docker Linux/arm64", "Periodic")
    assert name != flake_view_name("Docker Linux/arm64", "Presubmit")
    assert name.startswith(FLAKE_VIEW_PREFIX)
    assert name.replace("_", "").isalnum()


def test_commits_from_json_accepts_aliases_and_none() -> None:
    commits = commits_from_json([{"commitId": "c1", "result": "fail", "duration": 2.5, "artifactPath": "b/1"}])

    assert commits == [CommitResult(commit_id="c1", result="fail", duration=2.5, artifact_path="b/1")]
    assert commits_from_json(None) == []
