"""Тесты преобразования ссылок просмотрщика в URL сводки и путь артефактов."""

from __future__ import annotations

import pytest

from flaketrack.exceptions import JobIndexError
from flaketrack.utils.job_links import (
    ensure_job_details,
    summary_url_to_artifact_path,
    viewer_link_to_summary_url,
)

SUMMARY = "https://storage.googleapis.com/kubernetes-jenkins/logs/ci-kvm/1001/artifacts/test_summary.json"


@pytest.mark.parametrize(
    "link",
    [
        "/view/gs/kubernetes-jenkins/logs/ci-kvm/1001",
        "https://prow.k8s.io/view/gs/kubernetes-jenkins/logs/ci-kvm/1001",
        "https://prow.k8s.io/view/gs/kubernetes-jenkins/logs/ci-kvm/1001/",
        "https://storage.googleapis.com/kubernetes-jenkins/logs/ci-kvm/1001",
    ],
)
def test_viewer_link_forms_resolve_to_same_summary(link) -> None:
    assert viewer_link_to_summary_url(link) == SUMMARY


def test_viewer_link_uses_configured_hosts() -> None:
    url = viewer_link_to_summary_url(
        "/view/gs/bucket/logs/job/7",
        index_url="http://index.local/",
        storage_url="http://storage.local/",
    )

    assert url == "http://storage.local/bucket/logs/job/7/artifacts/test_summary.json"


@pytest.mark.parametrize("link", ["", "   ", "https://prow.k8s.io/other/path", "/view/gs/"])
def test_viewer_link_rejects_unknown_forms(link) -> None:
    with pytest.raises(JobIndexError):
        viewer_link_to_summary_url(link)


def test_summary_url_to_artifact_path() -> None:
    assert summary_url_to_artifact_path(SUMMARY) == "kubernetes-jenkins/logs/ci-kvm/1001"
    assert (
        summary_url_to_artifact_path("https://gcsweb.local/gs/bucket/logs/j/1/artifacts/test_summary.json")
        == "bucket/logs/j/1"
    )


def test_summary_url_to_artifact_path_rejects_other_objects() -> None:
    with pytest.raises(ValueError):
        summary_url_to_artifact_path("https://storage.googleapis.com/bucket/logs/j/1/build-log.txt")
    with pytest.raises(ValueError):
        summary_url_to_artifact_path("https://storage.googleapis.com/artifacts/test_summary.json")


@pytest.mark.parametrize(
    ("details", "expected"),
    [
        ("", "1001"),
        ("abc123", "abc123:1001"),
        ("abc123:1001", "abc123:1001"),
        ("testgrid: abc123", "abc123:1001"),
        ("ci-kvm:abc123", "abc123:1001"),
    ],
)
def test_ensure_job_details(details, expected) -> None:
    assert ensure_job_details(details, "ci-kvm", "1001") == expected


def test_ensure_job_details_is_idempotent() -> None:
    once = ensure_job_details("abc123", "ci-kvm", "1001")

    assert ensure_job_details(once, "ci-kvm", "1001") == once
    assert ensure_job_details("abc123", "ci-kvm", "") == "abc123"
