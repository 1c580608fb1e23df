"""Тесты HTTP-клиента сводок: 404, прочие статусы, таймауты, невалидный JSON."""

from __future__ import annotations

import httpx
import pytest

from flaketrack.clients.base import SummaryProvider
from flaketrack.clients.summary_client import SummaryClient
from flaketrack.exceptions import JobIndexError, SummaryNotFoundError
from conftest import BASE_TIME, make_summary

URL = "https://storage.test/bucket/logs/job/1/artifacts/test_summary.json"


def _client(handler) -> SummaryClient:
    """SummaryClient поверх httpx.MockTransport."""
    return SummaryClient(http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_summary_client_implements_protocol() -> None:
    assert isinstance(SummaryClient(), SummaryProvider)


@pytest.mark.asyncio
async def test_fetch_summary_success() -> None:
    body = make_summary().to_json()

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == URL
        return httpx.Response(200, text=body)

    async with _client(handler) as client:
        summary = await client.fetch_summary(URL)

    assert summary.detail.name == "Docker_Linux"
    assert summary.failed_tests == ["TestB"]


@pytest.mark.asyncio
async def test_fetch_summary_keeps_producer_version() -> None:
    """Документ в формате производителя: версия попадает в строку окружения."""
    body = (
        '{"NumberOfTests": 1, "NumberOfFail": 0, "NumberOfPass": 1, "NumberOfSkip": 0,'
        ' "FailedTests": null, "PassedTests": ["TestA"], "SkippedTests": null,'
        ' "Durations": {"TestA": 1.2}, "TotalDuration": 1.2,'
        ' "GopoghVersion": "v0.29.0", "GopoghBuild": "4b2c1f0",'
        ' "Detail": {"Name": "Docker_Linux", "Details": "abc123", "PR": "", "RepoName": ""}}'
    )

    async with _client(lambda request: httpx.Response(200, text=body)) as client:
        summary = await client.fetch_summary(URL)

    env_run, _ = summary.to_db_rows(BASE_TIME)
    assert env_run.tool_version == "v0.29.0"
    assert summary.tool_build == "4b2c1f0"


@pytest.mark.asyncio
async def test_fetch_summary_accepts_any_2xx() -> None:
    body = make_summary().to_json()

    async with _client(lambda request: httpx.Response(203, text=body)) as client:
        summary = await client.fetch_summary(URL)

    assert summary.detail.name == "Docker_Linux"


@pytest.mark.asyncio
async def test_fetch_summary_404_is_not_found() -> None:
    client = _client(lambda request: httpx.Response(404, text="NoSuchKey"))

    with pytest.raises(SummaryNotFoundError) as exc_info:
        await client.fetch_summary(URL)

    assert exc_info.value.status_code == 404
    assert exc_info.value.url == URL


@pytest.mark.asyncio
async def test_fetch_summary_other_status_is_index_error() -> None:
    client = _client(lambda request: httpx.Response(503, text="busy"))

    with pytest.raises(JobIndexError) as exc_info:
        await client.fetch_summary(URL)

    assert not isinstance(exc_info.value, SummaryNotFoundError)
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_fetch_summary_timeout_is_index_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(JobIndexError, match="timeout") as exc_info:
        await _client(handler).fetch_summary(URL)

    assert exc_info.value.status_code == 0


@pytest.mark.asyncio
async def test_fetch_summary_connection_error_is_index_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(JobIndexError, match="connection refused"):
        await _client(handler).fetch_summary(URL)


@pytest.mark.asyncio
async def test_fetch_summary_invalid_payload() -> None:
    client = _client(lambda request: httpx.Response(200, text='{"NumberOfTests": "many"}'))

    with pytest.raises(JobIndexError, match="валидной сводкой"):
        await client.fetch_summary(URL)
