"""Преобразования ссылок на джобы и артефакты.

Ссылка просмотрщика (Spyglass) приходит в одной из двух форм:

- прямой путь в бакете: ``https://storage.googleapis.com/<bucket>/logs/<job>/<id>``;
- индирекция через просмотрщик: ``https://prow.k8s.io/view/gs/<bucket>/logs/<job>/<id>``
  (или относительный ``/view/gs/...``).

Обе приводятся к одному объекту ``.../artifacts/test_summary.json``.
"""

from __future__ import annotations

from urllib.parse import urlsplit

from flaketrack.exceptions import JobIndexError

SUMMARY_SUFFIX = "/artifacts/test_summary.json"
VIEW_PREFIX = "/view/gs/"

DEFAULT_INDEX_URL = "https://prow.k8s.io"
DEFAULT_STORAGE_URL = "https://storage.googleapis.com"


def viewer_link_to_summary_url(
    link: str,
    *,
    index_url: str = DEFAULT_INDEX_URL,
    storage_url: str = DEFAULT_STORAGE_URL,
) -> str:
    """URL ``test_summary.json`` для ссылки просмотрщика.

    Raises:
        JobIndexError: Пустая ссылка или неизвестная форма адреса.
    """
    link = (link or "").strip()
    if not link:
        raise JobIndexError(0, "missing viewer link", link)

    storage_url = storage_url.rstrip("/")
    if link.startswith("/"):
        link = index_url.rstrip("/") + link

    if link.startswith(storage_url + "/"):
        return link.rstrip("/") + SUMMARY_SUFFIX

    path = urlsplit(link).path
    if not path.startswith(VIEW_PREFIX):
        raise JobIndexError(0, f"unsupported viewer path: {path}", link)
    path = path[len(VIEW_PREFIX):].strip("/")
    if not path:
        raise JobIndexError(0, "empty viewer path", link)
    return f"{storage_url}/{path}{SUMMARY_SUFFIX}"


def summary_url_to_artifact_path(summary_url: str) -> str:
    """Путь к артефактам джоба внутри хранилища: ``<bucket>/logs/<job>/<id>``.

    Raises:
        ValueError: URL не указывает на ``test_summary.json``.
    """
    path = urlsplit(summary_url).path
    if not path.endswith(SUMMARY_SUFFIX):
        raise ValueError(f"unexpected summary url path: {path}")
    path = path[: -len(SUMMARY_SUFFIX)].lstrip("/")
    path = path.removeprefix("gs/")
    if not path:
        raise ValueError(f"unable to derive artifact path from {summary_url!r}")
    return path


def ensure_job_details(details: str, job_name: str, job_id: str) -> str:
    """Вписать идентификатор джоба в поле ``details`` ровно один раз.

    Служебные префиксы ``testgrid:`` и ``<job_name>:`` отрезаются; повторный
    вызов с тем же ``job_id`` возвращает строку без изменений.
    """
    details = details.strip()
    if details.lower().startswith("testgrid:"):
        details = details[len("testgrid:"):].strip()
    if job_name and details.startswith(job_name + ":"):
        details = details[len(job_name) + 1:].strip()

    if not details:
        return job_id
    if not job_id:
        return details
    if any(token.strip() == job_id for token in details.split(":")):
        return details
    return f"{details}:{job_id}"
