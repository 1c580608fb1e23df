"""Custom exception hierarchy for the flaketrack package."""


class FlakeTrackError(Exception):
    """Base exception for all flaketrack errors."""


class ConfigurationError(FlakeTrackError):
    """Missing or invalid configuration."""


class ValidationError(FlakeTrackError):
    """Structurally inconsistent summary or ambiguous environment/group."""


class StoreError(FlakeTrackError):
    """Persistence failure; the triggering write was rolled back."""


class MigrationError(StoreError):
    """Schema migration failed; the store must not be used."""


class JobIndexError(FlakeTrackError):
    """HTTP or transport error while talking to the job index or artifact storage."""

    def __init__(self, status_code: int, message: str, url: str) -> None:
        self.status_code = status_code
        self.url = url
        super().__init__(f"HTTP {status_code} from {url}: {message}")


class SummaryNotFoundError(JobIndexError):
    """The job has no test summary artifact (HTTP 404)."""

    def __init__(self, url: str) -> None:
        super().__init__(404, "summary not found", url)


class CrawlCancelledError(FlakeTrackError):
    """Crawl was cancelled before the job reached its next checkpoint."""
