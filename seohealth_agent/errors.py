from __future__ import annotations


class AnalysisError(Exception):
    """Base class for failures that abort a whole analysis run."""


class InvalidDomainError(AnalysisError, ValueError):
    pass


class UnreachableError(AnalysisError):
    def __init__(self, hostname: str, attempted: list[str] | None = None):
        self.hostname = hostname
        self.attempted = list(attempted or [])
        super().__init__(f"No accessible URL found for {hostname}.")


class FetchError(AnalysisError):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Unable to fetch content from {url}.")


class ParkedOrExpiredError(AnalysisError):
    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(
            f"{url} looks like a parked, expired or placeholder site ({reason}). "
            "Analysis was skipped."
        )


class CheckExecutionError(Exception):
    """A single check failed. Recorded as an error result, never fatal."""

    def __init__(self, check_id: str, cause: BaseException):
        self.check_id = check_id
        self.cause = cause
        super().__init__(f"{check_id}: {cause}")


class ExternalServiceError(Exception):
    """A third-party API call failed. The gateway turns it into an unavailable payload."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")
