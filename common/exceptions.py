"""Exception hierarchy for the guild monitor scraper.

Exception tree:
    ScraperError
    +-- FetchError          (timeout, non-2xx/3xx status, network failure; retryable)
    |   +-- PageNotFound    (HTTP 404)
    +-- RowParseError       (one table row could not be turned into a record)
    +-- ConfigurationError  (invalid startup configuration)
"""

from typing import Optional


class ScraperError(Exception):
    """Base exception for all scraper errors."""


class FetchError(ScraperError):
    """Uniform error for every failed request.

    Callers treat all of these as transient; the retry policy decides how many
    times the surrounding task execution is attempted.
    """

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class PageNotFound(FetchError):
    """HTTP 404. Lets callers skip missing pages instead of failing the unit."""


class RowParseError(ScraperError):
    """A single row was malformed. The page-level parse continues."""


class ConfigurationError(ScraperError):
    """Startup configuration is invalid or incomplete."""
