"""
Exceptions raised across the discovery services.

Source-level errors (SourceFetchError and subclasses) are caught by the fetch
orchestrator and turned into failure report entries; PreconditionError and
OracleError end a discovery run.
"""


class ApricotError(Exception):
    """Base class for all Apricot errors."""


class PreconditionError(ApricotError):
    """A discovery run cannot start; raised before any network I/O."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class SourceFetchError(ApricotError):
    """A single source could not be fetched or parsed."""


class FetchError(SourceFetchError):
    """Network, timeout, TLS or HTTP status failure."""


class FeedParseError(SourceFetchError):
    """The feed document could not be parsed."""


class ScrapeError(SourceFetchError):
    """The listing page could not be scraped."""


class ExtractionError(ApricotError):
    """Full article text could not be extracted."""


class OracleError(ApricotError):
    """The ranking or summarization oracle failed."""


class StorageError(ApricotError):
    """A persistence step the run depends on failed."""


class NotFoundError(ApricotError):
    """A requested record does not exist."""


class DiscoveryCancelled(ApricotError):
    """The run's cancel signal fired."""
