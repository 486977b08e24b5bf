"""
Tracker exceptions.

These carry no HTTP knowledge; main.py maps the one hard failure
(HistoryUnavailableError) to a response. Everything else is caught at an
item boundary and recorded as a string in that item's errors list.

Exception Hierarchy:
    TrackerError (base)
    ├── SourceError
    │   ├── RateLimitError
    │   ├── FetchFailedError
    │   └── MalformedPayloadError
    ├── FetchCancelledError
    └── HistoryUnavailableError
"""
from typing import Optional


class TrackerError(Exception):
    """Base exception for all service layer errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class SourceError(TrackerError):
    """
    A data source answered badly or not at all.

    Attributes:
        source: Short name of the upstream (rpc, meteora, indexer)
    """

    def __init__(self, message: str, source: str = "") -> None:
        self.source = source
        super().__init__(message)


class RateLimitError(SourceError):
    """Upstream signalled throttling (HTTP 429 or a JSON-RPC rate-limit error)."""


class FetchFailedError(SourceError):
    """
    Raised by RateLimitedFetcher when a call is given up on.

    Attributes:
        attempts: How many times the call was made
        rate_limited: True when the retry budget ran out on rate limits
        cause: The last underlying exception
    """

    def __init__(
        self,
        message: str,
        attempts: int,
        rate_limited: bool,
        cause: Optional[BaseException] = None,
        source: str = "",
    ) -> None:
        self.attempts = attempts
        self.rate_limited = rate_limited
        self.cause = cause
        super().__init__(message, source=source)


class MalformedPayloadError(SourceError, ValueError):
    """An upstream payload did not have the expected shape."""


class FetchCancelledError(TrackerError):
    """The cancellation token fired before or during a call."""


class HistoryUnavailableError(TrackerError):
    """
    The wallet's transaction history could not be listed at all.

    This is the only failure that propagates out of a reconciliation pass,
    since no partial answer is meaningful without history.
    """

    def __init__(self, wallet_address: str, reason: str) -> None:
        self.wallet_address = wallet_address
        self.reason = reason
        super().__init__(f"Transaction history unavailable for {wallet_address}: {reason}")
