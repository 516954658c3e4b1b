"""
Exchange error taxonomy and the transient/fatal classifier.

Every adapter failure surfaces as an ExchangeError subclass:

    ExchangeError
    ├── TransientNetworkError   timeouts, configured status codes / messages
    │   └── RateLimitError      429 after the backoff budget is spent
    ├── FatalExchangeError      auth, malformed request, insufficient funds, anything else
    │   └── AmbiguousWriteOutcome  a write failed and we cannot tell if it applied
    └── InsufficientMarketData  empty side of the order book (a no-op signal)

Classification depends only on the status code, the message and the
allow-lists in ErrorPolicy.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Tuple


class ErrorClass(Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class ErrorPolicy:
    """Allow-lists of failures that are worth retrying.

    Attributes:
        non_fatal_codes: HTTP status codes classified as transient (e.g. 502, 503, 504)
        non_fatal_messages: Case-sensitive substrings that mark a failure transient
    """

    non_fatal_codes: FrozenSet[int] = field(default_factory=frozenset)
    non_fatal_messages: Tuple[str, ...] = ()

    @classmethod
    def build(cls, codes: Iterable[int] = (), messages: Iterable[str] = ()) -> "ErrorPolicy":
        return cls(
            non_fatal_codes=frozenset(int(c) for c in codes),
            non_fatal_messages=tuple(m for m in messages if m),
        )


def classify_failure(status_code: Optional[int], message: str, policy: ErrorPolicy) -> ErrorClass:
    """Classify a failed exchange call as transient or fatal.

    Args:
        status_code: HTTP status, or None when no response was received
        message: Error text (response body or transport error description)
        policy: Caller-supplied allow-lists

    Returns:
        ErrorClass.TRANSIENT if the code or any message substring is allow-listed,
        ErrorClass.FATAL otherwise
    """
    if status_code is not None and status_code in policy.non_fatal_codes:
        return ErrorClass.TRANSIENT
    text = message or ""
    if any(fragment in text for fragment in policy.non_fatal_messages):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


class ExchangeError(Exception):
    """Base class for all exchange adapter failures."""

    error_class: Optional[ErrorClass] = None

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(ExchangeError):
    """Safe to retry a read; never safe to blindly retry a write."""

    error_class = ErrorClass.TRANSIENT


class RateLimitError(TransientNetworkError):
    """Raised when the rate limit is hit and backoff is exhausted."""


class FatalExchangeError(ExchangeError):
    """Must not be retried; writes failing this way stop the market."""

    error_class = ErrorClass.FATAL


class AmbiguousWriteOutcome(FatalExchangeError):
    """A write failed and a confirming read could not establish whether it applied."""


class InsufficientMarketData(ExchangeError):
    """The order book is missing a side; nothing to decide this cycle."""


def error_from_failure(
    status_code: Optional[int], message: str, policy: ErrorPolicy
) -> ExchangeError:
    """Build the ExchangeError matching classify_failure()."""
    if classify_failure(status_code, message, policy) is ErrorClass.TRANSIENT:
        return TransientNetworkError(message, status_code=status_code)
    return FatalExchangeError(message, status_code=status_code)


class ConfigError(ValueError):
    """Missing or malformed configuration, raised before any cycle runs."""
