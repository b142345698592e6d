"""Retry policy for the queue client."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

DEFAULT_MAX_NUM_RETRIES = 3
DEFAULT_MIN_RETRY_DELAY = timedelta(milliseconds=30)
DEFAULT_MIN_THROTTLE_DELAY = timedelta(milliseconds=500)
DEFAULT_MAX_RETRY_DELAY = timedelta(seconds=300)
DEFAULT_MAX_THROTTLE_DELAY = timedelta(seconds=300)

_THROTTLE_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottledException",
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "RequestThrottledException",
        "TooManyRequestsException",
        "PriorRequestNotComplete",
        "TransactionInProgressException",
        "EC2ThrottledException",
        "SlowDown",
    }
)
_RETRYABLE_CODES = frozenset(
    {"RequestError", "RequestTimeout", "ResponseTimeout", "RequestTimeoutException"}
)
_EXPIRED_CREDENTIAL_CODES = frozenset({"ExpiredToken", "ExpiredTokenException", "RequestExpired"})


class AwsError(Exception):
    """An error reported by an AWS service, identified by its code."""

    def __init__(self, code: str, message: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message
        self.status_code = status_code


def _default_should_retry(error: BaseException) -> bool:
    if isinstance(error, AwsError):
        if error.code in _THROTTLE_CODES or error.status_code == 429:
            return True
        if error.code in _RETRYABLE_CODES or error.code in _EXPIRED_CREDENTIAL_CODES:
            return True
        status = error.status_code
        return status is not None and status >= 500 and status != 501
    if isinstance(error, TimeoutError):
        return True
    temporary = getattr(error, "temporary", False)
    if callable(temporary):
        temporary = temporary()
    return bool(temporary)


@dataclass(frozen=True)
class SqsRetryer:
    """Retry policy that also retries connections reset by the peer."""

    num_max_retries: int = DEFAULT_MAX_NUM_RETRIES
    min_retry_delay: timedelta = DEFAULT_MIN_RETRY_DELAY
    max_retry_delay: timedelta = DEFAULT_MAX_RETRY_DELAY
    min_throttle_delay: timedelta = DEFAULT_MIN_THROTTLE_DELAY
    max_throttle_delay: timedelta = DEFAULT_MAX_THROTTLE_DELAY

    def should_retry(self, error: Optional[BaseException]) -> bool:
        """Whether a request that failed with ``error`` should be retried."""
        if error is None:
            return False
        return _default_should_retry(error) or "connection reset" in str(error)


def sqs_retryer() -> SqsRetryer:
    """The retry policy used for queue polling, which runs every couple of seconds."""
    return SqsRetryer(
        num_max_retries=DEFAULT_MAX_NUM_RETRIES,
        min_retry_delay=DEFAULT_MIN_RETRY_DELAY,
        max_retry_delay=timedelta(milliseconds=1200),
        min_throttle_delay=DEFAULT_MIN_THROTTLE_DELAY,
        max_throttle_delay=timedelta(milliseconds=1200),
    )