"""One retry combinator shared by every retryable pipeline step."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from botocore.exceptions import ClientError, ConnectTimeoutError, EndpointConnectionError, ReadTimeoutError
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from face_indexer.errors import TransientError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "retry"})

T = TypeVar("T")

THROTTLING_CODES: frozenset[str] = frozenset(
    {
        "ThrottlingException",
        "ProvisionedThroughputExceededException",
        "TooManyRequestsException",
        "LimitExceededException",
        "SlowDown",
    }
)
SERVER_ERROR_CODES: frozenset[str] = frozenset(
    {
        "InternalServerError",
        "InternalError",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "RequestTimeout",
        "RequestTimeoutException",
    }
)

# Lock contention and dropped connections; other operational errors are permanent.
DB_TRANSIENT_MARKERS: tuple[str, ...] = (
    "database is locked",
    "database table is locked",
    "deadlock detected",
    "lock timeout",
    "could not serialize access",
    "server closed the connection",
)


def _is_transient_db_error(exc: OperationalError) -> bool:
    if exc.connection_invalidated:
        return True
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in DB_TRANSIENT_MARKERS)


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` for timeouts, throttling, server-side (5xx) failures and database lock contention."""

    if isinstance(exc, (TransientError, TimeoutError, ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError)):
        return True
    if isinstance(exc, PoolTimeoutError):
        return True
    if isinstance(exc, OperationalError):
        return _is_transient_db_error(exc)
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code") or "")
        if code in THROTTLING_CODES or code in SERVER_ERROR_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return isinstance(status, int) and status >= 500
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: attempt ``n`` failing waits ``base * 2**(n-1)`` seconds, capped."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    is_retryable: Callable[[BaseException], bool] = is_transient
    sleep: Callable[[float], None] = time.sleep

    def call(self, fn: Callable[..., T], *args: Any, description: str = "", **kwargs: Any) -> T:
        """Run ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out.

        The last error is re-raised unchanged, so callers see the real cause.
        """

        def _log_retry(state: RetryCallState) -> None:
            outcome = state.outcome
            error = outcome.exception() if outcome is not None else None
            delay = state.next_action.sleep if state.next_action is not None else 0.0
            LOGGER.warning(
                "retry_attempt_failed",
                extra={
                    "step": description or getattr(fn, "__name__", "call"),
                    "attempt": state.attempt_number,
                    "max_attempts": self.max_attempts,
                    "wait_seconds": round(delay, 3),
                    "error": str(error),
                },
            )

        retryer = Retrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.base_delay_seconds, max=self.max_delay_seconds),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=_log_retry,
            sleep=self.sleep,
            reraise=True,
        )
        return retryer(fn, *args, **kwargs)


__all__ = ["RetryPolicy", "is_transient"]
