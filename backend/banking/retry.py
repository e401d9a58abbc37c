"""
Retry Policy for Outbound Bank API Calls

Every call to the Monzo API made by the sync orchestrator, webhook ingestor
and OAuth controller goes through with_retry(). The client itself never
retries.

Classification:
- Retryable: connection refused/reset, network unreachable, DNS failure,
  timeouts, HTTP 408/429/500/502/503/504
- Terminal: any other 4xx (and non-network exceptions), raised immediately
  without consuming retry budget

Backoff:
- delay = base_delay * 2**attempt, capped at max_delay
- HTTP 429 with a Retry-After header (seconds or HTTP-date) overrides the
  exponential delay for that retry, still capped at max_delay
"""

import asyncio
import errno
import logging
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from banking.errors import BankApiError

logger = logging.getLogger(__name__)

T = TypeVar('T')

# ==================== CONSTANTS ====================

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0   # seconds
DEFAULT_MAX_DELAY = 30.0   # seconds

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

RETRYABLE_ERRNOS = frozenset({
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ETIMEDOUT,
    errno.ENETUNREACH,
})


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff schedule (max_attempts counts the first try)"""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.SYNC_RETRY_MAX_ATTEMPTS,
            base_delay=settings.SYNC_RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.SYNC_RETRY_MAX_DELAY_SECONDS,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay after the given zero-based attempt"""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def delay_for(self, error: BaseException, attempt: int) -> float:
        """Delay before retrying after `error`, honouring Retry-After on 429"""
        if isinstance(error, BankApiError) and error.status_code == 429 and error.retry_after:
            retry_after = parse_retry_after(error.retry_after)
            if retry_after is not None:
                return min(retry_after, self.max_delay)
        return self.backoff_delay(attempt)


def parse_retry_after(value: str, now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a Retry-After header.

    Accepts delta-seconds ("120") or an HTTP-date
    ("Wed, 21 Oct 2015 07:28:00 GMT"). Returns seconds to wait (never
    negative) or None if the header is unusable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    return max(0.0, (retry_at - now).total_seconds())


def is_retryable_error(error: BaseException) -> bool:
    """True for transient network failures and retryable HTTP statuses"""
    if isinstance(error, BankApiError):
        return error.status_code in RETRYABLE_STATUS_CODES

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return True

    # DNS resolution failure (ENOTFOUND)
    if isinstance(error, socket.gaierror):
        return True

    if isinstance(error, (ConnectionRefusedError, ConnectionResetError)):
        return True

    if isinstance(error, OSError) and error.errno in RETRYABLE_ERRNOS:
        return True

    return False


RetryCallback = Callable[[int, BaseException, float], None]


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[RetryCallback] = None,
    operation_name: str = "bank API call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` under the retry policy.

    Args:
        operation: Zero-argument coroutine factory (called once per attempt)
        policy: Retry policy (defaults to 3 attempts, 1s base, 30s cap)
        on_retry: Called with (attempt_number, error, delay) before each retry
        operation_name: Used in log messages
        sleep: Awaitable sleep, replaceable in tests

    Raises:
        The last error once attempts are exhausted, or the first terminal error
    """
    policy = policy or RetryPolicy()

    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except Exception as error:
            is_last_attempt = attempt >= policy.max_attempts - 1
            if not is_retryable_error(error) or is_last_attempt:
                raise

            delay = policy.delay_for(error, attempt)
            logger.warning(
                f"{operation_name} failed (attempt {attempt + 1}/{policy.max_attempts}), "
                f"retrying in {delay:.2f}s: {type(error).__name__}",
                extra={'status_code': getattr(error, 'status_code', None)}
            )
            if on_retry:
                on_retry(attempt + 1, error, delay)
            await sleep(delay)

    # max_attempts < 1
    raise ValueError("RetryPolicy.max_attempts must be at least 1")
