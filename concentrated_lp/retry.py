"""
Concentrated Liquidity - Retry Helper
Async retry with exponential backoff for ledger calls
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Optional, TypeVar

import requests
from web3.exceptions import TimeExhausted, TransactionNotFound

from .config import Config
from .exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar('T')

RETRYABLE_HTTP_CODES = (408, 429, 500, 502, 503, 504)

RETRYABLE_MESSAGES = [
    'network',
    'timeout',
    'timed out',
    'econnreset',
    'econnrefused',
    'connection',
    'socket hang up',
    'service unavailable',
    'internal server error',
    'bad gateway',
    'gateway timeout',
    'rate limit',
    'too many requests',
    'temporarily unavailable',
    'nonce too low',
    'replacement transaction underpriced',
]

NON_RETRYABLE_MESSAGES = [
    'invalid',
    'unauthorized',
    'forbidden',
    'not found',
    'bad request',
    'insufficient funds',
    'insufficient balance',
    'execution reverted',
    'slippage',
    'must be different',
    'must be greater than zero',
]


def _http_status(error: Exception) -> Optional[int]:
    status = getattr(error, 'status', None) or getattr(error, 'status_code', None)
    if status is None:
        response = getattr(error, 'response', None)
        status = getattr(response, 'status_code', None)
    return status if isinstance(status, int) else None


def is_retryable_error(error: Exception) -> bool:
    """
    Check if an error is worth retrying

    Args:
        error: Exception to check

    Returns:
        True if error is transient, False otherwise
    """
    if error is None or isinstance(error, (ValidationError, NotFoundError)):
        return False

    retryable_errors = (
        TransactionNotFound,
        TimeExhausted,
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
        ConnectionError,
        TimeoutError,
        asyncio.TimeoutError,
    )
    if isinstance(error, retryable_errors):
        return True

    error_str = str(error).lower()
    if any(msg in error_str for msg in NON_RETRYABLE_MESSAGES):
        return False

    status = _http_status(error)
    if status in RETRYABLE_HTTP_CODES:
        return True

    return any(msg in error_str for msg in RETRYABLE_MESSAGES)


def is_retryable_transaction_error(error: Exception) -> bool:
    """Stricter condition for state-changing calls: only network and nonce trouble"""
    if isinstance(error, (ValidationError, NotFoundError)):
        return False
    error_str = str(error).lower()
    return (
        isinstance(error, (ConnectionError, TimeoutError, requests.exceptions.ConnectionError))
        or 'network' in error_str
        or 'timeout' in error_str
        or 'service unavailable' in error_str
        or 'nonce too low' in error_str
    )


@dataclass(frozen=True)
class RetryOptions:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retry_condition: Callable[[Exception], bool] = is_retryable_error

    @classmethod
    def from_config(cls, config: Config) -> 'RetryOptions':
        return cls(
            max_retries=config.MAX_RETRIES,
            base_delay=config.RETRY_BASE_DELAY_SECONDS,
            max_delay=config.RETRY_MAX_DELAY_SECONDS,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number attempt + 1 (attempt counts from 0)"""
        delay = min(self.base_delay * (self.backoff_multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay += delay * 0.1 * random.uniform(-1, 1)
        return max(0.0, delay)


RETRY_PROFILES: Dict[str, RetryOptions] = {
    'fast': RetryOptions(max_retries=2, base_delay=0.5, max_delay=5.0),
    'standard': RetryOptions(max_retries=3, base_delay=1.0, max_delay=10.0),
    'slow': RetryOptions(max_retries=4, base_delay=2.0, max_delay=20.0),
    'transaction': RetryOptions(max_retries=5, base_delay=3.0, max_delay=30.0,
                                retry_condition=is_retryable_transaction_error),
}


def get_retry_profile(name: str, **overrides) -> RetryOptions:
    if name not in RETRY_PROFILES:
        raise ValueError(f"Unknown retry profile: {name}. Available: {list(RETRY_PROFILES)}")
    profile = RETRY_PROFILES[name]
    return replace(profile, **overrides) if overrides else profile


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    operation_name: str = 'operation',
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """
    Run an async operation, retrying transient failures with exponential backoff

    Args:
        operation: Zero-argument coroutine function
        options: Retry policy, defaults to the Config retry settings
        operation_name: Name used in log messages
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The operation's result; the last exception is re-raised once the
        policy gives up
    """
    options = options or RetryOptions.from_config(Config())
    start_time = time.monotonic()
    total_attempts = options.max_retries + 1

    for attempt in range(total_attempts):
        try:
            result = await operation()
            if attempt > 0:
                logger.info(f"{operation_name} succeeded after {attempt + 1} attempts")
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            is_last_attempt = attempt == total_attempts - 1
            should_retry = options.retry_condition(e)

            if is_last_attempt or not should_retry:
                duration = time.monotonic() - start_time
                logger.error(f"{operation_name} failed after {attempt + 1} attempt(s) in {duration:.1f}s: {e}")
                raise

            delay = options.delay_for(attempt)
            logger.warning(f"{operation_name} failed (attempt {attempt + 1}/{total_attempts}): {e}")
            logger.info(f"Retrying {operation_name} in {delay:.1f} seconds...")
            await sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{operation_name} exhausted retries")
