"""
Retry with bounded exponential backoff for marksync network calls.

Every remote operation goes through ``execute`` so the classification of
retryable versus fatal failures lives in one place.
"""
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, TypeVar, Union

import requests
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from marksync.constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    JITTER_RANGE,
    RETRYABLE_PATTERNS,
)
from marksync.errors import SyncError, TransientTransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STATUS_5XX = re.compile(r"\b5\d\d\b")


@dataclass
class RetryPolicy:
    """
    Backoff parameters.

    Delays are in seconds. Attempt ``n`` (1-based) that fails waits
    ``min(initial_delay * backoff_factor ** (n - 1), max_delay)`` before
    attempt ``n + 1``, scaled into ``[0.75, 1.0]`` of that value when
    jitter is on.
    """
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    jitter: bool = True
    retryable_patterns: Sequence[Union[str, "re.Pattern"]] = RETRYABLE_PATTERNS

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(config.retry_max_attempts)),
            initial_delay=float(config.retry_initial_delay),
            max_delay=float(config.retry_max_delay),
            backoff_factor=float(config.retry_backoff_factor),
            jitter=bool(config.retry_jitter),
        )

    def base_delay(self, attempt: int) -> float:
        return min(self.initial_delay * self.backoff_factor ** (attempt - 1), self.max_delay)


def delay_schedule(policy: RetryPolicy) -> List[float]:
    """Un-jittered waits between attempts; their sum bounds total delay."""
    return [policy.base_delay(attempt) for attempt in range(1, policy.max_attempts)]


def is_retryable(error: BaseException, policy: Optional[RetryPolicy] = None) -> bool:
    """
    Classify a failure.

    Typed transient errors and requests timeouts/connection errors are
    retryable. Any other classified SyncError is fatal. Unclassified
    errors are retryable only when their message matches a known
    transient pattern or mentions a 5xx status.
    """
    if isinstance(error, TransientTransportError):
        return True
    if isinstance(error, (requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(error, SyncError):
        return False

    patterns = policy.retryable_patterns if policy else RETRYABLE_PATTERNS
    message = str(error)
    for pattern in patterns:
        if isinstance(pattern, str):
            if pattern.lower() in message.lower():
                return True
        elif pattern.search(message):
            return True
    return bool(_STATUS_5XX.search(message))


def compute_delay(policy: RetryPolicy, attempt: int, error: BaseException,
                  rand: Callable[[float, float], float] = random.uniform) -> float:
    delay = policy.base_delay(attempt)
    if policy.jitter:
        delay *= rand(*JITTER_RANGE)
    retry_after = getattr(error, "retry_after", None)
    if retry_after:
        delay = min(max(delay, float(retry_after)), policy.max_delay)
    return delay


def execute(operation: Callable[[], T], policy: Optional[RetryPolicy] = None,
            sleep: Callable[[float], None] = time.sleep,
            rand: Callable[[float, float], float] = random.uniform,
            on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
            description: str = "operation") -> T:
    """
    Run ``operation`` with retries.

    Args:
        operation: Zero-argument callable performing one attempt
        policy: Backoff parameters (defaults to RetryPolicy())
        sleep: Sleep function, injectable for tests
        rand: Uniform random function used for jitter
        on_retry: Called as ``on_retry(attempt, error, delay)`` before each wait
        description: Name used in log messages

    Returns:
        Whatever ``operation`` returns on its first successful attempt

    Raises:
        The last error when it is fatal or attempts are exhausted
    """
    policy = policy or RetryPolicy()

    def wait(retry_state: RetryCallState) -> float:
        return compute_delay(policy, retry_state.attempt_number, retry_state.outcome.exception(), rand)

    def before_sleep(retry_state: RetryCallState) -> None:
        attempt = retry_state.attempt_number
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep
        logger.info(f"{description} failed (attempt {attempt}/{policy.max_attempts}), "
                    f"retrying in {delay:.2f}s: {error}")
        if on_retry:
            on_retry(attempt, error, delay)

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        retry=retry_if_exception(lambda e: is_retryable(e, policy)),
        wait=wait,
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )
    try:
        return retrying(operation)
    except Exception as e:
        if is_retryable(e, policy):
            logger.warning(f"{description} failed after {policy.max_attempts} attempt(s): {e}")
        raise
