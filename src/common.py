"""Common utilities for invoking provider operations."""

import logging
import threading
import time
from typing import Any, Callable, Optional

from reconciler.errors import ProviderError

logger = logging.getLogger(__name__)


def call_with_timeout(fn: Callable[..., Any], timeout: Optional[float], *args, **kwargs) -> Any:
    """Run fn(*args, **kwargs), giving up after timeout seconds.

    The call runs on a daemon thread; a call that overruns is abandoned
    (it cannot be interrupted) and reported as a transient ProviderError.
    Exceptions raised by fn are re-raised in the caller.
    """
    if timeout is None:
        return fn(*args, **kwargs)

    outcome: dict[str, Any] = {}

    def _target():
        try:
            outcome['value'] = fn(*args, **kwargs)
        except BaseException as e:  # re-raised in the calling thread
            outcome['error'] = e

    worker = threading.Thread(target=_target, name=f'provider-call-{getattr(fn, "__name__", "op")}', daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise ProviderError(f'Operation timed out after {timeout}s', transient=True)
    if 'error' in outcome:
        raise outcome['error']
    return outcome.get('value')


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff: base * 2**attempt, capped at maximum."""
    return min(base * (2 ** attempt), maximum)


def retry_call(
    fn: Callable[[], Any],
    max_retries: int = 3,
    backoff_base: float = 1.0,
    backoff_max: float = 30.0,
    timeout: Optional[float] = None,
    label: str = '',
    sleep: Callable[[float], Any] = time.sleep,
    on_attempt: Optional[Callable[[int], None]] = None,
    stop: Optional[threading.Event] = None,
) -> Any:
    """Call fn, retrying transient ProviderErrors with exponential backoff.

    Args:
        fn: Zero-argument callable performing one provider operation
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        backoff_base: Delay before the first retry
        backoff_max: Upper bound for any single delay
        timeout: Per-attempt timeout; overrun counts as a transient failure
        label: Prefix for log messages
        sleep: Delay function (an Event.wait also fits)
        on_attempt: Called with the 1-based attempt number before each attempt
        stop: When set, the pending retry is abandoned and the last error raised

    Raises:
        ProviderError: Permanent failure, or transient failure after the last retry
    """
    attempt = 0
    while True:
        if on_attempt is not None:
            on_attempt(attempt + 1)
        try:
            return call_with_timeout(fn, timeout)
        except ProviderError as e:
            if not e.transient or attempt >= max_retries:
                raise
            delay = backoff_delay(attempt, backoff_base, backoff_max)
            logger.warning("%s transient failure (attempt %d/%d): %s; retrying in %.1fs",
                           label, attempt + 1, max_retries + 1, e, delay)
            if delay > 0:
                sleep(delay)
            if stop is not None and stop.is_set():
                logger.warning("%s not retrying, run cancelled", label)
                raise
            attempt += 1
