# skillhost/runtime/retry.py
from __future__ import annotations
import logging
import time
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class RetryEngine:
    """
    Run a callable with bounded retries and exponential backoff.

    Only exceptions listed in `retry_on` are retried; anything else propagates
    immediately. Returns (success, result_or_last_exception).
    """

    def __init__(
        self,
        attempts: int = 3,
        backoff_seconds: float = 0.05,
        max_backoff_seconds: float = 2.0,
        retry_on: Tuple[Type[BaseException], ...] = (OSError,),
        sleep_fn: Optional[Callable[[float], None]] = None,
    ):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.retry_on = retry_on
        self._sleep = sleep_fn or time.sleep

    def delay_for(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)

    def run(self, func: Callable[[], Any], describe: str = "operation") -> Tuple[bool, Any]:
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.attempts + 1):
            try:
                return True, func()
            except self.retry_on as e:
                last_exc = e
                if attempt == self.attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning("%s failed (attempt %d/%d), retrying in %.3fs: %s", describe, attempt, self.attempts, delay, e)
                self._sleep(delay)
        logger.error("%s failed after %d attempt(s): %s", describe, self.attempts, last_exc)
        return False, last_exc
