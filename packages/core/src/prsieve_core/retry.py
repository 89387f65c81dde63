"""Retry policy applied explicitly at the call sites of external services.

A RetryPolicy is a plain value: construct one from config and wrap the
function that talks to the AI provider or the git platform with it.
"""

from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

RETRYABLE_MARKERS = (
    "provider_error",
    "network",
    "timeout",
    "timed out",
    "connection",
    "econnreset",
    "socket hang up",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "temporary failure",
    "rate limit",
    "overloaded",
    "429",
    "502",
    "503",
    "504",
)


def is_retryable_error(error: BaseException) -> bool:
    """Transient-looking failures are retried; programming errors are not."""
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    text = f"{type(error).__name__} {error}".lower()
    return any(marker in text for marker in RETRYABLE_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    retryable: Callable[[BaseException], bool] = is_retryable_error
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    @classmethod
    def from_config(cls, config: dict) -> RetryPolicy:
        retry_cfg = config.get("retry", {})
        return cls(
            max_attempts=retry_cfg.get("max_attempts", 3),
            base_delay=retry_cfg.get("base_delay", 1.0),
            max_delay=retry_cfg.get("max_delay", 10.0),
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception(self.retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self.sleep,
            reraise=True,
        )

    def call(self, fn: Callable, *args, **kwargs):
        return self._retrying()(fn, *args, **kwargs)

    def __call__(self, fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            return self.call(fn, *args, **kwargs)

        return wrapper

