from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from sponsorcrm.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ProviderError):
        return exc.transient
    return isinstance(exc, (ConnectionError, TimeoutError))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for calls that leave the process."""

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    sleep: Callable[[float], None] = field(default=time.sleep)
    retry_on: Callable[[BaseException], bool] = field(default=is_transient)

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        @retry(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.base_delay, min=self.base_delay, max=self.max_delay),
            retry=retry_if_exception(self.retry_on),
            sleep=self.sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        def _retry_wrapper():
            return func(*args, **kwargs)

        return _retry_wrapper()


def _log_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("Attempt %d failed (%s); retrying", retry_state.attempt_number, exc)


NO_RETRY = RetryPolicy(attempts=1)
