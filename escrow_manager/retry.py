from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Tuple, Type, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry schedule handed to every external call site."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 8.0
    multiplier: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = field(default=(TransientError,))

    def retrying(self) -> Retrying:
        return Retrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.multiplier, min=self.initial_delay, max=self.max_delay),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        return self.retrying()(fn, *args, **kwargs)


NO_RETRY = RetryPolicy(max_attempts=1)
