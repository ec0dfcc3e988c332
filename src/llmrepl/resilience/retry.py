from __future__ import annotations
import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional, TypeVar

from llmrepl.core.errors import BackendClientError, BackendTransientError
from llmrepl.log_utils import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Caller-side retry for transient backend failures. Adapters never retry.
    max_retries=0 means a single attempt.
    """

    def __init__(self, max_retries=0, base_delay=0.5, max_delay=8.0, total_timeout=30.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.total_timeout = total_timeout

    @classmethod
    def from_config(cls, runtime_cfg: Optional[dict]) -> "RetryPolicy":
        cfg = runtime_cfg or {}
        return cls(
            max_retries=int(cfg.get("retries", 0)),
            base_delay=float(cfg.get("retry_base_delay", 0.5)),
            max_delay=float(cfg.get("retry_max_delay", 8.0)),
            total_timeout=float(cfg.get("retry_total_timeout", 30.0)),
        )

    def compute_backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)) + random.random() * 0.1)

    def should_retry(self, exc: Exception) -> bool:
        if isinstance(exc, BackendClientError):
            return False
        return isinstance(exc, BackendTransientError)

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Await fn() until it succeeds, a non-transient error is raised, or the
        retry budget (count or total time) is spent. The last error propagates unchanged.
        """
        start = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except Exception as e:
                if (
                    not self.should_retry(e)
                    or attempt > self.max_retries
                    or (time.monotonic() - start) > self.total_timeout
                ):
                    raise
                delay = self.compute_backoff(attempt)
                log_event(logger, "retry.scheduled", level=logging.WARNING, attempt=attempt, delay=round(delay, 3), error=str(e))
                await asyncio.sleep(delay)
