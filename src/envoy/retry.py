"""
Retry and polling primitives.

RetryPolicy classifies failures as transient or fatal and drives
exponential backoff. Poller drives fixed-interval polling with a
maximum duration and an optional cancellation event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .errors import ConfigurationError, TransientNetworkError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_PATTERNS: tuple[str, ...] = (
    "fetch failed",
    "timeout",
    "econnreset",
    "econnrefused",
    "etimedout",
    "socket hang up",
    "network",
    "502",
    "503",
    "504",
    "429",
    "rate limit",
    "too many requests",
)


def is_transient_error(error: BaseException) -> bool:
    """Whether an error is worth retrying."""
    if isinstance(error, (ValidationError, ConfigurationError)):
        return False
    if isinstance(error, (TransientNetworkError, httpx.TimeoutException, httpx.TransportError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_PATTERNS)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    base_delay: float = 0.5
    exponential: bool = True
    classifier: Callable[[BaseException], bool] = field(default=is_transient_error, compare=False)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        if self.exponential:
            return self.base_delay * (2 ** attempt)
        return self.base_delay


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``fn`` and retry transient failures according to ``policy``.

    Fatal errors propagate immediately. After the last attempt the
    final transient error propagates unchanged.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= policy.max_retries or not policy.classifier(e):
                raise
            delay = policy.delay_for(attempt)
            if isinstance(e, TransientNetworkError) and e.retry_after > delay:
                delay = e.retry_after
            logger.info(
                "Retryable error in %s (attempt %d/%d): %s",
                label,
                attempt + 1,
                policy.max_retries + 1,
                e,
            )
            await sleep(delay)
            attempt += 1


class PollTimeout(TransientNetworkError):
    """Poller reached its maximum duration without a result."""
    pass


class PollCancelled(Exception):
    """Poller was stopped through its cancellation event."""
    pass


@dataclass
class Poller:
    """
    Fixed-interval poll loop.

    ``poll`` calls ``check`` until it returns a non-None value, the
    maximum duration elapses (PollTimeout) or ``cancel`` is set
    (PollCancelled). Errors raised by ``check`` that the classifier
    deems transient are logged and polling continues.
    """

    interval: float = 2.0
    max_duration: float = 60.0
    cancel: Optional[asyncio.Event] = None
    clock: Callable[[], float] = time.monotonic
    classifier: Callable[[BaseException], bool] = is_transient_error

    async def poll(self, check: Callable[[], Awaitable[Optional[T]]], label: str = "poll") -> T:
        deadline = self.clock() + self.max_duration
        while True:
            if self.cancel is not None and self.cancel.is_set():
                raise PollCancelled(f"{label} cancelled")
            try:
                result = await check()
            except Exception as e:
                if not self.classifier(e):
                    raise
                logger.debug("Transient error during %s: %s", label, e)
                result = None
            if result is not None:
                return result
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise PollTimeout(f"{label} timed out after {self.max_duration:.0f}s")
            await self._wait(min(self.interval, remaining))

    async def _wait(self, seconds: float) -> None:
        if self.cancel is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self.cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
