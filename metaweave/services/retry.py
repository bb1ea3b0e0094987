"""Retry with exponential backoff and per-provider rate-limit queuing."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from ..utils import parse_retry_after

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]

DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 60.0
QUEUE_DISPATCH_DELAY_SECONDS = 0.1


class OperationTimeoutError(TimeoutError):
    """Raised when an operation keeps timing out until retries are exhausted."""

    def __init__(self, operation_name: str, attempts: int):
        super().__init__(f"{operation_name} timed out after {attempts} attempts")
        self.operation_name = operation_name
        self.attempts = attempts


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Backoff policy for :class:`RetryHandler`."""

    max_attempts: int = 3
    initial_delay_ms: int = 1_000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0
    use_jitter: bool = True

    @classmethod
    def from_preset(cls, name: str) -> "RetryConfig":
        try:
            return RETRY_PRESETS[name.strip().lower()]
        except KeyError as exc:
            raise ValueError(f"Unknown retry preset: {name}") from exc


DEFAULT_RETRY_CONFIG = RetryConfig()
AGGRESSIVE_RETRY_CONFIG = RetryConfig(
    max_attempts=5, initial_delay_ms=500, max_delay_ms=60_000
)
CONSERVATIVE_RETRY_CONFIG = RetryConfig(
    max_attempts=2, initial_delay_ms=2_000, max_delay_ms=10_000, backoff_multiplier=1.5
)
RETRY_PRESETS: dict[str, RetryConfig] = {
    "default": DEFAULT_RETRY_CONFIG,
    "aggressive": AGGRESSIVE_RETRY_CONFIG,
    "conservative": CONSERVATIVE_RETRY_CONFIG,
}


class RateLimiter:
    """Track rate-limit windows per provider and queue calls made inside them.

    Queued calls are dispatched in FIFO order by one drain task per provider
    once the window has elapsed, with a short pause between dispatches. All
    state changes happen between awaits, so the event loop serialises them.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        default_window: float = DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
        dispatch_delay: float = QUEUE_DISPATCH_DELAY_SECONDS,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._default_window = default_window
        self._dispatch_delay = dispatch_delay
        self._reset_times: dict[str, float] = {}
        self._queues: dict[str, deque[tuple[Operation, asyncio.Future]]] = {}
        self._drainers: dict[str, asyncio.Task[None]] = {}

    def is_rate_limited(self, provider_id: str) -> bool:
        """Return ``True`` while ``provider_id`` is inside a rate-limit window."""

        reset_time = self._reset_times.get(provider_id)
        if reset_time is None:
            return False
        if self._clock() > reset_time:
            self._reset_times.pop(provider_id, None)
            return False
        return True

    def record_rate_limit(
        self, provider_id: str, retry_after: float | None = None
    ) -> None:
        """Open (or extend) the rate-limit window for ``provider_id``."""

        window = self._default_window if retry_after is None else retry_after
        reset_time = self._clock() + window
        current = self._reset_times.get(provider_id)
        if current is not None and current > reset_time:
            reset_time = current
        self._reset_times[provider_id] = reset_time
        logger.warning(
            "Provider %s rate limited; retrying in %.1fs", provider_id, window
        )

    def get_time_until_reset(self, provider_id: str) -> float | None:
        """Seconds until the window closes, or ``None`` when not limited."""

        reset_time = self._reset_times.get(provider_id)
        if reset_time is None:
            return None
        now = self._clock()
        if now > reset_time:
            self._reset_times.pop(provider_id, None)
            return None
        return reset_time - now

    async def queue_request(self, provider_id: str, request: Operation[T]) -> T:
        """Run ``request`` now, or once the provider's window has elapsed."""

        if not self.is_rate_limited(provider_id):
            return await request()

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queues.setdefault(provider_id, deque()).append((request, future))
        logger.info(
            "Queued request for %s (%d waiting)",
            provider_id,
            len(self._queues[provider_id]),
        )
        if provider_id not in self._drainers:
            self._drainers[provider_id] = asyncio.create_task(
                self._drain(provider_id)
            )
        return await future

    async def _drain(self, provider_id: str) -> None:
        try:
            while True:
                wait = self.get_time_until_reset(provider_id)
                if wait:
                    logger.info(
                        "Waiting %.1fs for %s rate limit to reset", wait, provider_id
                    )
                    await self._sleep(wait)
                    continue

                queue = self._queues.get(provider_id)
                if not queue:
                    break
                request, future = queue.popleft()
                if not future.done():
                    try:
                        result = await request()
                    except asyncio.CancelledError:
                        future.cancel()
                        raise
                    except Exception as exc:
                        logger.warning(
                            "Queued request for %s failed: %s", provider_id, exc
                        )
                        if not future.done():
                            future.set_exception(exc)
                    else:
                        if not future.done():
                            future.set_result(result)

                if queue:
                    await self._sleep(self._dispatch_delay)
        finally:
            self._drainers.pop(provider_id, None)
            if not self._queues.get(provider_id):
                self._queues.pop(provider_id, None)

    def clear_all(self) -> None:
        """Forget every window and cancel anything still waiting in a queue."""

        for task in self._drainers.values():
            task.cancel()
        for queue in self._queues.values():
            for _, future in queue:
                if not future.done():
                    future.cancel()
        self._drainers.clear()
        self._queues.clear()
        self._reset_times.clear()


class RetryHandler:
    """Execute async operations with retries, backoff and rate-limit queuing."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        rate_limiter: RateLimiter | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self.config = config or DEFAULT_RETRY_CONFIG
        self.rate_limiter = rate_limiter or RateLimiter()
        self._sleep = sleep
        self._random = random_fn

    async def execute(
        self,
        operation: Operation[T],
        *,
        provider_id: str | None = None,
        operation_name: str | None = None,
        should_retry: Callable[[Exception], bool] | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or a retry is not warranted.

        HTTP 429 responses open a rate-limit window for ``provider_id`` (using
        ``Retry-After`` seconds when present) and the call is queued until the
        window closes. Timeouts are always retried and surface as
        :class:`OperationTimeoutError` once attempts run out. Other errors are
        retried when transient (no response, 5xx, 408) or when
        ``should_retry`` approves them.
        """

        name = operation_name or "operation"
        max_attempts = max(1, self.config.max_attempts)
        attempt = 0

        while True:
            attempt += 1
            if attempt > 1:
                logger.info("Executing %s (attempt %d/%d)", name, attempt, max_attempts)

            if provider_id and self.rate_limiter.is_rate_limited(provider_id):
                logger.info("Provider %s is rate limited; queuing %s", provider_id, name)
                return await self.rate_limiter.queue_request(provider_id, operation)

            try:
                result = await operation()
            except (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError) as exc:
                logger.warning("%s timed out on attempt %d", name, attempt)
                if attempt >= max_attempts:
                    logger.error("%s timed out after %d attempts", name, attempt)
                    raise OperationTimeoutError(name, attempt) from exc
            except httpx.HTTPError as exc:
                if self._is_rate_limit_response(exc):
                    logger.warning("Rate limit (429) detected for %s", name)
                    if provider_id:
                        response = exc.response  # type: ignore[attr-defined]
                        retry_after = parse_retry_after(
                            response.headers.get("retry-after")
                        )
                        self.rate_limiter.record_rate_limit(provider_id, retry_after)
                        return await self.rate_limiter.queue_request(
                            provider_id, operation
                        )
                    if attempt >= max_attempts:
                        logger.error("%s still rate limited after %d attempts", name, attempt)
                        raise
                else:
                    retryable = (
                        should_retry(exc)
                        if should_retry is not None
                        else self._is_retryable_error(exc)
                    )
                    if not retryable:
                        logger.error("%s failed with non-retryable error: %s", name, exc)
                        raise
                    logger.warning("%s failed on attempt %d: %s", name, attempt, exc)
                    if attempt >= max_attempts:
                        logger.error("%s failed after %d attempts", name, attempt)
                        raise
            except Exception as exc:
                if should_retry is None or not should_retry(exc):
                    logger.error("%s failed with non-retryable error: %s", name, exc)
                    raise
                logger.warning("%s failed on attempt %d: %s", name, attempt, exc)
                if attempt >= max_attempts:
                    logger.error("%s failed after %d attempts", name, attempt)
                    raise
            else:
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d", name, attempt)
                return result

            delay = self._calculate_delay(attempt)
            logger.info(
                "Retrying %s in %.0fms (attempt %d/%d)",
                name,
                delay * 1000,
                attempt + 1,
                max_attempts,
            )
            await self._sleep(delay)

    def _calculate_delay(self, attempt: int) -> float:
        """Backoff delay in seconds before the attempt following ``attempt``."""

        config = self.config
        delay_ms = config.initial_delay_ms * config.backoff_multiplier ** (attempt - 1)
        delay_ms = min(delay_ms, float(config.max_delay_ms))
        if config.use_jitter:
            delay_ms += self._random() * delay_ms * 0.25
        return delay_ms / 1000

    @staticmethod
    def _is_rate_limit_response(error: httpx.HTTPError) -> bool:
        return (
            isinstance(error, httpx.HTTPStatusError)
            and error.response.status_code == 429
        )

    @staticmethod
    def _is_retryable_error(error: httpx.HTTPError) -> bool:
        if not isinstance(error, httpx.HTTPStatusError):
            # Transport failures never produced a response.
            return True
        status_code = error.response.status_code
        if 500 <= status_code < 600:
            return True
        return status_code in {408, 429}


async def run_with_timeout(
    operation: Operation[T],
    timeout: float,
    fallback: T,
    *,
    label: str,
) -> T:
    """Await ``operation`` for at most ``timeout`` seconds, else ``fallback``."""

    try:
        return await asyncio.wait_for(operation(), timeout)
    except (asyncio.TimeoutError, TimeoutError):
        logger.warning("%s timed out after %.1fs", label, timeout)
        return fallback
