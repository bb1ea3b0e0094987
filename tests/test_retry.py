"""Tests for the retry handler and rate limiter."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from metaweave.services.retry import (
    AGGRESSIVE_RETRY_CONFIG,
    CONSERVATIVE_RETRY_CONFIG,
    OperationTimeoutError,
    RateLimiter,
    RetryConfig,
    RetryHandler,
    run_with_timeout,
)


class FakeClock:
    """Monotonic clock advanced by the fake sleep below."""

    def __init__(self) -> None:
        self.now = 1_000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _status_error(status_code: int, headers: dict[str, str] | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.com/search")
    response = httpx.Response(status_code, headers=headers, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


def _handler(clock: FakeClock, config: RetryConfig | None = None) -> RetryHandler:
    limiter = RateLimiter(clock=clock, sleep=clock.sleep)
    return RetryHandler(
        config or RetryConfig(use_jitter=False),
        limiter,
        sleep=clock.sleep,
        random_fn=lambda: 0.0,
    )


def test_presets_are_resolvable() -> None:
    assert RetryConfig.from_preset("Aggressive") is AGGRESSIVE_RETRY_CONFIG
    assert RetryConfig.from_preset("conservative") is CONSERVATIVE_RETRY_CONFIG
    assert RetryConfig.from_preset("default").max_attempts == 3
    with pytest.raises(ValueError):
        RetryConfig.from_preset("reckless")


def test_delay_grows_exponentially_and_is_capped() -> None:
    handler = RetryHandler(
        RetryConfig(initial_delay_ms=1_000, max_delay_ms=3_000, use_jitter=False)
    )

    assert handler._calculate_delay(1) == pytest.approx(1.0)
    assert handler._calculate_delay(2) == pytest.approx(2.0)
    assert handler._calculate_delay(3) == pytest.approx(3.0)


def test_jitter_adds_at_most_a_quarter() -> None:
    handler = RetryHandler(RetryConfig(initial_delay_ms=1_000), random_fn=lambda: 1.0)

    assert handler._calculate_delay(1) == pytest.approx(1.25)


def test_transient_failures_are_retried_until_success() -> None:
    clock = FakeClock()
    handler = _handler(clock)
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise _status_error(503)
        return "ok"

    result = asyncio.run(handler.execute(operation, provider_id="jikan"))

    assert result == "ok"
    assert calls == 3
    assert clock.sleeps == [pytest.approx(1.0), pytest.approx(2.0)]


def test_client_errors_are_not_retried() -> None:
    clock = FakeClock()
    handler = _handler(clock)
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        raise _status_error(404)

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(handler.execute(operation, provider_id="jikan"))
    assert calls == 1
    assert clock.sleeps == []


def test_transport_errors_are_retried() -> None:
    clock = FakeClock()
    handler = _handler(clock)
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("connection refused")
        return "ok"

    assert asyncio.run(handler.execute(operation)) == "ok"
    assert calls == 2


def test_timeouts_exhaust_into_operation_timeout_error() -> None:
    clock = FakeClock()
    handler = _handler(clock)
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        raise httpx.ReadTimeout("slow")

    with pytest.raises(OperationTimeoutError) as info:
        asyncio.run(handler.execute(operation, operation_name="Search kitsu"))

    assert calls == 3
    assert info.value.attempts == 3
    assert info.value.operation_name == "Search kitsu"


def test_other_exceptions_need_caller_approval() -> None:
    clock = FakeClock()
    handler = _handler(clock)
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise KeyError("flaky")
        return "ok"

    with pytest.raises(KeyError):
        asyncio.run(handler.execute(operation))

    calls = 0
    result = asyncio.run(
        handler.execute(operation, should_retry=lambda exc: isinstance(exc, KeyError))
    )
    assert result == "ok"
    assert calls == 2


def test_should_retry_overrides_http_classification() -> None:
    clock = FakeClock()
    handler = _handler(clock)
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        raise _status_error(500)

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(handler.execute(operation, should_retry=lambda exc: False))
    assert calls == 1


def test_rate_limit_response_queues_until_retry_after() -> None:
    clock = FakeClock()
    handler = _handler(clock)
    calls: list[float] = []

    async def operation() -> str:
        calls.append(clock.now)
        if len(calls) == 1:
            raise _status_error(429, headers={"Retry-After": "5"})
        return "ok"

    result = asyncio.run(handler.execute(operation, provider_id="jikan"))

    assert result == "ok"
    assert len(calls) == 2
    assert calls[1] - calls[0] >= 5.0


def test_rate_limit_without_retry_after_uses_default_window() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock, sleep=clock.sleep)

    limiter.record_rate_limit("anilist")

    assert limiter.is_rate_limited("anilist")
    assert limiter.get_time_until_reset("anilist") == pytest.approx(60.0)
    clock.now += 61
    assert not limiter.is_rate_limited("anilist")
    assert limiter.get_time_until_reset("anilist") is None


def test_rate_limit_keeps_later_reset_time() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock, sleep=clock.sleep)

    limiter.record_rate_limit("kitsu", 30)
    limiter.record_rate_limit("kitsu", 5)

    assert limiter.get_time_until_reset("kitsu") == pytest.approx(30.0)


def test_rate_limit_is_per_provider() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock, sleep=clock.sleep)

    limiter.record_rate_limit("kitsu", 30)

    assert limiter.is_rate_limited("kitsu")
    assert not limiter.is_rate_limited("jikan")


def test_queued_requests_run_in_fifo_order() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock, sleep=clock.sleep)
    order: list[int] = []

    def request(index: int):
        async def _run() -> int:
            order.append(index)
            return index

        return _run

    async def scenario() -> list[int]:
        limiter.record_rate_limit("jikan", 2)
        return await asyncio.gather(
            *(limiter.queue_request("jikan", request(index)) for index in range(3))
        )

    results = asyncio.run(scenario())

    assert results == [0, 1, 2]
    assert order == [0, 1, 2]
    assert clock.sleeps[0] == pytest.approx(2.0)
    assert clock.sleeps[1:] == [pytest.approx(0.1), pytest.approx(0.1)]


def test_queued_request_failure_propagates_to_caller() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock, sleep=clock.sleep)

    async def failing() -> str:
        raise RuntimeError("boom")

    async def scenario() -> str:
        limiter.record_rate_limit("kitsu", 1)
        return await limiter.queue_request("kitsu", failing)

    with pytest.raises(RuntimeError, match="boom"):
        asyncio.run(scenario())


def test_run_with_timeout_returns_fallback() -> None:
    async def slow() -> list[str]:
        await asyncio.sleep(1)
        return ["late"]

    async def fast() -> list[str]:
        return ["on time"]

    assert asyncio.run(run_with_timeout(slow, 0.01, [], label="slow")) == []
    assert asyncio.run(run_with_timeout(fast, 1, [], label="fast")) == ["on time"]
