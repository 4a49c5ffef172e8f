from __future__ import annotations

import asyncio

import pytest

from deribit_risk.concurrency import fetch_bounded, with_backoff
from deribit_risk.config import RetryConfig
from deribit_risk.errors import GatewayError, RateLimitError


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _flaky(failures: int, exc: Exception):
    calls = {"n": 0}

    async def call():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise exc
        return "ok"

    return call, calls


def test_backoff_retries_rate_limits_with_doubling_delay() -> None:
    sleeps = _Sleeps()
    call, calls = _flaky(2, RateLimitError("429", method="ticker"))

    assert asyncio.run(with_backoff(call, sleep=sleeps)) == "ok"
    assert calls["n"] == 3
    assert sleeps.delays == [0.25, 0.5]


def test_backoff_gives_up_after_attempts() -> None:
    sleeps = _Sleeps()
    call, calls = _flaky(10, RateLimitError("429", method="ticker"))

    with pytest.raises(RateLimitError):
        asyncio.run(with_backoff(call, attempts=4, sleep=sleeps))
    assert calls["n"] == 4
    assert sleeps.delays == [0.25, 0.5, 1.0]


def test_backoff_delay_is_capped() -> None:
    sleeps = _Sleeps()
    call, _ = _flaky(5, RateLimitError("429"))
    asyncio.run(with_backoff(call, attempts=6, base_delay=1.0, max_delay=2.0, sleep=sleeps))
    assert sleeps.delays == [1.0, 2.0, 2.0, 2.0, 2.0]


def test_other_gateway_errors_fail_fast() -> None:
    sleeps = _Sleeps()
    call, calls = _flaky(1, GatewayError("boom"))
    with pytest.raises(GatewayError):
        asyncio.run(with_backoff(call, sleep=sleeps))
    assert calls["n"] == 1
    assert sleeps.delays == []


def test_fetch_bounded_limits_in_flight_and_keeps_order() -> None:
    state = {"active": 0, "peak": 0}

    async def fetch(item: int) -> int:
        state["active"] += 1
        state["peak"] = max(state["peak"], state["active"])
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        state["active"] -= 1
        return item * 10

    results = asyncio.run(fetch_bounded(range(10), fetch, RetryConfig(limit=3)))

    assert results == [i * 10 for i in range(10)]
    assert state["peak"] <= 3


def test_fetch_bounded_propagates_or_drops_failures() -> None:
    async def fetch(item: int) -> int:
        if item == 2:
            raise GatewayError("bad leg")
        return item

    with pytest.raises(GatewayError):
        asyncio.run(fetch_bounded([1, 2, 3], fetch))

    assert asyncio.run(fetch_bounded([1, 2, 3], fetch, return_exceptions=True)) == [1, None, 3]


def test_fetch_bounded_retries_rate_limited_items() -> None:
    sleeps = _Sleeps()
    seen: dict = {}

    async def fetch(item: str) -> str:
        seen[item] = seen.get(item, 0) + 1
        if item == "b" and seen[item] == 1:
            raise RateLimitError("429")
        return item.upper()

    assert asyncio.run(fetch_bounded(["a", "b"], fetch, sleep=sleeps)) == ["A", "B"]
    assert seen["b"] == 2
    assert sleeps.delays == [0.25]


def test_fetch_bounded_failure_cancels_the_rest() -> None:
    async def scenario():
        cancelled = []

        async def fetch(item: int) -> int:
            if item == 0:
                raise GatewayError("bad leg")
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(item)
                raise
            return item

        with pytest.raises(GatewayError):
            await fetch_bounded(range(4), fetch, RetryConfig(limit=4))
        return cancelled

    assert sorted(asyncio.run(scenario())) == [1, 2, 3]
