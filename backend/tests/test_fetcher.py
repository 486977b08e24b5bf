import asyncio
import logging

import pytest

from dlmm_tracker.core.exceptions import (
    FetchCancelledError,
    FetchFailedError,
    RateLimitError,
    SourceError,
)
from dlmm_tracker.services.fetcher import CancelToken, RateLimitedFetcher, run_bounded


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FlakyCall:
    """Raises the queued errors in order, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def test_retries_rate_limits_with_exponential_backoff():
    sleep = RecordingSleep()
    fetcher = RateLimitedFetcher(max_retries=3, base_delay=1.0, sleep=sleep)
    call = FlakyCall(RateLimitError("429"), RateLimitError("429"))

    result = asyncio.run(fetcher.fetch(call))

    assert result == "ok"
    assert call.calls == 3
    assert sleep.delays == [1.0, 2.0]


def test_gives_up_after_max_retries():
    sleep = RecordingSleep()
    fetcher = RateLimitedFetcher(max_retries=3, base_delay=1.0, sleep=sleep)
    call = FlakyCall(*[RateLimitError("429") for _ in range(10)])

    with pytest.raises(FetchFailedError) as exc_info:
        asyncio.run(fetcher.fetch(call, description="getTransaction"))

    assert exc_info.value.attempts == 4
    assert exc_info.value.rate_limited
    assert isinstance(exc_info.value.cause, RateLimitError)
    assert sleep.delays == [1.0, 2.0, 4.0]


def test_other_errors_fail_immediately():
    sleep = RecordingSleep()
    fetcher = RateLimitedFetcher(sleep=sleep)
    call = FlakyCall(SourceError("HTTP error 500"))

    with pytest.raises(FetchFailedError) as exc_info:
        asyncio.run(fetcher.fetch(call))

    assert call.calls == 1
    assert exc_info.value.attempts == 1
    assert not exc_info.value.rate_limited
    assert sleep.delays == []


def test_each_call_has_its_own_budget():
    sleep = RecordingSleep()
    fetcher = RateLimitedFetcher(max_retries=2, base_delay=0.5, sleep=sleep)

    async def run():
        first = await fetcher.fetch(FlakyCall(RateLimitError("a"), RateLimitError("b")))
        second = await fetcher.fetch(FlakyCall(RateLimitError("c"), RateLimitError("d")))
        return first, second

    assert asyncio.run(run()) == ("ok", "ok")
    assert sleep.delays == [0.5, 1.0, 0.5, 1.0]


def test_cancelled_token_stops_fetch_before_calling():
    fetcher = RateLimitedFetcher(sleep=RecordingSleep())
    call = FlakyCall()

    async def run():
        token = CancelToken()
        token.cancel()
        await fetcher.fetch(call, token=token)

    with pytest.raises(FetchCancelledError):
        asyncio.run(run())
    assert call.calls == 0


def test_expired_deadline_abandons_awaitable():
    async def run():
        token = CancelToken(timeout=0)
        await token.guard(asyncio.sleep(10))

    with pytest.raises(FetchCancelledError):
        asyncio.run(run())


def test_guard_returns_result_when_not_cancelled():
    async def work():
        return 42

    async def run():
        return await CancelToken(timeout=5).guard(work())

    assert asyncio.run(run()) == 42


def test_run_bounded_limits_concurrency_and_keeps_order():
    in_flight = 0
    peak = 0

    async def worker(item):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return item * 10

    results = asyncio.run(run_bounded(list(range(9)), worker, concurrency=3, delay=0))

    assert peak <= 3
    assert [r.value for r in results] == [i * 10 for i in range(9)]


def test_run_bounded_isolates_failures():
    async def worker(item):
        if item in (1, 3):
            raise SourceError(f"item {item} broke")
        return item

    results = asyncio.run(run_bounded(list(range(5)), worker, concurrency=2, delay=0))

    assert len(results) == 5
    assert [r.ok for r in results] == [True, False, True, False, True]
    assert "item 1 broke" in str(results[1].error)


def test_run_bounded_waits_between_items_per_worker():
    sleep = RecordingSleep()

    async def worker(item):
        return item

    asyncio.run(run_bounded([1, 2, 3], worker, concurrency=1, delay=0.1, sleep=sleep))

    assert sleep.delays == [0.1, 0.1]


def test_run_bounded_returns_completed_items_on_cancel():
    async def run():
        token = CancelToken()

        async def worker(item):
            if item == 2:
                token.cancel()
                await asyncio.sleep(10)
            return item

        return await run_bounded(list(range(6)), worker, concurrency=1, delay=0, token=token)

    results = asyncio.run(run())

    assert [r.item for r in results] == [0, 1]


def test_rate_limit_retries_are_logged(caplog):
    fetcher = RateLimitedFetcher(max_retries=3, base_delay=1.0, sleep=RecordingSleep())
    call = FlakyCall(RateLimitError("429"))

    with caplog.at_level(logging.WARNING, logger="dlmm_tracker.services.fetcher"):
        assert asyncio.run(fetcher.fetch(call, description="getAccountInfo")) == "ok"

    retries = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(retries) == 1
    assert "Retrying" in retries[0].getMessage()


def test_cancel_during_backoff_stops_retrying():
    async def run():
        token = CancelToken()

        async def sleep(delay):
            token.cancel()
            await asyncio.sleep(10)

        fetcher = RateLimitedFetcher(max_retries=3, base_delay=1.0, sleep=sleep)
        call = FlakyCall(*[RateLimitError("429") for _ in range(5)])
        try:
            await fetcher.fetch(call, token=token)
        finally:
            assert call.calls == 1

    with pytest.raises(FetchCancelledError):
        asyncio.run(run())
