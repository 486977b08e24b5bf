"""
Rate-limit aware fetching.

RateLimitedFetcher retries a single idempotent call on rate-limit errors
with exponential backoff. run_bounded drives a batch of such calls through
a fixed pool of workers with a politeness delay between items. Both honour
a CancelToken.
"""
from __future__ import annotations
import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Sequence,
    TypeVar,
)

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dlmm_tracker.core.config import settings
from dlmm_tracker.core.exceptions import (
    FetchCancelledError,
    FetchFailedError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


# =========================================================================
# Cancellation
# =========================================================================

class CancelToken:
    """
    Cooperative cancellation with an optional deadline.

    A token is cancelled once cancel() is called or the deadline passes.
    Awaitables run through guard() are abandoned at that moment.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = asyncio.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise FetchCancelledError("Operation cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await, but give up as soon as the token is cancelled."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise FetchCancelledError("Operation cancelled")

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise FetchCancelledError("Operation cancelled")


# =========================================================================
# Retry wrapper
# =========================================================================

class RateLimitedFetcher:
    """
    Stateless retry policy parameterized by (max_retries, base_delay).

    Each fetch() call has its own retry budget. Only RateLimitError is
    retried, with base, 2*base, 4*base... between attempts; anything else
    fails on the first attempt.
    """

    def __init__(
        self,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.base_delay = settings.retry_base_delay if base_delay is None else base_delay
        self._sleep = sleep

    def _retrying(self, token: Optional[CancelToken]) -> AsyncRetrying:
        async def sleep(delay: float) -> None:
            if token is not None:
                await token.guard(self._sleep(delay))
            else:
                await self._sleep(delay)

        return AsyncRetrying(
            retry=retry_if_exception_type(RateLimitError),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.base_delay),
            sleep=sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def fetch(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "request",
        token: Optional[CancelToken] = None,
    ) -> T:
        """
        Run operation until it succeeds, fails for good, or is cancelled.

        Raises:
            FetchFailedError: Retries exhausted or non-retryable error
            FetchCancelledError: Token fired
        """
        attempts = 0
        try:
            async for attempt in self._retrying(token):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if token is not None:
                        token.raise_if_cancelled()
                        result = await token.guard(operation())
                    else:
                        result = await operation()
        except FetchCancelledError:
            raise
        except RateLimitError as e:
            logger.error("%s: rate limited, giving up after %d attempts", description, attempts)
            raise FetchFailedError(
                f"{description}: rate limited after {attempts} attempts",
                attempts=attempts,
                rate_limited=True,
                cause=e,
                source=e.source,
            ) from e
        except Exception as e:
            raise FetchFailedError(
                f"{description}: {e}",
                attempts=attempts,
                rate_limited=False,
                cause=e,
                source=getattr(e, "source", ""),
            ) from e
        return result


# =========================================================================
# Bounded batch execution
# =========================================================================

@dataclass
class BatchResult(Generic[T, R]):
    """Outcome of one batch item that ran to completion."""
    index: int
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    concurrency: Optional[int] = None,
    delay: Optional[float] = None,
    token: Optional[CancelToken] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> List[BatchResult[T, R]]:
    """
    Run worker over items with at most `concurrency` in flight.

    A failing item is recorded with its error and the batch carries on. On
    cancellation, queued and in-flight items are abandoned and only the
    completed ones are returned, in input order.
    """
    concurrency = settings.batch_concurrency if concurrency is None else concurrency
    delay = settings.batch_delay if delay is None else delay

    if not items:
        return []

    queue: asyncio.Queue = asyncio.Queue()
    for index, item in enumerate(items):
        queue.put_nowait((index, item))

    results: Dict[int, BatchResult[T, R]] = {}

    async def work() -> None:
        first = True
        while True:
            if token is not None and token.cancelled:
                return
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            try:
                if not first and delay > 0:
                    if token is not None:
                        await token.guard(sleep(delay))
                    else:
                        await sleep(delay)
                first = False

                if token is not None:
                    value = await token.guard(worker(item))
                else:
                    value = await worker(item)
                results[index] = BatchResult(index=index, item=item, value=value)
            except FetchCancelledError:
                return
            except Exception as e:
                logger.error("Batch item %d failed: %s", index, e)
                results[index] = BatchResult(index=index, item=item, error=e)

    workers = [asyncio.create_task(work()) for _ in range(max(1, min(concurrency, len(items))))]
    await asyncio.gather(*workers)

    if len(results) < len(items):
        logger.warning("Batch cancelled: %d of %d items completed", len(results), len(items))

    return [results[i] for i in sorted(results)]
