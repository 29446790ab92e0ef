"""
Fan-out coordinator.

Drives one fetch per station/site with bounded concurrency and a fixed
delay between dispatches, and merges every station's outcome into a
single stream. A failing station never aborts the others.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, List, Optional

from app.core.resilience import FetchOutcome, FetchStatus

logger = logging.getLogger(__name__)


@dataclass
class StationResult:
    """Outcome of one station fetch."""

    item: Any
    outcome: FetchOutcome

    @property
    def records(self) -> List[Any]:
        return self.outcome.records


class FanOutCoordinator:
    """
    Bounded concurrent fan-out over a roster.

    Usage:
        coordinator = FanOutCoordinator(max_concurrency=4, dispatch_delay=0.1)
        async for result in coordinator.stream(stations, fetch_station):
            ...
    """

    def __init__(
        self,
        max_concurrency: int = 4,
        dispatch_delay: float = 0.0,
        queue_size: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.dispatch_delay = dispatch_delay
        self.queue_size = queue_size
        self._sleep = sleep

    async def stream(
        self,
        items: Iterable[Any],
        fetch_one: Callable[[Any], Awaitable[FetchOutcome]],
    ) -> AsyncIterator[StationResult]:
        """
        Yield one StationResult per item, in completion order.

        Results flow through a bounded queue, so a slow consumer holds
        finished workers back instead of buffering the whole roster.
        """
        items = list(items)
        if not items:
            return

        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size or len(items))
        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks: List[asyncio.Task] = []

        async def worker(item: Any) -> None:
            try:
                outcome = await fetch_one(item)
            except Exception as e:
                logger.error(f"Fan-out fetch failed for {item}: {e}", exc_info=True)
                outcome = FetchOutcome(
                    records=[],
                    status=FetchStatus.EMPTY,
                    scope=str(item),
                    source="unknown",
                    error=str(e),
                )
            finally:
                semaphore.release()
            await queue.put(StationResult(item=item, outcome=outcome))

        async def dispatch() -> None:
            for index, item in enumerate(items):
                if index and self.dispatch_delay > 0:
                    await self._sleep(self.dispatch_delay)
                await semaphore.acquire()
                tasks.append(asyncio.create_task(worker(item)))

        dispatcher = asyncio.create_task(dispatch())
        try:
            for _ in range(len(items)):
                yield await queue.get()
        finally:
            pending = [t for t in [dispatcher, *tasks] if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def collect(
        self,
        items: Iterable[Any],
        fetch_one: Callable[[Any], Awaitable[FetchOutcome]],
    ) -> List[StationResult]:
        """Run the whole fan-out and return every result."""
        return [result async for result in self.stream(items, fetch_one)]
