"""
Retry, circuit breaking and cached fallback around source adapter calls.

    breaker = registry.get("usgs_water")
    source = ResilientSource(adapter, breaker, RetryPolicy.from_settings(s), store)
    outcome = await source.fetch(StationQuery("01646500"))

ResilientSource.fetch() never raises: upstream trouble degrades to the
most recent stored observations for the query scope, or to nothing.
"""
import asyncio
import logging
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from app.core.api_errors import CircuitOpenError, NetworkError, ParseError

logger = logging.getLogger(__name__)


# =============================================================================
# Retry
# =============================================================================


@dataclass
class RetryPolicy:
    """Bounded retry of NetworkError with exponential backoff."""

    max_attempts: int = 3
    base_delay: float = 1.0  # Initial delay in seconds
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1  # Random jitter factor (0-1)
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            backoff_factor=settings.retry_backoff_factor,
            max_delay=settings.retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """
        Delay before the next attempt.

        Args:
            attempt: Failed attempt number (0-indexed)
        """
        delay = min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)
        jitter_range = delay * self.jitter
        delay += random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)

    async def call(self, func: Callable[[], Awaitable[Any]], source: str = "unknown") -> Any:
        """
        Await func(), retrying NetworkError up to max_attempts in total.

        Anything else (ParseError included) propagates on the first raise.
        """
        for attempt in range(self.max_attempts):
            try:
                return await func()
            except NetworkError as e:
                if attempt + 1 >= self.max_attempts:
                    logger.error(
                        f"[{source}] All {self.max_attempts} attempts failed: {e}"
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"[{source}] Retry {attempt + 1}/{self.max_attempts} "
                    f"after {delay:.2f}s: {e}"
                )
                await self.sleep(delay)


# =============================================================================
# Circuit breaker
# =============================================================================


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Per-source circuit breaker.

    States:
    - CLOSED: calls go through; failures inside the sliding window are counted
    - OPEN: calls are rejected without touching the network until the
      cool-down elapses
    - HALF_OPEN: exactly one trial call is admitted; success closes the
      breaker, failure re-opens it

    All transitions happen under one lock so concurrent station calls on the
    same source see a consistent state.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        window_seconds: float = 300.0,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at: float = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if (
            self._state == BreakerState.OPEN
            and self._clock() - self._opened_at >= self.cooldown_seconds
        ):
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
            logger.info(f"Circuit breaker half-open for {self.name}, allowing one trial call")

    def _prune(self, now: float) -> None:
        while self._failures and now - self._failures[0] > self.window_seconds:
            self._failures.popleft()

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: Breaker is open, or the half-open trial is taken
        """
        with self._lock:
            self._maybe_half_open()
            if self._state == BreakerState.CLOSED:
                return
            if self._state == BreakerState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return
            retry_in = None
            if self._state == BreakerState.OPEN:
                retry_in = max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))
            raise CircuitOpenError(self.name, retry_in=retry_in)

    def record_success(self) -> None:
        with self._lock:
            # A call admitted before the breaker opened cannot skip the cool-down
            if self._state == BreakerState.OPEN:
                return
            if self._state == BreakerState.HALF_OPEN:
                logger.info(f"Circuit breaker closed for {self.name} after successful call")
            self._state = BreakerState.CLOSED
            self._failures.clear()
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == BreakerState.HALF_OPEN:
                self._open(now, "trial call failed")
                return
            if self._state == BreakerState.OPEN:
                return

            self._failures.append(now)
            self._prune(now)
            if len(self._failures) >= self.failure_threshold:
                self._open(now, f"{len(self._failures)} failures")

    def release(self) -> None:
        """End a call that counts as neither success nor failure."""
        with self._lock:
            self._trial_in_flight = False

    def _open(self, now: float, reason: str) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = now
        self._failures.clear()
        self._trial_in_flight = False
        logger.warning(f"Circuit breaker opened for {self.name} after {reason}")

    def get_status(self) -> Dict[str, Any]:
        """Get current circuit breaker status."""
        with self._lock:
            self._maybe_half_open()
            now = self._clock()
            self._prune(now)
            retry_in = None
            if self._state == BreakerState.OPEN:
                retry_in = max(0.0, self.cooldown_seconds - (now - self._opened_at))
            return {
                "source": self.name,
                "state": self._state.value,
                "recent_failures": len(self._failures),
                "failure_threshold": self.failure_threshold,
                "retry_in_seconds": retry_in,
            }


class CircuitBreakerRegistry:
    """One breaker per source, created on first use."""

    def __init__(
        self,
        failure_threshold: int = 5,
        window_seconds: float = 300.0,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "CircuitBreakerRegistry":
        return cls(
            failure_threshold=settings.breaker_failure_threshold,
            window_seconds=settings.breaker_window_seconds,
            cooldown_seconds=settings.breaker_cooldown_seconds,
        )

    def get(self, source: str) -> CircuitBreaker:
        with self._lock:
            if source not in self._breakers:
                self._breakers[source] = CircuitBreaker(
                    source,
                    failure_threshold=self.failure_threshold,
                    window_seconds=self.window_seconds,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self._clock,
                )
            return self._breakers[source]

    def statuses(self) -> List[Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [breaker.get_status() for breaker in breakers]


# =============================================================================
# Fallback wrapper
# =============================================================================


class FetchStatus(str, Enum):
    LIVE = "live"
    FALLBACK = "fallback"
    EMPTY = "empty"


@dataclass
class FetchOutcome:
    """What a resilient fetch produced for one query scope."""

    records: List[Any]
    status: FetchStatus
    scope: str
    source: str
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.status != FetchStatus.LIVE


class ResilientSource:
    """
    A source adapter composed with retry, its breaker and a store fallback.
    """

    def __init__(self, adapter, breaker: CircuitBreaker, retry_policy: RetryPolicy, store):
        self.adapter = adapter
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.store = store

    @property
    def source_name(self) -> str:
        return self.adapter.SOURCE_NAME

    async def _fetch_all(self, query) -> List[Any]:
        records = await self.adapter.fetch(query)
        return list(records)

    async def fetch(self, query) -> FetchOutcome:
        scope = self.adapter.scope_key(query)

        try:
            self.breaker.before_call()
        except CircuitOpenError as e:
            logger.debug(f"[{self.source_name}] {scope}: {e}")
            return self._fallback(query, scope, str(e))

        try:
            records = await self.retry_policy.call(
                lambda: self._fetch_all(query), source=self.source_name
            )
        except NetworkError as e:
            self.breaker.record_failure()
            return self._fallback(query, scope, str(e))
        except ParseError as e:
            self.breaker.release()
            logger.warning(f"[{self.source_name}] Unusable response for {scope}: {e}")
            return self._fallback(query, scope, str(e))
        except Exception as e:
            self.breaker.record_failure()
            logger.error(
                f"[{self.source_name}] Unexpected error fetching {scope}: {e}",
                exc_info=True,
            )
            return self._fallback(query, scope, str(e))

        self.breaker.record_success()
        return FetchOutcome(
            records=records, status=FetchStatus.LIVE, scope=scope, source=self.source_name
        )

    def _fallback(self, query, scope: str, error: str) -> FetchOutcome:
        try:
            cached = list(self.adapter.load_cached(self.store, query))
        except Exception as e:
            logger.error(
                f"[{self.source_name}] Fallback lookup failed for {scope}: {e}",
                exc_info=True,
            )
            cached = []

        if cached:
            logger.warning(
                f"[{self.source_name}] Serving {len(cached)} cached records for {scope}"
            )
            status = FetchStatus.FALLBACK
        else:
            logger.warning(f"[{self.source_name}] No cached data for {scope}")
            status = FetchStatus.EMPTY

        return FetchOutcome(
            records=cached, status=status, scope=scope, source=self.source_name, error=error
        )
