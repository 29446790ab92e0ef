"""
Unit tests for app/core/resilience.py

Tests cover retry counts and backoff, circuit breaker transitions
(closed -> open -> half-open -> closed/open), the neutral handling of
parse failures, and the cached fallback served by ResilientSource.

All tests are fully offline: adapters are fakes, clocks and sleeps are
injected.
"""
import pytest
from typing import List
from unittest.mock import AsyncMock, MagicMock

from app.core.api_errors import CircuitOpenError, NetworkError, ParseError
from app.core.resilience import (
    BreakerState,
    CircuitBreaker,
    CircuitBreakerRegistry,
    FetchStatus,
    ResilientSource,
    RetryPolicy,
)

from factories import make_reading


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeAdapter:
    """Stands in for a SourceAdapter: scripted fetch results, fixed cache."""

    SOURCE_NAME = "fake_source"

    def __init__(self, results=None, cached=None):
        self.results = list(results or [])
        self.cached = cached or []
        self.calls = 0
        self.cache_lookups = 0

    def scope_key(self, query):
        return f"station {query}"

    async def fetch(self, query):
        self.calls += 1
        result = self.results.pop(0) if self.results else []
        if isinstance(result, Exception):
            raise result
        return iter(result)

    def load_cached(self, store, query):
        self.cache_lookups += 1
        return list(self.cached)


def _network_error():
    return NetworkError("Server error: boom", source="fake_source", status_code=503)


def _no_wait_policy(max_attempts=3):
    return RetryPolicy(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, sleep=RecordingSleep())


# =============================================================================
# Retry
# =============================================================================


class TestRetryPolicy:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_network_errors_then_succeeds(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, backoff_factor=2.0, jitter=0.0, sleep=sleep)
        func = AsyncMock(side_effect=[_network_error(), _network_error(), "ok"])

        result = await policy.call(func, source="fake_source")

        assert result == "ok"
        assert func.await_count == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(max_attempts=3, base_delay=0.5, jitter=0.0, sleep=sleep)
        func = AsyncMock(side_effect=_network_error())

        with pytest.raises(NetworkError):
            await policy.call(func)

        assert func.await_count == 3
        assert len(sleep.delays) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_parse_error_is_not_retried(self):
        policy = _no_wait_policy()
        func = AsyncMock(side_effect=ParseError("bad body", source="fake_source"))

        with pytest.raises(ParseError):
            await policy.call(func)

        assert func.await_count == 1

    @pytest.mark.unit
    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, backoff_factor=10.0, max_delay=5.0, jitter=0.0)
        assert policy.delay_for(0) == 1.0
        assert policy.delay_for(3) == 5.0

    @pytest.mark.unit
    def test_jitter_stays_in_range(self):
        policy = RetryPolicy(base_delay=10.0, backoff_factor=1.0, jitter=0.1)
        for _ in range(50):
            assert 9.0 <= policy.delay_for(0) <= 11.0

    @pytest.mark.unit
    def test_from_settings(self, settings):
        policy = RetryPolicy.from_settings(settings)
        assert policy.max_attempts == settings.retry_max_attempts
        assert policy.backoff_factor == settings.retry_backoff_factor


# =============================================================================
# Circuit breaker
# =============================================================================


class TestCircuitBreaker:

    def _breaker(self, clock, threshold=3):
        return CircuitBreaker(
            "fake_source",
            failure_threshold=threshold,
            window_seconds=60.0,
            cooldown_seconds=30.0,
            clock=clock,
        )

    @pytest.mark.unit
    def test_opens_after_threshold_failures(self):
        breaker = self._breaker(FakeClock())

        for _ in range(2):
            breaker.before_call()
            breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED

        breaker.before_call()
        breaker.record_failure()
        assert breaker.state == BreakerState.OPEN

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call()
        assert exc_info.value.retry_in == pytest.approx(30.0)

    @pytest.mark.unit
    def test_failures_outside_window_are_forgotten(self):
        clock = FakeClock()
        breaker = self._breaker(clock)

        breaker.record_failure()
        breaker.record_failure()
        clock.advance(61)
        breaker.record_failure()

        assert breaker.state == BreakerState.CLOSED
        assert breaker.get_status()["recent_failures"] == 1

    @pytest.mark.unit
    def test_success_resets_failure_count(self):
        breaker = self._breaker(FakeClock())
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.unit
    def test_half_open_admits_exactly_one_trial(self):
        clock = FakeClock()
        breaker = self._breaker(clock, threshold=1)
        breaker.record_failure()
        clock.advance(30)

        assert breaker.state == BreakerState.HALF_OPEN
        breaker.before_call()
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    @pytest.mark.unit
    def test_trial_success_closes(self):
        clock = FakeClock()
        breaker = self._breaker(clock, threshold=1)
        breaker.record_failure()
        clock.advance(30)

        breaker.before_call()
        breaker.record_success()

        assert breaker.state == BreakerState.CLOSED
        breaker.before_call()

    @pytest.mark.unit
    def test_late_success_does_not_close_open_breaker(self):
        clock = FakeClock()
        breaker = self._breaker(clock, threshold=2)

        # Admitted while closed, completes after other calls opened the breaker
        breaker.before_call()
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == BreakerState.OPEN

        breaker.record_success()

        assert breaker.state == BreakerState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

        clock.advance(30)
        assert breaker.state == BreakerState.HALF_OPEN

    @pytest.mark.unit
    def test_trial_failure_reopens(self):
        clock = FakeClock()
        breaker = self._breaker(clock, threshold=1)
        breaker.record_failure()
        clock.advance(30)

        breaker.before_call()
        breaker.record_failure()

        assert breaker.state == BreakerState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    @pytest.mark.unit
    def test_release_frees_trial_slot(self):
        clock = FakeClock()
        breaker = self._breaker(clock, threshold=1)
        breaker.record_failure()
        clock.advance(30)

        breaker.before_call()
        breaker.release()

        assert breaker.state == BreakerState.HALF_OPEN
        breaker.before_call()

    @pytest.mark.unit
    def test_status(self):
        clock = FakeClock()
        breaker = self._breaker(clock, threshold=1)
        breaker.record_failure()
        clock.advance(10)

        status = breaker.get_status()
        assert status["source"] == "fake_source"
        assert status["state"] == "open"
        assert status["retry_in_seconds"] == pytest.approx(20.0)


class TestCircuitBreakerRegistry:

    @pytest.mark.unit
    def test_one_breaker_per_source(self):
        registry = CircuitBreakerRegistry(failure_threshold=2)
        assert registry.get("usgs_water") is registry.get("usgs_water")
        assert registry.get("usgs_water") is not registry.get("noaa_tides")
        assert {s["source"] for s in registry.statuses()} == {"usgs_water", "noaa_tides"}

    @pytest.mark.unit
    def test_breakers_are_independent(self):
        registry = CircuitBreakerRegistry(failure_threshold=1)
        registry.get("usgs_water").record_failure()
        assert registry.get("usgs_water").state == BreakerState.OPEN
        assert registry.get("noaa_tides").state == BreakerState.CLOSED


# =============================================================================
# Resilient source
# =============================================================================


class TestResilientSource:

    def _source(self, adapter, threshold=3, clock=None, max_attempts=3):
        breaker = CircuitBreaker(
            adapter.SOURCE_NAME,
            failure_threshold=threshold,
            window_seconds=300.0,
            cooldown_seconds=60.0,
            clock=clock or FakeClock(),
        )
        return ResilientSource(adapter, breaker, _no_wait_policy(max_attempts), store=MagicMock())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_live_fetch(self):
        reading = make_reading()
        source = self._source(FakeAdapter(results=[[reading]]))

        outcome = await source.fetch("01646500")

        assert outcome.status == FetchStatus.LIVE
        assert outcome.records == [reading]
        assert outcome.degraded is False
        assert outcome.scope == "station 01646500"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_network_failure_serves_cache(self):
        cached = make_reading(level=4.0)
        adapter = FakeAdapter(results=[_network_error()] * 3, cached=[cached])
        source = self._source(adapter)

        outcome = await source.fetch("01646500")

        assert adapter.calls == 3
        assert outcome.status == FetchStatus.FALLBACK
        assert outcome.records == [cached]
        assert "Server error" in outcome.error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_cache_yields_empty(self):
        source = self._source(FakeAdapter(results=[_network_error()] * 3))
        outcome = await source.fetch("01646500")
        assert outcome.status == FetchStatus.EMPTY
        assert outcome.records == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_breaker_skips_network(self):
        cached = make_reading()
        adapter = FakeAdapter(results=[_network_error()] * 6, cached=[cached])
        source = self._source(adapter, threshold=2, max_attempts=1)

        await source.fetch("a")
        await source.fetch("b")
        assert source.breaker.state == BreakerState.OPEN

        calls_before = adapter.calls
        outcome = await source.fetch("c")

        assert adapter.calls == calls_before
        assert outcome.status == FetchStatus.FALLBACK
        assert "Circuit breaker is open" in outcome.error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_breaker_recovers_after_cooldown(self):
        clock = FakeClock()
        reading = make_reading()
        adapter = FakeAdapter(results=[_network_error(), [reading]])
        source = self._source(adapter, threshold=1, clock=clock, max_attempts=1)

        assert (await source.fetch("a")).status == FetchStatus.EMPTY
        assert source.breaker.state == BreakerState.OPEN

        clock.advance(60)
        outcome = await source.fetch("a")

        assert outcome.status == FetchStatus.LIVE
        assert source.breaker.state == BreakerState.CLOSED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_parse_error_does_not_count_against_breaker(self):
        adapter = FakeAdapter(results=[ParseError("bad body")] * 5)
        source = self._source(adapter, threshold=2)

        for _ in range(5):
            outcome = await source.fetch("a")
            assert outcome.status == FetchStatus.EMPTY

        assert adapter.calls == 5
        assert source.breaker.state == BreakerState.CLOSED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_error_counts_as_failure(self):
        adapter = FakeAdapter(results=[RuntimeError("bug")])
        source = self._source(adapter, threshold=1)

        outcome = await source.fetch("a")

        assert outcome.status == FetchStatus.EMPTY
        assert source.breaker.state == BreakerState.OPEN

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_cache_lookup_degrades_to_empty(self):
        adapter = FakeAdapter(results=[_network_error()] * 3)
        adapter.load_cached = MagicMock(side_effect=RuntimeError("db down"))
        source = self._source(adapter)

        outcome = await source.fetch("a")

        assert outcome.status == FetchStatus.EMPTY
