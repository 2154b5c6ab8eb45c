"""
Unit tests for the store circuit breaker and in-process metrics
"""
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tracking_service.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitState,
    get_circuit_breaker,
)
from tracking_service.core.errors import InvalidEventError
from tracking_service.core.metrics import Counter, Histogram, TrackingMetrics


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("test", failure_threshold=2, recovery_timeout=30.0, success_threshold=2, clock=clock)


def _fail(breaker):
    with pytest.raises(RedisConnectionError):
        with breaker:
            raise RedisConnectionError("down")


class TestCircuitBreaker:
    """State transitions"""

    def test_opens_after_threshold(self, breaker):
        _fail(breaker)
        assert breaker.state == CircuitState.CLOSED
        _fail(breaker)
        assert breaker.state == CircuitState.OPEN

    def test_open_circuit_refuses(self, breaker, clock):
        _fail(breaker)
        _fail(breaker)
        clock.now = 10.0

        with pytest.raises(CircuitBreakerError) as exc_info:
            with breaker:
                pass

        assert exc_info.value.retry_after == pytest.approx(20.0)
        assert breaker.stats.total_rejections == 1

    def test_half_open_then_closed(self, breaker, clock):
        _fail(breaker)
        _fail(breaker)
        clock.now = 31.0

        with breaker:
            pass
        assert breaker.state == CircuitState.HALF_OPEN
        with breaker:
            pass
        assert breaker.state == CircuitState.CLOSED

    def test_failed_probe_reopens(self, breaker, clock):
        _fail(breaker)
        _fail(breaker)
        clock.now = 31.0

        _fail(breaker)

        assert breaker.state == CircuitState.OPEN
        assert breaker.stats.total_circuit_opens == 2

    def test_tracking_errors_do_not_count(self, breaker):
        for _ in range(3):
            with pytest.raises(InvalidEventError):
                with breaker:
                    raise InvalidEventError("bad event")
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.total_failures == 0

    def test_success_resets_failures(self, breaker):
        _fail(breaker)
        with breaker:
            pass
        _fail(breaker)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_async_context(self, breaker):
        async with breaker:
            pass

        with pytest.raises(RedisConnectionError):
            async with breaker:
                raise RedisConnectionError("down")

        assert breaker.stats.total_requests == 2
        assert breaker.stats.to_dict()["failure_rate"] == 0.5

    def test_registry_returns_same_breaker(self):
        assert get_circuit_breaker("registry_test") is get_circuit_breaker("registry_test")

    def test_reset(self, breaker):
        _fail(breaker)
        _fail(breaker)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.retry_after == 0.0


class TestMetrics:
    """Counters and histograms"""

    def test_labelled_counter(self):
        counter = Counter("c", "test", labels=("type",))
        counter.labels(type="click").inc()
        counter.labels(type="click").inc(2)
        counter.labels(type="purchase").inc()

        assert counter.labels(type="click").get() == 3
        assert counter.total() == 4
        assert counter.export() == {"type=click": 3, "type=purchase": 1}

    def test_unlabelled_counter(self):
        counter = Counter("c", "test")
        counter.inc()
        assert counter.export() == {"_": 1}

    def test_histogram_summary(self):
        histogram = Histogram("h", "test")
        for value in range(1, 101):
            histogram.observe(float(value))

        stats = histogram.get_stats()
        assert stats["count"] == 100
        assert stats["avg"] == 50.5
        assert stats["p50"] == 51.0
        assert stats["p99"] == 100.0

    def test_histogram_timer(self):
        histogram = Histogram("h", "test", labels=("type",))
        with histogram.labels(type="click").time():
            pass
        assert histogram.export()["type=click"]["count"] == 1

    def test_export_shape(self):
        metrics = TrackingMetrics()
        metrics.fraud_flags.labels(flag="too-fast").inc()
        exported = metrics.export_metrics()

        assert exported["fraud_flags"] == {"flag=too-fast": 1}
        assert set(exported) == {"events", "fraud_flags", "pipeline", "webhooks", "rate_limiter", "retention"}
