"""Unit tests for ProviderRateLimiter."""

import threading

import pytest

from paperflow_shared.rate_limit import ProviderLimits, ProviderRateLimiter


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def limiter(clock: FakeClock) -> ProviderRateLimiter:
    async def fake_sleep(seconds: float) -> None:
        clock.now += seconds

    return ProviderRateLimiter(
        limits={"openai": ProviderLimits(per_second=2, per_minute=5)},
        clock=clock,
        sleep=fake_sleep,
    )


class TestTryAcquire:
    """Tests for the non-blocking gate."""

    def test_per_second_budget(self, limiter) -> None:
        assert limiter.try_acquire("openai") is True
        assert limiter.try_acquire("openai") is True
        assert limiter.try_acquire("openai") is False

    def test_refills_with_time(self, limiter, clock) -> None:
        limiter.try_acquire("openai")
        limiter.try_acquire("openai")
        clock.now += 1.0
        assert limiter.try_acquire("openai") is True

    def test_per_minute_budget(self, limiter, clock) -> None:
        granted = 0
        for _ in range(10):
            if limiter.try_acquire("openai"):
                granted += 1
            clock.now += 1.0
        # 5 per minute, plus the refill over 10 seconds (< 1 token)
        assert granted == 5

    def test_unknown_provider_is_unlimited(self, limiter) -> None:
        assert all(limiter.try_acquire("ollama") for _ in range(100))

    def test_concurrent_acquire_never_exceeds_budget(self) -> None:
        limiter = ProviderRateLimiter(
            limits={"anthropic": ProviderLimits(per_second=50, per_minute=50)},
            clock=lambda: 0.0,
        )
        results: list[bool] = []
        lock = threading.Lock()

        def worker() -> None:
            for _ in range(20):
                ok = limiter.try_acquire("anthropic")
                with lock:
                    results.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 50


class TestAcquire:
    """Tests for the bounded-wait variant."""

    async def test_waits_for_next_token(self, limiter, clock) -> None:
        limiter.try_acquire("openai")
        limiter.try_acquire("openai")
        assert await limiter.acquire("openai", max_wait=5.0) is True
        assert clock.now > 0

    async def test_gives_up_past_max_wait(self, limiter, clock) -> None:
        for _ in range(5):
            assert limiter.try_acquire("openai") is True
            clock.now += 0.5
        # Minute bucket is nearly empty: next token is seconds away
        assert await limiter.acquire("openai", max_wait=1.0) is False
        assert limiter.get_status("openai")["queue_length"] == 0


class TestStatus:
    """Tests for status reporting and upstream throttling."""

    def test_reports_usage(self, limiter) -> None:
        limiter.try_acquire("openai")
        status = limiter.get_status("openai")
        assert status["limited"] is True
        assert status["available_permits"] == 1
        assert status["requests_last_minute"] == 1
        assert status["load_percentage"] == 20.0

    def test_record_throttled_drains(self, limiter) -> None:
        limiter.record_throttled("openai")
        assert limiter.try_acquire("openai") is False
        assert limiter.get_status("openai")["last_throttled"] is not None

    def test_unlimited_status(self, limiter) -> None:
        assert limiter.get_status("ollama")["limited"] is False
