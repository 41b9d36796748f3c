import asyncio

from tokendash.ratelimit import RateLimiter


class _FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_first_acquire_is_immediate() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(1.2, clock=clock, sleep=clock.sleep)
    granted = asyncio.run(limiter.acquire())
    assert granted == 100.0
    assert clock.sleeps == []


def test_grants_are_spaced_by_min_interval() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(1.2, clock=clock, sleep=clock.sleep)

    async def run() -> list[float]:
        out = []
        for i in range(6):
            out.append(await limiter.acquire())
            # irregular caller pacing
            clock.now += 0.5 if i % 2 else 0.0
        return out

    grants = asyncio.run(run())
    assert len(grants) == 6
    for a, b in zip(grants, grants[1:]):
        assert b - a >= 1.2 - 1e-9


def test_concurrent_acquires_are_serialized() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(1.2, clock=clock, sleep=clock.sleep)

    async def run() -> list[float]:
        return list(await asyncio.gather(*[limiter.acquire() for _ in range(4)]))

    grants = sorted(asyncio.run(run()))
    assert limiter.grants == 4
    for a, b in zip(grants, grants[1:]):
        assert b - a >= 1.2 - 1e-9


def test_no_wait_after_long_gap() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(1.2, clock=clock, sleep=clock.sleep)

    async def run() -> None:
        await limiter.acquire()
        clock.now += 5.0
        await limiter.acquire()

    asyncio.run(run())
    assert clock.sleeps == []
