from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, tzinfo
from typing import Awaitable, Callable, Iterable, Mapping, Sequence

from tokendash.coingecko import CoinGeckoClient
from tokendash.errors import PriceFeedError, UpstreamError, UpstreamRateLimited, UpstreamUnauthorized, describe_error
from tokendash.resolver import PriceResolver

logger = logging.getLogger(__name__)

MAX_POINTS = 50

WINDOW_24H = "24h"
WINDOW_7D = "7d"
WINDOW_30D = "30d"
WINDOWS = (WINDOW_24H, WINDOW_7D, WINDOW_30D)

COARSE_24H_WARNING = "24H data fell back to coarse daily approximation (limited by API plan)."


@dataclass(frozen=True)
class PricePoint:
    time: str
    value: float
    source: str


class HistoryBuffer:
    def __init__(self, max_points: int = MAX_POINTS) -> None:
        self.max_points = max(1, int(max_points))
        self._points: deque[PricePoint] = deque(maxlen=self.max_points)

    def __len__(self) -> int:
        return len(self._points)

    def append(self, point: PricePoint) -> None:
        self._points.append(point)

    def extend(self, points: Iterable[PricePoint]) -> None:
        self._points.extend(points)

    def points(self) -> list[PricePoint]:
        return list(self._points)


def _has_value(value: float | None) -> bool:
    if value is None or isinstance(value, bool):
        return False
    return math.isfinite(value) and value > 0


class LiveSampler:
    # Samples every tick, whether or not a new observation arrived.

    def __init__(
        self,
        tracked: Mapping[str, Sequence[PriceResolver]],
        *,
        max_points: int = MAX_POINTS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.tracked: dict[str, list[PriceResolver]] = {k.upper(): list(v) for k, v in tracked.items()}
        self.max_points = max_points
        self.buffers: dict[str, HistoryBuffer] = {sym: HistoryBuffer(max_points) for sym in self.tracked}
        self._clock = clock
        self.last_sample_at: datetime | None = None

    def buffer(self, symbol: str) -> HistoryBuffer:
        sym = symbol.upper()
        buf = self.buffers.get(sym)
        if buf is None:
            buf = self.buffers[sym] = HistoryBuffer(self.max_points)
        return buf

    def untrack(self, symbol: str) -> None:
        sym = symbol.upper()
        self.tracked.pop(sym, None)
        self.buffers.pop(sym, None)

    def sample(self) -> dict[str, list[PricePoint]]:
        now = self._clock()
        label = now.strftime("%H:%M:%S")
        added: dict[str, list[PricePoint]] = {}
        for sym, resolvers in self.tracked.items():
            points = [
                PricePoint(time=label, value=float(r.state.last_value), source=r.state.source or r.label)
                for r in resolvers
                if _has_value(r.state.last_value)
            ]
            if not points:
                continue
            self.buffer(sym).extend(points)
            added[sym] = points
        self.last_sample_at = now
        return added

    async def tick(self) -> None:
        self.sample()


def map_history(
    prices: Iterable[tuple[float, float]],
    *,
    date_only: bool,
    tz: tzinfo | None = None,
    source: str = "coingecko",
) -> list[PricePoint]:
    """Turn upstream ``[ms, value]`` pairs into labelled points."""
    out: list[PricePoint] = []
    for ms, value in prices:
        d = datetime.fromtimestamp(ms / 1000.0, tz=tz)
        label = d.strftime("%Y-%m-%d") if date_only else d.strftime("%H:%M")
        out.append(PricePoint(time=label, value=value, source=source))
    return out


@dataclass(frozen=True)
class WindowResult:
    window: str
    points: list[PricePoint] = field(default_factory=list)
    warning: str | None = None
    error: str | None = None
    loading: bool = False

    def to_dict(self) -> dict:
        return {
            "window": self.window,
            "points": [{"time": p.time, "value": p.value, "source": p.source} for p in self.points],
            "warning": self.warning,
            "error": self.error,
            "loading": self.loading,
        }


class HistoryFetcher:
    def __init__(
        self,
        client: CoinGeckoClient,
        *,
        retry_delay_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        tz: tzinfo | None = None,
    ) -> None:
        self._client = client
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep
        self.tz = tz

    async def fetch(self, coin_id: str, window: str) -> WindowResult:
        if window == WINDOW_24H:
            return await self.fetch_24h(coin_id)
        if window == WINDOW_7D:
            return await self.fetch_7d(coin_id)
        if window == WINDOW_30D:
            return await self.fetch_30d(coin_id)
        raise ValueError(f"unknown window {window!r}")

    async def fetch_24h(self, coin_id: str) -> WindowResult:
        # Some API plans reject fine-grained intervals, so step down:
        # no interval -> daily -> 2-day daily (two points approximating the trend).
        try:
            prices = await self._client.market_chart(coin_id, days=1, timeout=15.0)
        except UpstreamUnauthorized:
            try:
                prices = await self._client.market_chart(coin_id, days=1, interval="daily", timeout=15.0)
            except UpstreamError:
                prices = await self._client.market_chart(coin_id, days=2, interval="daily", timeout=15.0)
        except UpstreamError as e:
            logger.warning("24h fetch for %s failed (%s), retrying once", coin_id, e)
            prices = await self._client.market_chart(coin_id, days=1, timeout=15.0)

        if len(prices) < 3:
            try:
                daily = await self._client.market_chart(coin_id, days=1, interval="daily", timeout=15.0)
            except PriceFeedError as e:
                logger.debug("24h daily top-up for %s failed: %s", coin_id, e)
            else:
                if daily:
                    prices = daily

        warning = None
        if len(prices) < 3:
            warning = COARSE_24H_WARNING
            logger.warning("%s: %s", coin_id, COARSE_24H_WARNING)
        return WindowResult(window=WINDOW_24H, points=map_history(prices, date_only=False, tz=self.tz), warning=warning)

    async def fetch_7d(self, coin_id: str) -> WindowResult:
        try:
            prices = await self._client.market_chart(coin_id, days=7, interval="daily", timeout=15.0)
        except UpstreamRateLimited:
            logger.warning("7d fetch for %s rate limited, retrying in %.1fs", coin_id, self.retry_delay_seconds)
            await self._sleep(self.retry_delay_seconds)
            prices = await self._client.market_chart(coin_id, days=7, interval="daily", timeout=15.0)
        return WindowResult(window=WINDOW_7D, points=map_history(prices, date_only=True, tz=self.tz))

    async def fetch_30d(self, coin_id: str) -> WindowResult:
        prices = await self._client.market_chart(coin_id, days=30, interval="daily", timeout=20.0)
        return WindowResult(window=WINDOW_30D, points=map_history(prices, date_only=True, tz=self.tz))


_ERROR_PREFIX = {WINDOW_24H: "24H fetch", WINDOW_7D: "7D fetch", WINDOW_30D: "30D fetch"}


class WindowLoader:
    """Abort-and-replace per (token, window); superseded callers get the new result."""

    def __init__(self, fetcher: HistoryFetcher) -> None:
        self._fetcher = fetcher
        self._tasks: dict[tuple[str, str], asyncio.Task[WindowResult]] = {}
        self.results: dict[tuple[str, str], WindowResult] = {}

    def get(self, symbol: str, window: str) -> WindowResult | None:
        return self.results.get((symbol.upper(), window))

    def in_flight(self, symbol: str, window: str) -> bool:
        task = self._tasks.get((symbol.upper(), window))
        return task is not None and not task.done()

    async def load(self, symbol: str, coin_id: str, window: str) -> WindowResult:
        if window not in WINDOWS:
            raise ValueError(f"unknown window {window!r}")
        key = (symbol.upper(), window)
        prev = self._tasks.get(key)
        if prev is not None and not prev.done():
            logger.info("superseding in-flight %s fetch for %s", window, key[0])
            prev.cancel()

        prior = self.results.get(key)
        if prior is not None and prior.loading:
            prior = replace(prior, loading=False)
        self.results[key] = WindowResult(window=window, points=prior.points if prior else [], loading=True)
        task = asyncio.create_task(self._run(key, coin_id, window))
        self._tasks[key] = task
        task.add_done_callback(lambda t, key=key, prior=prior: self._forget(key, t, prior))

        while True:
            try:
                return await task
            except asyncio.CancelledError:
                latest = self._tasks.get(key)
                if latest is None or latest is task:
                    raise
                task = latest

    def _forget(self, key: tuple[str, str], task: asyncio.Task[WindowResult], prior: WindowResult | None) -> None:
        if self._tasks.get(key) is not task:
            return
        del self._tasks[key]
        if task.cancelled():
            # Not superseded: restore the entry this fetch replaced.
            if prior is None:
                self.results.pop(key, None)
            else:
                self.results[key] = prior

    async def _run(self, key: tuple[str, str], coin_id: str, window: str) -> WindowResult:
        try:
            result = await self._fetcher.fetch(coin_id, window)
        except PriceFeedError as e:
            result = WindowResult(window=window, error=describe_error(e, _ERROR_PREFIX[window]))
            logger.warning("%s %s: %s", key[0], window, result.error)
        self.results[key] = result
        return result

    async def cancel_all(self, symbol: str | None = None) -> None:
        tasks = [
            t for (sym, _), t in list(self._tasks.items())
            if (symbol is None or sym == symbol.upper()) and not t.done()
        ]
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
