from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tokendash.chain import ChainProvider, FeedRegistry
from tokendash.coingecko import CoinGeckoClient
from tokendash.gateway import UpstreamGateway
from tokendash.history import HistoryFetcher, LiveSampler, WindowLoader, WindowResult
from tokendash.resolver import PriceResolver
from tokendash.settings import Settings
from tokendash.sources import SOURCE_CHAINLINK, SOURCE_COINGECKO, ChainlinkSource, CoinGeckoSource

logger = logging.getLogger(__name__)


@dataclass
class TokenRuntime:
    symbol: str
    oracle: PriceResolver
    live: PriceResolver
    coin_id: str | None = None


@dataclass
class Dashboard:
    settings: Settings
    gateway: UpstreamGateway
    chain: ChainProvider
    tokens: dict[str, TokenRuntime] = field(default_factory=dict)
    started_at: datetime | None = None

    def __post_init__(self) -> None:
        self.coingecko = CoinGeckoClient(self.gateway)
        self.chainlink_source = ChainlinkSource(
            self.chain,
            FeedRegistry(self.settings.feed_overrides),
            stale_after_seconds=self.settings.stale_after_seconds,
        )
        self.coingecko_source = CoinGeckoSource(self.coingecko)

        for sym in self.settings.tokens:
            self.tokens[sym] = TokenRuntime(
                symbol=sym,
                oracle=PriceResolver(
                    sym,
                    [self.chainlink_source, self.coingecko_source],
                    interval_seconds=self.settings.oracle_poll_seconds,
                    fallback_enabled=self.settings.oracle_fallback,
                    label=SOURCE_CHAINLINK,
                ),
                live=PriceResolver(
                    sym,
                    [self.coingecko_source],
                    interval_seconds=self.settings.live_poll_seconds,
                    label=SOURCE_COINGECKO,
                ),
                coin_id=self.coingecko_source.coin_id(sym),
            )

        self.sampler = LiveSampler(
            {sym: [rt.oracle, rt.live] for sym, rt in self.tokens.items()},
            max_points=self.settings.history_max_points,
        )
        self.windows = WindowLoader(
            HistoryFetcher(self.coingecko, retry_delay_seconds=self.settings.rate_limit_retry_seconds)
        )
        self._scheduler: AsyncIOScheduler | None = None

    async def start(self) -> None:
        for rt in self.tokens.values():
            rt.oracle.start()
            rt.live.start()

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.sampler.tick,
            trigger="interval",
            seconds=self.settings.sample_interval_seconds,
            id="live_sample",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        self.sampler.sample()
        self.started_at = datetime.now()
        logger.info("dashboard started for %s", ", ".join(self.tokens) or "no tokens")

    async def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        for sym in list(self.tokens):
            await self._stop_token(sym)
        await self.windows.cancel_all()
        logger.info("dashboard stopped")

    async def _stop_token(self, symbol: str) -> None:
        rt = self.tokens.get(symbol)
        if rt is None:
            return
        await rt.oracle.stop()
        await rt.live.stop()

    async def unwatch(self, symbol: str) -> bool:
        sym = symbol.upper()
        if sym not in self.tokens:
            return False
        await self._stop_token(sym)
        await self.windows.cancel_all(sym)
        self.sampler.untrack(sym)
        del self.tokens[sym]
        logger.info("stopped watching %s", sym)
        return True

    async def load_window(self, symbol: str, window: str) -> WindowResult:
        rt = self.tokens.get(symbol.upper())
        coin_id = rt.coin_id if rt is not None else self.coingecko_source.coin_id(symbol)
        if not coin_id:
            return WindowResult(window=window, error=f"no CoinGecko id mapped for {symbol.upper()}")
        return await self.windows.load(symbol, coin_id, window)

    def snapshot(self) -> dict:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_sample_at": self.sampler.last_sample_at.isoformat() if self.sampler.last_sample_at else None,
            "tokens": {
                sym: {
                    "coingecko_id": rt.coin_id,
                    "oracle": rt.oracle.state.to_dict(),
                    "live": rt.live.state.to_dict(),
                    "history_points": len(self.sampler.buffer(sym)),
                }
                for sym, rt in self.tokens.items()
            },
        }
