from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

from tokendash.chain import ChainProvider, FeedRegistry
from tokendash.coingecko import CoinGeckoClient, coingecko_id_for
from tokendash.errors import PriceFeedError, SourceUnreachable

SOURCE_CHAINLINK = "chainlink"
SOURCE_COINGECKO = "coingecko"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Observation:
    price: float
    updated_at: datetime
    is_stale: bool
    source: str


class PriceSource(Protocol):
    name: str

    async def fetch(self, symbol: str) -> Observation: ...


class ChainlinkSource:
    name = SOURCE_CHAINLINK

    def __init__(
        self,
        chain: ChainProvider,
        feeds: FeedRegistry,
        *,
        stale_after_seconds: float = 3600.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._chain = chain
        self._feeds = feeds
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock

    async def fetch(self, symbol: str) -> Observation:
        feed = self._feeds.resolve(symbol)
        if feed is None:
            raise SourceUnreachable(f"no oracle feed configured for {symbol}")
        try:
            decimals = await self._chain.get_decimals(feed.address)
            rnd = await self._chain.latest_round_data(feed.address)
        except SourceUnreachable:
            raise
        except Exception as e:
            raise SourceUnreachable(f"{feed.description or symbol}: {type(e).__name__}: {e}") from e

        updated = datetime.fromtimestamp(rnd.updated_at, tz=timezone.utc)
        age = (self._clock() - updated).total_seconds()
        return Observation(
            price=rnd.answer / (10**decimals),
            updated_at=updated,
            is_stale=age > self.stale_after_seconds,
            source=self.name,
        )


class CoinGeckoSource:
    name = SOURCE_COINGECKO

    def __init__(
        self,
        client: CoinGeckoClient,
        *,
        ids: dict[str, str] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._ids = {k.upper(): v for k, v in ids.items()} if ids is not None else None
        self._clock = clock

    def coin_id(self, symbol: str) -> str | None:
        if self._ids is not None:
            return self._ids.get((symbol or "").strip().upper())
        return coingecko_id_for(symbol)

    async def fetch(self, symbol: str) -> Observation:
        coin_id = self.coin_id(symbol)
        if not coin_id:
            raise SourceUnreachable(f"no CoinGecko id mapped for {symbol}")
        try:
            quote = await self._client.simple_price(coin_id)
        except PriceFeedError:
            raise
        except Exception as e:
            raise SourceUnreachable(f"{coin_id}: {type(e).__name__}: {e}") from e
        if quote.stale_since is not None:
            # Expired cache entry served while upstream is down.
            updated = datetime.fromtimestamp(quote.stale_since, tz=timezone.utc)
            return Observation(price=quote.price, updated_at=updated, is_stale=True, source=self.name)
        return Observation(price=quote.price, updated_at=self._clock(), is_stale=False, source=self.name)
