from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urlencode

from tokendash.errors import MalformedResponse, error_for_status
from tokendash.gateway import CACHE_STALE, GatewayResponse, UpstreamGateway

# Token symbol -> CoinGecko coin id for the REST source.
COINGECKO_IDS: dict[str, str] = {
    "ETH": "ethereum",
    "BTC": "bitcoin",
    "LINK": "chainlink",
    "MATIC": "matic-network",
    "USDT": "tether",
}


def coingecko_id_for(symbol: str) -> str | None:
    return COINGECKO_IDS.get((symbol or "").strip().upper())


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    v = float(value)
    return v if math.isfinite(v) else None


@dataclass(frozen=True)
class SimplePrice:
    price: float
    # Set when the gateway answered from an expired cache entry.
    stale_since: float | None = None


class CoinGeckoClient:
    def __init__(self, gateway: UpstreamGateway, *, vs_currency: str = "usd") -> None:
        self._gateway = gateway
        self.vs_currency = vs_currency

    async def get(self, path: str, params: dict[str, Any], *, timeout: float | None = None) -> GatewayResponse:
        request_path = f"/api/v3{path}?{urlencode(params)}"
        resp = await self._gateway.forward(request_path, timeout=timeout)
        if not resp.ok:
            raise error_for_status(resp.status, resp.body)
        if not resp.is_json:
            raise MalformedResponse(f"non-JSON body from {path}")
        return resp

    async def get_json(self, path: str, params: dict[str, Any], *, timeout: float | None = None) -> Any:
        return (await self.get(path, params, timeout=timeout)).body

    async def simple_price(self, coin_id: str) -> SimplePrice:
        resp = await self.get("/simple/price", {"ids": coin_id, "vs_currencies": self.vs_currency})
        data = resp.body
        entry = data.get(coin_id) if isinstance(data, dict) else None
        price = _to_float(entry.get(self.vs_currency)) if isinstance(entry, dict) else None
        if price is None:
            raise MalformedResponse(f"no {self.vs_currency} price for {coin_id}")
        stale_since = resp.stored_at if resp.cache == CACHE_STALE else None
        return SimplePrice(price=price, stale_since=stale_since)

    async def market_chart(
        self,
        coin_id: str,
        *,
        days: int,
        interval: str | None = None,
        timeout: float | None = None,
    ) -> list[tuple[float, float]]:
        params: dict[str, Any] = {"vs_currency": self.vs_currency, "days": days}
        if interval:
            params["interval"] = interval
        data = await self.get_json(f"/coins/{quote(coin_id, safe='')}/market_chart", params, timeout=timeout)
        if not isinstance(data, dict):
            raise MalformedResponse(f"unexpected market_chart payload for {coin_id}")
        out: list[tuple[float, float]] = []
        for it in data.get("prices") or []:
            if not isinstance(it, (list, tuple)) or len(it) < 2:
                continue
            ts, value = _to_float(it[0]), _to_float(it[1])
            if ts is None or value is None:
                continue
            out.append((ts, value))
        return out
