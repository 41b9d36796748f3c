from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import httpx

from tokendash.errors import SourceUnreachable
from tokendash.settings import FeedConfig

# Chainlink AggregatorV3 feeds on Ethereum mainnet
# (https://docs.chain.link/data-feeds/price-feeds/addresses).
MAINNET_FEEDS: dict[str, FeedConfig] = {
    "ETH": FeedConfig(address="0x5f4eC3Df9cbd43714FE2740f5E3616155c5b8419", decimals=8, description="ETH / USD"),
    "BTC": FeedConfig(address="0xF4030086522a5bEEa4988F8cA5B36dbC97BeE88c", decimals=8, description="BTC / USD"),
    "LINK": FeedConfig(address="0x2c1d072e956AFFC0D435Cb7AC38EF18d24d9127c", decimals=8, description="LINK / USD"),
}

SELECTOR_DECIMALS = "0x313ce567"
SELECTOR_LATEST_ROUND_DATA = "0xfeaf968c"


@dataclass(frozen=True)
class RoundData:
    round_id: int
    answer: int
    started_at: int
    updated_at: int
    answered_in_round: int


class FeedRegistry:
    def __init__(self, overrides: dict[str, FeedConfig] | None = None) -> None:
        self._overrides = {k.upper(): v for k, v in (overrides or {}).items()}

    def resolve(self, symbol: str) -> FeedConfig | None:
        sym = (symbol or "").strip().upper()
        return self._overrides.get(sym) or MAINNET_FEEDS.get(sym)

    def symbols(self) -> list[str]:
        return sorted(set(MAINNET_FEEDS) | set(self._overrides))


def _hex_to_int(hex_str: str) -> int:
    return int(hex_str, 16)


def _words(result_hex: str) -> list[int]:
    h = (result_hex or "").lower()
    if h.startswith("0x"):
        h = h[2:]
    if not h or len(h) % 64 != 0:
        raise ValueError(f"unexpected abi result length {len(h)}")
    return [int(h[i : i + 64], 16) for i in range(0, len(h), 64)]


def _to_int256(word: int) -> int:
    return word - (1 << 256) if word >= (1 << 255) else word


def decode_round_data(result_hex: str) -> RoundData:
    words = _words(result_hex)
    if len(words) < 5:
        raise ValueError(f"latestRoundData returned {len(words)} words, expected 5")
    return RoundData(
        round_id=words[0],
        answer=_to_int256(words[1]),
        started_at=words[2],
        updated_at=words[3],
        answered_in_round=words[4],
    )


class ChainProvider:
    def __init__(
        self,
        rpc_url: str | None,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = (rpc_url or "").strip() or None
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=transport,
        )
        self._lock = asyncio.Lock()
        # address -> decimals
        self._decimals: dict[str, int] = {}
        self.request_timeout_seconds = timeout_seconds

    async def close(self) -> None:
        await self._client.aclose()

    async def eth_call(self, to: str, data: str) -> str:
        if not self.rpc_url:
            raise SourceUnreachable("no JSON-RPC provider configured (set MAINNET_RPC_URL or INFURA_PROJECT_ID)")
        result = await asyncio.wait_for(
            _rpc(self._client, self.rpc_url, "eth_call", [{"to": to, "data": data}, "latest"]),
            timeout=self.request_timeout_seconds,
        )
        if not isinstance(result, str):
            raise ValueError(f"eth_call returned {type(result).__name__}")
        return result

    async def get_decimals(self, address: str) -> int:
        key = address.lower()
        async with self._lock:
            cached = self._decimals.get(key)
        if cached is not None:
            return cached
        dec = _hex_to_int(await self.eth_call(address, SELECTOR_DECIMALS))
        async with self._lock:
            self._decimals[key] = dec
        return dec

    async def latest_round_data(self, address: str) -> RoundData:
        return decode_round_data(await self.eth_call(address, SELECTOR_LATEST_ROUND_DATA))


async def _rpc(client: httpx.AsyncClient, rpc_url: str, method: str, params: list[Any]) -> Any:
    payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
    r = await client.post(rpc_url, json=payload, headers={"Content-Type": "application/json"})
    r.raise_for_status()
    data = r.json()
    if "error" in data:
        raise RuntimeError(str(data["error"]))
    return data.get("result")
