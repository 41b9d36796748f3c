import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from tokendash.chain import (
    MAINNET_FEEDS,
    SELECTOR_DECIMALS,
    SELECTOR_LATEST_ROUND_DATA,
    ChainProvider,
    FeedRegistry,
    decode_round_data,
)
from tokendash.errors import SourceUnreachable
from tokendash.settings import FeedConfig
from tokendash.sources import ChainlinkSource

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _word(value: int) -> str:
    return format(value % (1 << 256), "064x")


def _round_hex(answer: int, updated_at: int) -> str:
    return "0x" + "".join(_word(v) for v in (42, answer, updated_at - 5, updated_at, 42))


class _Rpc:
    def __init__(self, *, answer: int, updated_at: int, decimals: int = 8) -> None:
        self.answer = answer
        self.updated_at = updated_at
        self.decimals = decimals
        self.calls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert payload["method"] == "eth_call"
        data = payload["params"][0]["data"]
        self.calls.append(data)
        if data == SELECTOR_DECIMALS:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x" + _word(self.decimals)})
        if data == SELECTOR_LATEST_ROUND_DATA:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": 1, "result": _round_hex(self.answer, self.updated_at)}
            )
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "revert"}})


def test_decode_round_data_signed_answer() -> None:
    rd = decode_round_data(_round_hex(-5, 1_700_000_000))
    assert rd.answer == -5
    assert rd.updated_at == 1_700_000_000
    assert rd.round_id == 42

    with pytest.raises(ValueError):
        decode_round_data("0x" + _word(1) * 2)


def test_feed_registry_prefers_overrides() -> None:
    override = FeedConfig(address="0x" + "ab" * 20, decimals=18, description="ETH / USD")
    reg = FeedRegistry({"eth": override})
    assert reg.resolve("ETH") == override
    assert reg.resolve("btc") == MAINNET_FEEDS["BTC"]
    assert reg.resolve("DOGE") is None


def test_chainlink_source_reads_price_and_caches_decimals() -> None:
    rpc = _Rpc(answer=300_012_000_000, updated_at=int((NOW - timedelta(minutes=5)).timestamp()))
    chain = ChainProvider("https://rpc.example", transport=httpx.MockTransport(rpc))
    src = ChainlinkSource(chain, FeedRegistry(), clock=lambda: NOW)

    async def run():
        a = await src.fetch("ETH")
        b = await src.fetch("ETH")
        await chain.close()
        return a, b

    a, b = asyncio.run(run())
    assert a.price == pytest.approx(3000.12)
    assert a.is_stale is False
    assert a.source == "chainlink"
    assert a.updated_at == NOW - timedelta(minutes=5)
    assert b.price == pytest.approx(3000.12)
    assert rpc.calls.count(SELECTOR_DECIMALS) == 1
    assert rpc.calls.count(SELECTOR_LATEST_ROUND_DATA) == 2


def test_chainlink_source_flags_old_rounds_stale() -> None:
    rpc = _Rpc(answer=6_500_000_000_000, updated_at=int((NOW - timedelta(hours=2)).timestamp()))
    chain = ChainProvider("https://rpc.example", transport=httpx.MockTransport(rpc))
    src = ChainlinkSource(chain, FeedRegistry(), clock=lambda: NOW)
    obs = asyncio.run(src.fetch("BTC"))
    assert obs.price == pytest.approx(65000.0)
    assert obs.is_stale is True


def test_chainlink_source_failures_are_source_unreachable() -> None:
    src = ChainlinkSource(ChainProvider(None), FeedRegistry(), clock=lambda: NOW)
    with pytest.raises(SourceUnreachable, match="no JSON-RPC provider"):
        asyncio.run(src.fetch("ETH"))

    with pytest.raises(SourceUnreachable, match="no oracle feed"):
        asyncio.run(src.fetch("DOGE"))

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "boom"}})

    chain = ChainProvider("https://rpc.example", transport=httpx.MockTransport(broken))
    src = ChainlinkSource(chain, FeedRegistry(), clock=lambda: NOW)
    with pytest.raises(SourceUnreachable, match="RuntimeError"):
        asyncio.run(src.fetch("LINK"))

    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    chain = ChainProvider("https://rpc.example", transport=httpx.MockTransport(down))
    src = ChainlinkSource(chain, FeedRegistry(), clock=lambda: NOW)
    with pytest.raises(SourceUnreachable, match="ConnectError"):
        asyncio.run(src.fetch("LINK"))
