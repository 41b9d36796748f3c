import importlib
import json

import httpx
from fastapi.testclient import TestClient

from tokendash.chain import ChainProvider
from tokendash.dashboard import Dashboard
from tokendash.gateway import UpstreamGateway
from tokendash.ratelimit import RateLimiter
from tokendash.resolver import SourceState

DAY_MS = 86_400_000


def _handler(calls: list[str]):
    def handle(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        path = request.url.path
        if request.method == "POST":
            return httpx.Response(200, json={"echo": json.loads(request.content)})
        if path == "/api/v3/simple/price":
            return httpx.Response(200, json={"ethereum": {"usd": 3000.12}})
        if path == "/api/v3/coins/ethereum/market_chart":
            prices = [[1_700_000_000_000 + i * DAY_MS, 3000.0 + i] for i in range(8)]
            return httpx.Response(200, json={"prices": prices})
        if path == "/api/v3/ping":
            return httpx.Response(200, text="pong")
        if path == "/api/v3/coins/list":
            raise httpx.ConnectTimeout("upstream timed out")
        return httpx.Response(404, json={"error": "not found"})

    return handle


def _client(monkeypatch):
    monkeypatch.setenv("TD_DASHBOARD_ENABLED", "0")
    monkeypatch.setenv("TD_TOKENS", "ETH,BTC")
    monkeypatch.setenv("CG_API_KEY", "demo-key")
    monkeypatch.delenv("CG_PRO_API_KEY", raising=False)

    import tokendash.main as main_mod

    importlib.reload(main_mod)

    calls: list[str] = []
    gw = UpstreamGateway(
        main_mod.settings,
        limiter=RateLimiter(0.0),
        transport=httpx.MockTransport(_handler(calls)),
    )
    dash = Dashboard(settings=main_mod.settings, gateway=gw, chain=ChainProvider(None))
    monkeypatch.setattr(main_mod, "gateway", gw)
    monkeypatch.setattr(main_mod, "dashboard", dash)
    return TestClient(main_mod.app), main_mod, calls


def test_ping_and_status(monkeypatch) -> None:
    client, _, calls = _client(monkeypatch)
    assert client.get("/ping").json() == {"ok": True}
    assert client.get("/_status").json() == {"ok": True, "base": "https://api.coingecko.com", "apiKey": "demo"}
    assert calls == []


def test_proxy_caches_and_tags_responses(monkeypatch) -> None:
    client, _, calls = _client(monkeypatch)
    url = "/api/v3/simple/price?ids=ethereum&vs_currencies=usd"

    r1 = client.get(url)
    assert r1.status_code == 200
    assert r1.json() == {"ethereum": {"usd": 3000.12}}
    assert r1.headers["x-proxy-cache"] == "MISS"
    assert r1.headers["cache-control"] == "public, max-age=15"

    r2 = client.get(url)
    assert r2.headers["x-proxy-cache"] == "HIT"
    assert len(calls) == 1
    assert calls[0] == "https://api.coingecko.com" + url


def test_proxy_text_and_failures(monkeypatch) -> None:
    client, _, _ = _client(monkeypatch)

    r = client.get("/api/v3/ping")
    assert r.status_code == 200
    assert r.text == "pong"

    r = client.get("/api/v3/coins/list")
    assert r.status_code == 502
    assert r.json()["error"] == "Bad Gateway"
    assert "x-proxy-cache" not in r.headers

    r = client.get("/api/v3/coins/unknown")
    assert r.status_code == 404
    assert r.headers["x-proxy-cache"] == "MISS"


def test_health_masks_secrets(monkeypatch) -> None:
    client, _, _ = _client(monkeypatch)
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["dashboard_running"] is False
    assert body["settings"]["cg_api_key"] == "***"
    assert body["settings"]["api_key_tier"] == "demo"


def test_live_history_reads_sampler(monkeypatch) -> None:
    client, main_mod, _ = _client(monkeypatch)
    rt = main_mod.dashboard.tokens["ETH"]
    rt.oracle.state = SourceState(last_value=3000.12, source="chainlink")
    rt.live.state = SourceState(last_value=3001.0, source="coingecko")
    main_mod.dashboard.sampler.sample()

    body = client.get("/api/tokens/eth/history").json()
    assert body["ok"] is True
    assert body["range"] == "live"
    assert [(p["source"], p["value"]) for p in body["points"]] == [("chainlink", 3000.12), ("coingecko", 3001.0)]

    assert client.get("/api/tokens/DOGE/history").status_code == 404
    assert client.get("/api/tokens/ETH/history?range=1y").status_code == 400

    tokens = client.get("/api/tokens").json()["tokens"]
    assert set(tokens) == {"ETH", "BTC"}
    assert tokens["ETH"]["coingecko_id"] == "ethereum"
    assert tokens["ETH"]["history_points"] == 2


def test_window_history_goes_through_gateway(monkeypatch) -> None:
    client, _, calls = _client(monkeypatch)
    body = client.get("/api/tokens/ETH/history?range=7d").json()
    assert body["ok"] is True
    assert body["range"] == "7d"
    assert len(body["points"]) == 8
    assert body["error"] is None
    assert calls == [
        "https://api.coingecko.com/api/v3/coins/ethereum/market_chart?vs_currency=usd&days=7&interval=daily"
    ]


def test_proxy_forwards_request_body(monkeypatch) -> None:
    client, _, calls = _client(monkeypatch)
    r = client.post("/api/v3/coins/ethereum/market_chart?days=1", json={"note": "hi"})
    assert r.status_code == 200
    assert r.json() == {"echo": {"note": "hi"}}

    r = client.post("/api/v3/coins/ethereum/market_chart?days=1", json={"note": "again"})
    assert r.json() == {"echo": {"note": "again"}}
    assert r.headers["x-proxy-cache"] == "MISS"
    assert len(calls) == 2
