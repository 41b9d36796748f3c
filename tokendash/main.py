from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from tokendash.chain import ChainProvider
from tokendash.dashboard import Dashboard
from tokendash.gateway import GatewayResponse, UpstreamGateway
from tokendash.history import WINDOWS
from tokendash.settings import Settings, effective_settings_dict

logger = logging.getLogger(__name__)

app = FastAPI(title="TokenDash Price Gateway")

settings = Settings.load()
gateway = UpstreamGateway(settings)
chain = ChainProvider(settings.rpc_url, timeout_seconds=settings.rpc_timeout_seconds)
dashboard = Dashboard(settings=settings, gateway=gateway, chain=chain)

_PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def _to_response(resp: GatewayResponse) -> Response:
    if resp.is_json:
        return JSONResponse(resp.body, status_code=resp.status, headers=resp.headers)
    return Response(content=str(resp.body), status_code=resp.status, headers=resp.headers, media_type="text/plain")


@app.get("/ping")
async def ping() -> dict:
    return {"ok": True}


@app.get("/_status")
async def status() -> dict:
    return {"ok": True, "base": settings.upstream_base, "apiKey": settings.api_key_tier}


@app.get("/health")
async def health() -> dict:
    return {
        "ok": True,
        "dashboard_running": dashboard.started_at is not None,
        "cache_entries": len(gateway.cache),
        "upstream_calls": gateway.upstream_calls,
        "settings": effective_settings_dict(settings),
    }


@app.api_route("/api/v3/{path:path}", methods=_PROXY_METHODS)
async def proxy(path: str, request: Request) -> Response:
    # Preserve path and query exactly as the caller sent them.
    request_path = request.url.path
    if request.url.query:
        request_path = f"{request_path}?{request.url.query}"
    body = await request.body() if request.method not in ("GET", "HEAD") else None
    resp = await gateway.forward(request_path, dict(request.headers), method=request.method, content=body or None)
    return _to_response(resp)


@app.get("/api/tokens")
async def api_tokens() -> JSONResponse:
    return JSONResponse(dashboard.snapshot())


@app.get("/api/tokens/{symbol}/history")
async def api_token_history(symbol: str, request: Request) -> JSONResponse:
    sym = (symbol or "").strip().upper()
    window = request.query_params.get("range", "live").strip().lower()

    if window == "live":
        if sym not in dashboard.tokens:
            return JSONResponse({"ok": False, "error": f"{sym} is not tracked"}, status_code=404)
        points = dashboard.sampler.buffer(sym).points()
        return JSONResponse(
            {
                "ok": True,
                "symbol": sym,
                "range": "live",
                "points": [{"time": p.time, "value": p.value, "source": p.source} for p in points],
                "warning": None,
                "error": None,
            }
        )

    if window not in WINDOWS:
        return JSONResponse({"ok": False, "error": f"invalid range {window!r}"}, status_code=400)

    result = await dashboard.load_window(sym, window)
    payload = result.to_dict()
    payload.pop("window", None)
    return JSONResponse({"ok": result.error is None, "symbol": sym, "range": window, **payload})


@app.on_event("startup")
async def _startup() -> None:
    logger.info("gateway upstream %s (api key: %s)", settings.upstream_base, settings.api_key_tier)
    if settings.dashboard_enabled:
        await dashboard.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    if settings.dashboard_enabled:
        await dashboard.stop()
    await gateway.close()
    await chain.close()
