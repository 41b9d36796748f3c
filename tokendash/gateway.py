from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import httpx

from tokendash.cache import CacheEntry, TTLCache
from tokendash.ratelimit import RateLimiter
from tokendash.settings import Settings

logger = logging.getLogger(__name__)

USER_AGENT = "TokenDash/1.0 (+localhost)"

CACHE_HIT = "HIT"
CACHE_MISS = "MISS"
CACHE_STALE = "STALE"


@dataclass(frozen=True)
class GatewayResponse:
    status: int
    body: Any
    is_json: bool = True
    # None for gateway-generated failures (no upstream response to describe).
    cache: str | None = None
    ttl_seconds: float | None = None
    # When the body came from the cache, the time it was stored.
    stored_at: float | None = None

    @property
    def headers(self) -> dict[str, str]:
        out: dict[str, str] = {}
        if self.cache:
            out["x-proxy-cache"] = self.cache
        if self.ttl_seconds is not None:
            out["cache-control"] = f"public, max-age={int(self.ttl_seconds)}"
        return out

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def _parse_body(text: str) -> tuple[Any, bool]:
    try:
        return json.loads(text), True
    except ValueError:
        return text, False


def _retry_after_seconds(raw: str | None, default: float, cap: float) -> float:
    try:
        v = float((raw or "").strip())
    except ValueError:
        return default
    if v != v or v <= 0:
        return default
    return min(v, cap)


class UpstreamGateway:
    def __init__(
        self,
        settings: Settings,
        *,
        cache: TTLCache | None = None,
        limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.cache = cache if cache is not None else TTLCache()
        self.limiter = limiter if limiter is not None else RateLimiter(settings.rate_min_interval_seconds)
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.upstream_timeout_seconds),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=transport,
        )
        self.upstream_calls = 0

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def base_url(self) -> str:
        return self.settings.upstream_base

    def target_url(self, request_path: str) -> str:
        if not request_path.startswith("/"):
            request_path = "/" + request_path
        return f"{self.base_url}{request_path}"

    def upstream_headers(self, client_headers: Mapping[str, str] | None = None) -> dict[str, str]:
        headers = {"accept": "application/json", "user-agent": USER_AGENT}
        # Referer-restricted keys need the caller's origin.
        for name in ("origin", "referer"):
            v = (client_headers or {}).get(name)
            if v:
                headers[name] = v
        demo_key = self.settings.cg_api_key
        pro_key = self.settings.cg_pro_api_key
        if demo_key:
            headers["x-cg-demo-api-key"] = demo_key
            headers["x-cg-api-key"] = demo_key
        if pro_key:
            headers["x-cg-pro-api-key"] = pro_key
            headers["x-cg-api-key"] = pro_key
        return headers

    def _unauthorized_body(self, upstream_body: Any) -> dict[str, Any]:
        if self.settings.cg_api_key or self.settings.cg_pro_api_key:
            msg = "CoinGecko rejected the API key (401/403). Verify CG_API_KEY or CG_PRO_API_KEY."
        else:
            msg = (
                "CoinGecko requires an API key (401/403). Add CG_API_KEY (demo) or "
                "CG_PRO_API_KEY to the environment and restart the gateway."
            )
        return {"error": "Unauthorized", "message": msg, "upstream": upstream_body}

    async def _call(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        timeout: float | None,
        content: bytes | None = None,
    ) -> httpx.Response:
        await self.limiter.acquire()
        self.upstream_calls += 1
        if timeout is None:
            return await self._client.request(method, url, headers=headers, content=content)
        return await self._client.request(method, url, headers=headers, content=content, timeout=timeout)

    async def forward(
        self,
        request_path: str,
        client_headers: Mapping[str, str] | None = None,
        *,
        method: str = "GET",
        content: bytes | None = None,
        timeout: float | None = None,
    ) -> GatewayResponse:
        method = (method or "GET").upper()
        key = self.target_url(request_path)
        ttl = self.cache.ttl(key)
        cacheable = method == "GET"

        if cacheable:
            fresh = self.cache.get_fresh(key)
            if fresh is not None:
                logger.debug("cache hit %s", key)
                return GatewayResponse(
                    status=fresh.status,
                    body=fresh.body,
                    is_json=fresh.is_json,
                    cache=CACHE_HIT,
                    ttl_seconds=ttl,
                    stored_at=fresh.stored_at,
                )

        headers = self.upstream_headers(client_headers)
        if content and "content-type" in (client_headers or {}):
            headers["content-type"] = client_headers["content-type"]
        try:
            upstream = await self._call(method, key, headers, timeout, content)
            if upstream.status_code == 429:
                wait = _retry_after_seconds(
                    upstream.headers.get("retry-after"),
                    self.settings.rate_limit_retry_seconds,
                    self.settings.max_retry_after_seconds,
                )
                logger.warning("upstream 429 for %s, retrying once in %.1fs", key, wait)
                await self._sleep(wait)
                upstream = await self._call(method, key, headers, timeout, content)
        except httpx.HTTPError as e:
            return self._network_failure(key, ttl, e, stale_ok=cacheable)

        status = upstream.status_code
        body, is_json = _parse_body(upstream.text)
        if not is_json:
            logger.debug("upstream body for %s is not JSON; passing through as text", key)

        if status in (401, 403):
            # Never cached.
            logger.warning("upstream rejected credentials (%s) for %s", status, key)
            return GatewayResponse(
                status=status, body=self._unauthorized_body(body), is_json=True, cache=CACHE_MISS, ttl_seconds=ttl
            )

        if cacheable and 200 <= status < 300:
            self.cache.put(key, CacheEntry(stored_at=self.cache.now(), status=status, body=body, is_json=is_json))

        return GatewayResponse(status=status, body=body, is_json=is_json, cache=CACHE_MISS, ttl_seconds=ttl)

    def _network_failure(self, key: str, ttl: float, exc: Exception, *, stale_ok: bool = True) -> GatewayResponse:
        stale = self.cache.get(key) if stale_ok else None
        if stale is not None:
            logger.warning("upstream unreachable (%s: %s); serving stale %s", type(exc).__name__, exc, key)
            return GatewayResponse(
                status=stale.status,
                body=stale.body,
                is_json=stale.is_json,
                cache=CACHE_STALE,
                ttl_seconds=ttl,
                stored_at=stale.stored_at,
            )
        logger.warning("upstream unreachable (%s: %s); no cached copy of %s", type(exc).__name__, exc, key)
        return GatewayResponse(
            status=502,
            body={"error": "Bad Gateway", "message": str(exc) or type(exc).__name__},
            is_json=True,
        )
