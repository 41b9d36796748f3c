from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

PUBLIC_BASE_URL = "https://api.coingecko.com"
PRO_BASE_URL = "https://pro-api.coingecko.com"


def _get_bool(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(v)
    except Exception:
        return default


def _get_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except Exception:
        return default


def _get_str(name: str, default: str | None = None) -> str | None:
    v = os.environ.get(name)
    if v is None:
        return default
    s = v.strip()
    return s if s else default


def _get_list(name: str) -> list[str]:
    v = os.environ.get(name)
    if not v:
        return []
    return [x.strip() for x in v.split(",") if x.strip()]


class FeedConfig(BaseModel):
    address: str
    decimals: int = Field(8, ge=0, le=36)
    description: str | None = None

    @field_validator("address")
    @classmethod
    def _check_address(cls, v: str) -> str:
        s = (v or "").strip()
        if len(s) != 42 or not s.startswith("0x"):
            raise ValueError("feed address must be a 0x-prefixed 20-byte hex string")
        int(s[2:], 16)
        return s


def _feed_overrides_from_env(tokens: list[str]) -> dict[str, FeedConfig]:
    out: dict[str, FeedConfig] = {}
    for sym in tokens:
        addr = _get_str(f"FEED_{sym}_ADDRESS")
        dec = _get_str(f"FEED_{sym}_DECIMALS")
        if not addr or dec is None:
            continue
        try:
            out[sym] = FeedConfig(address=addr, decimals=int(dec), description=f"{sym} / USD")
        except Exception as e:
            logger.warning("ignoring feed override for %s: %s", sym, e)
    return out


def load_feed_overrides_file(path: Path) -> dict[str, FeedConfig]:
    try:
        if not path.exists():
            return {}
        raw = path.read_text(encoding="utf-8").strip()
        if not raw:
            return {}
        data = json.loads(raw)
    except Exception as e:
        logger.warning("failed to read feed overrides from %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("feed overrides in %s must be a JSON object", path)
        return {}

    out: dict[str, FeedConfig] = {}
    for sym, item in data.items():
        key = str(sym).strip().upper()
        try:
            feed = FeedConfig.model_validate(item)
        except Exception as e:
            logger.warning("ignoring feed override for %s: %s", key, e)
            continue
        if feed.description is None:
            feed = feed.model_copy(update={"description": f"{key} / USD"})
        out[key] = feed
    return out


def _rpc_url_from_env() -> str | None:
    url = _get_str("MAINNET_RPC_URL")
    if url:
        return url
    infura_id = _get_str("INFURA_PROJECT_ID")
    if infura_id:
        return f"https://mainnet.infura.io/v3/{infura_id}"
    return None


@dataclass(frozen=True)
class Settings:
    port: int = 5000

    cg_pro_api_key: str | None = None
    cg_api_key: str | None = None
    upstream_timeout_seconds: float = 15.0
    rate_min_interval_seconds: float = 1.2
    rate_limit_retry_seconds: float = 2.0
    max_retry_after_seconds: float = 30.0

    rpc_url: str | None = None
    rpc_timeout_seconds: float = 10.0

    tokens: list[str] = field(default_factory=lambda: ["ETH", "BTC", "LINK"])
    oracle_poll_seconds: float = 10.0
    live_poll_seconds: float = 10.0
    sample_interval_seconds: float = 10.0
    history_max_points: int = 50
    stale_after_seconds: float = 3600.0
    oracle_fallback: bool = False
    dashboard_enabled: bool = True

    feed_overrides: dict[str, FeedConfig] = field(default_factory=dict)

    @property
    def upstream_base(self) -> str:
        return PRO_BASE_URL if self.cg_pro_api_key else PUBLIC_BASE_URL

    @property
    def api_key_tier(self) -> str:
        if self.cg_pro_api_key:
            return "pro"
        if self.cg_api_key:
            return "demo"
        return "none"

    @staticmethod
    def load() -> "Settings":
        tokens = [t.upper() for t in _get_list("TD_TOKENS")] or ["ETH", "BTC", "LINK"]

        overrides: dict[str, FeedConfig] = {}
        feeds_path = _get_str("TD_FEEDS_PATH")
        if feeds_path:
            overrides.update(load_feed_overrides_file(Path(feeds_path)))
        # Per-token env vars win over the file.
        overrides.update(_feed_overrides_from_env(tokens))

        return Settings(
            port=_get_int("PORT", 5000),
            cg_pro_api_key=_get_str("CG_PRO_API_KEY"),
            cg_api_key=_get_str("CG_API_KEY"),
            upstream_timeout_seconds=max(1.0, _get_float("TD_UPSTREAM_TIMEOUT_SECONDS", 15.0)),
            rate_min_interval_seconds=max(0.0, _get_float("TD_RATE_MIN_INTERVAL_MS", 1200.0) / 1000.0),
            rate_limit_retry_seconds=max(0.0, _get_float("TD_RATE_LIMIT_RETRY_SECONDS", 2.0)),
            max_retry_after_seconds=max(1.0, _get_float("TD_MAX_RETRY_AFTER_SECONDS", 30.0)),
            rpc_url=_rpc_url_from_env(),
            rpc_timeout_seconds=max(1.0, _get_float("TD_RPC_TIMEOUT_SECONDS", 10.0)),
            tokens=tokens,
            oracle_poll_seconds=max(1.0, _get_float("TD_ORACLE_POLL_SECONDS", 10.0)),
            # The REST live poll never runs faster than every 10s.
            live_poll_seconds=max(10.0, _get_float("TD_LIVE_POLL_SECONDS", 10.0)),
            sample_interval_seconds=max(1.0, _get_float("TD_SAMPLE_INTERVAL_SECONDS", 10.0)),
            history_max_points=max(1, _get_int("TD_HISTORY_MAX_POINTS", 50)),
            stale_after_seconds=max(1.0, _get_float("TD_STALE_AFTER_SECONDS", 3600.0)),
            oracle_fallback=_get_bool("TD_ORACLE_FALLBACK", False),
            dashboard_enabled=_get_bool("TD_DASHBOARD_ENABLED", True),
            feed_overrides=overrides,
        )


def effective_settings_dict(settings: Settings) -> dict:
    d = asdict(settings)
    d["cg_pro_api_key"] = "***" if d.get("cg_pro_api_key") else None
    d["cg_api_key"] = "***" if d.get("cg_api_key") else None
    # Infura URLs embed the project id.
    d["rpc_url"] = "***" if d.get("rpc_url") else None
    d["feed_overrides"] = {k: v.model_dump() for k, v in settings.feed_overrides.items()}
    d["upstream_base"] = settings.upstream_base
    d["api_key_tier"] = settings.api_key_tier
    return d
