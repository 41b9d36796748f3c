from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Sequence

from tokendash.errors import NoPriceAvailable, PriceFeedError
from tokendash.sources import Observation, PriceSource

logger = logging.getLogger(__name__)

PHASE_IDLE = "idle"
PHASE_LOADING = "loading"
PHASE_READY = "ready"
PHASE_DEGRADED = "degraded"


@dataclass(frozen=True)
class SourceState:
    last_value: float | None = None
    last_updated_at: datetime | None = None
    is_stale: bool = False
    last_error: str | None = None
    source: str | None = None
    phase: str = PHASE_IDLE
    refreshing: bool = False

    @property
    def loading(self) -> bool:
        return self.phase == PHASE_LOADING

    def to_dict(self) -> dict:
        return {
            "price": self.last_value,
            "updated_at": self.last_updated_at.isoformat() if self.last_updated_at else None,
            "is_stale": self.is_stale,
            "error": self.last_error,
            "source": self.source,
            "phase": self.phase,
            "loading": self.loading,
            "refreshing": self.refreshing,
        }


class PriceResolver:
    """Per-token price state; sources are tried in order on every poll."""

    def __init__(
        self,
        symbol: str,
        sources: Sequence[PriceSource],
        *,
        interval_seconds: float = 20.0,
        fallback_enabled: bool = True,
        label: str | None = None,
    ) -> None:
        if not sources:
            raise ValueError("at least one price source is required")
        self.symbol = (symbol or "").strip().upper()
        self.sources: list[PriceSource] = list(sources) if fallback_enabled else [sources[0]]
        self.interval_seconds = interval_seconds
        self.label = label or self.sources[0].name
        self.state = SourceState()
        self._inflight: asyncio.Task[SourceState] | None = None
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def poll(self) -> SourceState:
        # Overlapping callers join the poll already in flight.
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._poll_once())
        return await asyncio.shield(self._inflight)

    refetch = poll

    async def _poll_once(self) -> SourceState:
        if not self.symbol:
            return self.state

        first_load = self.state.last_value is None
        if first_load:
            self.state = replace(self.state, phase=PHASE_LOADING, last_error=None)
        else:
            self.state = replace(self.state, refreshing=True, last_error=None)

        errors: list[str] = []
        for idx, src in enumerate(self.sources):
            try:
                obs = await src.fetch(self.symbol)
            except PriceFeedError as e:
                errors.append(f"{src.name}: {e}")
                if idx + 1 < len(self.sources):
                    logger.warning("%s: %s failed (%s), falling back", self.symbol, src.name, e)
                continue
            self._apply(obs, degraded=idx > 0)
            return self.state

        msg = "No price source available (provider not ready, feed missing, or fallback disabled)."
        if errors:
            msg = f"{msg} {'; '.join(errors)}"
        if first_load:
            self.state = SourceState(last_error=msg, phase=PHASE_IDLE)
        else:
            self.state = replace(self.state, last_error=msg, refreshing=False)
        raise NoPriceAvailable(msg)

    def _apply(self, obs: Observation, *, degraded: bool) -> None:
        if self.state.source != obs.source and self.state.source is not None:
            logger.info("%s: price source switched %s -> %s", self.symbol, self.state.source, obs.source)
        self.state = SourceState(
            last_value=obs.price,
            last_updated_at=obs.updated_at,
            is_stale=obs.is_stale,
            last_error=None,
            source=obs.source,
            phase=PHASE_DEGRADED if degraded else PHASE_READY,
            refreshing=False,
        )

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._run(), name=f"resolver:{self.label}:{self.symbol}")

    async def _run(self) -> None:
        while True:
            try:
                await self.poll()
            except NoPriceAvailable as e:
                logger.warning("%s (%s): %s", self.symbol, self.label, e)
            except Exception:
                logger.exception("%s (%s): poll crashed", self.symbol, self.label)
            if self.interval_seconds <= 0:
                return
            await asyncio.sleep(self.interval_seconds)

    async def stop(self) -> None:
        tasks = [t for t in (self._loop_task, self._inflight) if t is not None and not t.done()]
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._inflight = None
        if self.state.refreshing or self.state.loading:
            phase = PHASE_IDLE if self.state.loading else self.state.phase
            self.state = replace(self.state, refreshing=False, phase=phase)
