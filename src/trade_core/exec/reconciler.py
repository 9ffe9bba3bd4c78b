"""Reconciles the local position cache with the venue's authoritative positions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

from trade_core.events import EventHub
from trade_core.exec.connector import VenueConnector
from trade_core.types import Position
from trade_core.utils.logging import get_logger


@dataclass(slots=True, frozen=True)
class ReconciliationResult:
    instrument: str
    position: Position
    mismatch: bool
    stale: bool


class PositionReconciler:
    """The connector is the source of truth; the cache is provisional.

    Each instrument has its own lock so a periodic pass and an on-demand pass
    never interleave writes to the same cache entry. A failed or timed-out
    read keeps the last known position and marks it stale.
    """

    def __init__(
        self,
        connector: VenueConnector,
        *,
        events: EventHub | None = None,
        timeout_sec: float = 3.0,
        interval_sec: float = 30.0,
    ) -> None:
        self._connector = connector
        self._events = events
        self._timeout_sec = timeout_sec
        self._interval_sec = interval_sec
        self._cache: dict[str, Position] = {}
        self._stale: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_synced: dict[str, datetime] = {}
        self._task: asyncio.Task[None] | None = None
        self._logger = get_logger("trade_core.exec.reconciler")

    @property
    def instruments(self) -> list[str]:
        return sorted(self._cache)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def track(self, instrument: str) -> None:
        self._cache.setdefault(instrument, Position.flat(instrument))

    def current_position(self, instrument: str) -> Position:
        """Last reconciled position; FLAT for an instrument never seen."""
        return self._cache.get(instrument) or Position.flat(instrument)

    def is_stale(self, instrument: str) -> bool:
        return instrument in self._stale

    def last_synced(self, instrument: str) -> datetime | None:
        return self._last_synced.get(instrument)

    async def reconcile(self, instrument: str) -> ReconciliationResult:
        lock = self._locks.setdefault(instrument, asyncio.Lock())
        async with lock:
            cached = self.current_position(instrument)
            try:
                authoritative = await asyncio.wait_for(
                    self._connector.query_position(instrument),
                    timeout=self._timeout_sec,
                )
            except Exception as exc:  # noqa: BLE001 - fall back to the cache, never block.
                self._stale.add(instrument)
                self._cache.setdefault(instrument, cached)
                self._logger.warning(
                    "reconciliation_read_failed",
                    instrument=instrument,
                    error=str(exc) or type(exc).__name__,
                )
                return ReconciliationResult(instrument, cached, mismatch=False, stale=True)

            self._stale.discard(instrument)
            self._last_synced[instrument] = datetime.now(timezone.utc)
            if authoritative == cached:
                return ReconciliationResult(instrument, cached, mismatch=False, stale=False)

            mismatch = not authoritative.same_holding(cached)
            self._cache[instrument] = authoritative

        if mismatch:
            self._logger.warning(
                "reconciliation_mismatch",
                instrument=instrument,
                cached_direction=cached.direction,
                cached_size=cached.size,
                venue_direction=authoritative.direction,
                venue_size=authoritative.size,
            )
            if self._events is not None:
                self._events.emit(
                    "reconciliation_mismatch",
                    {
                        "instrument": instrument,
                        "cached": _position_payload(cached),
                        "authoritative": _position_payload(authoritative),
                    },
                )
        return ReconciliationResult(instrument, authoritative, mismatch=mismatch, stale=False)

    async def reconcile_all(self) -> list[ReconciliationResult]:
        return [await self.reconcile(instrument) for instrument in self.instruments]

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="position-reconciler")
        self._logger.info("reconciler_started", interval_sec=self._interval_sec)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._logger.info("reconciler_stopped")

    async def _loop(self) -> None:
        while True:
            await self.reconcile_all()
            await asyncio.sleep(self._interval_sec)


def _position_payload(position: Position) -> dict[str, object]:
    return {
        "direction": position.direction,
        "size": position.size,
        "avg_price": position.avg_price,
        "unrealized_pnl": position.unrealized_pnl,
    }
