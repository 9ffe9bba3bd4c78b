from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from trade_core.config import Settings
from trade_core.types import (
    AccountSnapshot,
    Confirmation,
    Observation,
    Position,
    PredictionDescriptor,
    TradeCandidate,
    TradeCommand,
)

# background jobs far enough out that they never fire inside a test
_QUIET_INTERVALS = {
    "reconcile_interval_sec": 3600.0,
    "performance_review_interval_sec": 3600.0,
    "state_snapshot_interval_sec": 3600.0,
    "session_check_interval_sec": 3600.0,
}


class FakeConnector:
    """Scriptable venue: accepts or rejects, confirms after a delay or never."""

    def __init__(
        self,
        *,
        accept: bool = True,
        confirm_after: float | None = 0.0,
        fill_price: float | None = None,
        connected: bool = True,
    ) -> None:
        self.is_connected = connected
        self.accept = accept
        self.confirm_after = confirm_after
        self.fill_price = fill_price
        self.fail_queries = False
        self.positions: dict[str, Position] = {}
        self.submitted: list[TradeCommand] = []
        self.amendments: list[tuple[str, float | None, float | None]] = []
        self.query_count = 0
        self._handler: Callable[[Confirmation], None] | None = None

    def set_confirmation_handler(self, handler: Callable[[Confirmation], None] | None) -> None:
        self._handler = handler

    async def submit(self, command: TradeCommand) -> bool:
        self.submitted.append(command)
        if not self.accept:
            return False
        if self.confirm_after is not None:
            asyncio.get_running_loop().call_later(self.confirm_after, self.confirm, command)
        return True

    def confirm(self, command: TradeCommand, fill_price: float | None = None) -> None:
        price = fill_price or self.fill_price or command.price
        self.positions[command.instrument] = Position(
            instrument=command.instrument,
            direction=command.direction,
            size=float(command.quantity),
            avg_price=price,
        )
        if self._handler is not None:
            self._handler(Confirmation(trade_id=command.trade_id, fill_price=price))

    def flatten(self, instrument: str, realized_pnl: float) -> None:
        self.positions[instrument] = Position.flat(instrument, realized_pnl=realized_pnl)

    async def query_position(self, instrument: str) -> Position:
        self.query_count += 1
        if self.fail_queries:
            raise ConnectionError("venue unavailable")
        return self.positions.get(instrument, Position.flat(instrument))

    async def amend_protection(
        self,
        instrument: str,
        stop_price: float | None,
        target_price: float | None,
    ) -> None:
        self.amendments.append((instrument, stop_price, target_price))


class FakeProvider:
    def __init__(
        self,
        name: str,
        descriptor: PredictionDescriptor | None = None,
        *,
        weight: float = 1.0,
        error: Exception | None = None,
        delay: float = 0.0,
        available: bool = True,
    ) -> None:
        self.name = name
        self.weight = weight
        self._descriptor = descriptor
        self._error = error
        self._delay = delay
        self._available = available
        self.calls = 0

    @property
    def available(self) -> bool:
        return self._available

    async def predict(self, observation: Observation, position: Position) -> PredictionDescriptor | None:
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._descriptor


class FakeOptimizer:
    def __init__(self, candidate: TradeCandidate | None, *, delay: float = 0.0) -> None:
        self._candidate = candidate
        self._delay = delay
        self.calls = 0

    async def optimize(
        self,
        observation: Observation,
        prediction: PredictionDescriptor,
        position: Position,
        account: AccountSnapshot,
    ) -> TradeCandidate | None:
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        return self._candidate


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "journal_dir": tmp_path / "journal",
            "restricted_hours": [],
            "heuristic_provider_enabled": False,
            "confirmation_timeout_sec": 0.5,
            "connector_timeout_sec": 0.5,
            "monitor_interval_sec": 0.02,
            **_QUIET_INTERVALS,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


@pytest.fixture
def make_observation() -> Callable[..., Observation]:
    def _make(
        *,
        instrument: str = "NQ",
        price: float | None = 15_000.0,
        volume: float | None = 1_200.0,
        atr: float | None = 30.0,
        rsi: float | None = 62.0,
        timestamp: datetime | None = None,
        **indicators: float,
    ) -> Observation:
        values = dict(indicators)
        if atr is not None:
            values["atr"] = atr
        if rsi is not None:
            values["rsi"] = rsi
        return Observation(
            instrument=instrument,
            price=price,
            volume=volume,
            timestamp=timestamp or datetime.now(UTC),
            indicators=values,
        )

    return _make


@pytest.fixture
def make_candidate() -> Callable[..., TradeCandidate]:
    def _make(**overrides: Any) -> TradeCandidate:
        values: dict[str, Any] = {
            "instrument": "NQ",
            "direction": "LONG",
            "entry_price": 15_000.0,
            "stop_price": 14_955.0,
            "target_prices": (15_090.0, 15_135.0),
            "expected_profit": 1_800.0,
            "max_loss": 900.0,
            "raw_size": 3,
            "risk_reward_ratio": 2.0,
            "win_probability": 0.6,
            "kelly_fraction": 0.2,
            "expected_value": 720.0,
            "confidence": 0.8,
            "atr": 30.0,
            "created_at": datetime.now(UTC),
        }
        values.update(overrides)
        return TradeCandidate(**values)

    return _make


@pytest.fixture
def long_prediction() -> PredictionDescriptor:
    return PredictionDescriptor(direction="LONG", confidence=0.8, expected_profit=1_800.0, strength=0.6)
