"""Shared domain types for the decision core."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

Direction = Literal["LONG", "SHORT", "FLAT"]

REQUIRED_OBSERVATION_FIELDS = ("price", "volume", "atr", "rsi")


def opposite(direction: Direction) -> Direction:
    """Return the opposing side; FLAT has none."""
    if direction == "LONG":
        return "SHORT"
    if direction == "SHORT":
        return "LONG"
    return "FLAT"


@dataclass(slots=True, frozen=True)
class Observation:
    """One enriched market observation. Immutable for the cycle it drives."""

    instrument: str
    price: float | None
    volume: float | None
    timestamp: datetime
    indicators: dict[str, float] = field(default_factory=dict)

    @property
    def atr(self) -> float | None:
        return self.indicators.get("atr")

    @property
    def rsi(self) -> float | None:
        return self.indicators.get("rsi")

    @property
    def volatility(self) -> float:
        """Instantaneous volatility as atr/price, 0.0 when undefined."""
        atr = self.atr
        if atr is None or not self.price or self.price <= 0:
            return 0.0
        return float(atr) / float(self.price)

    def value_of(self, name: str) -> float | None:
        """Look up a top-level field or an indicator by name."""
        if name == "price":
            return self.price
        if name == "volume":
            return self.volume
        return self.indicators.get(name)

    def missing_fields(self) -> list[str]:
        missing = []
        for name in REQUIRED_OBSERVATION_FIELDS:
            value = self.value_of(name)
            if value is None or (isinstance(value, float) and math.isnan(value)):
                missing.append(name)
        return missing


@dataclass(slots=True, frozen=True)
class Position:
    """Net position for one instrument. FLAT if and only if size is zero."""

    instrument: str
    direction: Direction = "FLAT"
    size: float = 0.0
    avg_price: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    entry_time: datetime | None = None

    def __post_init__(self) -> None:
        if self.size < 0:
            raise ValueError("position_size_negative")
        if (self.direction == "FLAT") != (self.size == 0):
            raise ValueError(f"position_direction_size_mismatch: {self.direction}/{self.size}")

    @classmethod
    def flat(cls, instrument: str, *, realized_pnl: float = 0.0) -> Position:
        return cls(instrument=instrument, realized_pnl=realized_pnl)

    @property
    def is_open(self) -> bool:
        return self.direction != "FLAT"

    def same_holding(self, other: Position) -> bool:
        """Direction, size and average price agree."""
        return (
            self.direction == other.direction
            and self.size == other.size
            and self.avg_price == other.avg_price
        )


@dataclass(slots=True, frozen=True)
class PredictionDescriptor:
    """Directional forecast from a provider or from the aggregator."""

    direction: Direction
    confidence: float
    expected_profit: float = 0.0
    strength: float = 0.0
    source: str = ""


@dataclass(slots=True, frozen=True)
class AccountSnapshot:
    """Account figures used for optimization and sizing."""

    balance: float
    equity: float
    margin: float
    free_margin: float


@dataclass(slots=True, frozen=True)
class TradeCandidate:
    """Priced opportunity produced by the optimizer. Never mutated afterwards."""

    instrument: str
    direction: Direction
    entry_price: float
    stop_price: float
    target_prices: tuple[float, ...]
    expected_profit: float
    max_loss: float
    raw_size: int
    risk_reward_ratio: float
    win_probability: float
    kelly_fraction: float
    expected_value: float
    confidence: float
    atr: float
    created_at: datetime

    @property
    def target_price(self) -> float:
        return self.target_prices[0] if self.target_prices else self.entry_price

    @property
    def volatility(self) -> float:
        if self.entry_price <= 0:
            return 0.0
        return self.atr / self.entry_price


@dataclass(slots=True, frozen=True)
class ValidatorResult:
    """Outcome of one validator for one cycle."""

    name: str
    passed: bool
    reason: str
    score: float
    warning: str | None = None


@dataclass(slots=True)
class ValidationReport:
    """All validator outcomes for one candidate."""

    is_valid: bool
    score: float
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    results: list[ValidatorResult] = field(default_factory=list)


@dataclass(slots=True)
class PreflightResult:
    """Outcome of the admission gate."""

    passed: bool
    reasons: list[str] = field(default_factory=list)
    data_quality: float = 1.0


@dataclass(slots=True)
class RiskState:
    """Daily risk counters and limits."""

    daily_pnl: float = 0.0
    daily_trade_count: int = 0
    consecutive_losses: int = 0
    max_daily_loss: float = -1000.0
    max_daily_trades: int = 10
    max_consecutive_losses: int = 3
    total_exposure: float = 0.0


@dataclass(slots=True, frozen=True)
class TradeCommand:
    """Order command dispatched to the venue."""

    trade_id: str
    instrument: str
    direction: Direction
    quantity: int
    price: float
    stop_price: float
    target_price: float
    confidence: float
    expected_profit: float
    created_at: datetime
    reason: str = "decision_core"

    @property
    def notional(self) -> float:
        return self.quantity * self.price


@dataclass(slots=True, frozen=True)
class Confirmation:
    """Fill report from the venue."""

    trade_id: str
    fill_price: float
    filled_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class TradeOutcome:
    """Completed trade summary used for learning and statistics."""

    trade_id: str
    instrument: str
    direction: Direction
    quantity: int
    fill_price: float
    realized_pnl: float
    confidence: float
    opened_at: datetime
    closed_at: datetime

    @property
    def is_win(self) -> bool:
        return self.realized_pnl > 0


@dataclass(slots=True)
class CycleResult:
    """Outcome of one observation-driven pipeline run."""

    status: str
    trade_id: str | None = None
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
