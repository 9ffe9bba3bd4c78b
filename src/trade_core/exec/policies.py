"""Stop/target policies invoked on each monitor tick, and the bounds they pass through."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from trade_core.exec.trades import Monitoring
from trade_core.types import Direction, Observation, Position


@dataclass(slots=True, frozen=True)
class StopProposal:
    """A policy's suggested protective levels. None leaves a level alone."""

    stop_price: float | None = None
    target_price: float | None = None
    confidence: float = 1.0
    reason: str = ""


class StopPolicy(Protocol):
    name: str

    def propose(
        self,
        trade: Monitoring,
        position: Position,
        observation: Observation,
    ) -> StopProposal | None:
        """Suggest new levels for an open trade, or None."""


class AtrTrailingStop:
    """Trails the stop at a fixed ATR distance behind the market."""

    name = "atr_trailing_stop"

    def __init__(self, atr_multiplier: float = 1.5, *, confidence: float = 0.8) -> None:
        self._atr_multiplier = atr_multiplier
        self._confidence = confidence

    def propose(
        self,
        trade: Monitoring,
        position: Position,
        observation: Observation,
    ) -> StopProposal | None:
        price = observation.price
        atr = observation.atr
        if price is None or atr is None or atr <= 0:
            return None
        distance = atr * self._atr_multiplier
        stop = price - distance if trade.command.direction == "LONG" else price + distance
        return StopProposal(stop_price=stop, confidence=self._confidence, reason=self.name)


class EmergencyExit:
    """Pulls the stop to the market once the open loss exceeds a dollar limit."""

    name = "emergency_exit"

    def __init__(self, max_loss: float = 100.0) -> None:
        self._max_loss = max_loss

    def propose(
        self,
        trade: Monitoring,
        position: Position,
        observation: Observation,
    ) -> StopProposal | None:
        if observation.price is None or position.unrealized_pnl > -self._max_loss:
            return None
        return StopProposal(stop_price=float(observation.price), confidence=1.0, reason=self.name)


def bounded_level(
    current: float,
    proposed: float,
    direction: Direction,
    atr: float,
    *,
    max_move_atr: float,
) -> float | None:
    """Clip a proposed level to one favorable step of at most max_move_atr * atr.

    Returns None when the proposal would move the level against the position.
    """
    if atr <= 0 or max_move_atr <= 0:
        return None
    max_move = atr * max_move_atr
    if direction == "LONG":
        if proposed <= current:
            return None
        return current + min(proposed - current, max_move)
    if direction == "SHORT":
        if proposed >= current:
            return None
        return current - min(current - proposed, max_move)
    return None


def apply_proposal(
    trade: Monitoring,
    proposal: StopProposal,
    atr: float,
    *,
    max_move_atr: float,
    min_confidence: float,
) -> tuple[float | None, float | None]:
    """Bounds-checked (stop, target) to apply; (None, None) means no change."""
    if proposal.confidence < min_confidence:
        return None, None
    direction = trade.command.direction
    stop = None
    target = None
    if proposal.stop_price is not None:
        stop = bounded_level(
            trade.stop_price, proposal.stop_price, direction, atr, max_move_atr=max_move_atr
        )
    if proposal.target_price is not None:
        target = bounded_level(
            trade.target_price, proposal.target_price, direction, atr, max_move_atr=max_move_atr
        )
    return stop, target
