"""Opportunity pricing: turns an aggregated forecast into a trade candidate."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Protocol

from trade_core.config import Settings
from trade_core.types import (
    AccountSnapshot,
    Observation,
    Position,
    PredictionDescriptor,
    TradeCandidate,
)

_DEFAULT_TARGET_MULTIPLIERS = (2.0,)


class OptimizationProvider(Protocol):
    """Provider interface for candidate pricing."""

    async def optimize(
        self,
        observation: Observation,
        prediction: PredictionDescriptor,
        position: Position,
        account: AccountSnapshot,
    ) -> TradeCandidate | None:
        """Return a priced candidate, or None when there is no opportunity."""


def kelly_fraction(
    win_probability: float,
    expected_profit: float,
    max_loss: float,
    *,
    cap: float = 0.25,
) -> float:
    """Kelly fraction (p*b - q) / b with b = profit/loss, clamped to [0, cap]."""
    if expected_profit <= 0 or max_loss <= 0:
        return 0.0
    p = max(0.0, min(1.0, win_probability))
    q = 1.0 - p
    b = expected_profit / max_loss
    raw = (p * b - q) / b
    return max(0.0, min(cap, raw))


def risk_reward_ratio(reward: float, risk: float) -> float:
    if risk == 0:
        return 0.0
    return abs(reward) / abs(risk)


def estimate_win_probability(confidence: float, risk_reward: float) -> float:
    """Heuristic win probability from confidence and payoff, in [0.3, 0.8]."""
    probability = 0.5
    if confidence > 0.8:
        probability += 0.1
    if confidence < 0.6:
        probability -= 0.1
    if risk_reward > 2:
        probability += 0.05
    if risk_reward < 1.5:
        probability -= 0.05
    return max(0.3, min(0.8, probability))


class AtrOpportunityOptimizer:
    """Prices entry, stop and targets from ATR; max loss is the real stop distance."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def optimize(
        self,
        observation: Observation,
        prediction: PredictionDescriptor,
        position: Position,
        account: AccountSnapshot,
    ) -> TradeCandidate | None:
        return self.build_candidate(observation, prediction, position, account)

    def build_candidate(
        self,
        observation: Observation,
        prediction: PredictionDescriptor,
        position: Position,
        account: AccountSnapshot,
    ) -> TradeCandidate | None:
        if prediction.direction == "FLAT" or prediction.confidence <= 0:
            return None
        if account.free_margin <= 0:
            return None

        price = observation.price
        atr = observation.atr
        if price is None or price <= 0 or atr is None or atr <= 0:
            return None

        settings = self._settings
        sign = 1.0 if prediction.direction == "LONG" else -1.0
        stop_distance = atr * settings.stop_atr_multiplier
        stop_price = price - sign * stop_distance
        multipliers = settings.target_atr_multipliers or _DEFAULT_TARGET_MULTIPLIERS
        target_prices = tuple(price + sign * atr * multiple for multiple in multipliers)

        max_loss = stop_distance * settings.point_value
        derived_profit = abs(target_prices[0] - price) * settings.point_value
        expected_profit = (
            prediction.expected_profit if prediction.expected_profit > 0 else derived_profit
        )
        rr = risk_reward_ratio(expected_profit, max_loss)
        win_probability = estimate_win_probability(prediction.confidence, rr)
        kelly = kelly_fraction(win_probability, expected_profit, max_loss, cap=settings.kelly_cap)
        expected_value = win_probability * expected_profit - (1.0 - win_probability) * max_loss
        raw_size = max(1, math.ceil(settings.max_position_size * max(0.0, prediction.strength)))

        return TradeCandidate(
            instrument=observation.instrument,
            direction=prediction.direction,
            entry_price=float(price),
            stop_price=float(stop_price),
            target_prices=target_prices,
            expected_profit=float(expected_profit),
            max_loss=float(max_loss),
            raw_size=raw_size,
            risk_reward_ratio=float(rr),
            win_probability=float(win_probability),
            kelly_fraction=float(kelly),
            expected_value=float(expected_value),
            confidence=float(prediction.confidence),
            atr=float(atr),
            created_at=datetime.now(timezone.utc),
        )
