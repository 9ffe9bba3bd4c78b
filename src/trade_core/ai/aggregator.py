"""Merges provider forecasts into one descriptor with per-provider fault isolation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Sequence

from trade_core.ai.providers import PredictionProvider
from trade_core.types import Direction, Observation, Position, PredictionDescriptor, opposite
from trade_core.utils.logging import get_logger


@dataclass(slots=True)
class AggregatedPrediction:
    """Combined forecast plus the per-provider contributions behind it."""

    direction: Direction
    confidence: float
    expected_profit: float
    strength: float
    contributions: dict[str, PredictionDescriptor | None] = field(default_factory=dict)
    position_adjusted: bool = False
    degraded: bool = False

    @classmethod
    def fallback(cls, contributions: dict[str, PredictionDescriptor | None]) -> AggregatedPrediction:
        """Conservative result used when no provider contributed."""
        return cls(
            direction="FLAT",
            confidence=0.0,
            expected_profit=0.0,
            strength=0.0,
            contributions=contributions,
            degraded=True,
        )

    def as_descriptor(self) -> PredictionDescriptor:
        return PredictionDescriptor(
            direction=self.direction,
            confidence=self.confidence,
            expected_profit=self.expected_profit,
            strength=self.strength,
            source="aggregate",
        )


class PredictionAggregator:
    """Calls every provider concurrently; a failing provider contributes nothing."""

    def __init__(
        self,
        providers: Sequence[PredictionProvider],
        *,
        timeout_sec: float = 2.0,
        reversal_damping: float = 0.8,
    ) -> None:
        self._providers = list(providers)
        names = [provider.name for provider in self._providers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate_provider: {','.join(duplicates)}")
        self._timeout_sec = timeout_sec
        self._reversal_damping = reversal_damping
        self._logger = get_logger("trade_core.ai.aggregator")

    @property
    def provider_names(self) -> list[str]:
        return [provider.name for provider in self._providers]

    def is_healthy(self) -> bool:
        """At least one provider can be called."""
        return any(provider.available for provider in self._providers)

    async def aggregate(self, observation: Observation, position: Position) -> AggregatedPrediction:
        results = await asyncio.gather(
            *(self._call(provider, observation, position) for provider in self._providers)
        )
        contributions = {
            provider.name: result for provider, result in zip(self._providers, results)
        }
        weights = {provider.name: provider.weight for provider in self._providers}
        valid = [
            (weights[name], descriptor)
            for name, descriptor in contributions.items()
            if descriptor is not None and weights[name] > 0
        ]
        if not valid:
            self._logger.warning("all_providers_failed", providers=list(contributions))
            return AggregatedPrediction.fallback(contributions)

        weight_sum = sum(weight for weight, _ in valid)
        confidence = sum(weight * d.confidence for weight, d in valid) / weight_sum
        expected_profit = sum(weight * d.expected_profit for weight, d in valid) / weight_sum
        strength = sum(weight * d.strength for weight, d in valid) / weight_sum
        vote = sum(weight * d.confidence * _sign(d.direction) for weight, d in valid)
        direction: Direction = "LONG" if vote > 0 else "SHORT" if vote < 0 else "FLAT"

        combined = AggregatedPrediction(
            direction=direction,
            confidence=confidence,
            expected_profit=expected_profit,
            strength=strength,
            contributions=contributions,
        )
        return self._adjust_for_position(combined, position)

    def _adjust_for_position(
        self,
        prediction: AggregatedPrediction,
        position: Position,
    ) -> AggregatedPrediction:
        # damp signals that would reverse the open position
        if position.is_open and prediction.direction == opposite(position.direction):
            prediction.confidence *= self._reversal_damping
            prediction.position_adjusted = True
        return prediction

    async def _call(
        self,
        provider: PredictionProvider,
        observation: Observation,
        position: Position,
    ) -> PredictionDescriptor | None:
        if not provider.available:
            return None
        try:
            result = await asyncio.wait_for(
                provider.predict(observation, position),
                timeout=self._timeout_sec,
            )
        except asyncio.TimeoutError:
            self._logger.warning("provider_timeout", provider=provider.name, timeout_sec=self._timeout_sec)
            return None
        except Exception as exc:  # noqa: BLE001 - provider faults must not abort the cycle.
            self._logger.warning("provider_failed", provider=provider.name, error=str(exc))
            return None
        return result


def _sign(direction: Direction) -> int:
    if direction == "LONG":
        return 1
    if direction == "SHORT":
        return -1
    return 0
