"""Prediction provider interface and the built-in indicator provider."""

from __future__ import annotations

from typing import Protocol

from trade_core.ai.http_client import HttpPredictionProvider
from trade_core.config import Settings
from trade_core.types import Observation, Position, PredictionDescriptor


class PredictionProvider(Protocol):
    """Provider interface for directional forecasts."""

    name: str
    weight: float

    @property
    def available(self) -> bool:
        """Whether the provider can be called this cycle."""

    async def predict(
        self,
        observation: Observation,
        position: Position,
    ) -> PredictionDescriptor | None:
        """Return one forecast, or None for no contribution."""


class IndicatorMomentumProvider:
    """Deterministic RSI / EMA-alignment momentum forecast.

    Needs no server, so the core always has at least one provider in paper mode.
    """

    def __init__(self, *, name: str = "indicator_momentum", weight: float = 0.2) -> None:
        self.name = name
        self.weight = weight

    @property
    def available(self) -> bool:
        return True

    async def predict(
        self,
        observation: Observation,
        position: Position,
    ) -> PredictionDescriptor | None:
        rsi = observation.rsi
        if rsi is None:
            return None

        momentum = max(-1.0, min(1.0, (float(rsi) - 50.0) / 50.0))
        alignment = max(-1.0, min(1.0, float(observation.indicators.get("ema_alignment", 0.0))))
        combined = 0.6 * momentum + 0.4 * alignment
        strength = min(1.0, abs(combined))

        if combined > 0.1:
            direction = "LONG"
        elif combined < -0.1:
            direction = "SHORT"
        else:
            return PredictionDescriptor(
                direction="FLAT",
                confidence=0.5,
                strength=strength,
                source=self.name,
            )

        return PredictionDescriptor(
            direction=direction,
            confidence=min(0.95, 0.5 + 0.45 * strength),
            expected_profit=0.0,
            strength=strength,
            source=self.name,
        )


def build_providers(settings: Settings) -> list[PredictionProvider]:
    """Providers configured by settings, HTTP endpoints first."""
    providers: list[PredictionProvider] = [
        HttpPredictionProvider(settings, endpoint) for endpoint in settings.prediction_endpoints
    ]
    if settings.heuristic_provider_enabled:
        providers.append(IndicatorMomentumProvider())
    return providers
