"""Prediction server input/output schemas and strict parsing helpers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from trade_core.types import Observation, Position, PredictionDescriptor


class PredictionRequest(BaseModel):
    """Payload posted to a prediction server."""

    model_config = ConfigDict(extra="forbid")

    instrument: str
    price: float | None
    volume: float | None
    timestamp: datetime
    indicators: dict[str, float]
    position_direction: Literal["LONG", "SHORT", "FLAT"]
    position_size: float

    @classmethod
    def build(cls, observation: Observation, position: Position) -> "PredictionRequest":
        return cls(
            instrument=observation.instrument,
            price=observation.price,
            volume=observation.volume,
            timestamp=observation.timestamp,
            indicators=dict(observation.indicators),
            position_direction=position.direction,
            position_size=position.size,
        )


class PredictionResponse(BaseModel):
    """Strict prediction schema."""

    model_config = ConfigDict(extra="ignore")

    direction: Literal["LONG", "SHORT", "FLAT"]
    confidence: float = Field(ge=0.0, le=1.0)
    expected_profit: float = 0.0
    strength: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("direction", mode="before")
    @classmethod
    def normalize_direction(cls, v: Any) -> Any:
        """Accept long/short/hold and up/down spellings."""
        if not isinstance(v, str):
            return v
        aliases = {
            "LONG": "LONG",
            "UP": "LONG",
            "BUY": "LONG",
            "SHORT": "SHORT",
            "DOWN": "SHORT",
            "SELL": "SHORT",
            "FLAT": "FLAT",
            "HOLD": "FLAT",
            "NEUTRAL": "FLAT",
        }
        return aliases.get(v.strip().upper(), v)

    @classmethod
    def parse_strict(cls, payload: Any) -> "PredictionResponse | None":
        """Parse a raw reply. Any violation maps to None (no contribution)."""
        if isinstance(payload, dict) and isinstance(payload.get("prediction"), dict):
            payload = payload["prediction"]
        if not isinstance(payload, dict):
            return None
        try:
            return cls.model_validate(payload)
        except ValidationError:
            return None

    def to_descriptor(self, source: str) -> PredictionDescriptor:
        return PredictionDescriptor(
            direction=self.direction,
            confidence=self.confidence,
            expected_profit=self.expected_profit,
            strength=self.strength,
            source=source,
        )
