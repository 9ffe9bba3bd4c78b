"""Adaptive confidence threshold driven by realized outcomes."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Any

from trade_core.config import Settings
from trade_core.events import EventHub
from trade_core.utils.logging import get_logger


@dataclass(slots=True)
class ConfidenceThreshold:
    """Live acceptance threshold, always inside [min, max]."""

    base: float
    current: float
    min: float
    max: float
    adjustment_step: float

    def __post_init__(self) -> None:
        if not self.min <= self.base <= self.max:
            raise ValueError("confidence_base_out_of_bounds")
        if self.adjustment_step <= 0:
            raise ValueError("confidence_step_must_be_positive")
        self.current = max(self.min, min(self.max, self.current))


class AdaptiveConfidenceGate:
    """Moves the threshold by one step per closed trade.

    A win taken below the threshold lowers it toward min; a loss taken at or
    above the threshold raises it toward max. Any other outcome leaves it.
    """

    def __init__(self, settings: Settings, *, events: EventHub | None = None) -> None:
        self._threshold = ConfidenceThreshold(
            base=settings.confidence_base,
            current=settings.confidence_base,
            min=settings.confidence_min,
            max=settings.confidence_max,
            adjustment_step=settings.confidence_step,
        )
        self._events = events
        self._lock = asyncio.Lock()
        self._logger = get_logger("trade_core.risk.confidence")

    @property
    def current(self) -> float:
        return self._threshold.current

    @property
    def threshold(self) -> ConfidenceThreshold:
        return ConfidenceThreshold(**asdict(self._threshold))

    async def record_outcome(self, pnl: float, confidence: float) -> float:
        """Apply one outcome and return the signed threshold change."""
        async with self._lock:
            threshold = self._threshold
            previous = threshold.current
            if pnl > 0:
                if confidence < previous:
                    threshold.current = max(threshold.min, previous - threshold.adjustment_step)
            elif confidence >= previous:
                threshold.current = min(threshold.max, previous + threshold.adjustment_step)
            delta = threshold.current - previous

        self._logger.debug(
            "confidence_threshold_evaluated",
            previous=previous,
            current=threshold.current,
            reason="profitable" if pnl > 0 else "loss",
            confidence=confidence,
        )
        if delta != 0 and self._events is not None:
            self._events.emit(
                "threshold_adjusted",
                {
                    "previous": previous,
                    "current": threshold.current,
                    "delta": delta,
                    "pnl": pnl,
                    "confidence": confidence,
                },
            )
        return delta

    def to_dict(self) -> dict[str, Any]:
        return asdict(self._threshold)

    def restore(self, payload: dict[str, Any]) -> None:
        """Restore the live value; bounds and step stay as configured."""
        current = payload.get("current")
        if isinstance(current, (int, float)):
            threshold = self._threshold
            threshold.current = max(threshold.min, min(threshold.max, float(current)))
