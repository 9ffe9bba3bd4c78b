"""Cheap admission checks run before any model work."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol

from trade_core.config import Settings
from trade_core.risk.ledger import RiskLedger
from trade_core.types import Observation, PreflightResult


class _ConnectionStatus(Protocol):
    @property
    def is_connected(self) -> bool: ...


@dataclass(slots=True)
class DataQuality:
    """Score in [0, 1] plus the issues that lowered it."""

    score: float
    issues: list[str] = field(default_factory=list)


def assess_data_quality(
    observation: Observation,
    now: datetime,
    *,
    max_age_sec: float = 5.0,
) -> DataQuality:
    """Score freshness, completeness and validity of one observation."""
    score = 1.0
    issues: list[str] = []

    observed_at = observation.timestamp
    if observed_at.tzinfo is None:
        observed_at = observed_at.replace(tzinfo=timezone.utc)
    age_sec = (now - observed_at).total_seconds()
    if age_sec > max_age_sec:
        score -= 0.3
        issues.append("stale_data")

    missing = observation.missing_fields()
    if missing:
        score -= 0.2 * len(missing)
        issues.append(f"missing_fields: {','.join(missing)}")

    price = observation.price
    volume = observation.volume
    if (price is not None and price <= 0) or (volume is not None and volume < 0):
        score = 0.0
        issues.append("invalid_values")

    return DataQuality(score=max(0.0, min(1.0, score)), issues=issues)


class PreflightGate:
    """Runs every check without short-circuiting and collects all reasons."""

    def __init__(
        self,
        settings: Settings,
        ledger: RiskLedger,
        connector: _ConnectionStatus,
        *,
        subsystems_healthy: Callable[[], bool] = lambda: True,
        has_active_trade: Callable[[str], bool] = lambda instrument: False,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._settings = settings
        self._ledger = ledger
        self._connector = connector
        self._subsystems_healthy = subsystems_healthy
        self._has_active_trade = has_active_trade
        self._clock = clock

    def evaluate(self, observation: Observation) -> PreflightResult:
        reasons: list[str] = []

        if not self._system_healthy():
            reasons.append("System health check failed")

        quality = assess_data_quality(
            observation,
            self._clock(),
            max_age_sec=self._settings.max_observation_age_sec,
        )
        if quality.score < self._settings.min_data_quality:
            reasons.append(f"Poor data quality: {quality.score:.2f} ({'; '.join(quality.issues)})")

        if not self._connector.is_connected:
            reasons.append("Venue connector not connected")

        reasons.extend(self._ledger.blocking_reasons())

        if self._has_active_trade(observation.instrument):
            reasons.append(f"Trade already active for {observation.instrument}")

        return PreflightResult(passed=not reasons, reasons=reasons, data_quality=quality.score)

    def _system_healthy(self) -> bool:
        return (
            self._subsystems_healthy()
            and self._connector.is_connected
            and self._ledger.current_drawdown < self._settings.max_drawdown
        )
