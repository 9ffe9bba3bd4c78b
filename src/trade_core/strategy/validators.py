"""Named trade validators and the registry that runs all of them."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterable, Protocol
from zoneinfo import ZoneInfo

from trade_core.config import Settings
from trade_core.risk.confidence import AdaptiveConfidenceGate
from trade_core.types import (
    Position,
    RiskState,
    TradeCandidate,
    ValidationReport,
    ValidatorResult,
    opposite,
)
from trade_core.utils.logging import get_logger


class Validator(Protocol):
    """One named admission rule."""

    name: str

    def evaluate(
        self,
        candidate: TradeCandidate,
        position: Position,
        risk: RiskState,
    ) -> ValidatorResult:
        """Judge one candidate against the current position and risk state."""


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


class ConfidenceValidator:
    name = "confidence"

    def __init__(self, gate: AdaptiveConfidenceGate) -> None:
        self._gate = gate

    def evaluate(self, candidate: TradeCandidate, position: Position, risk: RiskState) -> ValidatorResult:
        threshold = self._gate.current
        passed = candidate.confidence >= threshold
        return ValidatorResult(
            name=self.name,
            passed=passed,
            reason="" if passed else f"Confidence {candidate.confidence:.2f} below threshold {threshold:.2f}",
            score=candidate.confidence,
        )


class ExpectedProfitValidator:
    name = "profit_target"

    def __init__(self, min_profit: float) -> None:
        self._min_profit = min_profit

    def evaluate(self, candidate: TradeCandidate, position: Position, risk: RiskState) -> ValidatorResult:
        passed = candidate.expected_profit >= self._min_profit
        return ValidatorResult(
            name=self.name,
            passed=passed,
            reason=""
            if passed
            else f"Expected profit ${candidate.expected_profit:.2f} below minimum ${self._min_profit:.2f}",
            score=_clamp01(candidate.expected_profit / 100.0),
        )


class RiskRewardValidator:
    name = "risk_reward"

    def __init__(self, min_ratio: float) -> None:
        self._min_ratio = min_ratio

    def evaluate(self, candidate: TradeCandidate, position: Position, risk: RiskState) -> ValidatorResult:
        passed = candidate.risk_reward_ratio >= self._min_ratio
        return ValidatorResult(
            name=self.name,
            passed=passed,
            reason=""
            if passed
            else f"Risk/Reward {candidate.risk_reward_ratio:.2f} below minimum {self._min_ratio:.2f}",
            score=_clamp01(candidate.risk_reward_ratio / 3.0),
        )


class DirectionValidator:
    """No direct reversal while a position is open."""

    name = "position_direction"

    def evaluate(self, candidate: TradeCandidate, position: Position, risk: RiskState) -> ValidatorResult:
        if not position.is_open:
            return ValidatorResult(name=self.name, passed=True, reason="", score=1.0)
        reversal = candidate.direction == opposite(position.direction)
        return ValidatorResult(
            name=self.name,
            passed=not reversal,
            reason=f"Direct position reversal not allowed ({position.direction} open)" if reversal else "",
            score=0.0 if reversal else 1.0,
        )


class VolatilityValidator:
    name = "volatility"

    def __init__(self, max_volatility: float, *, warning_ratio: float = 0.8) -> None:
        self._max_volatility = max_volatility
        self._warning_ratio = warning_ratio

    def evaluate(self, candidate: TradeCandidate, position: Position, risk: RiskState) -> ValidatorResult:
        volatility = candidate.volatility
        passed = volatility <= self._max_volatility
        warning = None
        if volatility > self._max_volatility * self._warning_ratio:
            warning = f"High volatility detected: {volatility * 100:.2f}%"
        return ValidatorResult(
            name=self.name,
            passed=passed,
            reason=""
            if passed
            else f"Volatility {volatility * 100:.2f}% exceeds max {self._max_volatility * 100:.2f}%",
            score=_clamp01(1.0 - volatility / self._max_volatility),
            warning=warning,
        )


class TimeOfDayValidator:
    """Rejects trades during blacklisted hours (configured plus learned)."""

    name = "time_filter"

    def __init__(
        self,
        restricted_hours: Iterable[int],
        *,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._restricted = frozenset(restricted_hours)
        self._learned: frozenset[int] = frozenset()
        self._tz = ZoneInfo(timezone_name)
        self._clock = clock

    @property
    def blacklist(self) -> frozenset[int]:
        return self._restricted | self._learned

    def set_learned_hours(self, hours: Iterable[int]) -> None:
        self._learned = frozenset(hours)

    def evaluate(self, candidate: TradeCandidate, position: Position, risk: RiskState) -> ValidatorResult:
        hour = self._clock().astimezone(self._tz).hour
        passed = hour not in self.blacklist
        return ValidatorResult(
            name=self.name,
            passed=passed,
            reason="" if passed else f"Trading restricted during hour {hour}",
            score=1.0 if passed else 0.0,
        )


class ValidatorRegistry:
    """Ordered list of named validators. Every validator runs on every candidate."""

    def __init__(self, validators: Iterable[Validator] = ()) -> None:
        self._validators: list[Validator] = []
        self._logger = get_logger("trade_core.strategy.validators")
        for validator in validators:
            self.register(validator)

    @property
    def names(self) -> list[str]:
        return [validator.name for validator in self._validators]

    def __len__(self) -> int:
        return len(self._validators)

    def register(self, validator: Validator) -> None:
        if validator.name in self.names:
            raise ValueError(f"duplicate_validator: {validator.name}")
        self._validators.append(validator)

    def get(self, name: str) -> Validator | None:
        for validator in self._validators:
            if validator.name == name:
                return validator
        return None

    def validate(
        self,
        candidate: TradeCandidate,
        position: Position,
        risk: RiskState,
    ) -> ValidationReport:
        report = ValidationReport(is_valid=True, score=0.0)
        total = 0.0
        for validator in self._validators:
            result = self._run(validator, candidate, position, risk)
            report.results.append(result)
            if result.passed:
                total += result.score
            else:
                report.is_valid = False
                report.reasons.append(f"{result.name}: {result.reason}")
            if result.warning:
                report.warnings.append(f"{result.name}: {result.warning}")
        report.score = total / len(self._validators) if self._validators else 0.0
        return report

    def _run(
        self,
        validator: Validator,
        candidate: TradeCandidate,
        position: Position,
        risk: RiskState,
    ) -> ValidatorResult:
        try:
            return validator.evaluate(candidate, position, risk)
        except Exception as exc:  # noqa: BLE001 - a broken validator rejects, it does not crash the cycle.
            self._logger.warning("validator_failed", validator=validator.name, error=str(exc))
            return ValidatorResult(
                name=validator.name,
                passed=False,
                reason=f"validator error: {exc}",
                score=0.0,
            )


def build_default_registry(
    settings: Settings,
    gate: AdaptiveConfidenceGate,
    *,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> ValidatorRegistry:
    return ValidatorRegistry(
        [
            ConfidenceValidator(gate),
            ExpectedProfitValidator(settings.min_expected_profit),
            RiskRewardValidator(settings.min_risk_reward),
            DirectionValidator(),
            VolatilityValidator(
                settings.max_volatility,
                warning_ratio=settings.volatility_warning_ratio,
            ),
            TimeOfDayValidator(
                settings.restricted_hours,
                timezone_name=settings.trading_timezone,
                clock=clock,
            ),
        ]
    )
