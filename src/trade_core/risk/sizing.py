"""Position sizing: Kelly-capped, risk-capped, volatility-adjusted."""

from __future__ import annotations

from trade_core.config import Settings
from trade_core.types import AccountSnapshot, TradeCandidate
from trade_core.utils.logging import get_logger

SAFE_DEFAULT_SIZE = 1


class PositionSizer:
    """Turns an admitted candidate into a whole-unit quantity."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger("trade_core.risk.sizing")

    def size(self, candidate: TradeCandidate, account: AccountSnapshot) -> int:
        """Compute quantity. Never raises; any failure degrades to one unit."""
        try:
            return self._compute(candidate, account)
        except Exception as exc:  # noqa: BLE001 - sizing must not cancel an admitted trade.
            self._logger.warning(
                "sizing_failed_default_applied",
                instrument=candidate.instrument,
                error=str(exc),
                size=SAFE_DEFAULT_SIZE,
            )
            return SAFE_DEFAULT_SIZE

    def kelly_size(self, candidate: TradeCandidate, equity: float) -> float:
        """Kelly fraction of equity divided by per-unit risk."""
        if candidate.max_loss <= 0:
            raise ValueError("max_loss_must_be_positive")
        return candidate.kelly_fraction * equity / candidate.max_loss

    def risk_capped_size(self, candidate: TradeCandidate, equity: float) -> float:
        """Largest size whose stop-out loss stays within the per-trade risk budget."""
        if candidate.max_loss <= 0:
            raise ValueError("max_loss_must_be_positive")
        risk_dollars = equity * (self._settings.risk_per_trade_pct / 100.0)
        return min(risk_dollars / candidate.max_loss, float(self._settings.max_position_size))

    def volatility_multiplier(self, volatility: float) -> float:
        """Inverse-volatility scale, shrinking as atr/price rises."""
        settings = self._settings
        if volatility <= 0:
            return settings.volatility_multiplier_max
        raw = settings.volatility_target / volatility
        return max(settings.volatility_multiplier_min, min(settings.volatility_multiplier_max, raw))

    def _compute(self, candidate: TradeCandidate, account: AccountSnapshot) -> int:
        equity = account.equity
        if equity <= 0:
            raise ValueError("equity_must_be_positive")

        kelly = self.kelly_size(candidate, equity)
        size = min(float(candidate.raw_size), kelly)
        size = min(size, self.risk_capped_size(candidate, equity))
        multiplier = self.volatility_multiplier(candidate.volatility)
        size *= multiplier
        quantity = max(SAFE_DEFAULT_SIZE, int(round(size)))

        self._logger.debug(
            "position_sized",
            instrument=candidate.instrument,
            raw_size=candidate.raw_size,
            kelly_size=round(kelly, 4),
            volatility_multiplier=round(multiplier, 4),
            quantity=quantity,
        )
        return quantity
