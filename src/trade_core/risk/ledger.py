"""Risk ledger and circuit breaker."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from trade_core.config import Settings
from trade_core.events import EventHub
from trade_core.types import AccountSnapshot, RiskState, TradeCommand
from trade_core.utils.logging import get_logger, log_risk_event

_MARGIN_RATE = 0.1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RiskLedger:
    """Daily counters, loss/streak limits and the trade admission gate.

    Every mutation goes through one asyncio lock so pipeline runs, monitor
    ticks and the session rollover task never interleave counter updates.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        events: EventHub | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._events = events
        self._clock = clock
        self._logger = get_logger("trade_core.risk.ledger")
        self._lock = asyncio.Lock()
        self._state = RiskState(
            max_daily_loss=settings.max_daily_loss,
            max_daily_trades=settings.max_daily_trades,
            max_consecutive_losses=settings.max_consecutive_losses,
        )
        self._equity = settings.initial_equity
        self._session_start_equity = settings.initial_equity
        self._peak_equity = settings.initial_equity
        self._session_date = self._session_date_for(clock())
        self._latched: list[str] = []

    @property
    def state(self) -> RiskState:
        """Copy of the current counters."""
        return replace(self._state)

    @property
    def equity(self) -> float:
        return self._equity

    @property
    def session_date(self) -> date:
        return self._session_date

    @property
    def current_drawdown(self) -> float:
        if self._peak_equity <= 0:
            return 0.0
        return max(0.0, (self._peak_equity - self._equity) / self._peak_equity)

    def blocking_reasons(self) -> list[str]:
        """Limit breaches, plus any breach latched since the last reset."""
        reasons = self._limit_breaches()
        reasons.extend(reason for reason in self._latched if reason not in reasons)
        return reasons

    def _limit_breaches(self) -> list[str]:
        state = self._state
        reasons: list[str] = []
        if state.daily_pnl <= state.max_daily_loss:
            reasons.append("Daily loss limit reached")
        if state.daily_trade_count >= state.max_daily_trades:
            reasons.append("Daily trade limit reached")
        if state.consecutive_losses >= state.max_consecutive_losses:
            reasons.append("Max consecutive losses reached")
        return reasons

    def is_trading_allowed(self) -> bool:
        return not self.blocking_reasons()

    def account_snapshot(self) -> AccountSnapshot:
        margin = self._state.total_exposure * _MARGIN_RATE
        return AccountSnapshot(
            balance=self._session_start_equity,
            equity=self._equity,
            margin=margin,
            free_margin=self._equity - margin,
        )

    async def record_trade_opened(
        self,
        command: TradeCommand,
        *,
        fill_price: float | None = None,
    ) -> None:
        price = command.price if fill_price is None else fill_price
        async with self._lock:
            self._state.daily_trade_count += 1
            if command.direction in ("LONG", "SHORT"):
                self._state.total_exposure += command.quantity * price
            self._check_circuit_breaker()

    async def record_trade_closed(self, pnl: float, *, notional: float = 0.0) -> None:
        async with self._lock:
            self._state.daily_pnl += pnl
            self._equity += pnl
            self._peak_equity = max(self._peak_equity, self._equity)
            if pnl < 0:
                self._state.consecutive_losses += 1
            else:
                self._state.consecutive_losses = 0
            self._state.total_exposure = max(0.0, self._state.total_exposure - notional)
            self._check_circuit_breaker()

    async def record_execution_failure(self, cause: str) -> None:
        """Feed a synthetic loss so repeated execution faults still trip the breaker."""
        loss = self._settings.execution_failure_loss
        self._logger.info("execution_failure_recorded", cause=cause, synthetic_loss=loss)
        if loss > 0:
            await self.record_trade_closed(-loss)

    async def reset_daily(self, now: datetime | None = None) -> None:
        """Zero the daily counters and snapshot a new equity baseline.

        Exposure belongs to still-open trades and is carried over.
        """
        async with self._lock:
            self._state.daily_pnl = 0.0
            self._state.daily_trade_count = 0
            self._state.consecutive_losses = 0
            self._session_start_equity = self._equity
            self._peak_equity = self._equity
            self._session_date = self._session_date_for(now or self._clock())
            self._latched = []
        self._logger.info("risk_ledger_reset", session_date=self._session_date.isoformat())

    async def roll_session_if_needed(self, now: datetime | None = None) -> bool:
        current = self._session_date_for(now or self._clock())
        if current == self._session_date:
            return False
        self._logger.info(
            "daily_report",
            session_date=self._session_date.isoformat(),
            daily_pnl=self._state.daily_pnl,
            trades=self._state.daily_trade_count,
            consecutive_losses=self._state.consecutive_losses,
        )
        await self.reset_daily(now or self._clock())
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            **asdict(self._state),
            "equity": self._equity,
            "session_start_equity": self._session_start_equity,
            "peak_equity": self._peak_equity,
            "session_date": self._session_date.isoformat(),
        }

    def restore(self, payload: dict[str, Any]) -> None:
        """Load persisted counters. Limits always come from settings."""
        self._state.daily_pnl = float(payload.get("daily_pnl", 0.0))
        self._state.daily_trade_count = int(payload.get("daily_trade_count", 0))
        self._state.consecutive_losses = int(payload.get("consecutive_losses", 0))
        self._state.total_exposure = float(payload.get("total_exposure", 0.0))
        self._equity = float(payload.get("equity", self._equity))
        self._session_start_equity = float(payload.get("session_start_equity", self._equity))
        self._peak_equity = max(float(payload.get("peak_equity", self._equity)), self._equity)
        raw_date = payload.get("session_date")
        if isinstance(raw_date, str):
            self._session_date = date.fromisoformat(raw_date)
        self._latched = self._limit_breaches()

    def _check_circuit_breaker(self) -> None:
        breaches = self._limit_breaches()
        fresh = [reason for reason in breaches if reason not in self._latched]
        if not fresh:
            return
        was_tripped = bool(self._latched)
        self._latched.extend(fresh)
        reasons = list(self._latched)
        if not was_tripped:
            log_risk_event(
                self._logger,
                event_type="circuit_breaker",
                action="halt_new_trades",
                reasons=reasons,
            )
            if self._events is not None:
                self._events.emit(
                    "circuit_breaker_tripped",
                    {"reasons": reasons, "risk_state": asdict(self._state)},
                )

    def _session_date_for(self, now: datetime) -> date:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        shifted = now.astimezone(timezone.utc) - timedelta(hours=self._settings.session_reset_hour)
        return shifted.date()
