"""Closed-trade statistics, per-hour breakdown and the milestone ladder."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from statistics import fmean
from typing import Any, Iterable, Sequence
from zoneinfo import ZoneInfo

from trade_core.types import TradeOutcome

_OUTCOME_LIMIT = 1000


@dataclass(slots=True, frozen=True)
class Milestone:
    name: str
    min_trades: int


MILESTONES: tuple[Milestone, ...] = (
    Milestone("DISCOVERY", 0),
    Milestone("FILTERING", 50),
    Milestone("OPTIMIZING", 100),
    Milestone("REFINING", 200),
    Milestone("PRODUCTION", 300),
)

# minimum quality bar checked against every milestone
MILESTONE_REQUIREMENTS = {
    "win_rate": 0.52,
    "profit_factor": 1.2,
    "max_drawdown": 0.15,
}


def compute_summary(outcomes: Sequence[TradeOutcome], *, starting_equity: float) -> dict[str, float | int]:
    """Aggregate statistics over a sequence of closed trades."""
    if not outcomes:
        return {
            "trade_count": 0,
            "win_rate": 0.0,
            "avg_win": 0.0,
            "avg_loss": 0.0,
            "profit_factor": 0.0,
            "expectancy": 0.0,
            "total_pnl": 0.0,
            "max_drawdown": 0.0,
        }

    pnls = [outcome.realized_pnl for outcome in outcomes]
    wins = [pnl for pnl in pnls if pnl > 0]
    losses = [pnl for pnl in pnls if pnl <= 0]
    gross_profit = sum(wins)
    gross_loss = abs(sum(losses))
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = float("inf") if gross_profit > 0 else 0.0

    return {
        "trade_count": len(pnls),
        "win_rate": len(wins) / len(pnls),
        "avg_win": fmean(wins) if wins else 0.0,
        "avg_loss": fmean(losses) if losses else 0.0,
        "profit_factor": float(profit_factor),
        "expectancy": fmean(pnls),
        "total_pnl": float(sum(pnls)),
        "max_drawdown": max_drawdown(pnls, starting_equity=starting_equity),
    }


def max_drawdown(pnls: Iterable[float], *, starting_equity: float) -> float:
    """Largest peak-to-trough equity decline as a fraction of the peak."""
    equity = starting_equity
    peak = starting_equity
    worst = 0.0
    for pnl in pnls:
        equity += pnl
        peak = max(peak, equity)
        if peak > 0:
            worst = max(worst, (peak - equity) / peak)
    return worst


class PerformanceTracker:
    """Keeps closed-trade outcomes and derives statistics from them.

    Milestones are reported only. They never feed back into the confidence
    threshold or any other admission rule.
    """

    def __init__(
        self,
        *,
        starting_equity: float,
        timezone_name: str = "UTC",
        min_hour_trades: int = 5,
        min_hour_win_rate: float = 0.35,
    ) -> None:
        self._starting_equity = starting_equity
        self._tz = ZoneInfo(timezone_name)
        self._min_hour_trades = min_hour_trades
        self._min_hour_win_rate = min_hour_win_rate
        self._outcomes: list[TradeOutcome] = []

    @property
    def outcomes(self) -> list[TradeOutcome]:
        return list(self._outcomes)

    @property
    def trade_count(self) -> int:
        return len(self._outcomes)

    def record(self, outcome: TradeOutcome) -> None:
        self._outcomes.append(outcome)
        if len(self._outcomes) > _OUTCOME_LIMIT:
            self._outcomes = self._outcomes[-_OUTCOME_LIMIT:]

    def summary(self) -> dict[str, float | int]:
        return compute_summary(self._outcomes, starting_equity=self._starting_equity)

    def hourly_stats(self) -> dict[int, dict[str, float | int]]:
        buckets: dict[int, list[float]] = {}
        for outcome in self._outcomes:
            hour = self._hour_of(outcome.opened_at)
            buckets.setdefault(hour, []).append(outcome.realized_pnl)
        return {
            hour: {
                "trades": len(pnls),
                "win_rate": sum(1 for pnl in pnls if pnl > 0) / len(pnls),
                "total_pnl": float(sum(pnls)),
            }
            for hour, pnls in sorted(buckets.items())
        }

    def unprofitable_hours(self) -> set[int]:
        """Hours with enough trades and a win rate below the floor."""
        return {
            hour
            for hour, stats in self.hourly_stats().items()
            if stats["trades"] >= self._min_hour_trades
            and stats["win_rate"] < self._min_hour_win_rate
        }

    def current_milestone(self) -> Milestone:
        reached = [m for m in MILESTONES if self.trade_count >= m.min_trades]
        return reached[-1]

    def progress_report(self) -> dict[str, Any]:
        summary = self.summary()
        milestone = self.current_milestone()
        upcoming = [m for m in MILESTONES if m.min_trades > self.trade_count]
        checks = {
            "win_rate": summary["win_rate"] >= MILESTONE_REQUIREMENTS["win_rate"],
            "profit_factor": summary["profit_factor"] >= MILESTONE_REQUIREMENTS["profit_factor"],
            "max_drawdown": summary["max_drawdown"] <= MILESTONE_REQUIREMENTS["max_drawdown"],
        }
        return {
            "milestone": milestone.name,
            "next_milestone": upcoming[0].name if upcoming else None,
            "trades_to_next": upcoming[0].min_trades - self.trade_count if upcoming else 0,
            "requirements_met": all(checks.values()) and self.trade_count > 0,
            "checks": checks,
            "summary": summary,
            "unprofitable_hours": sorted(self.unprofitable_hours()),
        }

    def to_dict(self) -> list[dict[str, Any]]:
        return [
            {
                "trade_id": o.trade_id,
                "instrument": o.instrument,
                "direction": o.direction,
                "quantity": o.quantity,
                "fill_price": o.fill_price,
                "realized_pnl": o.realized_pnl,
                "confidence": o.confidence,
                "opened_at": o.opened_at.isoformat(),
                "closed_at": o.closed_at.isoformat(),
            }
            for o in self._outcomes
        ]

    def restore(self, rows: Iterable[dict[str, Any]]) -> None:
        restored: list[TradeOutcome] = []
        for row in rows:
            try:
                restored.append(
                    TradeOutcome(
                        trade_id=str(row["trade_id"]),
                        instrument=str(row["instrument"]),
                        direction=row["direction"],
                        quantity=int(row["quantity"]),
                        fill_price=float(row["fill_price"]),
                        realized_pnl=float(row["realized_pnl"]),
                        confidence=float(row["confidence"]),
                        opened_at=datetime.fromisoformat(row["opened_at"]),
                        closed_at=datetime.fromisoformat(row["closed_at"]),
                    )
                )
            except (KeyError, TypeError, ValueError):
                continue
        self._outcomes = restored[-_OUTCOME_LIMIT:]

    def _hour_of(self, moment: datetime) -> int:
        if moment.tzinfo is None:
            return moment.hour
        return moment.astimezone(self._tz).hour
