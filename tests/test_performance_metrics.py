from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from trade_core.performance.metrics import PerformanceTracker, compute_summary, max_drawdown
from trade_core.types import TradeOutcome


def _outcome(pnl: float, *, hour: int = 14, index: int = 0) -> TradeOutcome:
    opened = datetime(2026, 3, 2, hour, 0, tzinfo=UTC) + timedelta(minutes=index)
    return TradeOutcome(
        trade_id=f"TRADE_{index}",
        instrument="NQ",
        direction="LONG",
        quantity=1,
        fill_price=15_000.0,
        realized_pnl=pnl,
        confidence=0.8,
        opened_at=opened,
        closed_at=opened + timedelta(minutes=5),
    )


def test_summary_statistics() -> None:
    outcomes = [_outcome(100.0), _outcome(-50.0), _outcome(150.0), _outcome(-50.0)]
    summary = compute_summary(outcomes, starting_equity=10_000.0)
    assert summary["trade_count"] == 4
    assert summary["win_rate"] == 0.5
    assert summary["profit_factor"] == pytest.approx(2.5)
    assert summary["expectancy"] == pytest.approx(37.5)
    assert summary["avg_loss"] == pytest.approx(-50.0)


def test_profit_factor_without_losses_is_infinite() -> None:
    summary = compute_summary([_outcome(10.0)], starting_equity=1_000.0)
    assert summary["profit_factor"] == float("inf")
    assert compute_summary([], starting_equity=1_000.0)["trade_count"] == 0


def test_max_drawdown_tracks_peak() -> None:
    assert max_drawdown([100.0, -200.0, 50.0], starting_equity=1_000.0) == pytest.approx(200.0 / 1_100.0)
    assert max_drawdown([10.0, 10.0], starting_equity=1_000.0) == 0.0


def test_milestones_follow_trade_count() -> None:
    tracker = PerformanceTracker(starting_equity=100_000.0)
    assert tracker.current_milestone().name == "DISCOVERY"
    for i in range(50):
        tracker.record(_outcome(10.0, index=i))
    report = tracker.progress_report()
    assert report["milestone"] == "FILTERING"
    assert report["next_milestone"] == "OPTIMIZING"
    assert report["trades_to_next"] == 50
    assert report["requirements_met"]


def test_unprofitable_hours_need_enough_samples() -> None:
    tracker = PerformanceTracker(starting_equity=100_000.0, min_hour_trades=5, min_hour_win_rate=0.35)
    for i in range(5):
        tracker.record(_outcome(-10.0, hour=3, index=i))
    for i in range(4):
        tracker.record(_outcome(-10.0, hour=9, index=i))
    assert tracker.unprofitable_hours() == {3}
    assert tracker.hourly_stats()[9]["trades"] == 4


def test_round_trip_through_rows() -> None:
    tracker = PerformanceTracker(starting_equity=100_000.0)
    tracker.record(_outcome(25.0))
    restored = PerformanceTracker(starting_equity=100_000.0)
    restored.restore(tracker.to_dict() + [{"trade_id": "broken"}])
    assert restored.outcomes == tracker.outcomes
