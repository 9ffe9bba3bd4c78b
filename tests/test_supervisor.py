from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest
from conftest import FakeConnector

from trade_core.events import EventHub
from trade_core.exec.policies import AtrTrailingStop
from trade_core.exec.reconciler import PositionReconciler
from trade_core.exec.supervisor import ExecutionSupervisor, new_trade_id
from trade_core.exec.trades import Closed, Executed, Failed, Monitoring
from trade_core.risk.ledger import RiskLedger
from trade_core.types import TradeCommand, TradeOutcome


def _command(**overrides: object) -> TradeCommand:
    values: dict[str, object] = {
        "trade_id": new_trade_id(),
        "instrument": "NQ",
        "direction": "LONG",
        "quantity": 2,
        "price": 100.0,
        "stop_price": 95.0,
        "target_price": 110.0,
        "confidence": 0.8,
        "expected_profit": 400.0,
        "created_at": datetime.now(UTC),
    }
    values.update(overrides)
    return TradeCommand(**values)  # type: ignore[arg-type]


def _build(settings, connector, **kwargs):
    events = kwargs.pop("events", None) or EventHub()
    ledger = RiskLedger(settings, events=events)
    reconciler = PositionReconciler(connector, events=events, timeout_sec=0.2)
    supervisor = ExecutionSupervisor(settings, connector, ledger, reconciler, events=events, **kwargs)
    return supervisor, ledger, events


def _collect(events: EventHub, name: str) -> list[dict[str, object]]:
    seen: list[dict[str, object]] = []
    events.subscribe(name, lambda event, payload: seen.append(payload))
    return seen


def test_trade_ids_are_unique() -> None:
    ids = {new_trade_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(trade_id.startswith("TRADE_") for trade_id in ids)


async def test_confirmation_before_timeout_moves_pending_to_executed(make_settings) -> None:
    settings = make_settings(confirmation_timeout_sec=0.25, monitor_interval_sec=10.0)
    connector = FakeConnector(confirm_after=0.1, fill_price=100.25)
    supervisor, ledger, events = _build(settings, connector)
    executed = _collect(events, "trade_executed")
    command = _command()

    task = asyncio.create_task(supervisor.execute(command))
    await asyncio.sleep(0.03)
    assert command.trade_id in supervisor.pending_trades

    state = await task

    assert isinstance(state, Monitoring)
    assert command.trade_id not in supervisor.pending_trades
    assert supervisor.executed_trades[command.trade_id].fill_price == 100.25
    assert ledger.state.total_exposure == pytest.approx(2 * 100.25)
    assert executed[0]["fill_price"] == 100.25
    await supervisor.shutdown()


async def test_confirmation_timeout_fails_without_partial_state(make_settings) -> None:
    settings = make_settings(confirmation_timeout_sec=0.1, execution_failure_loss=10.0)
    connector = FakeConnector(confirm_after=None)
    supervisor, ledger, events = _build(settings, connector)
    failed = _collect(events, "trade_failed")
    command = _command()

    state = await supervisor.execute(command)

    assert isinstance(state, Failed)
    assert state.cause == "confirmation_timeout"
    assert command.trade_id not in supervisor.pending_trades
    assert command.trade_id not in supervisor.executed_trades
    assert not supervisor.has_active_trade("NQ")
    assert ledger.state.daily_pnl == -10.0
    assert ledger.state.total_exposure == 0.0
    assert failed[0]["cause"] == "confirmation_timeout"

    # a late fill for the failed trade is ignored
    connector.confirm(command)
    assert supervisor.get(command.trade_id) is state


async def test_dispatch_rejection_fails_immediately(settings) -> None:
    connector = FakeConnector(accept=False)
    supervisor, ledger, _ = _build(settings, connector)

    state = await supervisor.execute(_command())

    assert isinstance(state, Failed)
    assert state.cause == "dispatch_rejected"
    assert state.failed_from == "pending"
    assert ledger.state.daily_trade_count == 0


async def test_dispatch_exception_fails_trade(settings) -> None:
    class _Broken(FakeConnector):
        async def submit(self, command: TradeCommand) -> bool:
            raise ConnectionResetError("socket closed")

    supervisor, _, _ = _build(settings, _Broken())
    state = await supervisor.execute(_command())
    assert isinstance(state, Failed)
    assert state.cause.startswith("dispatch_error")


async def test_monitor_closes_trade_when_position_goes_flat(settings) -> None:
    connector = FakeConnector()
    outcomes: list[TradeOutcome] = []

    async def on_completed(outcome: TradeOutcome) -> None:
        outcomes.append(outcome)

    supervisor, ledger, events = _build(settings, connector, on_completed=on_completed)
    completed = _collect(events, "trade_completed")
    command = _command()

    await supervisor.execute(command)
    connector.flatten("NQ", realized_pnl=250.0)
    for _ in range(50):
        if outcomes:
            break
        await asyncio.sleep(0.02)

    assert outcomes[0].realized_pnl == 250.0
    assert completed[0]["trade_id"] == command.trade_id
    assert isinstance(supervisor.get(command.trade_id), Closed)
    assert not supervisor.has_active_trade("NQ")
    assert ledger.state.daily_pnl == 250.0
    assert ledger.state.total_exposure == 0.0
    await supervisor.shutdown()


async def test_policy_moves_stop_by_bounded_favorable_step(make_settings, make_observation) -> None:
    settings = make_settings(monitor_interval_sec=10.0, max_stop_move_atr=0.5, min_policy_confidence=0.6)
    connector = FakeConnector()
    supervisor, _, _ = _build(settings, connector, policies=[AtrTrailingStop(1.0, confidence=0.9)])
    command = _command()
    await supervisor.execute(command)

    supervisor.update_market(make_observation(price=110.0, atr=2.0))
    assert not await supervisor.monitor_tick(command.trade_id)

    state = supervisor.get(command.trade_id)
    assert isinstance(state, Monitoring)
    assert state.stop_price == pytest.approx(96.0)
    assert connector.amendments == [("NQ", pytest.approx(96.0), 110.0)]

    # an adverse proposal never loosens the stop
    supervisor.update_market(make_observation(price=90.0, atr=2.0))
    await supervisor.monitor_tick(command.trade_id)
    assert supervisor.get(command.trade_id).stop_price == pytest.approx(96.0)
    await supervisor.shutdown()


async def test_low_confidence_policy_is_ignored(make_settings, make_observation) -> None:
    settings = make_settings(monitor_interval_sec=10.0, min_policy_confidence=0.95)
    connector = FakeConnector()
    supervisor, _, _ = _build(settings, connector, policies=[AtrTrailingStop(1.0, confidence=0.9)])
    command = _command()
    await supervisor.execute(command)

    supervisor.update_market(make_observation(price=110.0, atr=2.0))
    await supervisor.monitor_tick(command.trade_id)

    assert connector.amendments == []
    await supervisor.shutdown()


async def test_shutdown_cancels_monitors(settings) -> None:
    connector = FakeConnector()
    supervisor, _, _ = _build(settings, connector)
    command = _command()
    await supervisor.execute(command)
    monitors = [task for task in asyncio.all_tasks() if task.get_name() == f"monitor-{command.trade_id}"]
    assert len(monitors) == 1

    await supervisor.shutdown()

    assert monitors[0].cancelled()


async def test_shutdown_during_pending_confirmation_starts_no_monitor(make_settings) -> None:
    settings = make_settings(confirmation_timeout_sec=0.5, monitor_interval_sec=0.02)
    connector = FakeConnector(confirm_after=0.2)
    supervisor, ledger, _ = _build(settings, connector)
    command = _command()

    execution = asyncio.create_task(supervisor.execute(command))
    await asyncio.sleep(0.05)
    await supervisor.shutdown()
    state = await execution

    assert isinstance(state, Executed)
    assert ledger.state.total_exposure > 0
    live = [
        task
        for task in asyncio.all_tasks()
        if task.get_name().startswith("monitor-") and not task.done()
    ]
    assert live == []
