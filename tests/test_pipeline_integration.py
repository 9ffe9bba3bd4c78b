from __future__ import annotations

import asyncio

import pytest
from conftest import FakeConnector, FakeOptimizer, FakeProvider

from trade_core import ConfigurationError
from trade_core.journal.state import StateStore
from trade_core.journal.store import JournalStore
from trade_core.pipeline import TradingCoordinator, final_safety_check
from trade_core.types import TradeCommand


def _coordinator(settings, connector, candidate, prediction, **kwargs) -> TradingCoordinator:
    providers = kwargs.pop("providers", None) or [FakeProvider("fake", prediction)]
    optimizer = kwargs.pop("optimizer", None) or FakeOptimizer(candidate)
    return TradingCoordinator(
        settings,
        connector,
        providers=providers,
        optimizer=optimizer,
        policies=[],
        **kwargs,
    )


def test_missing_connector_is_a_configuration_error(settings) -> None:
    with pytest.raises(ConfigurationError):
        TradingCoordinator(settings, None)


async def test_full_cycle_executes_trade(settings, make_candidate, make_observation, long_prediction) -> None:
    connector = FakeConnector()
    journal = JournalStore(settings.journal_dir)
    coordinator = _coordinator(settings, connector, make_candidate(), long_prediction, journal=journal)

    result = await coordinator.evaluate(make_observation())

    assert result.status == "executed"
    assert result.trade_id is not None
    assert len(connector.submitted) == 1
    command = connector.submitted[0]
    assert command.direction == "LONG"
    assert command.quantity >= 1
    assert coordinator.has_active_trade("NQ")
    assert coordinator.ledger.state.daily_trade_count == 1

    await coordinator.events.drain()
    event_types = [row["event_type"] for row in journal.load_recent(50)]
    for expected in ("cycle_start", "preflight", "prediction", "candidate", "validation", "order", "trade_executed", "cycle_end"):
        assert expected in event_types
    await coordinator.supervisor.shutdown()


async def test_disconnected_venue_fails_preflight(settings, make_candidate, make_observation, long_prediction) -> None:
    connector = FakeConnector(connected=False)
    optimizer = FakeOptimizer(make_candidate())
    coordinator = _coordinator(settings, connector, None, long_prediction, optimizer=optimizer)

    result = await coordinator.evaluate(make_observation())

    assert result.status == "preflight_failed"
    assert "Venue connector not connected" in result.reasons
    assert optimizer.calls == 0
    assert connector.submitted == []


async def test_no_candidate_means_no_opportunity(settings, make_observation, long_prediction) -> None:
    coordinator = _coordinator(settings, FakeConnector(), None, long_prediction)
    result = await coordinator.evaluate(make_observation())
    assert result.status == "no_opportunity"
    assert not coordinator.has_active_trade("NQ")


async def test_slow_optimizer_is_treated_as_unavailable(
    make_settings, make_candidate, make_observation, long_prediction
) -> None:
    settings = make_settings(optimizer_timeout_sec=0.05)
    optimizer = FakeOptimizer(make_candidate(), delay=1.0)
    connector = FakeConnector()
    coordinator = _coordinator(settings, connector, None, long_prediction, optimizer=optimizer)

    result = await coordinator.evaluate(make_observation())

    assert result.status == "optimizer_unavailable"
    assert connector.submitted == []


async def test_failing_providers_degrade_but_cycle_continues(
    settings, make_candidate, make_observation
) -> None:
    providers = [FakeProvider("broken", error=RuntimeError("boom"))]
    coordinator = _coordinator(settings, FakeConnector(), make_candidate(), None, providers=providers)

    result = await coordinator.evaluate(make_observation())

    assert "all_providers_failed" in result.warnings
    assert result.status == "executed"
    await coordinator.supervisor.shutdown()


async def test_low_confidence_candidate_is_rejected(
    settings, make_candidate, make_observation, long_prediction
) -> None:
    connector = FakeConnector()
    coordinator = _coordinator(settings, connector, make_candidate(confidence=0.6), long_prediction)
    rejected: list[dict[str, object]] = []
    coordinator.events.subscribe("trade_rejected", lambda name, payload: rejected.append(payload))

    result = await coordinator.evaluate(make_observation())

    assert result.status == "validation_rejected"
    assert any(reason.startswith("confidence:") for reason in result.reasons)
    assert rejected and rejected[0]["instrument"] == "NQ"
    assert connector.submitted == []


async def test_venue_rejection_is_execution_failed(
    settings, make_candidate, make_observation, long_prediction
) -> None:
    coordinator = _coordinator(settings, FakeConnector(accept=False), make_candidate(), long_prediction)
    result = await coordinator.evaluate(make_observation())
    assert result.status == "execution_failed"
    assert result.reasons == ["dispatch_rejected"]
    assert not coordinator.has_active_trade("NQ")


async def test_unexpected_fault_is_contained(
    settings, make_candidate, make_observation, long_prediction
) -> None:
    coordinator = _coordinator(settings, FakeConnector(), make_candidate(), long_prediction)

    def _explode(candidate, quantity):
        raise RuntimeError("bad command")

    coordinator.supervisor.build_command = _explode  # type: ignore[method-assign]

    result = await coordinator.evaluate(make_observation())

    assert result.status == "failed"
    assert result.reasons == ["RuntimeError: bad command"]
    assert not coordinator.has_active_trade("NQ")


async def test_concurrent_opportunities_admit_one_trade(
    settings, make_candidate, make_observation, long_prediction
) -> None:
    connector = FakeConnector(confirm_after=0.05)
    coordinator = _coordinator(settings, connector, make_candidate(), long_prediction)

    first, second = await asyncio.gather(
        coordinator.evaluate(make_observation()),
        coordinator.evaluate(make_observation()),
    )

    assert first.status == "executed"
    assert second.status == "preflight_failed"
    assert "Trade already active for NQ" in second.reasons
    assert len(connector.submitted) == 1
    await coordinator.supervisor.shutdown()


async def test_completed_trade_feeds_gate_and_performance(
    settings, make_candidate, make_observation, long_prediction
) -> None:
    connector = FakeConnector()
    coordinator = _coordinator(settings, connector, make_candidate(), long_prediction)

    result = await coordinator.evaluate(make_observation())
    assert result.status == "executed"
    connector.flatten("NQ", realized_pnl=-120.0)
    for _ in range(50):
        if coordinator.performance.trade_count:
            break
        await asyncio.sleep(0.02)

    assert coordinator.performance.trade_count == 1
    # an overconfident loss raises the bar by one step
    assert coordinator.gate.current == pytest.approx(settings.confidence_base + settings.confidence_step)
    assert coordinator.ledger.state.consecutive_losses == 1
    assert not coordinator.has_active_trade("NQ")
    await coordinator.supervisor.shutdown()


async def test_start_stop_persists_and_restores_state(
    settings, make_candidate, make_observation, long_prediction
) -> None:
    store = StateStore(settings.journal_dir / "state.json")
    coordinator = _coordinator(settings, FakeConnector(), None, long_prediction, state_store=store)

    async with coordinator:
        assert coordinator.started
        assert coordinator.reconciler.running
        await coordinator.gate.record_outcome(pnl=-50.0, confidence=0.9)

    assert not coordinator.started
    assert store.path.exists()

    restored = _coordinator(settings, FakeConnector(), None, long_prediction, state_store=store)
    assert restored.load_state()
    assert restored.gate.current == pytest.approx(coordinator.gate.current)


async def test_review_performance_reports_threshold(settings, long_prediction) -> None:
    coordinator = _coordinator(settings, FakeConnector(), None, long_prediction)
    seen: list[dict[str, object]] = []
    coordinator.events.subscribe("performance_review", lambda name, payload: seen.append(payload))

    report = await coordinator.review_performance()

    assert report["milestone"] == "DISCOVERY"
    assert report["confidence_threshold"] == pytest.approx(settings.confidence_base)
    assert seen and seen[0] is report


def test_final_safety_check_flags_structural_problems(make_candidate) -> None:
    candidate = make_candidate()
    command = TradeCommand(
        trade_id="TRADE_X",
        instrument="",
        direction="FLAT",
        quantity=0,
        price=candidate.entry_price,
        stop_price=candidate.stop_price,
        target_price=candidate.target_price,
        confidence=candidate.confidence,
        expected_profit=candidate.expected_profit,
        created_at=candidate.created_at,
    )
    assert final_safety_check(command) == ["missing_instrument", "invalid_direction", "non_positive_quantity"]
