from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from trade_core.events import EventHub
from trade_core.journal.state import StateStore
from trade_core.journal.store import JournalStore
from trade_core.risk.ledger import RiskLedger


def test_state_store_round_trip(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state" / "core_state.json")
    assert store.load() is None

    store.save({"risk": {"daily_pnl": -10.0}})

    loaded = store.load()
    assert loaded == {"schema_version": 1, "risk": {"daily_pnl": -10.0}}
    assert not store.path.with_suffix(".json.tmp").exists()


def test_state_store_ignores_foreign_schema_and_garbage(tmp_path: Path) -> None:
    path = tmp_path / "core_state.json"
    path.write_text(json.dumps({"schema_version": 99}), encoding="utf-8")
    assert StateStore(path).load() is None
    path.write_text("{not json", encoding="utf-8")
    assert StateStore(path).load() is None


def test_journal_appends_and_loads_recent(tmp_path: Path) -> None:
    journal = JournalStore(tmp_path)
    for i in range(5):
        journal.append("cycle_start", {"i": i, "at": datetime(2026, 3, 2, tzinfo=UTC)})

    rows = journal.load_recent(3)

    assert [row["payload"]["i"] for row in rows] == [2, 3, 4]
    assert rows[0]["payload"]["at"] == "2026-03-02T00:00:00+00:00"
    with pytest.raises(ValueError, match="unsupported_event_type"):
        journal.append("bogus", {})


async def test_ledger_restore_keeps_breaker_latched(settings) -> None:
    ledger = RiskLedger(settings)
    for _ in range(settings.max_consecutive_losses):
        await ledger.record_trade_closed(-10.0)
    assert not ledger.is_trading_allowed()

    restored = RiskLedger(settings)
    restored.restore(ledger.to_dict())
    assert not restored.is_trading_allowed()
    await restored.reset_daily()
    assert restored.is_trading_allowed()


def test_failing_observer_never_reaches_publisher() -> None:
    hub = EventHub()
    seen: list[str] = []

    def _broken(name, payload):
        raise RuntimeError("observer down")

    hub.subscribe("trade_failed", _broken)
    hub.subscribe("trade_failed", lambda name, payload: seen.append(name))

    hub.emit("trade_failed", {"trade_id": "TRADE_1"})

    assert seen == ["trade_failed"]


async def test_async_observers_are_drained() -> None:
    hub = EventHub()
    seen: list[dict[str, object]] = []

    async def _slow(name, payload):
        await asyncio.sleep(0.01)
        seen.append(payload)

    async def _broken(name, payload):
        raise RuntimeError("late failure")

    hub.subscribe("trade_completed", _slow)
    hub.subscribe("trade_completed", _broken)
    hub.emit("trade_completed", {"trade_id": "TRADE_2"})
    await hub.drain()

    assert seen == [{"trade_id": "TRADE_2"}]


def test_unknown_event_names_are_refused() -> None:
    with pytest.raises(ValueError):
        EventHub().subscribe("not_an_event", lambda name, payload: None)  # type: ignore[arg-type]


def test_journal_filters_by_type_and_prunes_old_days(tmp_path: Path) -> None:
    today = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
    journal = JournalStore(tmp_path, clock=lambda: today)
    journal.append("trade_completed", {"trade_id": "TRADE_A", "realized_pnl": 5.0})
    journal.append("cycle_end", {"status": "no_opportunity"})
    (tmp_path / "2026-01-01.jsonl").write_text('{"event_type": "cycle_end"}\n', encoding="utf-8")

    completed = journal.load_recent(10, event_types={"trade_completed"})
    assert [row["payload"]["trade_id"] for row in completed] == ["TRADE_A"]
    assert [row["seq"] for row in journal.iter_day(today.date())] == [1, 2]

    removed = journal.prune(keep_days=30)
    assert [path.name for path in removed] == ["2026-01-01.jsonl"]
    assert len(journal.load_recent(10)) == 2
