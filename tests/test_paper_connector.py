from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from trade_core.exec.connector import PaperConnector
from trade_core.types import Confirmation, TradeCommand


def _command(direction: str = "LONG", quantity: int = 2, price: float = 100.0) -> TradeCommand:
    long_side = direction == "LONG"
    return TradeCommand(
        trade_id=f"TRADE_{direction}_{quantity}",
        instrument="NQ",
        direction=direction,  # type: ignore[arg-type]
        quantity=quantity,
        price=price,
        stop_price=price - 5 if long_side else price + 5,
        target_price=price + 10 if long_side else price - 10,
        confidence=0.8,
        expected_profit=200.0,
        created_at=datetime.now(UTC),
    )


async def test_submit_fills_after_delay_and_confirms() -> None:
    connector = PaperConnector(fill_delay_sec=0.01, slippage_bps=10.0)
    confirmations: list[Confirmation] = []
    connector.set_confirmation_handler(confirmations.append)

    assert await connector.submit(_command())
    await asyncio.sleep(0.05)

    assert confirmations[0].fill_price == pytest.approx(100.1)
    position = await connector.query_position("NQ")
    assert position.direction == "LONG"
    assert position.size == 2.0


async def test_disconnected_connector_rejects() -> None:
    connector = PaperConnector()
    connector.set_connected(False)
    assert not await connector.submit(_command())


async def test_stop_touch_closes_and_realizes(make_observation) -> None:
    connector = PaperConnector(point_value=20.0, auto_fill=False)
    connector.fill(_command())

    result = connector.mark_to_market(make_observation(price=94.0))

    assert result["exit"] == "stop"
    assert result["realized_pnl"] == pytest.approx((95.0 - 100.0) * 2 * 20.0)
    position = await connector.query_position("NQ")
    assert position.direction == "FLAT"
    assert position.realized_pnl == pytest.approx(-200.0)


async def test_amended_target_is_honoured(make_observation) -> None:
    connector = PaperConnector(auto_fill=False)
    connector.fill(_command("SHORT", quantity=1))
    await connector.amend_protection("NQ", 103.0, 98.0)

    assert connector.mark_to_market(make_observation(price=99.0))["has_position"]
    result = connector.mark_to_market(make_observation(price=97.5))
    assert result["exit"] == "target"
    assert result["realized_pnl"] == pytest.approx(2.0)


async def test_opposite_fill_nets_position() -> None:
    connector = PaperConnector(auto_fill=False)
    connector.fill(_command("LONG", quantity=3, price=100.0))
    connector.fill(_command("SHORT", quantity=1, price=104.0))

    position = await connector.query_position("NQ")
    assert position.size == 2.0
    assert position.avg_price == 100.0
    assert position.realized_pnl == pytest.approx(4.0)


async def test_close_cancels_pending_fills() -> None:
    connector = PaperConnector(fill_delay_sec=0.05)
    fills: list[Confirmation] = []
    connector.set_confirmation_handler(fills.append)
    await connector.submit(_command())
    await connector.close()
    await asyncio.sleep(0.1)
    assert fills == []
    assert not connector.is_connected
