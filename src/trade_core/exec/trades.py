"""Per-trade state machine.

Building -> Pending -> Executed -> Monitoring -> Closed, with Failed reachable
from every non-terminal state. Each state is an immutable value; the only way
to move a trade forward is through the transition functions below.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, Union

from trade_core import TradeCoreError
from trade_core.types import TradeCommand


class TradeStateError(TradeCoreError):
    """Raised on a transition the state machine does not allow."""


@dataclass(slots=True, frozen=True)
class Building:
    status: ClassVar[str] = "building"

    trade_id: str
    command: TradeCommand
    created_at: datetime


@dataclass(slots=True, frozen=True)
class Pending:
    status: ClassVar[str] = "pending"

    trade_id: str
    command: TradeCommand
    created_at: datetime
    submitted_at: datetime


@dataclass(slots=True, frozen=True)
class Executed:
    status: ClassVar[str] = "executed"

    trade_id: str
    command: TradeCommand
    created_at: datetime
    submitted_at: datetime
    fill_price: float
    executed_at: datetime


@dataclass(slots=True, frozen=True)
class Monitoring:
    status: ClassVar[str] = "monitoring"

    trade_id: str
    command: TradeCommand
    created_at: datetime
    submitted_at: datetime
    fill_price: float
    executed_at: datetime
    stop_price: float
    target_price: float
    realized_baseline: float = 0.0


@dataclass(slots=True, frozen=True)
class Closed:
    status: ClassVar[str] = "closed"

    trade_id: str
    command: TradeCommand
    created_at: datetime
    fill_price: float
    executed_at: datetime
    closed_at: datetime
    realized_pnl: float


@dataclass(slots=True, frozen=True)
class Failed:
    status: ClassVar[str] = "failed"

    trade_id: str
    command: TradeCommand
    created_at: datetime
    failed_at: datetime
    cause: str
    failed_from: str


TradeState = Union[Building, Pending, Executed, Monitoring, Closed, Failed]

ACTIVE_STATES = (Building, Pending, Executed, Monitoring)
TERMINAL_STATES = (Closed, Failed)


def is_terminal(state: TradeState) -> bool:
    return isinstance(state, TERMINAL_STATES)


def _invalid(state: TradeState, target: str) -> TradeStateError:
    return TradeStateError(f"invalid_transition: {state.status} -> {target} ({state.trade_id})")


def build(command: TradeCommand, now: datetime) -> Building:
    return Building(trade_id=command.trade_id, command=command, created_at=now)


def submit(state: TradeState, now: datetime) -> Pending:
    if not isinstance(state, Building):
        raise _invalid(state, Pending.status)
    return Pending(
        trade_id=state.trade_id,
        command=state.command,
        created_at=state.created_at,
        submitted_at=now,
    )


def confirm(state: TradeState, fill_price: float, now: datetime) -> Executed:
    if not isinstance(state, Pending):
        raise _invalid(state, Executed.status)
    return Executed(
        trade_id=state.trade_id,
        command=state.command,
        created_at=state.created_at,
        submitted_at=state.submitted_at,
        fill_price=fill_price,
        executed_at=now,
    )


def start_monitoring(state: TradeState, *, realized_baseline: float = 0.0) -> Monitoring:
    if not isinstance(state, Executed):
        raise _invalid(state, Monitoring.status)
    return Monitoring(
        trade_id=state.trade_id,
        command=state.command,
        created_at=state.created_at,
        submitted_at=state.submitted_at,
        fill_price=state.fill_price,
        executed_at=state.executed_at,
        stop_price=state.command.stop_price,
        target_price=state.command.target_price,
        realized_baseline=realized_baseline,
    )


def adjust_levels(
    state: TradeState,
    *,
    stop_price: float | None = None,
    target_price: float | None = None,
) -> Monitoring:
    """Move protective levels; the lifecycle status is untouched."""
    if not isinstance(state, Monitoring):
        raise _invalid(state, "adjust_levels")
    return Monitoring(
        trade_id=state.trade_id,
        command=state.command,
        created_at=state.created_at,
        submitted_at=state.submitted_at,
        fill_price=state.fill_price,
        executed_at=state.executed_at,
        stop_price=state.stop_price if stop_price is None else stop_price,
        target_price=state.target_price if target_price is None else target_price,
        realized_baseline=state.realized_baseline,
    )


def close(state: TradeState, realized_pnl: float, now: datetime) -> Closed:
    if not isinstance(state, Monitoring):
        raise _invalid(state, Closed.status)
    return Closed(
        trade_id=state.trade_id,
        command=state.command,
        created_at=state.created_at,
        fill_price=state.fill_price,
        executed_at=state.executed_at,
        closed_at=now,
        realized_pnl=realized_pnl,
    )


def fail(state: TradeState, cause: str, now: datetime) -> Failed:
    if is_terminal(state):
        raise _invalid(state, Failed.status)
    return Failed(
        trade_id=state.trade_id,
        command=state.command,
        created_at=state.created_at,
        failed_at=now,
        cause=cause,
        failed_from=state.status,
    )
