"""Dispatches orders, waits for confirmation and supervises open trades to closure."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone

from trade_core.config import Settings
from trade_core.events import EventHub
from trade_core.exec import trades
from trade_core.exec.connector import VenueConnector
from trade_core.exec.policies import StopPolicy, apply_proposal
from trade_core.exec.reconciler import PositionReconciler
from trade_core.exec.trades import ACTIVE_STATES, Executed, Monitoring, Pending, TradeState
from trade_core.risk.ledger import RiskLedger
from trade_core.types import (
    Confirmation,
    Observation,
    Position,
    TradeCandidate,
    TradeCommand,
    TradeOutcome,
)
from trade_core.utils.logging import get_logger, log_order_execution

CompletionCallback = Callable[[TradeOutcome], Awaitable[None]]

_HISTORY_LIMIT = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_trade_id() -> str:
    """Process-unique trade id: TRADE_<epoch ms>_<random>."""
    return f"TRADE_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class ExecutionSupervisor:
    """Owns every trade's state and is the only code that advances it."""

    def __init__(
        self,
        settings: Settings,
        connector: VenueConnector,
        ledger: RiskLedger,
        reconciler: PositionReconciler,
        *,
        events: EventHub | None = None,
        policies: Sequence[StopPolicy] = (),
        on_completed: CompletionCallback | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._connector = connector
        self._ledger = ledger
        self._reconciler = reconciler
        self._events = events
        self._policies = list(policies)
        self._on_completed = on_completed
        self._clock = clock
        self._logger = get_logger("trade_core.exec.supervisor")

        self._trades: dict[str, TradeState] = {}
        self._history: deque[TradeState] = deque(maxlen=_HISTORY_LIMIT)
        self._confirmations: dict[str, asyncio.Future[Confirmation]] = {}
        self._monitors: dict[str, asyncio.Task[None]] = {}
        self._markets: dict[str, Observation] = {}
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._closing = False

        connector.set_confirmation_handler(self._on_confirmation)

    @property
    def pending_trades(self) -> dict[str, Pending]:
        return {tid: s for tid, s in self._trades.items() if isinstance(s, Pending)}

    @property
    def executed_trades(self) -> dict[str, Executed | Monitoring]:
        return {
            tid: s for tid, s in self._trades.items() if isinstance(s, (Executed, Monitoring))
        }

    @property
    def history(self) -> list[TradeState]:
        return list(self._history)

    def get(self, trade_id: str) -> TradeState | None:
        if trade_id in self._trades:
            return self._trades[trade_id]
        for state in self._history:
            if state.trade_id == trade_id:
                return state
        return None

    def has_active_trade(self, instrument: str) -> bool:
        return any(
            isinstance(state, ACTIVE_STATES) and state.command.instrument == instrument
            for state in self._trades.values()
        )

    def set_completion_callback(self, callback: CompletionCallback | None) -> None:
        self._on_completed = callback

    def update_market(self, observation: Observation) -> None:
        """Latest observation per instrument, read by the stop policies."""
        self._markets[observation.instrument] = observation

    def build_command(self, candidate: TradeCandidate, quantity: int) -> TradeCommand:
        return TradeCommand(
            trade_id=new_trade_id(),
            instrument=candidate.instrument,
            direction=candidate.direction,
            quantity=int(quantity),
            price=candidate.entry_price,
            stop_price=candidate.stop_price,
            target_price=candidate.target_price,
            confidence=candidate.confidence,
            expected_profit=candidate.expected_profit,
            created_at=self._clock(),
        )

    async def execute(self, command: TradeCommand) -> TradeState:
        """Run Building -> Pending -> Executed -> Monitoring, or end in Failed."""
        self._in_flight += 1
        self._idle.clear()
        try:
            return await self._execute(command)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    async def _execute(self, command: TradeCommand) -> TradeState:
        trade_id = command.trade_id
        state: TradeState = trades.build(command, self._clock())
        self._trades[trade_id] = state

        # registered before submit so an immediate fill is never lost
        future: asyncio.Future[Confirmation] = asyncio.get_running_loop().create_future()
        self._confirmations[trade_id] = future

        state = trades.submit(state, self._clock())
        self._trades[trade_id] = state
        log_order_execution(
            self._logger,
            instrument=command.instrument,
            direction=command.direction,
            quantity=command.quantity,
            price=command.price,
            trade_id=trade_id,
            status="submitted",
        )

        try:
            accepted = await asyncio.wait_for(
                self._connector.submit(command),
                timeout=self._settings.connector_timeout_sec,
            )
        except asyncio.TimeoutError:
            return await self._fail(trade_id, "dispatch_timeout")
        except Exception as exc:  # noqa: BLE001 - connector faults fail the trade, not the core.
            return await self._fail(trade_id, f"dispatch_error: {exc}")
        if not accepted:
            return await self._fail(trade_id, "dispatch_rejected")

        try:
            confirmation = await asyncio.wait_for(
                future,
                timeout=self._settings.confirmation_timeout_sec,
            )
        except asyncio.TimeoutError:
            return await self._fail(trade_id, "confirmation_timeout")
        finally:
            self._confirmations.pop(trade_id, None)

        state = trades.confirm(self._trades[trade_id], confirmation.fill_price, self._clock())
        self._trades[trade_id] = state
        await self._ledger.record_trade_opened(command, fill_price=confirmation.fill_price)
        log_order_execution(
            self._logger,
            instrument=command.instrument,
            direction=command.direction,
            quantity=command.quantity,
            price=confirmation.fill_price,
            trade_id=trade_id,
            status="filled",
        )
        self._emit(
            "trade_executed",
            {
                "trade_id": trade_id,
                "instrument": command.instrument,
                "direction": command.direction,
                "quantity": command.quantity,
                "fill_price": confirmation.fill_price,
                "confidence": command.confidence,
            },
        )
        if self._closing:
            # left Executed for the next session to reconcile
            self._logger.warning("monitoring_skipped_on_shutdown", trade_id=trade_id)
            return state

        self._reconciler.track(command.instrument)
        reconciled = await self._reconciler.reconcile(command.instrument)
        state = trades.start_monitoring(state, realized_baseline=reconciled.position.realized_pnl)
        self._trades[trade_id] = state
        self._monitors[trade_id] = asyncio.create_task(
            self._monitor(trade_id),
            name=f"monitor-{trade_id}",
        )
        return state

    def _on_confirmation(self, confirmation: Confirmation) -> None:
        future = self._confirmations.get(confirmation.trade_id)
        if future is None or future.done():
            self._logger.warning("confirmation_ignored", trade_id=confirmation.trade_id)
            return
        future.set_result(confirmation)

    async def _fail(self, trade_id: str, cause: str) -> TradeState:
        self._confirmations.pop(trade_id, None)
        state = trades.fail(self._trades.pop(trade_id), cause, self._clock())
        self._history.append(state)
        command = state.command
        log_order_execution(
            self._logger,
            instrument=command.instrument,
            direction=command.direction,
            quantity=command.quantity,
            price=command.price,
            trade_id=trade_id,
            status="failed",
            cause=cause,
        )
        await self._ledger.record_execution_failure(cause)
        self._emit(
            "trade_failed",
            {
                "trade_id": trade_id,
                "instrument": command.instrument,
                "direction": command.direction,
                "cause": cause,
                "failed_from": state.failed_from,
            },
        )
        return state

    async def _monitor(self, trade_id: str) -> None:
        interval = self._settings.monitor_interval_sec
        while True:
            await asyncio.sleep(interval)
            try:
                finished = await self.monitor_tick(trade_id)
            except Exception:  # noqa: BLE001 - one bad tick must not end supervision.
                self._logger.exception("monitor_tick_failed", trade_id=trade_id)
                continue
            if finished:
                return

    async def monitor_tick(self, trade_id: str) -> bool:
        """One supervision pass. Returns True once the trade is no longer monitored."""
        state = self._trades.get(trade_id)
        if not isinstance(state, Monitoring):
            return True
        instrument = state.command.instrument
        result = await self._reconciler.reconcile(instrument)
        if result.stale:
            return False
        position = result.position
        if not position.is_open:
            await self._close(state, position)
            return True
        await self._apply_policies(state, position)
        return False

    async def _close(self, state: Monitoring, position: Position) -> None:
        trade_id = state.trade_id
        pnl = position.realized_pnl - state.realized_baseline
        closed = trades.close(state, pnl, self._clock())
        self._trades.pop(trade_id, None)
        self._monitors.pop(trade_id, None)
        self._history.append(closed)

        command = closed.command
        await self._ledger.record_trade_closed(pnl, notional=command.quantity * closed.fill_price)
        self._logger.info(
            "trade_closed",
            trade_id=trade_id,
            instrument=command.instrument,
            realized_pnl=pnl,
        )
        self._emit(
            "trade_completed",
            {
                "trade_id": trade_id,
                "instrument": command.instrument,
                "direction": command.direction,
                "quantity": command.quantity,
                "fill_price": closed.fill_price,
                "realized_pnl": pnl,
                "confidence": command.confidence,
            },
        )
        if self._on_completed is None:
            return
        outcome = TradeOutcome(
            trade_id=trade_id,
            instrument=command.instrument,
            direction=command.direction,
            quantity=command.quantity,
            fill_price=closed.fill_price,
            realized_pnl=pnl,
            confidence=command.confidence,
            opened_at=closed.executed_at,
            closed_at=closed.closed_at,
        )
        try:
            await self._on_completed(outcome)
        except Exception:  # noqa: BLE001 - completion hooks are downstream of the close.
            self._logger.exception("completion_callback_failed", trade_id=trade_id)

    async def _apply_policies(self, state: Monitoring, position: Position) -> None:
        observation = self._markets.get(state.command.instrument)
        if observation is None or observation.atr is None or not self._policies:
            return

        settings = self._settings
        favorable = max if state.command.direction == "LONG" else min
        stops: list[float] = []
        targets: list[float] = []
        for policy in self._policies:
            try:
                proposal = policy.propose(state, position, observation)
            except Exception as exc:  # noqa: BLE001 - a broken policy proposes nothing.
                self._logger.warning("stop_policy_failed", policy=policy.name, error=str(exc))
                continue
            if proposal is None:
                continue
            stop, target = apply_proposal(
                state,
                proposal,
                float(observation.atr),
                max_move_atr=settings.max_stop_move_atr,
                min_confidence=settings.min_policy_confidence,
            )
            if stop is not None:
                stops.append(stop)
            if target is not None:
                targets.append(target)

        if not stops and not targets:
            return
        updated = trades.adjust_levels(
            state,
            stop_price=favorable(stops) if stops else None,
            target_price=favorable(targets) if targets else None,
        )
        self._trades[state.trade_id] = updated
        try:
            await asyncio.wait_for(
                self._connector.amend_protection(
                    updated.command.instrument,
                    updated.stop_price,
                    updated.target_price,
                ),
                timeout=settings.connector_timeout_sec,
            )
        except Exception as exc:  # noqa: BLE001 - the venue keeps its previous levels.
            self._logger.warning("amend_protection_failed", trade_id=state.trade_id, error=str(exc))
            return
        self._logger.info(
            "protection_amended",
            trade_id=state.trade_id,
            stop_price=updated.stop_price,
            target_price=updated.target_price,
        )

    async def shutdown(self) -> None:
        """Give in-flight confirmations their full timeout, then stop monitors."""
        # no monitor may start once closing is set
        self._closing = True
        grace = self._settings.connector_timeout_sec + self._settings.confirmation_timeout_sec
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=grace)
        except asyncio.TimeoutError:
            self._logger.warning("shutdown_with_in_flight_orders", count=self._in_flight)

        monitors = list(self._monitors.values())
        self._monitors.clear()
        for task in monitors:
            task.cancel()
        if monitors:
            await asyncio.gather(*monitors, return_exceptions=True)

        open_trades = [tid for tid, s in self._trades.items() if isinstance(s, (Executed, Monitoring))]
        if open_trades:
            self._logger.info("monitoring_stopped_with_open_trades", trade_ids=open_trades)
        self._connector.set_confirmation_handler(None)

    def _emit(self, name: str, payload: dict[str, object]) -> None:
        if self._events is not None:
            self._events.emit(name, payload)  # type: ignore[arg-type]
