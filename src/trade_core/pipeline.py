"""Trading coordinator: one observation in, one admission decision out."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Literal

from trade_core import ConfigurationError
from trade_core.ai.aggregator import PredictionAggregator
from trade_core.ai.providers import PredictionProvider, build_providers
from trade_core.config import Settings
from trade_core.events import EventHub
from trade_core.exec.connector import VenueConnector
from trade_core.exec.policies import AtrTrailingStop, EmergencyExit, StopPolicy
from trade_core.exec.reconciler import PositionReconciler
from trade_core.exec.supervisor import ExecutionSupervisor
from trade_core.exec.trades import Failed
from trade_core.journal.state import StateStore
from trade_core.journal.store import JournalStore
from trade_core.performance.metrics import PerformanceTracker
from trade_core.risk.confidence import AdaptiveConfidenceGate
from trade_core.risk.ledger import RiskLedger
from trade_core.risk.preflight import PreflightGate
from trade_core.risk.sizing import PositionSizer
from trade_core.strategy.optimizer import AtrOpportunityOptimizer, OptimizationProvider
from trade_core.strategy.validators import TimeOfDayValidator, build_default_registry
from trade_core.types import CycleResult, Observation, TradeCommand, TradeOutcome
from trade_core.utils.logging import bound_context, get_logger, log_validation

CycleStatus = Literal[
    "preflight_failed",
    "no_opportunity",
    "optimizer_unavailable",
    "validation_rejected",
    "safety_check_failed",
    "executed",
    "execution_failed",
    "failed",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def final_safety_check(command: TradeCommand) -> list[str]:
    """Last structural check before an order leaves the core."""
    reasons: list[str] = []
    if not command.instrument:
        reasons.append("missing_instrument")
    if command.direction not in ("LONG", "SHORT"):
        reasons.append("invalid_direction")
    if command.quantity <= 0:
        reasons.append("non_positive_quantity")
    return reasons


class TradingCoordinator:
    """Owns every component of the decision core and its background tasks."""

    def __init__(
        self,
        settings: Settings,
        connector: VenueConnector | None,
        *,
        providers: Sequence[PredictionProvider] | None = None,
        optimizer: OptimizationProvider | None = None,
        policies: Sequence[StopPolicy] | None = None,
        events: EventHub | None = None,
        journal: JournalStore | None = None,
        state_store: StateStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if connector is None:
            raise ConfigurationError("venue connector is not configured")

        self._settings = settings
        self._connector = connector
        self._clock = clock
        self._logger = get_logger("trade_core.pipeline")
        self.events = events or EventHub()
        self._journal = journal
        self._state_store = state_store

        self.ledger = RiskLedger(settings, events=self.events, clock=clock)
        self.gate = AdaptiveConfidenceGate(settings, events=self.events)
        self.reconciler = PositionReconciler(
            connector,
            events=self.events,
            timeout_sec=settings.connector_timeout_sec,
            interval_sec=settings.reconcile_interval_sec,
        )
        self.aggregator = PredictionAggregator(
            build_providers(settings) if providers is None else providers,
            timeout_sec=settings.provider_timeout_sec,
            reversal_damping=settings.reversal_damping,
        )
        self.optimizer = optimizer or AtrOpportunityOptimizer(settings)
        self.validators = build_default_registry(settings, self.gate, clock=clock)
        self.sizer = PositionSizer(settings)
        self.performance = PerformanceTracker(
            starting_equity=settings.initial_equity,
            timezone_name=settings.trading_timezone,
        )
        if policies is None:
            policies = [
                AtrTrailingStop(settings.trailing_atr_multiplier),
                EmergencyExit(settings.emergency_exit_loss),
            ]
        self.supervisor = ExecutionSupervisor(
            settings,
            connector,
            self.ledger,
            self.reconciler,
            events=self.events,
            policies=policies,
            on_completed=self._on_trade_completed,
            clock=clock,
        )
        self.preflight = PreflightGate(
            settings,
            self.ledger,
            connector,
            subsystems_healthy=self.aggregator.is_healthy,
            has_active_trade=self.has_active_trade,
            clock=clock,
        )

        self._in_flight: set[str] = set()
        self._cycle_count = 0
        self._tasks: list[asyncio.Task[None]] = []
        self._started = False
        if journal is not None:
            self.events.subscribe_all(journal.record_event)

    @property
    def started(self) -> bool:
        return self._started

    def has_active_trade(self, instrument: str) -> bool:
        """An admitted cycle or a non-terminal trade holds the instrument."""
        return instrument in self._in_flight or self.supervisor.has_active_trade(instrument)

    async def __aenter__(self) -> TradingCoordinator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def start(self) -> None:
        if self._started:
            return
        self.load_state()
        await self.ledger.roll_session_if_needed()
        await self.reconciler.start()
        settings = self._settings
        self._schedule(
            "performance_review",
            settings.performance_review_interval_sec,
            self.review_performance,
        )
        self._schedule("session_check", settings.session_check_interval_sec, self._check_session)
        self._schedule("state_snapshot", settings.state_snapshot_interval_sec, self._snapshot)
        self._started = True
        self._logger.info(
            "coordinator_started",
            mode=settings.mode.value,
            providers=self.aggregator.provider_names,
            validators=self.validators.names,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.reconciler.stop()
        await self.supervisor.shutdown()
        await self.events.drain()
        self.save_state()
        self._logger.info("coordinator_stopped")

    async def evaluate(self, observation: Observation) -> CycleResult:
        """Run one observation through the full admission chain. Never raises."""
        started = perf_counter()
        self._cycle_count += 1
        with bound_context(instrument=observation.instrument, cycle=self._cycle_count):
            return await self._guarded_cycle(observation, started)

    async def _guarded_cycle(self, observation: Observation, started: float) -> CycleResult:
        try:
            return await self._run_cycle(observation, started)
        except Exception as exc:  # noqa: BLE001 - keep the core running on unexpected faults.
            self._logger.exception("cycle_failed", instrument=observation.instrument)
            self._journal_append(
                "error",
                {"instrument": observation.instrument, "error": str(exc), "type": type(exc).__name__},
            )
            return self._finish(
                observation,
                started,
                CycleResult(status="failed", reasons=[f"{type(exc).__name__}: {exc}"]),
            )

    async def _run_cycle(self, observation: Observation, started: float) -> CycleResult:
        instrument = observation.instrument
        self.supervisor.update_market(observation)
        self.reconciler.track(instrument)
        self._journal_append(
            "cycle_start",
            {
                "instrument": instrument,
                "price": observation.price,
                "observed_at": observation.timestamp,
            },
        )

        preflight = self.preflight.evaluate(observation)
        self._journal_append("preflight", asdict(preflight) | {"instrument": instrument})
        if not preflight.passed:
            self._logger.info("preflight_failed", instrument=instrument, reasons=preflight.reasons)
            return self._finish(
                observation,
                started,
                CycleResult(status="preflight_failed", reasons=list(preflight.reasons)),
            )

        # claimed before the next await so a concurrent cycle sees it in preflight
        self._in_flight.add(instrument)
        try:
            result = await self._admitted_cycle(observation)
        finally:
            self._in_flight.discard(instrument)
        return self._finish(observation, started, result)

    async def _admitted_cycle(self, observation: Observation) -> CycleResult:
        instrument = observation.instrument
        warnings: list[str] = []

        reconciled = await self.reconciler.reconcile(instrument)
        if reconciled.stale:
            warnings.append("position_cache_stale")
        position = reconciled.position

        prediction = await self.aggregator.aggregate(observation, position)
        self._journal_append(
            "prediction",
            {
                "instrument": instrument,
                "direction": prediction.direction,
                "confidence": prediction.confidence,
                "expected_profit": prediction.expected_profit,
                "degraded": prediction.degraded,
                "position_adjusted": prediction.position_adjusted,
                "contributions": {
                    name: None if descriptor is None else asdict(descriptor)
                    for name, descriptor in prediction.contributions.items()
                },
            },
        )
        if prediction.degraded:
            warnings.append("all_providers_failed")

        account = self.ledger.account_snapshot()
        try:
            candidate = await asyncio.wait_for(
                self.optimizer.optimize(observation, prediction.as_descriptor(), position, account),
                timeout=self._settings.optimizer_timeout_sec,
            )
        except Exception as exc:  # noqa: BLE001 - optimizer faults abort the cycle without a trade.
            self._logger.warning(
                "optimizer_unavailable",
                instrument=instrument,
                error=str(exc) or type(exc).__name__,
            )
            return CycleResult(
                status="optimizer_unavailable",
                reasons=["optimizer_unavailable"],
                warnings=warnings,
            )
        if candidate is None:
            return CycleResult(status="no_opportunity", warnings=warnings)
        self._journal_append("candidate", asdict(candidate))

        # position may have moved while providers were running
        position = (await self.reconciler.reconcile(instrument)).position
        report = self.validators.validate(candidate, position, self.ledger.state)
        log_validation(
            self._logger,
            instrument=instrument,
            passed=report.is_valid,
            score=report.score,
            reasons=report.reasons,
        )
        self._journal_append(
            "validation",
            {
                "instrument": instrument,
                "is_valid": report.is_valid,
                "score": report.score,
                "reasons": report.reasons,
                "warnings": report.warnings,
            },
        )
        warnings.extend(report.warnings)
        if not report.is_valid:
            self.events.emit(
                "trade_rejected",
                {
                    "instrument": instrument,
                    "direction": candidate.direction,
                    "confidence": candidate.confidence,
                    "score": report.score,
                    "reasons": report.reasons,
                },
            )
            return CycleResult(
                status="validation_rejected",
                reasons=list(report.reasons),
                warnings=warnings,
            )

        quantity = self.sizer.size(candidate, account)
        command = self.supervisor.build_command(candidate, quantity)
        safety = final_safety_check(command)
        if safety:
            self._logger.warning("safety_check_failed", instrument=instrument, reasons=safety)
            return CycleResult(status="safety_check_failed", reasons=safety, warnings=warnings)

        self._journal_append("order", asdict(command))
        state = await self.supervisor.execute(command)
        if isinstance(state, Failed):
            return CycleResult(
                status="execution_failed",
                trade_id=state.trade_id,
                reasons=[state.cause],
                warnings=warnings,
            )
        return CycleResult(status="executed", trade_id=state.trade_id, warnings=warnings)

    async def _on_trade_completed(self, outcome: TradeOutcome) -> None:
        await self.gate.record_outcome(outcome.realized_pnl, outcome.confidence)
        self.performance.record(outcome)
        self._refresh_learned_hours()
        self.save_state()

    async def review_performance(self) -> dict[str, Any]:
        """Report progress against the milestone ladder. Changes nothing."""
        report = self.performance.progress_report()
        report["confidence_threshold"] = self.gate.current
        report["risk_state"] = asdict(self.ledger.state)
        self._logger.info(
            "performance_review",
            milestone=report["milestone"],
            trades=report["summary"]["trade_count"],
            win_rate=report["summary"]["win_rate"],
            requirements_met=report["requirements_met"],
        )
        self.events.emit("performance_review", report)
        return report

    def save_state(self) -> None:
        if self._state_store is None:
            return
        payload = {
            "saved_at": self._clock(),
            "session_date": self.ledger.session_date.isoformat(),
            "risk": self.ledger.to_dict(),
            "confidence": self.gate.to_dict(),
            "performance": self.performance.to_dict(),
        }
        try:
            self._state_store.save(_jsonable(payload))
        except OSError as exc:
            self._logger.warning("state_snapshot_failed", error=str(exc))

    def load_state(self) -> bool:
        """Restore the last snapshot. A stale session is rolled over in start()."""
        if self._state_store is None:
            return False
        payload = self._state_store.load()
        if payload is None:
            return False
        if isinstance(payload.get("risk"), dict):
            self.ledger.restore(payload["risk"])
        if isinstance(payload.get("confidence"), dict):
            self.gate.restore(payload["confidence"])
        if isinstance(payload.get("performance"), list):
            self.performance.restore(payload["performance"])
        self._refresh_learned_hours()
        self._logger.info(
            "state_restored",
            session_date=payload.get("session_date"),
            trades=self.performance.trade_count,
            threshold=self.gate.current,
        )
        return True

    def _refresh_learned_hours(self) -> None:
        if not self._settings.learned_hours_enabled:
            return
        validator = self.validators.get("time_filter")
        if isinstance(validator, TimeOfDayValidator):
            hours = self.performance.unprofitable_hours()
            validator.set_learned_hours(hours)
            if hours:
                self._logger.info("learned_hours_blacklisted", hours=sorted(hours))

    async def _check_session(self) -> None:
        if await self.ledger.roll_session_if_needed():
            self.save_state()

    async def _snapshot(self) -> None:
        self.save_state()

    def _schedule(self, name: str, interval_sec: float, job: Callable[[], Awaitable[Any]]) -> None:
        self._tasks.append(asyncio.create_task(self._run_every(name, interval_sec, job), name=name))

    async def _run_every(
        self,
        name: str,
        interval_sec: float,
        job: Callable[[], Awaitable[Any]],
    ) -> None:
        while True:
            await asyncio.sleep(interval_sec)
            try:
                await job()
            except Exception:  # noqa: BLE001 - scheduled jobs must keep their cadence.
                self._logger.exception("scheduled_task_failed", task=name)

    def _finish(self, observation: Observation, started: float, result: CycleResult) -> CycleResult:
        result.elapsed_ms = (perf_counter() - started) * 1000
        self._journal_append(
            "cycle_end",
            {"instrument": observation.instrument, **asdict(result)},
        )
        self._logger.info(
            "cycle_finished",
            instrument=observation.instrument,
            status=result.status,
            trade_id=result.trade_id,
            elapsed_ms=round(result.elapsed_ms, 2),
        )
        return result

    def _journal_append(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._journal is None:
            return
        try:
            self._journal.append(event_type, payload)
        except (OSError, TypeError, ValueError) as exc:
            self._logger.warning("journal_write_failed", event_type=event_type, error=str(exc))


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value
