"""Fire-and-forget observer hub for structured core events."""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Literal

from trade_core.utils.logging import get_logger

EventName = Literal[
    "trade_executed",
    "trade_completed",
    "trade_rejected",
    "trade_failed",
    "threshold_adjusted",
    "circuit_breaker_tripped",
    "reconciliation_mismatch",
    "performance_review",
]

EVENT_NAMES: tuple[EventName, ...] = (
    "trade_executed",
    "trade_completed",
    "trade_rejected",
    "trade_failed",
    "threshold_adjusted",
    "circuit_breaker_tripped",
    "reconciliation_mismatch",
    "performance_review",
)

Handler = Callable[[EventName, dict[str, Any]], Any]


class EventHub:
    """Publishes events to observers without ever failing the publisher.

    Sync handlers run inline inside a guard. Coroutine handlers are scheduled
    as tasks on the running loop and tracked so `drain()` can await them.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventName, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = get_logger("trade_core.events")

    def subscribe(self, name: EventName, handler: Handler) -> None:
        if name not in EVENT_NAMES:
            raise ValueError(f"unknown_event: {name}")
        self._handlers[name].append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        for name in EVENT_NAMES:
            self.subscribe(name, handler)

    def unsubscribe(self, name: EventName, handler: Handler) -> None:
        if handler in self._handlers[name]:
            self._handlers[name].remove(handler)

    def emit(self, name: EventName, payload: dict[str, Any]) -> None:
        for handler in list(self._handlers.get(name, [])):
            try:
                result = handler(name, payload)
            except Exception as exc:  # noqa: BLE001 - observers never reach the decision path.
                self._logger.warning("observer_failed", event_name=name, error=str(exc))
                continue
            if inspect.isawaitable(result):
                self._schedule(name, result)

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule(self, name: EventName, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.warning("observer_dropped_no_loop", event_name=name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(name, t))

    def _on_done(self, name: EventName, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("observer_failed", event_name=name, error=str(exc))
