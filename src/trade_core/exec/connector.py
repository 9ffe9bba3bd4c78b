"""Venue connector contract and the paper-trading connector."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from trade_core.config import Settings
from trade_core.types import Confirmation, Direction, Observation, Position, TradeCommand
from trade_core.utils.logging import get_logger

ConfirmationHandler = Callable[[Confirmation], None]


class VenueConnector(Protocol):
    """Order routing and authoritative position source."""

    @property
    def is_connected(self) -> bool:
        """Whether orders can be routed right now."""

    async def query_position(self, instrument: str) -> Position:
        """Authoritative net position for one instrument."""

    async def submit(self, command: TradeCommand) -> bool:
        """Dispatch an order. False means the venue rejected it outright."""

    def set_confirmation_handler(self, handler: ConfirmationHandler | None) -> None:
        """Register the callback that receives fill confirmations."""

    async def amend_protection(
        self,
        instrument: str,
        stop_price: float | None,
        target_price: float | None,
    ) -> None:
        """Move the protective stop/target attached to an open position."""


@dataclass(slots=True)
class _Book:
    direction: Direction = "FLAT"
    size: float = 0.0
    avg_price: float = 0.0
    realized_pnl: float = 0.0
    last_price: float | None = None
    stop_price: float | None = None
    target_price: float | None = None
    entry_time: datetime | None = None


class PaperConnector:
    """Simulated venue for paper mode: delayed fills, net positions, stop/target exits."""

    def __init__(
        self,
        *,
        fill_delay_sec: float = 0.05,
        slippage_bps: float = 0.0,
        point_value: float = 1.0,
        auto_fill: bool = True,
    ) -> None:
        self._fill_delay_sec = fill_delay_sec
        self._slippage_bps = slippage_bps
        self._point_value = point_value
        self._auto_fill = auto_fill
        self._connected = True
        self._handler: ConfirmationHandler | None = None
        self._books: dict[str, _Book] = {}
        self._scheduled: dict[str, asyncio.TimerHandle] = {}
        self._logger = get_logger("trade_core.exec.connector")

    @classmethod
    def from_settings(cls, settings: Settings) -> PaperConnector:
        return cls(
            fill_delay_sec=settings.paper_fill_delay_sec,
            slippage_bps=settings.paper_slippage_bps,
            point_value=settings.point_value,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected

    def set_connected(self, connected: bool) -> None:
        self._connected = connected

    def set_confirmation_handler(self, handler: ConfirmationHandler | None) -> None:
        self._handler = handler

    async def submit(self, command: TradeCommand) -> bool:
        if not self._connected:
            return False
        if command.quantity <= 0 or command.direction == "FLAT":
            self._logger.warning("paper_order_rejected", trade_id=command.trade_id)
            return False
        if self._auto_fill:
            loop = asyncio.get_running_loop()
            self._scheduled[command.trade_id] = loop.call_later(
                self._fill_delay_sec,
                self.fill,
                command,
            )
        return True

    def fill(self, command: TradeCommand, fill_price: float | None = None) -> Confirmation:
        """Apply a fill to the book and notify the confirmation handler."""
        self._scheduled.pop(command.trade_id, None)
        if fill_price is None:
            sign = 1.0 if command.direction == "LONG" else -1.0
            fill_price = command.price * (1.0 + sign * self._slippage_bps / 10_000.0)
        book = self._books.setdefault(command.instrument, _Book())
        self._apply(book, command.direction, float(command.quantity), float(fill_price))
        if book.direction != "FLAT":
            book.stop_price = command.stop_price
            book.target_price = command.target_price

        confirmation = Confirmation(
            trade_id=command.trade_id,
            fill_price=float(fill_price),
            filled_at=datetime.now(timezone.utc),
        )
        self._logger.info(
            "paper_fill",
            trade_id=command.trade_id,
            instrument=command.instrument,
            direction=command.direction,
            quantity=command.quantity,
            fill_price=confirmation.fill_price,
        )
        if self._handler is not None:
            self._handler(confirmation)
        return confirmation

    async def query_position(self, instrument: str) -> Position:
        book = self._books.get(instrument)
        if book is None:
            return Position.flat(instrument)
        if book.direction == "FLAT":
            return Position.flat(instrument, realized_pnl=book.realized_pnl)
        return Position(
            instrument=instrument,
            direction=book.direction,
            size=book.size,
            avg_price=book.avg_price,
            unrealized_pnl=self._unrealized(book),
            realized_pnl=book.realized_pnl,
            entry_time=book.entry_time,
        )

    async def amend_protection(
        self,
        instrument: str,
        stop_price: float | None,
        target_price: float | None,
    ) -> None:
        book = self._books.get(instrument)
        if book is None or book.direction == "FLAT":
            return
        if stop_price is not None:
            book.stop_price = stop_price
        if target_price is not None:
            book.target_price = target_price

    def mark_to_market(self, observation: Observation) -> dict[str, Any]:
        """Update the last price and exit on a touched stop or target."""
        book = self._books.get(observation.instrument)
        if book is None or observation.price is None:
            return {"has_position": False}
        price = float(observation.price)
        book.last_price = price
        if book.direction == "FLAT":
            return {"has_position": False, "realized_pnl": book.realized_pnl}

        exit_reason = self._exit_reason(book, price)
        if exit_reason is not None:
            exit_price = book.stop_price if exit_reason == "stop" else book.target_price
            pnl = self.close_position(observation.instrument, price=exit_price, reason=exit_reason)
            return {"has_position": False, "exit": exit_reason, "realized_pnl": pnl}

        return {
            "has_position": True,
            "instrument": observation.instrument,
            "last_price": price,
            "unrealized_pnl": self._unrealized(book),
        }

    def close_position(
        self,
        instrument: str,
        *,
        price: float | None = None,
        reason: str = "manual",
    ) -> float:
        """Flatten a position and return the realized PnL of this close."""
        book = self._books.get(instrument)
        if book is None or book.direction == "FLAT":
            raise RuntimeError("no_open_position")
        exit_price = price if price is not None else (book.last_price or book.avg_price)
        before = book.realized_pnl
        closing_side: Direction = "SHORT" if book.direction == "LONG" else "LONG"
        self._apply(book, closing_side, book.size, float(exit_price))
        pnl = book.realized_pnl - before
        self._logger.info("paper_close", instrument=instrument, reason=reason, realized_pnl=pnl)
        return pnl

    async def close(self) -> None:
        for handle in self._scheduled.values():
            handle.cancel()
        self._scheduled.clear()
        self._connected = False

    def _apply(self, book: _Book, side: Direction, quantity: float, price: float) -> None:
        if book.direction in ("FLAT", side):
            total = book.size + quantity
            book.avg_price = (book.avg_price * book.size + price * quantity) / total
            if book.direction == "FLAT":
                book.entry_time = datetime.now(timezone.utc)
            book.direction = side
            book.size = total
            return

        sign = 1.0 if book.direction == "LONG" else -1.0
        closing = min(book.size, quantity)
        book.realized_pnl += (price - book.avg_price) * closing * sign * self._point_value
        book.size -= closing
        remaining = quantity - closing
        if book.size == 0:
            book.direction = "FLAT"
            book.avg_price = 0.0
            book.stop_price = None
            book.target_price = None
            book.entry_time = None
            if remaining > 0:
                self._apply(book, side, remaining, price)

    def _unrealized(self, book: _Book) -> float:
        if book.direction == "FLAT" or book.last_price is None:
            return 0.0
        sign = 1.0 if book.direction == "LONG" else -1.0
        return (book.last_price - book.avg_price) * book.size * sign * self._point_value

    @staticmethod
    def _exit_reason(book: _Book, price: float) -> str | None:
        if book.direction == "LONG":
            if book.stop_price is not None and price <= book.stop_price:
                return "stop"
            if book.target_price is not None and price >= book.target_price:
                return "target"
        elif book.direction == "SHORT":
            if book.stop_price is not None and price >= book.stop_price:
                return "stop"
            if book.target_price is not None and price <= book.target_price:
                return "target"
        return None
