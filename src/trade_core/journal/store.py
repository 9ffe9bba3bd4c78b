"""Append-only JSONL journal of decision-core activity, one file per UTC day."""

from __future__ import annotations

import itertools
import json
from collections.abc import Callable, Collection, Iterator
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from trade_core.events import EVENT_NAMES

# cycle records written by the coordinator, plus every hub event
JOURNAL_EVENT_TYPES = frozenset(
    {
        "cycle_start",
        "preflight",
        "prediction",
        "candidate",
        "validation",
        "order",
        "cycle_end",
        "error",
        *EVENT_NAMES,
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JournalStore:
    """Daily JSONL files named `<YYYY-MM-DD>.jsonl` under `journal_dir`."""

    def __init__(self, journal_dir: Path, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._seq = itertools.count(1)

    @property
    def journal_dir(self) -> Path:
        return self._journal_dir

    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type not in JOURNAL_EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        now = self._clock().astimezone(timezone.utc)
        record = {
            "timestamp": now.isoformat(),
            "seq": next(self._seq),
            "event_type": event_type,
            "payload": payload,
        }
        line = json.dumps(record, ensure_ascii=True, default=_json_default)
        with self._path_for(now.date()).open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def record_event(self, event_type: str, payload: dict[str, Any]) -> None:
        """Handler with the EventHub signature."""
        self.append(event_type, payload)

    def load_recent(
        self,
        limit: int,
        *,
        event_types: Collection[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Newest `limit` records in chronological order, optionally filtered by type."""
        if limit <= 0:
            return []
        rows: list[dict[str, Any]] = []
        for path in sorted(self._journal_dir.glob("*.jsonl"), reverse=True):
            for record in reversed(list(_read_lines(path))):
                if event_types is not None and record.get("event_type") not in event_types:
                    continue
                rows.append(record)
                if len(rows) >= limit:
                    return rows[::-1]
        return rows[::-1]

    def iter_day(self, day: date) -> Iterator[dict[str, Any]]:
        path = self._path_for(day)
        if path.exists():
            yield from _read_lines(path)

    def prune(self, keep_days: int) -> list[Path]:
        """Delete daily files older than `keep_days` and return what was removed."""
        cutoff = self._clock().astimezone(timezone.utc).date() - timedelta(days=keep_days)
        removed = []
        for path in self._journal_dir.glob("*.jsonl"):
            try:
                day = date.fromisoformat(path.stem)
            except ValueError:
                continue
            if day < cutoff:
                path.unlink()
                removed.append(path)
        return sorted(removed)

    def _path_for(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"


def _read_lines(path: Path) -> Iterator[dict[str, Any]]:
    with path.open(encoding="utf-8") as f:
        for line in f:
            if line.strip():
                yield json.loads(line)


def _json_default(value: object) -> object:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"not_json_serializable: {type(value).__name__}")
