"""Observation feed loading from CSV or JSONL files."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pandas as pd  # type: ignore[import-untyped]

from trade_core.features.indicators import enrich_indicators
from trade_core.types import Observation

_REQUIRED_COLUMNS = ["instrument", "price", "volume", "timestamp"]
_RESERVED_COLUMNS = set(_REQUIRED_COLUMNS) | {"high", "low"}


def load_feed_frame(path: Path) -> pd.DataFrame:
    """Read a feed file into a normalized, time-ordered dataframe."""
    suffix = path.suffix.lower()
    if suffix == ".csv":
        df = pd.read_csv(path)
    elif suffix in (".jsonl", ".ndjson"):
        df = pd.read_json(path, lines=True)
    else:
        raise ValueError(f"unsupported_feed_format: {suffix or path.name}")
    return normalize_feed(df)


def normalize_feed(df: pd.DataFrame) -> pd.DataFrame:
    missing = [col for col in _REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"missing_feed_columns: {','.join(missing)}")

    normalized = df.copy()
    normalized["instrument"] = normalized["instrument"].astype(str)
    normalized["timestamp"] = pd.to_datetime(normalized["timestamp"], utc=True)
    for col in normalized.columns:
        if col in ("instrument", "timestamp"):
            continue
        normalized[col] = pd.to_numeric(normalized[col], errors="coerce")

    normalized = normalized.dropna(subset=["timestamp"])
    if normalized.empty:
        raise ValueError("normalized_feed_empty")
    return enrich_indicators(normalized)


def iter_observations(df: pd.DataFrame, *, restamp: bool = True) -> Iterator[Observation]:
    """Yield one Observation per row.

    With restamp the observation carries the wall-clock time it is yielded at,
    so recorded feeds pass the freshness check on replay.
    """
    indicator_columns = [col for col in df.columns if col not in _RESERVED_COLUMNS]
    for values in df.to_dict(orient="records"):
        indicators = {
            name: float(values[name])
            for name in indicator_columns
            if not _is_missing(values[name])
        }
        if restamp:
            timestamp = datetime.now(timezone.utc)
        else:
            timestamp = values["timestamp"].to_pydatetime()
        yield Observation(
            instrument=values["instrument"],
            price=None if _is_missing(values["price"]) else float(values["price"]),
            volume=None if _is_missing(values["volume"]) else float(values["volume"]),
            timestamp=timestamp,
            indicators=indicators,
        )


def _is_missing(value: object) -> bool:
    if value is None:
        return True
    return isinstance(value, float) and math.isnan(value)
