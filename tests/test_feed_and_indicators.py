from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pandas as pd
import pytest

from trade_core.data.feed import iter_observations, load_feed_frame, normalize_feed
from trade_core.features.indicators import enrich_indicators


def _frame(rows: int = 60, start: float = 100.0, step: float = 1.0) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "instrument": ["NQ"] * rows,
            "price": [start + i * step for i in range(rows)],
            "volume": [1_000.0] * rows,
            "timestamp": pd.date_range("2026-03-02 14:00", periods=rows, freq="min", tz="UTC"),
        }
    )


def test_enrich_adds_missing_indicator_columns() -> None:
    enriched = enrich_indicators(_frame())
    for column in ("atr", "rsi", "ema_alignment"):
        assert column in enriched.columns

    last = enriched.iloc[-1]
    assert last["atr"] == pytest.approx(1.0)
    # a steady rise has no losses
    assert last["rsi"] == 100.0
    assert 0.0 < last["ema_alignment"] <= 1.0


def test_enrich_keeps_existing_columns() -> None:
    frame = _frame()
    frame["rsi"] = 42.0
    enriched = enrich_indicators(frame)
    assert (enriched["rsi"] == 42.0).all()


def test_enrich_processes_instruments_independently() -> None:
    nq = _frame(rows=30, start=100.0, step=1.0)
    es = _frame(rows=30, start=50.0, step=-2.0).assign(instrument="ES")
    enriched = enrich_indicators(pd.concat([nq, es]))
    last_nq = enriched[enriched["instrument"] == "NQ"].iloc[-1]
    last_es = enriched[enriched["instrument"] == "ES"].iloc[-1]
    assert last_nq["atr"] == pytest.approx(1.0)
    assert last_es["atr"] == pytest.approx(2.0)
    assert last_es["ema_alignment"] < 0


def test_normalize_requires_core_columns() -> None:
    with pytest.raises(ValueError, match="missing_feed_columns"):
        normalize_feed(pd.DataFrame({"instrument": ["NQ"], "price": [1.0]}))


def test_normalize_drops_unparseable_timestamps() -> None:
    frame = pd.DataFrame(
        {"instrument": ["NQ"], "price": [1.0], "volume": [1.0], "timestamp": [None]}
    )
    with pytest.raises(ValueError, match="normalized_feed_empty"):
        normalize_feed(frame)


def test_load_csv_and_jsonl(tmp_path: Path) -> None:
    frame = _frame(rows=20)
    csv_path = tmp_path / "feed.csv"
    frame.to_csv(csv_path, index=False)
    jsonl_path = tmp_path / "feed.jsonl"
    frame.assign(timestamp=frame["timestamp"].astype(str)).to_json(jsonl_path, orient="records", lines=True)

    assert len(load_feed_frame(csv_path)) == 20
    assert len(load_feed_frame(jsonl_path)) == 20
    with pytest.raises(ValueError, match="unsupported_feed_format"):
        load_feed_frame(tmp_path / "feed.parquet")


def test_iter_observations_maps_columns() -> None:
    frame = normalize_feed(_frame(rows=20).assign(**{"custom-signal": 0.5}))

    observations = list(iter_observations(frame, restamp=False))

    assert len(observations) == 20
    last = observations[-1]
    assert last.instrument == "NQ"
    assert last.price == 119.0
    assert last.timestamp == datetime(2026, 3, 2, 14, 19, tzinfo=UTC)
    assert last.indicators["custom-signal"] == 0.5
    assert "atr" in last.indicators
    # warm-up rows carry no atr rather than NaN
    assert "atr" not in observations[0].indicators


def test_restamp_uses_wall_clock() -> None:
    frame = normalize_feed(_frame(rows=3))
    before = datetime.now(UTC)
    observation = next(iter_observations(frame))
    assert observation.timestamp >= before
