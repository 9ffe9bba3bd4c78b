"""Indicator derivation for observation feeds that ship raw prices only."""

from __future__ import annotations

import pandas as pd  # type: ignore[import-untyped]

ATR_PERIOD = 14
RSI_PERIOD = 14


def enrich_indicators(df: pd.DataFrame) -> pd.DataFrame:
    """Add atr, rsi and ema_alignment columns where the feed lacks them.

    Rows are processed per instrument in timestamp order. Columns already
    present in the feed are never overwritten.
    """
    if df.empty:
        return df.copy()

    enriched = df.sort_values("timestamp").copy()
    parts = []
    for _, group in enriched.groupby("instrument", sort=False):
        part = group.copy()
        if "atr" not in part.columns:
            part["atr"] = _atr(part, period=ATR_PERIOD)
        if "rsi" not in part.columns:
            part["rsi"] = _rsi(part["price"].astype(float), period=RSI_PERIOD)
        if "ema_alignment" not in part.columns:
            part["ema_alignment"] = _ema_alignment(part["price"].astype(float), part["atr"])
        parts.append(part)
    return pd.concat(parts).sort_values("timestamp").reset_index(drop=True)


def _ema(series: pd.Series, period: int) -> pd.Series:
    return series.ewm(span=period, adjust=False).mean()


def _atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    close = df["price"].astype(float)
    prev_close = close.shift(1)
    if {"high", "low"} <= set(df.columns):
        high = df["high"].astype(float)
        low = df["low"].astype(float)
        tr_components = pd.concat(
            [
                (high - low).abs(),
                (high - prev_close).abs(),
                (low - prev_close).abs(),
            ],
            axis=1,
        )
        tr = tr_components.max(axis=1)
    else:
        tr = (close - prev_close).abs()
    return tr.rolling(window=period, min_periods=period).mean()


def _rsi(close: pd.Series, period: int = 14) -> pd.Series:
    delta = close.diff()
    gain = delta.clip(lower=0.0)
    loss = -delta.clip(upper=0.0)
    avg_gain = gain.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    rs = avg_gain / avg_loss
    rsi = 100.0 - 100.0 / (1.0 + rs)
    # no losses in the window means maximum strength
    return rsi.where(avg_loss > 0, 100.0).where(avg_gain.notna())


def _ema_alignment(close: pd.Series, atr: pd.Series) -> pd.Series:
    """EMA20/EMA50 spread in ATR units, clipped to [-1, 1]."""
    spread = _ema(close, 20) - _ema(close, 50)
    return (spread / atr.where(atr > 0)).clip(lower=-1.0, upper=1.0).fillna(0.0)
