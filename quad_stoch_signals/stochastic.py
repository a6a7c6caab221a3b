from __future__ import annotations

import math
from typing import Dict, List, Optional, Sequence, Tuple

from .indicators import NAN, is_valid, least_squares_slope, sma_series
from .models import Band, BandState, Candle, QuadAnalysis, QuadStochasticData, StochasticValue

SLOPE_SAMPLES = 3


def _clamp_pct(x: float) -> float:
    if not math.isfinite(x):
        return 50.0
    return max(0.0, min(100.0, x))


def calculate_stochastic_band(
    candles: Sequence[Candle], k_period: int, d_period: int, smoothing: int
) -> List[StochasticValue]:
    """%K/%D series aligned 1:1 with candles.

    Raw %K is the close's position inside the rolling `k_period` high/low range
    (a flat range reads as 50). %K is smoothed with an SMA of `smoothing`
    (identity when <= 1) and %D is the `d_period` SMA of smoothed %K. Entries
    without enough history carry NaN in both fields.
    """
    n = len(candles)
    if n == 0:
        return []
    if k_period <= 0 or n < k_period:
        return [StochasticValue(c.time, NAN, NAN) for c in candles]

    raw_k: List[float] = [NAN] * n
    for i in range(k_period - 1, n):
        window = candles[i - k_period + 1 : i + 1]
        hh = max(c.high for c in window)
        ll = min(c.low for c in window)
        rng = hh - ll
        raw_k[i] = 50.0 if rng == 0 else (candles[i].close - ll) / rng * 100.0

    smooth_k = sma_series(raw_k, smoothing) if smoothing > 1 else raw_k
    d_line = sma_series(smooth_k, d_period) if d_period > 1 else list(smooth_k)

    out: List[StochasticValue] = []
    for i, c in enumerate(candles):
        k = smooth_k[i]
        d = d_line[i]
        if is_valid(k) and is_valid(d):
            out.append(StochasticValue(c.time, _clamp_pct(k), _clamp_pct(d)))
        else:
            out.append(StochasticValue(c.time, NAN, NAN))
    return out


def calculate_quad_stochastic(candles: Sequence[Candle]) -> QuadStochasticData:
    series = {b: calculate_stochastic_band(candles, *b.params) for b in Band}
    return QuadStochasticData(
        fast=series[Band.FAST],
        standard=series[Band.STANDARD],
        medium=series[Band.MEDIUM],
        slow=series[Band.SLOW],
    )


def calculate_slope(values: Sequence[float], samples: int = SLOPE_SAMPLES) -> float:
    """Least-squares slope over the last `samples` valid values; 0 with fewer than two."""
    valid = [v for v in values if is_valid(v)]
    return least_squares_slope(valid[-samples:])


def _latest_common_index(data: QuadStochasticData) -> Optional[int]:
    series = [s for _, s in data.items()]
    n = min(len(s) for s in series)
    for i in range(n - 1, -1, -1):
        if all(is_valid(s[i].k) and is_valid(s[i].d) for s in series):
            return i
    return None


def _band_state(band: Band, series: List[StochasticValue], idx: int, oversold: float, overbought: float) -> BandState:
    v = series[idx]
    history = series[max(0, idx - SLOPE_SAMPLES + 1) : idx + 1]
    k_slope = calculate_slope([x.k for x in history])
    d_slope = calculate_slope([x.d for x in history])
    return BandState(
        band=band,
        k=v.k,
        d=v.d,
        k_slope=k_slope,
        d_slope=d_slope,
        is_oversold=v.k <= oversold and v.d <= oversold,
        is_overbought=v.k >= overbought and v.d >= overbought,
        is_bullish=v.k > v.d,
        is_bearish=v.k < v.d,
    )


def aggregate_quad(data: QuadStochasticData, oversold: float = 20.0, overbought: float = 80.0) -> Optional[QuadAnalysis]:
    """Evaluate all four bands at the latest index where every band is valid.

    Returns None while any band is still warming up across the whole window.
    """
    idx = _latest_common_index(data)
    if idx is None:
        return None

    bands: Dict[Band, BandState] = {
        band: _band_state(band, series, idx, oversold, overbought) for band, series in data.items()
    }
    states = list(bands.values())
    bullish = sum(1 for s in states if s.is_bullish)
    bearish = sum(1 for s in states if s.is_bearish)
    aligned_dir = 1 if bullish == 4 else (-1 if bearish == 4 else 0)
    if all(s.k_slope > 0 for s in states):
        rot_dir = 1
    elif all(s.k_slope < 0 for s in states):
        rot_dir = -1
    else:
        rot_dir = 0

    return QuadAnalysis(
        time=data.fast[idx].time,
        index=idx,
        bands=bands,
        oversold_count=sum(1 for s in states if s.is_oversold),
        overbought_count=sum(1 for s in states if s.is_overbought),
        bullish_count=bullish,
        bearish_count=bearish,
        is_quad_aligned=aligned_dir != 0,
        alignment_direction=aligned_dir,
        is_quad_rotating=rot_dir != 0,
        rotation_direction=rot_dir,
    )


def analyze_quad_stochastic(
    candles: Sequence[Candle], oversold: float = 20.0, overbought: float = 80.0
) -> Tuple[QuadStochasticData, Optional[QuadAnalysis]]:
    data = calculate_quad_stochastic(candles)
    return data, aggregate_quad(data, oversold, overbought)


def stoch_confluence(analysis: QuadAnalysis, direction: int) -> int:
    """Band agreement in `direction` plus alignment and rotation bonuses, capped at 7."""
    count = analysis.bullish_count if direction > 0 else analysis.bearish_count
    if analysis.is_quad_aligned and analysis.alignment_direction == direction:
        count += 1
    if analysis.is_quad_rotating and analysis.rotation_direction == direction:
        count += 1
    return min(count, 7)


def check_twenty_twenty_flag(analysis: QuadAnalysis, direction: int, oversold: float = 20.0, overbought: float = 80.0) -> bool:
    fast = analysis.bands[Band.FAST]
    if direction > 0:
        return fast.k <= oversold and fast.d <= oversold
    return fast.k >= overbought and fast.d >= overbought


def check_quad_extreme(analysis: QuadAnalysis, direction: int) -> bool:
    if direction > 0:
        return analysis.oversold_count == 4
    return analysis.overbought_count == 4


def check_htf_alignment(analysis: QuadAnalysis, direction: int) -> bool:
    slow = analysis.bands[Band.SLOW]
    if direction > 0:
        return slow.is_bullish or slow.k_slope > 0
    return slow.is_bearish or slow.k_slope < 0
