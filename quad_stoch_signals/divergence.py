from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence

from .config import SignalConfig
from .indicators import is_valid
from .models import Band, Candle, DivergenceDetails, DivergenceType, PivotPoint, QuadStochasticData, StochasticValue

log = logging.getLogger("divergence")

# Bands ranked for display; higher timeframes carry more weight.
_BAND_ORDER = {Band.SLOW: 0, Band.MEDIUM: 1, Band.STANDARD: 2, Band.FAST: 3}


def _stoch_k(stoch: Sequence[StochasticValue], i: int) -> float:
    if i < 0 or i >= len(stoch):
        return float("nan")
    return stoch[i].k


def _find_pivots(
    candles: Sequence[Candle], stoch: Sequence[StochasticValue], lookback: int, lows: bool, offset: int = 0
) -> List[PivotPoint]:
    pivots: List[PivotPoint] = []
    for i in range(lookback, len(candles) - lookback):
        k = _stoch_k(stoch, i)
        if not is_valid(k):
            continue
        price = candles[i].low if lows else candles[i].high

        price_pivot = True
        stoch_pivot = True
        for j in range(1, lookback + 1):
            left = candles[i - j].low if lows else candles[i - j].high
            right = candles[i + j].low if lows else candles[i + j].high
            if lows and (price >= left or price >= right):
                price_pivot = False
            if not lows and (price <= left or price <= right):
                price_pivot = False

            lk = _stoch_k(stoch, i - j)
            rk = _stoch_k(stoch, i + j)
            if not (is_valid(lk) and is_valid(rk)):
                stoch_pivot = False
            elif lows and (k >= lk or k >= rk):
                stoch_pivot = False
            elif not lows and (k <= lk or k <= rk):
                stoch_pivot = False

        if price_pivot or stoch_pivot:
            pivots.append(PivotPoint(index=i + offset, price=price, stoch_k=k, time=candles[i].time))
    return pivots


def find_pivot_lows(candles: Sequence[Candle], stoch: Sequence[StochasticValue], lookback: int = 5) -> List[PivotPoint]:
    """Indices where price or %K is strictly below every neighbour within `lookback` on both sides."""
    return _find_pivots(candles, stoch, lookback, lows=True)


def find_pivot_highs(candles: Sequence[Candle], stoch: Sequence[StochasticValue], lookback: int = 5) -> List[PivotPoint]:
    return _find_pivots(candles, stoch, lookback, lows=False)


def divergence_angle(earlier: PivotPoint, recent: PivotPoint, price_range: float) -> float:
    """Steepness proxy in degrees: atan(|price slope - oscillator slope| * 10).

    Price is normalised by the window range and %K by 100, both per candle.
    """
    span = recent.index - earlier.index
    if span <= 0 or price_range <= 0:
        return 0.0
    price_slope = ((recent.price - earlier.price) / price_range) / span
    stoch_slope = ((recent.stoch_k - earlier.stoch_k) / 100.0) / span
    slope_diff = abs(price_slope - stoch_slope)
    return math.degrees(math.atan(slope_diff * 10))


def _classify(earlier: PivotPoint, recent: PivotPoint, lows: bool) -> Optional[DivergenceType]:
    if lows:
        if recent.price < earlier.price and recent.stoch_k > earlier.stoch_k:
            return DivergenceType.BULLISH
        if recent.price > earlier.price and recent.stoch_k < earlier.stoch_k:
            return DivergenceType.HIDDEN_BULLISH
        return None
    if recent.price > earlier.price and recent.stoch_k < earlier.stoch_k:
        return DivergenceType.BEARISH
    if recent.price < earlier.price and recent.stoch_k > earlier.stoch_k:
        return DivergenceType.HIDDEN_BEARISH
    return None


def _scan_pairs(pivots: List[PivotPoint], lows: bool, band: Band, price_range: float, cfg: SignalConfig) -> Optional[DivergenceDetails]:
    # recent pairs first; a failing pair falls through to older ones
    for i in range(len(pivots) - 1, 0, -1):
        recent = pivots[i]
        earlier = pivots[i - 1]
        span = recent.index - earlier.index
        if span < cfg.min_divergence_span:
            continue
        div_type = _classify(earlier, recent, lows)
        if div_type is None:
            continue
        angle = divergence_angle(earlier, recent, price_range)
        if angle < cfg.min_divergence_angle:
            continue
        return DivergenceDetails(
            type=div_type,
            angle=angle,
            price_points=(earlier, recent),
            stoch_points=(earlier.stoch_k, recent.stoch_k),
            candle_span=span,
            band=band,
        )
    return None


def detect_divergence(
    candles: Sequence[Candle], stoch: Sequence[StochasticValue], band: Band, cfg: SignalConfig
) -> Optional[DivergenceDetails]:
    """Most recent qualifying divergence on one band inside the trailing lookback window.

    Pivot lows are scanned before pivot highs. Returns None when the window is
    shorter than `lookback_period` or has a flat price range.
    """
    period = cfg.lookback_period
    if len(candles) < period or len(stoch) < period:
        return None

    offset = len(candles) - period
    window = candles[offset:]
    window_stoch = stoch[len(stoch) - period :]

    price_max = max(c.high for c in window)
    price_min = min(c.low for c in window)
    price_range = price_max - price_min
    if price_range <= 0:
        return None

    lows = _find_pivots(window, window_stoch, cfg.pivot_lookback, lows=True, offset=offset)
    found = _scan_pairs(lows, True, band, price_range, cfg)
    if found is not None:
        return found
    highs = _find_pivots(window, window_stoch, cfg.pivot_lookback, lows=False, offset=offset)
    return _scan_pairs(highs, False, band, price_range, cfg)


def detect_all_divergences(candles: Sequence[Candle], quad: QuadStochasticData, cfg: SignalConfig) -> List[DivergenceDetails]:
    out: List[DivergenceDetails] = []
    for band, series in quad.items():
        div = detect_divergence(candles, series, band, cfg)
        if div is not None:
            log.debug("divergence band=%s type=%s angle=%.2f span=%d", band.value, div.type.value, div.angle, div.candle_span)
            out.append(div)
    out.sort(key=lambda d: (_BAND_ORDER[d.band], -d.angle))
    return out


def divergence_strength_bonus(div: Optional[DivergenceDetails]) -> int:
    if div is None:
        return 0
    bonus = 1
    if div.angle >= 15:
        bonus += 1
    if div.angle >= 25:
        bonus += 1
    if div.band in (Band.SLOW, Band.MEDIUM):
        bonus += 1
    if div.candle_span >= 10:
        bonus += 1
    return min(bonus, 3)
