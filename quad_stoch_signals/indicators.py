from __future__ import annotations
from typing import List, Optional, Sequence, Tuple
import math

from .models import Candle

NAN = float("nan")


def is_valid(x: Optional[float]) -> bool:
    return x is not None and not math.isnan(x)


def sma(values: Sequence[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    return sum(values[-length:]) / float(length)


def sma_series(values: Sequence[float], length: int) -> List[float]:
    """Rolling mean aligned 1:1 with the input; NaN until `length` valid values are in the window."""
    out: List[float] = [NAN] * len(values)
    if length <= 0:
        return out
    window_sum = 0.0
    valid_run = 0
    for i, v in enumerate(values):
        if not is_valid(v):
            window_sum = 0.0
            valid_run = 0
            continue
        window_sum += v
        valid_run += 1
        if valid_run > length:
            window_sum -= values[i - length]
        if valid_run >= length:
            out[i] = window_sum / length
    return out


def ema_next(prev_ema: Optional[float], x: float, length: int) -> float:
    if length <= 1:
        return x
    alpha = 2.0 / (length + 1.0)
    return x if prev_ema is None else (alpha * x + (1.0 - alpha) * prev_ema)


def ema_series(values: Sequence[float], length: int) -> List[float]:
    out: List[float] = [NAN] * len(values)
    if length <= 0 or len(values) < length:
        return out
    prev = sum(values[:length]) / float(length)
    out[length - 1] = prev
    for i in range(length, len(values)):
        prev = ema_next(prev, values[i], length)
        out[i] = prev
    return out


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def atr(candles: Sequence[Candle], length: int = 14) -> Optional[float]:
    if length <= 0 or len(candles) < length + 1:
        return None
    trs = []
    for i in range(-length, 0):
        trs.append(true_range(candles[i].high, candles[i].low, candles[i - 1].close))
    return sum(trs) / length


def atr_series(candles: Sequence[Candle], length: int = 14) -> List[float]:
    out: List[float] = [NAN] * len(candles)
    if length <= 0:
        return out
    trs = [NAN] + [
        true_range(candles[i].high, candles[i].low, candles[i - 1].close) for i in range(1, len(candles))
    ]
    return sma_series(trs, length)


def vwap_series(candles: Sequence[Candle]) -> List[float]:
    """Cumulative VWAP over the window using the typical price."""
    out: List[float] = []
    pv = 0.0
    vol = 0.0
    for c in candles:
        typical = (c.high + c.low + c.close) / 3.0
        pv += typical * c.volume
        vol += c.volume
        out.append(pv / vol if vol > 0 else typical)
    return out


def bollinger(closes: Sequence[float], period: int = 20, num_std: float = 2.0) -> Optional[Tuple[float, float, float]]:
    """(middle, upper, lower) of the last `period` closes, population deviation."""
    mid = sma(closes, period)
    if mid is None:
        return None
    window = closes[-period:]
    var = sum((x - mid) ** 2 for x in window) / float(period)
    dev = math.sqrt(var) * num_std
    return mid, mid + dev, mid - dev


def least_squares_slope(values: Sequence[float]) -> float:
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = n * (n - 1) / 2.0
    sum_y = float(sum(values))
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_x2 = sum(i * i for i in range(n))
    denom = n * sum_x2 - sum_x * sum_x
    if denom == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denom
