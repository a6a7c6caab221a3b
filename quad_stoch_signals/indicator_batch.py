from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

from .indicators import NAN, atr_series, ema_series, sma_series, vwap_series
from .models import Band, Candle
from .stochastic import calculate_stochastic_band

log = logging.getLogger("indicators")


@dataclass(frozen=True)
class StochasticSpec:
    k_period: int = 14
    d_period: int = 3
    smoothing: int = 3
    kind: str = field(default="stochastic", init=False)


@dataclass(frozen=True)
class QuadStochasticSpec:
    kind: str = field(default="quad_stochastic", init=False)


@dataclass(frozen=True)
class SmaSpec:
    period: int = 20
    kind: str = field(default="sma", init=False)


@dataclass(frozen=True)
class EmaSpec:
    period: int = 20
    kind: str = field(default="ema", init=False)


@dataclass(frozen=True)
class BollingerSpec:
    period: int = 20
    num_std: float = 2.0
    kind: str = field(default="bollinger", init=False)


@dataclass(frozen=True)
class AtrSpec:
    period: int = 14
    kind: str = field(default="atr", init=False)


@dataclass(frozen=True)
class VwapSpec:
    kind: str = field(default="vwap", init=False)


IndicatorSpec = Union[StochasticSpec, QuadStochasticSpec, SmaSpec, EmaSpec, BollingerSpec, AtrSpec, VwapSpec]


@dataclass(frozen=True)
class IndicatorResult:
    name: str
    spec: IndicatorSpec
    lines: Dict[str, List[float]]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def spec_name(spec: IndicatorSpec) -> str:
    if isinstance(spec, StochasticSpec):
        return f"stochastic_{spec.k_period}_{spec.d_period}_{spec.smoothing}"
    if isinstance(spec, BollingerSpec):
        return f"bollinger_{spec.period}_{spec.num_std:g}"
    if isinstance(spec, (SmaSpec, EmaSpec, AtrSpec)):
        return f"{spec.kind}_{spec.period}"
    return spec.kind


def _period(value: int, what: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ValueError(f"{what} must be an integer >= 1, got {value!r}")
    return value


def _bollinger_lines(closes: Sequence[float], period: int, num_std: float) -> Dict[str, List[float]]:
    middle = sma_series(closes, period)
    upper: List[float] = [NAN] * len(closes)
    lower: List[float] = [NAN] * len(closes)
    for i in range(period - 1, len(closes)):
        window = closes[i - period + 1 : i + 1]
        mean = middle[i]
        dev = math.sqrt(sum((x - mean) ** 2 for x in window) / period) * num_std
        upper[i] = mean + dev
        lower[i] = mean - dev
    return {"middle": middle, "upper": upper, "lower": lower}


def compute_indicator(candles: Sequence[Candle], spec: IndicatorSpec) -> Dict[str, List[float]]:
    closes = [c.close for c in candles]
    if isinstance(spec, StochasticSpec):
        series = calculate_stochastic_band(
            candles, _period(spec.k_period, "k_period"), _period(spec.d_period, "d_period"), _period(spec.smoothing, "smoothing")
        )
        return {"k": [v.k for v in series], "d": [v.d for v in series]}
    if isinstance(spec, QuadStochasticSpec):
        lines: Dict[str, List[float]] = {}
        for band in Band:
            series = calculate_stochastic_band(candles, *band.params)
            lines[f"{band.key}_k"] = [v.k for v in series]
            lines[f"{band.key}_d"] = [v.d for v in series]
        return lines
    if isinstance(spec, SmaSpec):
        return {"value": sma_series(closes, _period(spec.period, "period"))}
    if isinstance(spec, EmaSpec):
        return {"value": ema_series(closes, _period(spec.period, "period"))}
    if isinstance(spec, BollingerSpec):
        if spec.num_std <= 0:
            raise ValueError(f"num_std must be > 0, got {spec.num_std!r}")
        return _bollinger_lines(closes, _period(spec.period, "period"), spec.num_std)
    if isinstance(spec, AtrSpec):
        return {"value": atr_series(candles, _period(spec.period, "period"))}
    if isinstance(spec, VwapSpec):
        return {"value": vwap_series(candles)}
    raise TypeError(f"unsupported indicator spec: {type(spec).__name__}")


def compute_indicators(candles: Sequence[Candle], specs: Sequence[IndicatorSpec]) -> Dict[str, IndicatorResult]:
    """Compute every spec; a failing indicator yields empty lines plus an error string."""
    out: Dict[str, IndicatorResult] = {}
    for spec in specs:
        name = spec_name(spec)
        try:
            lines = compute_indicator(candles, spec)
        except (ArithmeticError, TypeError, ValueError) as e:
            log.warning("indicator_failed name=%s err=%s", name, e)
            out[name] = IndicatorResult(name, spec, {}, f"{type(e).__name__}: {e}")
            continue
        out[name] = IndicatorResult(name, spec, lines)
    return out
