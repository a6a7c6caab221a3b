from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence

from .config import SignalConfig
from .divergence import detect_all_divergences
from .models import Candle, DivergenceDetails, QuadAnalysis, QuadStochasticData, TradeSignal
from .mtf import MTFAnalysis, analyze_mtf
from .signals import SignalBuilder
from .stochastic import aggregate_quad, calculate_quad_stochastic

log = logging.getLogger("engine")


@dataclass(frozen=True)
class CalculationResult:
    symbol: str
    quad_data: QuadStochasticData
    analysis: Optional[QuadAnalysis]
    divergences: List[DivergenceDetails]
    signals: List[TradeSignal]
    mtf: Optional[MTFAnalysis] = None
    timeframe: str = ""
    elapsed_ms: float = 0.0
    notes: List[str] = field(default_factory=list)


def compute_stoch(candles: Sequence[Candle], cfg: SignalConfig):
    quad = calculate_quad_stochastic(candles)
    return quad, aggregate_quad(quad, cfg.oversold_level, cfg.overbought_level)


def compute_signals(
    symbol: str,
    candles: Sequence[Candle],
    cfg: SignalConfig,
    *,
    timeframe: str = "",
    tf_data: Optional[Mapping[str, Sequence[Candle]]] = None,
    now: Optional[float] = None,
) -> CalculationResult:
    """Full pass for one symbol: quad bands, divergences, optional MTF filter, signals."""
    t0 = time.perf_counter()
    candles = list(candles)
    quad, analysis = compute_stoch(candles, cfg)
    notes: List[str] = []

    divergences: List[DivergenceDetails] = []
    signals: List[TradeSignal] = []
    mtf = analyze_mtf(tf_data, now) if tf_data else None
    # no analysis until every band (SLOW included) has a finite reading; divergences wait for it too
    if analysis is None:
        notes.append(f"insufficient data: {len(candles)} candles")
    else:
        divergences = detect_all_divergences(candles, quad, cfg)
        builder = SignalBuilder(cfg, timeframe=timeframe)
        signals = builder.build(symbol, candles, quad, analysis, divergences, mtf=mtf, now=now)

    elapsed_ms = (time.perf_counter() - t0) * 1000.0
    log.debug(
        "calculated symbol=%s candles=%d divergences=%d signals=%d ms=%.1f",
        symbol,
        len(candles),
        len(divergences),
        len(signals),
        elapsed_ms,
    )
    return CalculationResult(
        symbol=symbol,
        quad_data=quad,
        analysis=analysis,
        divergences=divergences,
        signals=signals,
        mtf=mtf,
        timeframe=timeframe,
        elapsed_ms=elapsed_ms,
        notes=notes,
    )
