from __future__ import annotations

from typing import Optional, Sequence

from .config import SignalConfig
from .divergence import divergence_strength_bonus
from .indicators import bollinger, sma, vwap_series
from .models import Candle, ConfluenceFlags, DivergenceDetails, QuadAnalysis
from .mtf import MTFAnalysis
from .stochastic import check_htf_alignment, check_twenty_twenty_flag

MAX_SIGNAL_SCORE = 10


def check_channel_extreme(candles: Sequence[Candle], direction: int, cfg: SignalConfig) -> bool:
    bands = bollinger([c.close for c in candles], cfg.bb_period, cfg.bb_std)
    if bands is None:
        return False
    _, upper, lower = bands
    close = candles[-1].close
    return close <= lower if direction > 0 else close >= upper


def check_vwap_confluence(candles: Sequence[Candle], direction: int, cfg: SignalConfig) -> bool:
    """Price trades at a discount (LONG) or premium (SHORT) to VWAP, or within the threshold of it."""
    if len(candles) < 10 or sum(c.volume for c in candles) <= 0:
        return False
    vwap = vwap_series(candles)[-1]
    close = candles[-1].close
    if vwap > 0 and abs(close - vwap) / vwap * 100.0 <= cfg.vwap_threshold_pct:
        return True
    return close < vwap if direction > 0 else close > vwap


def check_ma_confluence(candles: Sequence[Candle], direction: int, cfg: SignalConfig) -> bool:
    closes = [c.close for c in candles]
    fast = sma(closes, cfg.ma_fast)
    slow = sma(closes, cfg.ma_slow)
    if fast is None or slow is None:
        return False
    close = closes[-1]
    if direction > 0:
        return fast > slow or close > fast
    return fast < slow or close < fast


def check_volume_spike(candles: Sequence[Candle], cfg: SignalConfig) -> bool:
    n = cfg.volume_lookback
    if len(candles) < n + 1:
        return False
    avg = sum(c.volume for c in candles[-n - 1 : -1]) / n
    return candles[-1].volume > avg * cfg.volume_spike_multiplier


def htf_aligned(analysis: QuadAnalysis, direction: int, mtf: Optional[MTFAnalysis] = None) -> bool:
    if mtf is not None and mtf.trends:
        return mtf.consensus == ("BULLISH" if direction > 0 else "BEARISH")
    return check_htf_alignment(analysis, direction)


def compute_flags(
    candles: Sequence[Candle],
    analysis: QuadAnalysis,
    direction: int,
    cfg: SignalConfig,
    mtf: Optional[MTFAnalysis] = None,
) -> ConfluenceFlags:
    return ConfluenceFlags(
        quad_rotation=analysis.is_quad_rotating and analysis.rotation_direction == direction,
        channel_extreme=check_channel_extreme(candles, direction, cfg),
        twenty_twenty_flag=check_twenty_twenty_flag(analysis, direction, cfg.oversold_level, cfg.overbought_level),
        vwap_confluence=check_vwap_confluence(candles, direction, cfg),
        ma_confluence=check_ma_confluence(candles, direction, cfg),
        volume_spike=check_volume_spike(candles, cfg),
        htf_alignment=htf_aligned(analysis, direction, mtf),
    )


def confluence_score(flags: ConfluenceFlags, divergence: Optional[DivergenceDetails] = None) -> int:
    score = 2 if flags.quad_rotation else 0
    score += sum(
        1
        for on in (
            flags.channel_extreme,
            flags.twenty_twenty_flag,
            flags.vwap_confluence,
            flags.ma_confluence,
            flags.volume_spike,
            flags.htf_alignment,
        )
        if on
    )
    score += divergence_strength_bonus(divergence)
    return min(score, MAX_SIGNAL_SCORE)
