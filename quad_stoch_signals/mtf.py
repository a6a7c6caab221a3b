from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from .indicators import is_valid, sma
from .models import Candle, SignalType
from .stochastic import calculate_stochastic_band

MIN_CANDLES = 50
CONSENSUS_SHARE = 0.6

TIMEFRAME_PRIORITY: Dict[str, int] = {
    "1m": 1,
    "3m": 2,
    "5m": 3,
    "15m": 4,
    "30m": 5,
    "1h": 6,
    "2h": 7,
    "4h": 8,
    "6h": 9,
    "12h": 10,
    "1d": 11,
    "1w": 12,
    "1M": 13,
}

_RECOMMENDED: Dict[str, List[str]] = {
    "1m": ["5m", "15m", "1h"],
    "3m": ["15m", "1h", "4h"],
    "5m": ["15m", "1h", "4h"],
    "15m": ["1h", "4h", "1d"],
    "30m": ["4h", "1d"],
    "1h": ["4h", "1d"],
    "4h": ["1d", "1w"],
}


@dataclass(frozen=True)
class TimeframeTrend:
    timeframe: str
    direction: str  # BULLISH | BEARISH | NEUTRAL
    strength: str  # STRONG | MODERATE | WEAK
    ma20: float
    ma50: float
    ma200: Optional[float]
    stoch_k: float
    stoch_d: float
    last_update: float


@dataclass(frozen=True)
class MTFAnalysis:
    trends: Dict[str, TimeframeTrend]
    consensus: str
    alignment_score: float
    trade_bias: str  # LONG_ONLY | SHORT_ONLY | BOTH | NONE
    recommendation: str


@dataclass(frozen=True)
class MTFAlignment:
    accepted: bool
    low_confidence: bool
    reason: str


def analyze_timeframe(candles: Sequence[Candle], timeframe: str, now: Optional[float] = None) -> TimeframeTrend:
    now = time.time() if now is None else now
    if len(candles) < MIN_CANDLES:
        return TimeframeTrend(timeframe, "NEUTRAL", "WEAK", 0.0, 0.0, None, 50.0, 50.0, now)

    closes = [c.close for c in candles]
    ma20 = sma(closes, 20) or 0.0
    ma50 = sma(closes, 50) or 0.0
    ma200 = sma(closes, 200) if len(closes) >= 200 else None

    stoch = calculate_stochastic_band(candles, 14, 3, 1)
    last = stoch[-1] if stoch else None
    k = last.k if last is not None and is_valid(last.k) else 50.0
    d = last.d if last is not None and is_valid(last.d) else 50.0

    price = closes[-1]
    direction = "NEUTRAL"
    if price > ma20 > ma50:
        direction = "BULLISH"
    elif price < ma20 < ma50:
        direction = "BEARISH"

    strength = "WEAK"
    if ma50 != 0:
        sep = abs(ma20 - ma50) / ma50
        if sep > 0.02:
            strength = "STRONG"
        elif sep > 0.01:
            strength = "MODERATE"

    return TimeframeTrend(timeframe, direction, strength, ma20, ma50, ma200, k, d, now)


def analyze_mtf(tf_data: Mapping[str, Sequence[Candle]], now: Optional[float] = None) -> MTFAnalysis:
    trends = {tf: analyze_timeframe(candles, tf, now) for tf, candles in tf_data.items()}
    directions = [t.direction for t in trends.values()]
    bullish = directions.count("BULLISH")
    bearish = directions.count("BEARISH")

    consensus = "NEUTRAL"
    if bullish > bearish and bullish >= len(directions) * CONSENSUS_SHARE:
        consensus = "BULLISH"
    elif bearish > bullish and bearish >= len(directions) * CONSENSUS_SHARE:
        consensus = "BEARISH"

    total = len(directions) or 1
    score = max(bullish, bearish) / total * 100.0

    if score >= 80 and consensus != "NEUTRAL":
        bias = "LONG_ONLY" if consensus == "BULLISH" else "SHORT_ONLY"
    elif score < 50:
        bias = "NONE"
    else:
        bias = "BOTH"

    recommendation = {
        "LONG_ONLY": "Strong bullish alignment - favor LONG signals, avoid shorts",
        "SHORT_ONLY": "Strong bearish alignment - favor SHORT signals, avoid longs",
        "NONE": "Choppy/conflicting trends - reduce position size or wait",
        "BOTH": "Mixed signals - trade both directions with caution",
    }[bias]
    return MTFAnalysis(trends, consensus, score, bias, recommendation)


def check_signal_alignment(signal_type: SignalType, mtf: MTFAnalysis) -> MTFAlignment:
    if signal_type == SignalType.LONG and mtf.trade_bias == "SHORT_ONLY":
        return MTFAlignment(False, False, "LONG signal against bearish MTF trend")
    if signal_type == SignalType.SHORT and mtf.trade_bias == "LONG_ONLY":
        return MTFAlignment(False, False, "SHORT signal against bullish MTF trend")
    if mtf.trade_bias == "NONE":
        return MTFAlignment(True, True, "Market too choppy - no clear trend")
    if mtf.alignment_score >= 70:
        return MTFAlignment(True, False, f"Strong MTF alignment ({mtf.alignment_score:.0f}%)")
    return MTFAlignment(True, False, "MTF allows both directions")


def timeframe_priority(timeframe: str) -> int:
    return TIMEFRAME_PRIORITY.get(timeframe, 0)


def higher_timeframes(base: str) -> List[str]:
    base_priority = timeframe_priority(base)
    return [tf for tf, p in TIMEFRAME_PRIORITY.items() if p > base_priority]


def recommended_timeframes(base: str) -> List[str]:
    if base in _RECOMMENDED:
        return list(_RECOMMENDED[base])
    return higher_timeframes(base)[:3]
