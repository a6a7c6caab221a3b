from quad_stoch_signals.models import Candle, SignalType
from quad_stoch_signals.mtf import (
    analyze_mtf,
    analyze_timeframe,
    check_signal_alignment,
    higher_timeframes,
    recommended_timeframes,
    timeframe_priority,
)


def _trend(n: int, step: float):
    out = []
    for i in range(n):
        c = 100.0 + step * i
        out.append(Candle(time=i * 60, open=c, high=c + 0.5, low=c - 0.5, close=c, volume=1.0))
    return out


UP = _trend(60, 1.0)
DOWN = _trend(60, -1.0)
FLAT = _trend(60, 0.0)


def test_uptrend_is_bullish_and_strong():
    t = analyze_timeframe(UP, "1h", now=0)
    assert t.direction == "BULLISH"
    assert t.strength == "STRONG"
    assert t.ma20 > t.ma50
    assert t.ma200 is None
    assert 0 <= t.stoch_k <= 100


def test_too_few_candles_is_neutral_weak():
    t = analyze_timeframe(UP[:40], "1h", now=0)
    assert t.direction == "NEUTRAL"
    assert t.strength == "WEAK"
    assert t.stoch_k == 50.0


def test_full_bullish_consensus_locks_long_only():
    mtf = analyze_mtf({"15m": UP, "1h": UP, "4h": UP}, now=0)
    assert mtf.consensus == "BULLISH"
    assert mtf.alignment_score == 100.0
    assert mtf.trade_bias == "LONG_ONLY"

    rejected = check_signal_alignment(SignalType.SHORT, mtf)
    assert rejected.accepted is False
    accepted = check_signal_alignment(SignalType.LONG, mtf)
    assert accepted.accepted is True
    assert accepted.low_confidence is False


def test_choppy_timeframes_flag_low_confidence():
    mtf = analyze_mtf({"15m": UP, "1h": DOWN, "4h": FLAT}, now=0)
    assert mtf.consensus == "NEUTRAL"
    assert mtf.trade_bias == "NONE"
    res = check_signal_alignment(SignalType.LONG, mtf)
    assert res.accepted is True
    assert res.low_confidence is True


def test_two_of_three_is_consensus_with_both_bias():
    mtf = analyze_mtf({"15m": UP, "1h": UP, "4h": FLAT}, now=0)
    assert mtf.consensus == "BULLISH"
    assert round(mtf.alignment_score, 1) == 66.7
    assert mtf.trade_bias == "BOTH"
    assert check_signal_alignment(SignalType.SHORT, mtf).accepted is True


def test_timeframe_helpers():
    assert timeframe_priority("1h") == 6
    assert timeframe_priority("7m") == 0
    assert higher_timeframes("4h")[0] == "6h"
    assert "1m" not in higher_timeframes("4h")
    assert recommended_timeframes("15m") == ["1h", "4h", "1d"]
    assert recommended_timeframes("2h") == ["4h", "6h", "12h"]
