import pytest

from quad_stoch_signals.config import SignalConfig
from quad_stoch_signals.models import (
    Candle,
    QuadStochasticData,
    SignalStatus,
    SignalStrength,
    SignalType,
    StochasticValue,
)
from quad_stoch_signals.mtf import MTFAnalysis
from quad_stoch_signals.signals import (
    SignalBuilder,
    determine_strength,
    entry_zone,
    position_size,
    signal_id,
    stop_price,
    target_ladder,
)
from quad_stoch_signals.stochastic import aggregate_quad

PERMISSIVE = SignalConfig(min_strength="WEAK", min_confirmation_score=0.0, allow_counter_trend=True)


def _c(idx: int, close: float, low: float = None, v: float = 1.0) -> Candle:
    low = close - 0.2 if low is None else low
    return Candle(time=idx * 60, open=close, high=close + 0.2, low=low, close=close, volume=v)


def _bullish_setup(n: int = 60):
    candles = [_c(i, 100.0 + 0.1 * i) for i in range(n)]
    series = [StochasticValue(c.time, 20.0 + 0.5 * i, 18.0 + 0.5 * i) for i, c in enumerate(candles)]
    quad = QuadStochasticData(series, series, series, series)
    return candles, quad, aggregate_quad(quad)


def test_strength_cutoffs():
    cfg = SignalConfig()
    assert determine_strength(7, cfg) == SignalStrength.SUPER
    assert determine_strength(5, cfg) == SignalStrength.STRONG
    assert determine_strength(3, cfg) == SignalStrength.MODERATE
    assert determine_strength(2, cfg) == SignalStrength.WEAK


def test_entry_zone_spread():
    z = entry_zone(100.0, 0.1)
    assert z.min == pytest.approx(99.9)
    assert z.max == pytest.approx(100.1)
    assert z.ideal == 100.0
    assert z.contains(100.05)
    assert not z.contains(100.2)


def test_target_ladder_long_and_short():
    cfg = SignalConfig()
    long_targets = target_ladder(100.0, 98.0, SignalType.LONG, cfg)
    assert [t.price for t in long_targets] == pytest.approx([103.0, 105.0, 108.0])
    assert [t.percentage for t in long_targets] == [70.0, 20.0, 10.0]
    assert sum(t.percentage for t in long_targets) <= 100.0

    short_targets = target_ladder(100.0, 102.0, SignalType.SHORT, cfg)
    assert [t.price for t in short_targets] == pytest.approx([97.0, 95.0, 92.0])


def test_stop_methods():
    candles = [_c(i, 100.0, low=99.0) for i in range(20)]
    candles[15] = _c(15, 100.0, low=95.0)

    assert stop_price(candles, SignalType.LONG, SignalConfig()) == pytest.approx(94.9)
    assert stop_price(candles, SignalType.LONG, SignalConfig(stop_method="PERCENT")) == pytest.approx(99.0)
    assert stop_price(candles, SignalType.SHORT, SignalConfig(stop_method="PERCENT")) == pytest.approx(101.0)
    assert stop_price(candles, SignalType.LONG, SignalConfig(stop_method="FIXED", stop_amount=3.0)) == pytest.approx(97.0)
    # not enough history for ATR -> percent fallback
    assert stop_price(candles[:10], SignalType.LONG, SignalConfig(stop_method="ATR")) == pytest.approx(99.0)


def test_position_size_by_strength():
    cfg = SignalConfig()
    assert position_size(SignalStrength.SUPER, cfg) == 5.0
    assert position_size(SignalStrength.STRONG, cfg) == 3.0
    assert position_size(SignalStrength.MODERATE, cfg) == 2.0


def test_signal_id_is_deterministic():
    a = signal_id("BTCUSDT", "15m", SignalType.LONG, 1200, "sig")
    assert a == signal_id("BTCUSDT", "15m", SignalType.LONG, 1200, "sig")
    assert a != signal_id("BTCUSDT", "15m", SignalType.LONG, 1200, "other")
    assert a != signal_id("BTCUSDT", "15m", SignalType.SHORT, 1200, "sig")


def test_builder_emits_long_on_quad_alignment_with_rotation():
    candles, quad, analysis = _bullish_setup()
    builder = SignalBuilder(PERMISSIVE, timeframe="15m")
    signals = builder.build("BTCUSDT", candles, quad, analysis, [], now=1000.0)

    assert len(signals) == 1
    sig = signals[0]
    assert sig.type == SignalType.LONG
    assert sig.status == SignalStatus.PENDING
    assert sig.strength == SignalStrength.MODERATE
    assert sig.confluence.quad_rotation is True
    assert sig.valid_until == 1000.0 + PERMISSIVE.signal_expiry_s
    assert sig.entry_zone.contains(candles[-1].close)
    assert sig.stop_loss.initial < sig.entry_zone.ideal
    assert sig.stop_loss.breakeven == sig.entry_zone.ideal
    assert [t.price for t in sig.targets] == sorted(t.price for t in sig.targets)
    assert sig.targets[0].price > sig.entry_zone.ideal
    assert set(sig.confirmations.required) == {
        "stoch_cross",
        "ma_alignment",
        "higher_tf_trend",
        "divergence_present",
        "quad_rotation",
    }
    assert "divergence_present" not in sig.confirmations.achieved
    assert sig.risk_reward_ratio == pytest.approx(1.5)
    assert sig.candle_time == candles[-1].time

    again = builder.build("BTCUSDT", candles, quad, analysis, [], now=2000.0)
    assert again[0].id == sig.id


def test_builder_discards_below_min_strength_or_confirmation():
    candles, quad, analysis = _bullish_setup()
    strict = SignalBuilder(SignalConfig(min_strength="SUPER", min_confirmation_score=0.0, allow_counter_trend=True))
    assert strict.build("BTCUSDT", candles, quad, analysis, [], now=0.0) == []

    picky = SignalBuilder(SignalConfig(min_strength="WEAK", min_confirmation_score=100.0, allow_counter_trend=True))
    assert picky.build("BTCUSDT", candles, quad, analysis, [], now=0.0) == []


def test_builder_respects_mtf_bias():
    candles, quad, analysis = _bullish_setup()
    builder = SignalBuilder(PERMISSIVE)

    short_only = MTFAnalysis({}, "BEARISH", 100.0, "SHORT_ONLY", "")
    assert builder.build("BTCUSDT", candles, quad, analysis, [], mtf=short_only, now=0.0) == []

    choppy = MTFAnalysis({}, "NEUTRAL", 0.0, "NONE", "")
    signals = builder.build("BTCUSDT", candles, quad, analysis, [], mtf=choppy, now=0.0)
    assert len(signals) == 1
    assert signals[0].low_confidence is True


def test_builder_without_analysis_returns_nothing():
    candles, quad, _ = _bullish_setup()
    assert SignalBuilder(PERMISSIVE).build("BTCUSDT", candles, quad, None, [], now=0.0) == []
