import math

from quad_stoch_signals.config import SignalConfig
from quad_stoch_signals.divergence import (
    detect_all_divergences,
    detect_divergence,
    divergence_angle,
    divergence_strength_bonus,
    find_pivot_highs,
    find_pivot_lows,
)
from quad_stoch_signals.models import Band, Candle, DivergenceType, PivotPoint, QuadStochasticData, StochasticValue

NAN = float("nan")


def _c(idx: int, h: float = 101.0, l: float = 100.0) -> Candle:
    return Candle(time=idx * 60, open=100.5, high=h, low=l, close=100.5, volume=1.0)


def _fixture(lows=None, highs=None, ks=None, n: int = 60):
    """Flat candles with k=50 everywhere, except the given per-index overrides."""
    lows = lows or {}
    highs = highs or {}
    ks = ks or {}
    candles = [_c(i, h=highs.get(i, 101.0), l=lows.get(i, 100.0)) for i in range(n)]
    stoch = [StochasticValue(c.time, ks.get(i, 50.0), 50.0) for i, c in enumerate(candles)]
    return candles, stoch


def _nan_series(candles):
    return [StochasticValue(c.time, NAN, NAN) for c in candles]


def test_bullish_divergence_on_fast_band():
    candles, stoch = _fixture(lows={30: 95.0, 42: 93.0}, ks={30: 10.0, 42: 25.0})
    cfg = SignalConfig()
    div = detect_divergence(candles, stoch, Band.FAST, cfg)

    assert div is not None
    assert div.type == DivergenceType.BULLISH
    assert div.band == Band.FAST
    assert div.candle_span == 12
    assert div.price_points[0].index == 30
    assert div.price_points[1].index == 42
    assert div.stoch_points == (10.0, 25.0)
    assert math.isclose(div.angle, math.degrees(math.atan(1.0 / 3.0)), rel_tol=1e-9)
    assert div.angle >= cfg.min_divergence_angle
    assert div.candle_span >= cfg.min_divergence_span
    assert divergence_strength_bonus(div) == 3


def test_detect_all_reports_single_fast_divergence():
    candles, stoch = _fixture(lows={30: 95.0, 42: 93.0}, ks={30: 10.0, 42: 25.0})
    nan = _nan_series(candles)
    quad = QuadStochasticData(fast=stoch, standard=nan, medium=nan, slow=nan)
    divs = detect_all_divergences(candles, quad, SignalConfig())
    assert len(divs) == 1
    assert divs[0].band == Band.FAST
    assert divs[0].type == DivergenceType.BULLISH


def test_slow_band_sorted_first():
    candles, stoch = _fixture(lows={30: 95.0, 42: 93.0}, ks={30: 10.0, 42: 25.0})
    nan = _nan_series(candles)
    quad = QuadStochasticData(fast=stoch, standard=nan, medium=nan, slow=stoch)
    divs = detect_all_divergences(candles, quad, SignalConfig())
    assert [d.band for d in divs] == [Band.SLOW, Band.FAST]


def test_span_below_minimum_is_rejected():
    candles, stoch = _fixture(lows={30: 95.0, 33: 93.0}, ks={30: 10.0, 33: 25.0})
    assert detect_divergence(candles, stoch, Band.FAST, SignalConfig()) is None


def test_angle_below_minimum_is_rejected():
    candles, stoch = _fixture(lows={30: 95.0, 42: 93.0}, ks={30: 10.0, 42: 25.0})
    cfg = SignalConfig(min_divergence_angle=30.0)
    assert detect_divergence(candles, stoch, Band.FAST, cfg) is None


def test_scan_falls_back_to_older_pair():
    # most recent pair (32, 35) is too close; (20, 32) qualifies
    candles, stoch = _fixture(lows={20: 95.0, 32: 93.0, 35: 92.0}, ks={20: 10.0, 32: 25.0, 35: 30.0})
    div = detect_divergence(candles, stoch, Band.STANDARD, SignalConfig())
    assert div is not None
    assert div.type == DivergenceType.BULLISH
    assert (div.price_points[0].index, div.price_points[1].index) == (20, 32)


def test_bearish_divergence_on_highs():
    candles, stoch = _fixture(highs={30: 105.0, 42: 107.0}, ks={30: 90.0, 42: 75.0})
    div = detect_divergence(candles, stoch, Band.MEDIUM, SignalConfig())
    assert div is not None
    assert div.type == DivergenceType.BEARISH
    assert div.type.is_bullish is False


def test_hidden_bullish_divergence():
    candles, stoch = _fixture(lows={30: 93.0, 42: 95.0}, ks={30: 25.0, 42: 10.0})
    div = detect_divergence(candles, stoch, Band.FAST, SignalConfig())
    assert div is not None
    assert div.type == DivergenceType.HIDDEN_BULLISH


def test_insufficient_or_flat_window_returns_none():
    candles, stoch = _fixture(n=40)
    assert detect_divergence(candles, stoch, Band.FAST, SignalConfig()) is None

    flat = [Candle(time=i * 60, open=100, high=100, low=100, close=100, volume=1) for i in range(60)]
    stoch = [StochasticValue(c.time, 50.0, 50.0) for c in flat]
    assert detect_divergence(flat, stoch, Band.FAST, SignalConfig()) is None


def test_pivot_skipped_when_oscillator_is_nan():
    candles, stoch = _fixture(lows={30: 95.0}, n=40)
    stoch[30] = StochasticValue(stoch[30].time, NAN, NAN)
    assert all(p.index != 30 for p in find_pivot_lows(candles, stoch, 3))


def test_angle_formula():
    a = PivotPoint(index=0, price=100.0, stoch_k=20.0, time=0)
    b = PivotPoint(index=10, price=90.0, stoch_k=30.0, time=600)
    # price slope -0.01/candle, oscillator slope +0.01/candle
    assert math.isclose(divergence_angle(a, b, 100.0), math.degrees(math.atan(0.2)), rel_tol=1e-9)


def test_strength_bonus_capped():
    candles, stoch = _fixture(lows={30: 95.0, 42: 93.0}, ks={30: 10.0, 42: 25.0})
    div = detect_divergence(candles, stoch, Band.SLOW, SignalConfig())
    assert divergence_strength_bonus(div) == 3
    assert divergence_strength_bonus(None) == 0


def test_pivot_highs_on_price_or_oscillator():
    candles, stoch = _fixture(highs={12: 104.0}, ks={25: 80.0}, n=40)
    assert [p.index for p in find_pivot_highs(candles, stoch, 3)] == [12, 25]
