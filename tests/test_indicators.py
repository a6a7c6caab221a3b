import math

import pytest

from quad_stoch_signals.indicator_batch import (
    AtrSpec,
    BollingerSpec,
    EmaSpec,
    QuadStochasticSpec,
    SmaSpec,
    StochasticSpec,
    VwapSpec,
    compute_indicators,
    spec_name,
)
from quad_stoch_signals.indicators import (
    atr,
    bollinger,
    ema_series,
    least_squares_slope,
    sma_series,
    vwap_series,
)
from quad_stoch_signals.models import Candle

NAN = float("nan")


def _c(idx: int, close: float, v: float = 1.0, spread: float = 0.0) -> Candle:
    return Candle(time=idx * 60, open=close, high=close + spread, low=close - spread, close=close, volume=v)


def _same(a, b):
    assert len(a) == len(b)
    for x, y in zip(a, b):
        if math.isnan(y):
            assert math.isnan(x)
        else:
            assert x == pytest.approx(y)


def test_sma_series_restarts_after_gap():
    _same(sma_series([1, 2, 3, 4, 5], 3), [NAN, NAN, 2.0, 3.0, 4.0])
    _same(sma_series([1, NAN, 2, 3, 4], 2), [NAN, NAN, NAN, 2.5, 3.5])


def test_ema_series_seeds_with_sma():
    _same(ema_series([1, 2, 3, 4], 2), [NAN, 1.5, 2.5, 3.5])
    _same(ema_series([1.0], 3), [NAN])


def test_vwap_is_volume_weighted():
    _same(vwap_series([_c(0, 10.0, v=1.0), _c(1, 20.0, v=3.0)]), [10.0, 17.5])
    assert vwap_series([_c(0, 10.0, v=0.0)]) == [10.0]


def test_bollinger_population_deviation():
    mid, upper, lower = bollinger([1, 2, 3, 4, 5], 5, 2.0)
    assert mid == 3.0
    assert upper == pytest.approx(3.0 + 2.0 * math.sqrt(2.0))
    assert lower == pytest.approx(3.0 - 2.0 * math.sqrt(2.0))
    assert bollinger([1, 2], 5) is None


def test_atr_needs_one_extra_candle():
    candles = [_c(i, 10.0, spread=1.0) for i in range(15)]
    assert atr(candles, 14) == pytest.approx(2.0)
    assert atr(candles[:14], 14) is None


def test_least_squares_slope():
    assert least_squares_slope([1.0, 3.0, 5.0]) == pytest.approx(2.0)
    assert least_squares_slope([4.0]) == 0.0


def test_spec_names():
    assert spec_name(SmaSpec(3)) == "sma_3"
    assert spec_name(StochasticSpec(14, 3, 3)) == "stochastic_14_3_3"
    assert spec_name(BollingerSpec(20, 2.0)) == "bollinger_20_2"
    assert spec_name(VwapSpec()) == "vwap"
    assert SmaSpec(3).kind == "sma"


def test_batch_isolates_failing_indicator():
    candles = [_c(i, 100.0 + math.sin(i / 3.0) * 5.0, spread=1.0) for i in range(80)]
    results = compute_indicators(candles, [SmaSpec(0), SmaSpec(3), EmaSpec(5), AtrSpec(14), BollingerSpec(20, 0.0)])

    bad = results["sma_0"]
    assert bad.ok is False
    assert bad.error.startswith("ValueError")
    assert bad.lines == {}

    good = results["sma_3"]
    assert good.ok
    assert len(good.lines["value"]) == len(candles)
    assert good.lines["value"][-1] == pytest.approx(sum(c.close for c in candles[-3:]) / 3)

    assert results["ema_5"].ok
    assert results["atr_14"].ok
    assert results["bollinger_20_0"].ok is False


def test_quad_stochastic_lines():
    candles = [_c(i, 100.0 + math.sin(i / 4.0) * 5.0, spread=1.0) for i in range(90)]
    result = compute_indicators(candles, [QuadStochasticSpec(), StochasticSpec(9, 3, 3)])
    quad = result["quad_stochastic"]
    assert set(quad.lines) == {
        "fast_k",
        "fast_d",
        "standard_k",
        "standard_d",
        "medium_k",
        "medium_d",
        "slow_k",
        "slow_d",
    }
    _same(quad.lines["fast_k"], result["stochastic_9_3_3"].lines["k"])
    assert not math.isnan(quad.lines["slow_k"][-1])
