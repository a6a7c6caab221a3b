from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .config import SignalConfig
from .indicators import bollinger, is_valid, sma, vwap_series
from .models import Band, Candle, Confirmation, Confirmations, DivergenceDetails, QuadStochasticData

log = logging.getLogger("confirmations")


@dataclass(frozen=True)
class CheckContext:
    candles: Sequence[Candle]
    direction: int
    quad: QuadStochasticData
    index: int  # common evaluation index across bands
    divergence: Optional[DivergenceDetails]
    cfg: SignalConfig


@dataclass(frozen=True)
class ConfirmationRule:
    name: str
    weight: int
    description: str
    check: Callable[[CheckContext], bool]


def _k(ctx: CheckContext, band: Band, back: int = 0) -> Tuple[float, float]:
    i = ctx.index - back
    series = ctx.quad.band(band)
    if i < 0 or i >= len(series):
        return float("nan"), float("nan")
    return series[i].k, series[i].d


def _stoch_cross(ctx: CheckContext) -> bool:
    k, d = _k(ctx, Band.FAST)
    pk, pd = _k(ctx, Band.FAST, 1)
    if not (is_valid(k) and is_valid(pk)):
        return False
    if ctx.direction > 0:
        return pk <= pd and k > d
    return pk >= pd and k < d


def _volume_surge(ctx: CheckContext) -> bool:
    n = ctx.cfg.volume_lookback
    if len(ctx.candles) < n:
        return False
    avg = sum(c.volume for c in ctx.candles[-n:]) / n
    return ctx.candles[-1].volume > avg * ctx.cfg.volume_spike_multiplier


def _candle_pattern(ctx: CheckContext) -> bool:
    c = ctx.candles[-1]
    body = c.close - c.open
    rng = c.high - c.low
    if rng == 0:
        return False
    if abs(body) / rng <= 0.6:
        return False
    return body > 0 if ctx.direction > 0 else body < 0


def _ma_alignment(ctx: CheckContext) -> bool:
    closes = [c.close for c in ctx.candles]
    ma20 = sma(closes, ctx.cfg.ma_fast)
    ma50 = sma(closes, ctx.cfg.ma_slow)
    if ma20 is None or ma50 is None:
        return False
    price = closes[-1]
    if ctx.direction > 0:
        return price > ma20 > ma50
    return price < ma20 < ma50


def _clear_path(ctx: CheckContext) -> bool:
    closes = [c.close for c in ctx.candles]
    price = closes[-1]
    if price <= 0:
        return False
    ma50 = sma(closes, ctx.cfg.ma_slow)
    channel = bollinger(closes, ctx.cfg.bb_period, ctx.cfg.bb_std)
    threshold = 0.003
    if ctx.direction > 0:
        levels = [x for x in (ma50, channel[1] if channel else None) if x is not None and x > price]
        return all((lvl - price) / price > threshold for lvl in levels)
    levels = [x for x in (ma50, channel[2] if channel else None) if x is not None and x < price]
    return all((price - lvl) / price > threshold for lvl in levels)


def _higher_tf_trend(ctx: CheckContext) -> bool:
    k, _ = _k(ctx, Band.SLOW)
    prev3, _ = _k(ctx, Band.SLOW, 3)
    if not is_valid(k):
        return False
    if ctx.direction > 0:
        return (is_valid(prev3) and k > prev3) or k < 30
    return (is_valid(prev3) and k < prev3) or k > 70


def _divergence_present(ctx: CheckContext) -> bool:
    return ctx.divergence is not None


def _not_extended(ctx: CheckContext) -> bool:
    if sum(c.volume for c in ctx.candles) <= 0:
        return True
    vwap = vwap_series(ctx.candles)[-1]
    if vwap <= 0:
        return True
    return abs(ctx.candles[-1].close - vwap) / vwap < 0.01


def _quad_rotation(ctx: CheckContext) -> bool:
    turning = 0
    for band in Band:
        k, _ = _k(ctx, band)
        pk, _ = _k(ctx, band, 1)
        if not (is_valid(k) and is_valid(pk)):
            continue
        if ctx.direction > 0 and k > pk:
            turning += 1
        if ctx.direction < 0 and k < pk:
            turning += 1
    return turning >= 3


def _twenty_twenty(ctx: CheckContext) -> bool:
    k, d = _k(ctx, Band.FAST)
    if not (is_valid(k) and is_valid(d)):
        return False
    if ctx.direction > 0:
        return k < ctx.cfg.oversold_level and d < ctx.cfg.oversold_level
    return k > ctx.cfg.overbought_level and d > ctx.cfg.overbought_level


RULES: List[ConfirmationRule] = [
    ConfirmationRule("stoch_cross", 8, "Fast %K crosses %D in signal direction", _stoch_cross),
    ConfirmationRule("volume_surge", 6, "Current volume above the recent average", _volume_surge),
    ConfirmationRule("candle_pattern", 5, "Signal candle body confirms direction", _candle_pattern),
    ConfirmationRule("ma_alignment", 7, "Price and MAs aligned with signal", _ma_alignment),
    ConfirmationRule("no_resistance", 6, "No immediate resistance/support blocking", _clear_path),
    ConfirmationRule("higher_tf_trend", 9, "Slow band supports signal direction", _higher_tf_trend),
    ConfirmationRule("divergence_present", 7, "Price/stochastic divergence supports signal", _divergence_present),
    ConfirmationRule("not_extended", 5, "Price not too far from VWAP", _not_extended),
    ConfirmationRule("quad_rotation", 8, "At least 3 bands turning in signal direction", _quad_rotation),
    ConfirmationRule("twenty_twenty_flag", 6, "Fast %K and %D in the extreme zone", _twenty_twenty),
]


def evaluate_confirmations(ctx: CheckContext) -> Tuple[Confirmations, List[Confirmation], float]:
    """Run every rule; returns the split confirmations, per-rule results and the achieved weight percentage."""
    results: List[Confirmation] = []
    for rule in RULES:
        try:
            passed = bool(rule.check(ctx))
        except (ArithmeticError, IndexError, ValueError) as e:
            log.warning("confirmation_failed name=%s err=%s", rule.name, e)
            passed = False
        results.append(Confirmation(rule.name, rule.weight, passed, rule.description))

    threshold = ctx.cfg.required_confirmation_weight
    total = sum(r.weight for r in results)
    achieved_weight = sum(r.weight for r in results if r.passed)
    confirmations = Confirmations(
        required=tuple(r.name for r in results if r.weight >= threshold),
        optional=tuple(r.name for r in results if r.weight < threshold),
        achieved=tuple(r.name for r in results if r.passed),
    )
    pct = achieved_weight / total * 100.0 if total else 0.0
    return confirmations, results, pct
