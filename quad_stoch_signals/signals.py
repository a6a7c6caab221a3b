from __future__ import annotations

import hashlib
import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

from .config import SignalConfig, config_signature
from .confirmations import CheckContext, evaluate_confirmations
from .confluence import compute_flags, confluence_score
from .indicators import atr
from .models import (
    Candle,
    DivergenceDetails,
    EntryZone,
    QuadAnalysis,
    QuadStochasticData,
    SignalStatus,
    SignalStrength,
    SignalType,
    StopLoss,
    TargetLevel,
    TradeSignal,
    TrailingStop,
)
from .mtf import MTFAnalysis, check_signal_alignment
from .stochastic import check_htf_alignment

log = logging.getLogger("signals")


def determine_strength(score: int, cfg: SignalConfig) -> SignalStrength:
    if score >= cfg.super_score:
        return SignalStrength.SUPER
    if score >= cfg.strong_score:
        return SignalStrength.STRONG
    if score >= cfg.moderate_score:
        return SignalStrength.MODERATE
    return SignalStrength.WEAK


def entry_zone(price: float, spread_pct: float) -> EntryZone:
    spread = price * spread_pct / 100.0
    return EntryZone(min=price - spread, max=price + spread, ideal=price)


def stop_price(candles: Sequence[Candle], signal_type: SignalType, cfg: SignalConfig) -> float:
    entry = candles[-1].close
    long_side = signal_type == SignalType.LONG
    method = cfg.stop_method
    distance: Optional[float] = None

    if method == "SWING":
        window = candles[-cfg.swing_lookback :]
        buffer = entry * cfg.stop_loss_buffer_pct / 100.0
        if long_side:
            distance = entry - (min(c.low for c in window) - buffer)
        else:
            distance = (max(c.high for c in window) + buffer) - entry
    elif method == "ATR":
        a = atr(candles, cfg.atr_period)
        if a is not None:
            distance = a * cfg.atr_multiplier
    elif method == "FIXED":
        distance = cfg.stop_amount

    if distance is None or distance <= 0:
        # PERCENT, or the fallback when the chosen method yields no usable distance
        distance = entry * cfg.stop_percent / 100.0
    return entry - distance if long_side else entry + distance


def target_ladder(entry: float, stop: float, signal_type: SignalType, cfg: SignalConfig) -> Tuple[TargetLevel, ...]:
    risk = abs(entry - stop)
    sign = 1.0 if signal_type == SignalType.LONG else -1.0
    runner_pct = max(0.0, 100.0 - cfg.target1_exit_pct - cfg.target2_exit_pct)
    plan = [
        (cfg.target1_rr, cfg.target1_exit_pct, "T1"),
        (cfg.target2_rr, cfg.target2_exit_pct, "T2"),
        (cfg.target3_rr, runner_pct, "T3 runner" if cfg.trailing_enabled else "T3"),
    ]
    return tuple(
        TargetLevel(price=entry + sign * risk * rr, percentage=pct, reason=f"{label} {rr:g}R", rr=rr)
        for rr, pct, label in plan
    )


def position_size(strength: SignalStrength, cfg: SignalConfig) -> float:
    size = cfg.default_position_size
    if strength == SignalStrength.SUPER:
        size = cfg.max_position_size
    elif strength == SignalStrength.STRONG:
        size = cfg.default_position_size * 1.5
    return min(size, cfg.max_position_size)


def signal_id(symbol: str, timeframe: str, signal_type: SignalType, candle_time: int, sig: str) -> str:
    raw = f"{symbol}:{timeframe}:{signal_type.value}:{candle_time}:{sig}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _candidates(analysis: QuadAnalysis, divergences: Sequence[DivergenceDetails]) -> Dict[SignalType, List[str]]:
    out: Dict[SignalType, List[str]] = {}
    if analysis.is_quad_aligned and analysis.is_quad_rotating and analysis.alignment_direction == analysis.rotation_direction:
        st = SignalType.LONG if analysis.alignment_direction > 0 else SignalType.SHORT
        out.setdefault(st, []).append("quad alignment with rotation")
    if analysis.oversold_count >= 2 and analysis.bullish_count >= 2:
        out.setdefault(SignalType.LONG, []).append(f"{analysis.oversold_count} bands oversold and turning up")
    if analysis.overbought_count >= 2 and analysis.bearish_count >= 2:
        out.setdefault(SignalType.SHORT, []).append(f"{analysis.overbought_count} bands overbought and turning down")
    for div in divergences:
        st = SignalType.LONG if div.type.is_bullish else SignalType.SHORT
        out.setdefault(st, []).append(f"{div.type.value} divergence on {div.band.value}")
    return out


class SignalBuilder:
    """Turns one quad analysis plus divergences into ranked TradeSignals."""

    def __init__(self, cfg: SignalConfig, *, timeframe: str = ""):
        self.cfg = cfg
        self.timeframe = timeframe
        self._sig = config_signature(cfg)

    def build(
        self,
        symbol: str,
        candles: Sequence[Candle],
        quad: QuadStochasticData,
        analysis: Optional[QuadAnalysis],
        divergences: Sequence[DivergenceDetails],
        *,
        mtf: Optional[MTFAnalysis] = None,
        now: Optional[float] = None,
    ) -> List[TradeSignal]:
        if analysis is None or not candles:
            return []
        now = time.time() if now is None else now

        out: List[TradeSignal] = []
        for signal_type, reasons in _candidates(analysis, divergences).items():
            sig = self._build_one(symbol, candles, quad, analysis, divergences, signal_type, reasons, mtf, now)
            if sig is not None:
                out.append(sig)

        out.sort(key=lambda s: (s.strength.rank, s.confluence_score, s.confirmation_pct), reverse=True)
        return out[: self.cfg.max_signals]

    def _build_one(
        self,
        symbol: str,
        candles: Sequence[Candle],
        quad: QuadStochasticData,
        analysis: QuadAnalysis,
        divergences: Sequence[DivergenceDetails],
        signal_type: SignalType,
        reasons: List[str],
        mtf: Optional[MTFAnalysis],
        now: float,
    ) -> Optional[TradeSignal]:
        cfg = self.cfg
        direction = 1 if signal_type == SignalType.LONG else -1

        if not cfg.allow_counter_trend and not check_htf_alignment(analysis, direction):
            opposing = analysis.bearish_count if direction > 0 else analysis.bullish_count
            if opposing > 2:
                log.debug("signal_skipped symbol=%s type=%s reason=counter_trend", symbol, signal_type.value)
                return None

        low_confidence = False
        if mtf is not None:
            alignment = check_signal_alignment(signal_type, mtf)
            if not alignment.accepted:
                log.debug("signal_skipped symbol=%s type=%s reason=%s", symbol, signal_type.value, alignment.reason)
                return None
            low_confidence = alignment.low_confidence
            if low_confidence:
                reasons = reasons + [alignment.reason]

        divergence = next(
            (d for d in divergences if d.type.is_bullish == (direction > 0)),
            None,
        )
        flags = compute_flags(candles, analysis, direction, cfg, mtf)
        score = confluence_score(flags, divergence)
        strength = determine_strength(score, cfg)
        if strength.rank < SignalStrength(cfg.min_strength).rank:
            log.debug("signal_discarded symbol=%s type=%s strength=%s", symbol, signal_type.value, strength.value)
            return None

        ctx = CheckContext(candles, direction, quad, analysis.index, divergence, cfg)
        confirmations, _, confirmation_pct = evaluate_confirmations(ctx)
        if confirmation_pct < cfg.min_confirmation_score:
            log.debug(
                "signal_discarded symbol=%s type=%s confirmation_pct=%.1f", symbol, signal_type.value, confirmation_pct
            )
            return None

        entry = candles[-1].close
        stop = stop_price(candles, signal_type, cfg)
        targets = target_ladder(entry, stop, signal_type, cfg)
        risk = abs(entry - stop)
        rr = abs(targets[0].price - entry) / risk if risk > 0 else 0.0
        candle_time = candles[-1].time

        return TradeSignal(
            id=signal_id(symbol, self.timeframe, signal_type, candle_time, self._sig),
            symbol=symbol,
            type=signal_type,
            strength=strength,
            entry_zone=entry_zone(entry, cfg.entry_spread_pct),
            targets=targets,
            stop_loss=StopLoss(
                initial=stop,
                breakeven=entry,
                trailing=TrailingStop(cfg.trailing_enabled, cfg.trailing_method, cfg.trailing_value),
            ),
            confirmations=confirmations,
            status=SignalStatus.PENDING,
            timestamp=now,
            valid_until=now + cfg.signal_expiry_s,
            confluence_score=score,
            divergence=divergence,
            confluence=flags,
            confirmation_pct=confirmation_pct,
            risk_reward_ratio=rr,
            position_size=position_size(strength, cfg),
            low_confidence=low_confidence,
            candle_time=candle_time,
            timeframe=self.timeframe,
            stoch_states={
                band.value: {"k": st.k, "d": st.d, "k_slope": st.k_slope}
                for band, st in analysis.bands.items()
            },
            notes="\n".join(reasons),
        )
