from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .models import Band, DivergenceDetails, QuadAnalysis, TradeSignal


def _fmt_ts(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:.4f}"


def describe_quad_state(analysis: Optional[QuadAnalysis]) -> str:
    if analysis is None:
        return "Insufficient data"
    parts = []
    if analysis.is_quad_aligned:
        parts.append("Quad BULLISH aligned" if analysis.alignment_direction > 0 else "Quad BEARISH aligned")
    if analysis.is_quad_rotating:
        parts.append("rotating UP" if analysis.rotation_direction > 0 else "rotating DOWN")
    if analysis.oversold_count:
        parts.append(f"{analysis.oversold_count}/4 oversold")
    if analysis.overbought_count:
        parts.append(f"{analysis.overbought_count}/4 overbought")
    if not parts:
        parts.append(f"Mixed ({analysis.bullish_count} bull / {analysis.bearish_count} bear)")
    return ", ".join(parts)


def band_table(analysis: QuadAnalysis) -> str:
    lines = []
    for band in Band:
        st = analysis.bands[band]
        k, d, _ = band.params
        lines.append(f"{band.value:<8} ({k},{d}) K={st.k:6.2f} D={st.d:6.2f} slope={st.k_slope:+.2f}")
    return "\n".join(lines)


def divergence_badge(div: Optional[DivergenceDetails]) -> str:
    if div is None:
        return ""
    return f"{div.type.value} {div.band.value} {div.angle:.1f}deg/{div.candle_span}c"


def format_signal_summary(signal: TradeSignal) -> str:
    lines = [
        f"{signal.type.value} {signal.symbol} [{signal.strength.value}] {signal.status.value}",
        f"Entry: {_fmt_price(signal.entry_zone.min)} - {_fmt_price(signal.entry_zone.max)}",
        f"Stop: {_fmt_price(signal.stop_loss.initial)} | "
        + " | ".join(f"T{i + 1}: {_fmt_price(t.price)} ({t.percentage:g}%)" for i, t in enumerate(signal.targets)),
        f"R:R = 1:{signal.risk_reward_ratio:.2f}",
        f"Confluence: {signal.confluence_score}/10 | Confirmations: {signal.confirmation_pct:.0f}%",
        f"Valid until: {_fmt_ts(signal.valid_until)}",
    ]
    if signal.divergence is not None:
        lines.append(f"Divergence: {divergence_badge(signal.divergence)}")
    if signal.low_confidence:
        lines.append("Low confidence: higher timeframes are choppy")
    if signal.exit_price is not None:
        lines.append(f"Exit: {_fmt_price(signal.exit_price)} PnL: {signal.pnl_percent or 0.0:+.2f}%")
    return "\n".join(lines)
