from __future__ import annotations

import asyncio
import math

from quad_stoch_signals.config import Config, WorkerConfig
from quad_stoch_signals.formatters import describe_quad_state, format_signal_summary
from quad_stoch_signals.models import Candle
from quad_stoch_signals.pipeline import SignalPipeline


def candle(idx: int, close: float, vol: float = 1.0) -> Candle:
    return Candle(time=idx * 60, open=close, high=close * 1.002, low=close * 0.998, close=close, volume=vol)


def wave(n: int = 300, base: float = 50_000.0):
    """Decaying sine wave with a late sell-off, enough to exercise every band."""
    out = []
    for i in range(n):
        drift = -0.0004 * max(0, i - 220) * base
        out.append(candle(i, base + 800 * math.sin(i / 9.0) * math.exp(-i / 400.0) + drift, 1.0 + (i % 7)))
    return out


async def run_async(candles):
    cfg = Config(workers=WorkerConfig(mode="thread", pool_size=2))
    async with SignalPipeline(cfg) as pipeline:
        first = await pipeline.calculate_async("BTCUSDT", candles)
        again = await pipeline.calculate_async("BTCUSDT", candles)
        print("pool result signals:", len(first.signals), "cache stats:", pipeline.cache.stats())
        print("throttle coalesced:", pipeline.throttle.coalesced, "same object:", first is again)


def main():
    candles = wave()
    pipeline = SignalPipeline()
    result = pipeline.calculate("BTCUSDT", candles)
    print("quad:", describe_quad_state(result.analysis))
    print("divergences:", [(d.band.value, d.type.value, round(d.angle, 2)) for d in result.divergences])
    for sig in result.signals:
        print(format_signal_summary(sig))

    last = candles[-1].close
    for step in (0.0, -0.01, 0.02, 0.05):
        changed = pipeline.on_prices({"BTCUSDT": last * (1 + step)}, now=candles[-1].time + 60)
        print(f"price step {step:+.2%}:", [(s.id[:8], s.status.value) for s in changed])

    asyncio.run(run_async(candles))


if __name__ == "__main__":
    main()
