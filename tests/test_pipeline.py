import asyncio
import math
from dataclasses import replace

import pytest

from quad_stoch_signals.config import CacheConfig, Config, WorkerConfig
from quad_stoch_signals.errors import InvalidConfig, InvalidRequest
from quad_stoch_signals.indicator_batch import SmaSpec
from quad_stoch_signals.models import (
    Candle,
    Confirmations,
    EntryZone,
    SignalStatus,
    SignalStrength,
    SignalType,
    StopLoss,
    TargetLevel,
    TradeSignal,
)
from quad_stoch_signals.pipeline import SignalPipeline


def _wave(n: int = 120):
    out = []
    for i in range(n):
        mid = 100.0 + 8.0 * math.sin(i / 6.0) + 0.02 * i
        out.append(Candle(time=i * 60, open=mid, high=mid + 1.0, low=mid - 1.0, close=mid + 0.3, volume=1.0 + i % 3))
    return out


def _pending(sid: str = "p1", symbol: str = "BTCUSDT") -> TradeSignal:
    return TradeSignal(
        id=sid,
        symbol=symbol,
        type=SignalType.LONG,
        strength=SignalStrength.STRONG,
        entry_zone=EntryZone(99.9, 100.1, 100.0),
        targets=(TargetLevel(103.0, 70.0, "T1"), TargetLevel(105.0, 20.0, "T2"), TargetLevel(108.0, 10.0, "T3")),
        stop_loss=StopLoss(98.0, 100.0),
        confirmations=Confirmations((), (), ()),
        status=SignalStatus.PENDING,
        timestamp=0.0,
        valid_until=300.0,
        confluence_score=5,
    )


def _thread_config() -> Config:
    return Config(workers=WorkerConfig(mode="thread", pool_size=1, throttle_ms=0, scan_delay_s=0.0))


class FakeSink:
    def __init__(self):
        self.events = []

    async def send_signal(self, event, sig):
        self.events.append((event, sig.id, sig.status))
        return True


def test_live_candle_update_served_from_cache():
    pipeline = SignalPipeline()
    candles = _wave()
    first = pipeline.calculate("BTCUSDT", candles, timeframe="15m", now=1000.0)

    live = candles[:-1] + [replace(candles[-1], close=candles[-1].close + 0.5)]
    second = pipeline.calculate("BTCUSDT", live, timeframe="15m", now=1001.0)
    assert second is first
    assert pipeline.cache.hits == 1

    grown = candles + [Candle(time=len(candles) * 60, open=100, high=101, low=99, close=100, volume=1)]
    assert pipeline.calculate("BTCUSDT", grown, timeframe="15m", now=1002.0) is not first


def test_cache_disabled_recomputes():
    pipeline = SignalPipeline(Config(cache=CacheConfig(enabled=False)))
    candles = _wave()
    a = pipeline.calculate("BTCUSDT", candles, now=1000.0)
    b = pipeline.calculate("BTCUSDT", candles, now=1000.0)
    assert a is not b
    assert a.signals == b.signals


def test_insufficient_candles_yield_no_analysis():
    result = SignalPipeline().calculate("BTCUSDT", _wave(30), now=0.0)
    assert result.analysis is None
    assert result.signals == []
    assert result.divergences == []
    assert "insufficient" in result.notes[0]
    assert len(result.quad_data.fast) == 30


def test_config_update_is_atomic_and_clears_cached_results():
    pipeline = SignalPipeline()
    candles = _wave()
    first = pipeline.calculate("BTCUSDT", candles, now=0.0)
    before = pipeline.signal_config

    with pytest.raises(InvalidConfig):
        pipeline.update_config(overbought_level=10.0)
    assert pipeline.signal_config is before

    pipeline.update_config(min_divergence_angle=12.0)
    assert pipeline.signal_config.min_divergence_angle == 12.0
    assert pipeline.calculate("BTCUSDT", candles, now=0.0) is not first


def test_indicators_are_cached_per_spec_set():
    pipeline = SignalPipeline()
    candles = _wave(40)
    a = pipeline.indicators("BTCUSDT", candles, [SmaSpec(3), SmaSpec(0)])
    b = pipeline.indicators("BTCUSDT", candles, [SmaSpec(3), SmaSpec(0)])
    assert a is b
    assert a["sma_3"].ok and not a["sma_0"].ok


def test_prices_drive_registered_signals():
    pipeline = SignalPipeline()
    pipeline.manager.submit(_pending())
    changed = pipeline.on_prices({"BTCUSDT": 100.05}, now=10.0)
    assert [s.status for s in changed] == [SignalStatus.ACTIVE]

    changed = pipeline.on_prices({"BTCUSDT": 97.5}, now=20.0)
    assert [s.status for s in changed] == [SignalStatus.STOPPED]
    assert pipeline.manager.get("p1").exit_price == 97.5


def test_on_prices_expires_stale_pending():
    pipeline = SignalPipeline()
    pipeline.manager.submit(_pending(symbol="ETHUSDT"))
    changed = pipeline.on_prices({}, now=301.0)
    assert [s.status for s in changed] == [SignalStatus.EXPIRED]


def test_async_calculation_on_thread_workers():
    candles = _wave()

    async def run():
        async with SignalPipeline(_thread_config()) as pipeline:
            remote = await pipeline.calculate_async("BTCUSDT", candles, timeframe="15m", now=1000.0)
            with pytest.raises(InvalidRequest):
                await pipeline.calculate_async("BTCUSDT", list(reversed(candles)))
            return remote, pipeline.pool.metrics()

    remote, metrics = asyncio.run(run())
    local = SignalPipeline().calculate("BTCUSDT", candles, timeframe="15m", now=1000.0)
    assert remote.signals == local.signals
    assert remote.analysis == local.analysis
    assert metrics["completed"] == 1


def test_scan_collects_per_symbol_failures():
    candles = _wave()

    async def fetch(symbol):
        if symbol == "DOWN":
            raise ConnectionError("exchange unreachable")
        return candles

    async def run():
        async with SignalPipeline(_thread_config()) as pipeline:
            return await pipeline.scan(["BTCUSDT", "DOWN", "ETHUSDT"], fetch, timeframe="1h")

    results, failures = asyncio.run(run())
    assert sorted(results) == ["BTCUSDT", "ETHUSDT"]
    assert [sym for sym, _ in failures] == ["DOWN"]
    assert "exchange unreachable" in failures[0][1]


def test_scan_keeps_going_after_unexpected_fetch_error():
    candles = _wave()

    async def fetch(symbol):
        if symbol == "BAD":
            raise RuntimeError("upstream 429")
        return candles

    async def run():
        async with SignalPipeline(_thread_config()) as pipeline:
            return await pipeline.scan(["BTCUSDT", "BAD", "ETHUSDT"], fetch)

    results, failures = asyncio.run(run())
    assert sorted(results) == ["BTCUSDT", "ETHUSDT"]
    assert failures == [("BAD", "RuntimeError('upstream 429')")]


def test_sinks_receive_lifecycle_events():
    sink = FakeSink()

    async def run():
        pipeline = SignalPipeline(sinks=[sink])
        pipeline.manager.submit(_pending())
        pipeline.on_prices({"BTCUSDT": 100.0}, now=5.0)
        await pipeline.close()

    asyncio.run(run())
    assert sink.events == [("created", "p1", SignalStatus.PENDING), ("updated", "p1", SignalStatus.ACTIVE)]
