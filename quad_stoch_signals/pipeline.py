from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .cache import ResultCache
from .config import Config, ConfigStore, SignalConfig, config_signature, validate_signal_config
from .engine import CalculationResult, compute_signals
from .indicator_batch import IndicatorResult, IndicatorSpec, compute_indicators
from .lifecycle import POLICIES, SignalLifecycleManager
from .models import Candle, TradeSignal
from .pool import ComputeWorkerPool
from .protocol import CALCULATE_SIGNALS, CalculateSignalsRequest, validate_request
from .throttle import SymbolThrottle

log = logging.getLogger("pipeline")

Fetch = Callable[[str], Awaitable[Sequence[Candle]]]


def _specs_key(specs: Sequence[IndicatorSpec]) -> str:
    return hashlib.sha256(repr(tuple(specs)).encode("utf-8")).hexdigest()[:16]


class SignalPipeline:
    """Owns everything one calculation pipeline needs: config snapshot, cache, pool, throttle, signals.

    Construct one per pipeline and pass it around; nothing here is global.
    """

    def __init__(
        self,
        cfg: Optional[Config] = None,
        *,
        pool: Optional[ComputeWorkerPool] = None,
        cache: Optional[ResultCache] = None,
        manager: Optional[SignalLifecycleManager] = None,
        sinks: Iterable = (),
    ):
        self.cfg = cfg or Config()
        self.config_store = ConfigStore(self.cfg.signal)
        self.cache = cache or ResultCache(ttl_s=self.cfg.cache.ttl_s, max_size=self.cfg.cache.max_size)
        self.manager = manager or SignalLifecycleManager(
            history_limit=self.cfg.lifecycle.history_limit,
            policy=POLICIES[self.config_store.current.partial_exit_policy],
        )
        self.pool = pool
        self._owns_pool = pool is None
        self.throttle = SymbolThrottle(self.cfg.workers.throttle_ms / 1000.0)
        self.sinks = list(sinks)
        self._sink_tasks: Set[asyncio.Task] = set()
        if self.sinks:
            self.manager.subscribe(self._fan_out)

    # ----- config -----
    @property
    def signal_config(self) -> SignalConfig:
        return self.config_store.current

    def update_config(self, **changes) -> SignalConfig:
        """Apply a config change between calculations; raises InvalidConfig and keeps the old snapshot."""
        cfg = self.config_store.update(**changes)
        dropped = self.cache.invalidate("signals:")
        self.manager.policy = POLICIES[cfg.partial_exit_policy]
        log.info("config_applied sig=%s cache_dropped=%d", self.config_store.signature[:12], dropped)
        return cfg

    def _snapshot(self, override: Optional[SignalConfig]) -> SignalConfig:
        if override is None:
            return self.config_store.current
        return validate_signal_config(override)

    def _cache_key(self, symbol: str, timeframe: str, cfg: SignalConfig) -> str:
        if cfg is self.config_store.current:
            sig = self.config_store.signature
        else:
            sig = config_signature(cfg)
        return f"signals:{symbol}:{timeframe}:{sig[:16]}"

    # ----- sync path -----
    def calculate(
        self,
        symbol: str,
        candles: Sequence[Candle],
        config: Optional[SignalConfig] = None,
        *,
        timeframe: str = "",
        tf_data: Optional[Mapping[str, Sequence[Candle]]] = None,
        now: Optional[float] = None,
    ) -> CalculationResult:
        cfg = self._snapshot(config)
        candles = tuple(candles)
        use_cache = self.cfg.cache.enabled and not tf_data
        key = self._cache_key(symbol, timeframe, cfg)

        result = self.cache.get(key, candles) if use_cache else None
        if result is None:
            result = compute_signals(symbol, candles, cfg, timeframe=timeframe, tf_data=tf_data, now=now)
            if use_cache:
                self.cache.set(key, candles, result)
        self._register(result, now)
        return result

    def indicators(self, symbol: str, candles: Sequence[Candle], specs: Sequence[IndicatorSpec]) -> Dict[str, IndicatorResult]:
        candles = tuple(candles)
        key = f"indicators:{symbol}:{_specs_key(specs)}"
        cached = self.cache.get(key, candles) if self.cfg.cache.enabled else None
        if cached is not None:
            return cached
        out = compute_indicators(candles, specs)
        if self.cfg.cache.enabled:
            self.cache.set(key, candles, out)
        return out

    def _register(self, result: CalculationResult, now: Optional[float]) -> Optional[TradeSignal]:
        if not result.signals:
            return None
        # highest ranked candidate becomes the symbol's pending signal
        return self.manager.submit(result.signals[0], now=now)

    # ----- async path -----
    async def start(self) -> None:
        if self.pool is None:
            w = self.cfg.workers
            self.pool = ComputeWorkerPool(size=w.pool_size, max_size=w.max_pool_size, timeout_s=w.timeout_s, mode=w.mode)
        await self.pool.start()

    async def close(self) -> None:
        self.throttle.cancel()
        if self._sink_tasks:
            await asyncio.gather(*self._sink_tasks, return_exceptions=True)
        if self.pool is not None and self._owns_pool:
            await self.pool.close()

    async def __aenter__(self) -> "SignalPipeline":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def calculate_async(
        self,
        symbol: str,
        candles: Sequence[Candle],
        config: Optional[SignalConfig] = None,
        *,
        timeframe: str = "",
        tf_data: Optional[Mapping[str, Sequence[Candle]]] = None,
        now: Optional[float] = None,
    ) -> CalculationResult:
        """Throttled per symbol, computed on the worker pool; malformed input raises before any await."""
        cfg = self._snapshot(config)
        request = CalculateSignalsRequest(
            symbol=symbol,
            candles=tuple(candles),
            config=cfg,
            timeframe=timeframe,
            tf_data={tf: tuple(c) for tf, c in tf_data.items()} if tf_data else None,
            now=now,
        )
        validate_request(CALCULATE_SIGNALS, request)
        return await self.throttle.call(symbol, self._run_remote, request)

    async def _run_remote(self, request: CalculateSignalsRequest) -> CalculationResult:
        if self.pool is None:
            await self.start()
        use_cache = self.cfg.cache.enabled and not request.tf_data
        key = self._cache_key(request.symbol, request.timeframe, request.config)
        result = self.cache.get(key, request.candles) if use_cache else None
        if result is None:
            result = await self.pool.request(CALCULATE_SIGNALS, request)
            if use_cache:
                self.cache.set(key, request.candles, result)
        self._register(result, request.now)
        return result

    def on_prices(self, prices: Mapping[str, float], now: Optional[float] = None) -> List[TradeSignal]:
        """Drive the lifecycle with the latest price per symbol."""
        now = time.time() if now is None else now
        changed: List[TradeSignal] = []
        for symbol, price in prices.items():
            changed.extend(self.manager.on_price(symbol, price, now))
        changed.extend(self.manager.expire_stale(now))
        return changed

    async def scan(
        self, symbols: Iterable[str], fetch: Fetch, *, timeframe: str = ""
    ) -> Tuple[Dict[str, CalculationResult], List[Tuple[str, str]]]:
        """Sequential scan with a fixed delay between symbols; per-symbol failures are collected, not raised."""
        results: Dict[str, CalculationResult] = {}
        failures: List[Tuple[str, str]] = []
        symbols = list(symbols)
        log.info("scan_start symbols=%d", len(symbols))
        for i, sym in enumerate(symbols):
            if i:
                await asyncio.sleep(self.cfg.workers.scan_delay_s)
            try:
                candles = await fetch(sym)
                results[sym] = await self.calculate_async(sym, candles, timeframe=timeframe)
            except Exception as e:
                failures.append((sym, repr(e)))
        if failures:
            for sym, err in failures[:10]:
                log.warning("scan_failed symbol=%s err=%s", sym, err)
        log.info("scan_done ok=%d failed=%d", len(results), len(failures))
        return results, failures

    # ----- sinks -----
    def _fan_out(self, event: str, signal: TradeSignal) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("sink_skipped_no_loop id=%s event=%s", signal.id[:12], event)
            return
        for sink in self.sinks:
            task = loop.create_task(sink.send_signal(event, signal))
            self._sink_tasks.add(task)
            task.add_done_callback(self._sink_tasks.discard)
