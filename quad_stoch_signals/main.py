from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, List

from .config import load_config
from .errors import InvalidConfig
from .formatters import band_table, describe_quad_state, divergence_badge, format_signal_summary
from .models import Candle
from .pipeline import SignalPipeline
from .sinks.webhook import WebhookSink


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def load_candles(path: str, default_symbol: str) -> Dict[str, List[Candle]]:
    """Read `[{time, open, high, low, close, volume}, ...]` or `{symbol: [...]}` from JSON."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if isinstance(raw, list):
        raw = {default_symbol: raw}
    out: Dict[str, List[Candle]] = {}
    for sym, rows in raw.items():
        out[sym] = [
            Candle(
                time=int(r["time"]),
                open=float(r["open"]),
                high=float(r["high"]),
                low=float(r["low"]),
                close=float(r["close"]),
                volume=float(r.get("volume", 0.0)),
            )
            for r in rows
        ]
    return out


def _report(symbol: str, result) -> None:
    print(f"== {symbol} ==")
    print(describe_quad_state(result.analysis))
    if result.analysis is not None:
        print(band_table(result.analysis))
    for div in result.divergences:
        print(f"divergence: {divergence_badge(div)}")
    for sig in result.signals:
        print(format_signal_summary(sig))
        print()
    if not result.signals:
        print("no signals")


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Quad stochastic signal engine")
    p.add_argument("--config", help="Path to YAML config")
    p.add_argument("--candles", required=True, help="JSON file with candles (list, or {symbol: list})")
    p.add_argument("--symbol", default="SYMBOL", help="Symbol name when the candle file is a bare list")
    p.add_argument("--timeframe", default="", help="Timeframe label attached to signals")
    p.add_argument("--workers", action="store_true", help="Compute on the worker pool instead of inline")
    p.add_argument("--log-level", help="Override app.log_level")
    args = p.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except InvalidConfig as e:
        print(f"invalid config: {e}", file=sys.stderr)
        return 2
    _setup_logging(args.log_level or cfg.app.log_level)

    data = load_candles(args.candles, args.symbol)
    sinks = []
    if cfg.webhook.enabled:
        sinks.append(
            WebhookSink(
                enabled=cfg.webhook.enabled,
                url=cfg.webhook.url,
                secret=cfg.webhook.secret,
                timeout_s=cfg.webhook.timeout_s,
                headers=cfg.webhook.headers,
            )
        )

    async def _run() -> None:
        pipeline = SignalPipeline(cfg, sinks=sinks)
        try:
            if args.workers:
                await pipeline.start()

                async def _fetch(sym: str) -> List[Candle]:
                    return data[sym]

                results, failures = await pipeline.scan(list(data), _fetch, timeframe=args.timeframe)
                for sym, result in results.items():
                    _report(sym, result)
                for sym, err in failures:
                    print(f"{sym}: failed {err}", file=sys.stderr)
            else:
                for sym, candles in data.items():
                    _report(sym, pipeline.calculate(sym, candles, timeframe=args.timeframe))
        finally:
            await pipeline.close()

    try:
        asyncio.run(_run())
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
