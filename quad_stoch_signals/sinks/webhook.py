from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..models import TradeSignal

log = logging.getLogger("webhook")


def format_price(x: Optional[float]) -> Optional[float]:
    """Round to 8 decimals so JSON carries no float noise."""
    if x is None:
        return None
    return float(f"{x:.8f}")


def signal_payload(event: str, sig: TradeSignal, secret: str = "") -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "event": event,
        "signal_id": sig.id,
        "symbol": sig.symbol,
        "side": sig.type.value,
        "strength": sig.strength.value,
        "status": sig.status.value,
        "entry_min": format_price(sig.entry_zone.min),
        "entry_max": format_price(sig.entry_zone.max),
        "entry_ideal": format_price(sig.entry_zone.ideal),
        "stop_loss": format_price(sig.stop_loss.initial),
        "targets": [
            {"price": format_price(t.price), "percentage": t.percentage, "reason": t.reason} for t in sig.targets
        ],
        "confluence_score": sig.confluence_score,
        "confirmation_pct": round(sig.confirmation_pct, 1),
        "valid_until": sig.valid_until,
        "low_confidence": sig.low_confidence,
    }
    if secret:
        payload["secret"] = secret
    if sig.timeframe:
        payload["tf"] = sig.timeframe
    if sig.divergence is not None:
        payload["divergence"] = {
            "type": sig.divergence.type.value,
            "band": sig.divergence.band.value,
            "angle": round(sig.divergence.angle, 2),
            "span": sig.divergence.candle_span,
        }
    if sig.exit_price is not None:
        payload["exit_price"] = format_price(sig.exit_price)
        payload["pnl_percent"] = None if sig.pnl_percent is None else round(sig.pnl_percent, 4)
    return payload


class WebhookSink:
    def __init__(self, *, enabled: bool, url: str, secret: str = "", timeout_s: int = 10, headers: Optional[dict] = None):
        self.enabled = bool(enabled)
        self.url = url or ""
        self.secret = secret or ""
        self.timeout_s = int(timeout_s) if timeout_s is not None else 10
        self.headers = headers or {}

    async def send_signal(self, event: str, sig: TradeSignal) -> bool:
        if not self.enabled or not self.url:
            return False

        body = json.dumps(signal_payload(event, sig, self.secret), separators=(",", ":"))
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, data=body, headers={"Content-Type": "application/json", **self.headers}) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        log.warning("webhook_bad_status status=%s body=%s", resp.status, text[:200])
                        return False
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            # delivery failures must not stop signal processing
            log.warning("webhook_post_failed id=%s err=%s", sig.id[:12], e)
            return False
        return True
