from __future__ import annotations

import logging
import time
import traceback
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .config import SignalConfig, validate_signal_config
from .engine import compute_signals, compute_stoch
from .errors import InvalidConfig, InvalidRequest
from .lifecycle import POLICIES, advance
from .models import Candle, TradeSignal

log = logging.getLogger("protocol")

CALCULATE_SIGNALS = "CALCULATE_SIGNALS"
CALCULATE_STOCH_ONLY = "CALCULATE_STOCH_ONLY"
VALIDATE_SIGNAL = "VALIDATE_SIGNAL"

SIGNALS_RESULT = "SIGNALS_RESULT"
STOCH_RESULT = "STOCH_RESULT"
VALIDATION_RESULT = "VALIDATION_RESULT"
ERROR = "ERROR"
READY = "READY"

SLOW_CALL_WARN_MS = 100.0


@dataclass(frozen=True)
class CalculateSignalsRequest:
    symbol: str
    candles: Tuple[Candle, ...]
    config: SignalConfig
    timeframe: str = ""
    tf_data: Optional[Dict[str, Tuple[Candle, ...]]] = None
    now: Optional[float] = None


@dataclass(frozen=True)
class CalculateStochOnlyRequest:
    candles: Tuple[Candle, ...]
    config: SignalConfig


@dataclass(frozen=True)
class ValidateSignalRequest:
    signal: TradeSignal
    price: float
    now: float
    policy: str = "ladder"


REQUEST_TYPES = {
    CALCULATE_SIGNALS: (CalculateSignalsRequest, SIGNALS_RESULT),
    CALCULATE_STOCH_ONLY: (CalculateStochOnlyRequest, STOCH_RESULT),
    VALIDATE_SIGNAL: (ValidateSignalRequest, VALIDATION_RESULT),
}


def _check_candles(candles: Any, what: str = "candles") -> None:
    if not isinstance(candles, tuple):
        raise InvalidRequest(f"{what} must be a tuple of Candle")
    prev: Optional[int] = None
    for c in candles:
        if not isinstance(c, Candle):
            raise InvalidRequest(f"{what} must contain Candle items, got {type(c).__name__}")
        if prev is not None and c.time <= prev:
            raise InvalidRequest(f"{what} must be strictly ascending by time (at {c.time})")
        prev = c.time


def validate_request(request_type: str, payload: Any) -> None:
    """Reject malformed requests before anything is queued."""
    spec = REQUEST_TYPES.get(request_type)
    if spec is None:
        raise InvalidRequest(f"unknown request type: {request_type!r}")
    expected, _ = spec
    if not isinstance(payload, expected):
        raise InvalidRequest(f"{request_type} expects {expected.__name__}, got {type(payload).__name__}")

    if isinstance(payload, (CalculateSignalsRequest, CalculateStochOnlyRequest)):
        _check_candles(payload.candles)
        try:
            validate_signal_config(payload.config)
        except InvalidConfig as e:
            raise InvalidRequest(f"invalid config: {e}") from e
    if isinstance(payload, CalculateSignalsRequest):
        if not payload.symbol:
            raise InvalidRequest("symbol is required")
        for tf, candles in (payload.tf_data or {}).items():
            _check_candles(candles, f"tf_data[{tf}]")
    if isinstance(payload, ValidateSignalRequest):
        if not isinstance(payload.signal, TradeSignal):
            raise InvalidRequest("signal must be a TradeSignal")
        if payload.policy not in POLICIES:
            raise InvalidRequest(f"unknown partial exit policy: {payload.policy!r}")


def encode_request(request_type: str, payload: Any, request_id: str) -> Dict[str, Any]:
    return {"type": request_type, "payload": payload, "requestId": request_id}


def _dispatch(request_type: str, payload: Any) -> Any:
    if request_type == CALCULATE_SIGNALS:
        return compute_signals(
            payload.symbol,
            payload.candles,
            payload.config,
            timeframe=payload.timeframe,
            tf_data=payload.tf_data,
            now=payload.now,
        )
    if request_type == CALCULATE_STOCH_ONLY:
        return compute_stoch(payload.candles, payload.config)
    if request_type == VALIDATE_SIGNAL:
        return advance(payload.signal, payload.price, payload.now, POLICIES[payload.policy])
    raise InvalidRequest(f"unknown request type: {request_type!r}")


def handle_message(message: Mapping[str, Any]) -> Dict[str, Any]:
    """Worker-side entry point: one request in, one response out, never raises."""
    request_id = message.get("requestId")
    request_type = message.get("type")
    t0 = time.perf_counter()
    try:
        validate_request(request_type, message.get("payload"))
        result = _dispatch(request_type, message["payload"])
    except Exception as e:
        return {
            "type": ERROR,
            "payload": {"message": f"{type(e).__name__}: {e}", "stack": traceback.format_exc()},
            "requestId": request_id,
        }
    elapsed_ms = (time.perf_counter() - t0) * 1000.0
    if elapsed_ms > SLOW_CALL_WARN_MS:
        log.warning("slow_calculation type=%s ms=%.1f", request_type, elapsed_ms)
    return {"type": REQUEST_TYPES[request_type][1], "payload": result, "requestId": request_id}
