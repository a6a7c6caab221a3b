from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional
import hashlib
import json
import logging
import os
import yaml

from .errors import InvalidConfig

log = logging.getLogger("config")

STOP_METHODS = ("SWING", "ATR", "PERCENT", "FIXED")
STRENGTHS = ("WEAK", "MODERATE", "STRONG", "SUPER")
WORKER_MODES = ("process", "thread")
PARTIAL_EXIT_POLICIES = ("ladder", "terminal")


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


@dataclass(frozen=True)
class SignalConfig:
    # Stochastic thresholds
    oversold_level: float = 20.0
    overbought_level: float = 80.0

    # Divergence
    min_divergence_angle: float = 7.0
    lookback_period: int = 50
    min_divergence_span: int = 5
    pivot_lookback: int = 3

    # Moving averages / channel / vwap / volume
    ma_fast: int = 20
    ma_slow: int = 50
    ma_trend: int = 200
    bb_period: int = 20
    bb_std: float = 2.0
    vwap_threshold_pct: float = 0.5
    volume_lookback: int = 20
    volume_spike_multiplier: float = 1.5

    # Entry and stop
    entry_spread_pct: float = 0.1
    stop_method: str = "SWING"  # SWING | ATR | PERCENT | FIXED
    swing_lookback: int = 10
    stop_loss_buffer_pct: float = 0.1
    atr_period: int = 14
    atr_multiplier: float = 1.5
    stop_percent: float = 1.0
    stop_amount: float = 0.0

    # Target ladder (risk multiples, exit percentages; T3 takes the remainder)
    target1_rr: float = 1.5
    target1_exit_pct: float = 70.0
    target2_rr: float = 2.5
    target2_exit_pct: float = 20.0
    target3_rr: float = 4.0
    trailing_enabled: bool = True
    trailing_method: str = "MA20"
    trailing_value: float = 0.0
    partial_exit_policy: str = "ladder"  # ladder | terminal

    # Strength and filtering
    super_score: int = 7
    strong_score: int = 5
    moderate_score: int = 3
    min_strength: str = "MODERATE"
    min_confirmation_score: float = 55.0
    required_confirmation_weight: int = 7
    allow_counter_trend: bool = False
    max_signals: int = 3

    # Lifetime and sizing
    signal_expiry_s: float = 300.0
    default_position_size: float = 2.0
    max_position_size: float = 5.0


@dataclass
class WorkerConfig:
    mode: str = "process"  # process | thread
    pool_size: int = 0  # 0 = cpu count
    max_pool_size: int = 8
    timeout_s: float = 10.0
    throttle_ms: int = 500
    scan_delay_s: float = 0.5


@dataclass
class CacheConfig:
    enabled: bool = True
    ttl_s: float = 60.0
    max_size: int = 100


@dataclass
class LifecycleConfig:
    history_limit: int = 100


@dataclass
class WebhookConfig:
    enabled: bool = False
    url: str = ""
    secret: str = ""
    timeout_s: int = 10
    headers: Dict[str, str] = None


@dataclass
class AppConfig:
    name: str = "Quad Stochastic Signals"
    log_level: str = "INFO"
    symbols: List[str] = None
    timeframes: List[str] = None


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    signal: SignalConfig = field(default_factory=SignalConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)


def validate_signal_config(cfg: SignalConfig) -> SignalConfig:
    errors: List[str] = []
    if not (0 <= cfg.oversold_level <= 100):
        errors.append("oversold_level must be within 0..100")
    if not (0 <= cfg.overbought_level <= 100):
        errors.append("overbought_level must be within 0..100")
    if cfg.oversold_level >= cfg.overbought_level:
        errors.append("oversold_level must be below overbought_level")
    if not (0 <= cfg.min_divergence_angle <= 90):
        errors.append("min_divergence_angle must be within 0..90")
    for name in ("lookback_period", "min_divergence_span", "pivot_lookback", "ma_fast", "ma_slow",
                 "ma_trend", "bb_period", "volume_lookback", "swing_lookback", "atr_period", "max_signals"):
        val = getattr(cfg, name)
        if not isinstance(val, int) or isinstance(val, bool) or val < 1:
            errors.append(f"{name} must be an integer >= 1")
    if cfg.stop_method not in STOP_METHODS:
        errors.append(f"stop_method must be one of {', '.join(STOP_METHODS)}")
    if cfg.stop_method == "FIXED" and cfg.stop_amount <= 0:
        errors.append("stop_amount must be > 0 for FIXED stops")
    if cfg.min_strength not in STRENGTHS:
        errors.append(f"min_strength must be one of {', '.join(STRENGTHS)}")
    if cfg.partial_exit_policy not in PARTIAL_EXIT_POLICIES:
        errors.append(f"partial_exit_policy must be one of {', '.join(PARTIAL_EXIT_POLICIES)}")
    if not (0 <= cfg.min_confirmation_score <= 100):
        errors.append("min_confirmation_score must be within 0..100")
    if not (cfg.super_score >= cfg.strong_score >= cfg.moderate_score >= 0):
        errors.append("strength cutoffs must satisfy super >= strong >= moderate >= 0")
    if cfg.target1_exit_pct < 0 or cfg.target2_exit_pct < 0:
        errors.append("target exit percentages must be >= 0")
    if cfg.target1_exit_pct + cfg.target2_exit_pct > 100:
        errors.append("target exit percentages must sum to <= 100")
    if not (0 < cfg.target1_rr < cfg.target2_rr < cfg.target3_rr):
        errors.append("target risk multiples must be positive and increasing")
    if cfg.signal_expiry_s <= 0:
        errors.append("signal_expiry_s must be > 0")
    if cfg.entry_spread_pct < 0 or cfg.stop_loss_buffer_pct < 0:
        errors.append("entry_spread_pct and stop_loss_buffer_pct must be >= 0")
    if errors:
        raise InvalidConfig("; ".join(errors))
    return cfg


def validate_worker_config(cfg: WorkerConfig) -> WorkerConfig:
    if cfg.mode not in WORKER_MODES:
        raise InvalidConfig(f"workers.mode must be one of {', '.join(WORKER_MODES)}")
    if cfg.pool_size < 0 or cfg.max_pool_size < 1:
        raise InvalidConfig("workers.pool_size must be >= 0 and max_pool_size >= 1")
    if cfg.timeout_s <= 0:
        raise InvalidConfig("workers.timeout_s must be > 0")
    if cfg.throttle_ms < 0 or cfg.scan_delay_s < 0:
        raise InvalidConfig("workers.throttle_ms and scan_delay_s must be >= 0")
    return cfg


def config_signature(cfg: SignalConfig) -> str:
    payload = json.dumps(asdict(cfg), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def signal_config_from_dict(raw: Optional[Dict[str, Any]]) -> SignalConfig:
    try:
        cfg = SignalConfig(**(raw or {}))
    except TypeError as e:
        raise InvalidConfig(f"unknown signal config field: {e}") from e
    return validate_signal_config(cfg)


class ConfigStore:
    """Holds the current SignalConfig snapshot; rejected updates leave it untouched."""

    def __init__(self, initial: Optional[SignalConfig] = None):
        self._current = validate_signal_config(initial or SignalConfig())
        self._signature = config_signature(self._current)

    @property
    def current(self) -> SignalConfig:
        return self._current

    @property
    def signature(self) -> str:
        return self._signature

    def replace(self, cfg: SignalConfig) -> SignalConfig:
        try:
            validate_signal_config(cfg)
        except InvalidConfig as e:
            log.warning("config_rejected err=%s", e)
            raise
        self._current = cfg
        self._signature = config_signature(cfg)
        log.info("config_updated sig=%s", self._signature[:12])
        return cfg

    def update(self, **changes: Any) -> SignalConfig:
        try:
            candidate = replace(self._current, **changes)
        except TypeError as e:
            log.warning("config_rejected err=%s", e)
            raise InvalidConfig(str(e)) from e
        return self.replace(candidate)


def load_config(path: Optional[str] = None) -> Config:
    raw: Dict[str, Any] = {}
    if path:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

    try:
        cfg = Config(
            app=AppConfig(**raw.get("app", {})),
            signal=signal_config_from_dict(raw.get("signal", {})),
            workers=WorkerConfig(**raw.get("workers", {})),
            cache=CacheConfig(**raw.get("cache", {})),
            lifecycle=LifecycleConfig(**raw.get("lifecycle", {})),
            webhook=WebhookConfig(**raw.get("webhook", {})),
        )
    except TypeError as e:
        raise InvalidConfig(f"unknown config field: {e}") from e

    # env overrides (useful on servers)
    cfg.app.log_level = _env_override(cfg.app.log_level, "QSS_LOG_LEVEL")
    cfg.workers.mode = _env_override(cfg.workers.mode, "QSS_WORKER_MODE")
    cfg.workers.pool_size = _env_override(cfg.workers.pool_size, "QSS_POOL_SIZE")
    if cfg.app.symbols is None:
        cfg.app.symbols = []
    if cfg.app.timeframes is None:
        cfg.app.timeframes = []

    symbols_env = os.getenv("QSS_SYMBOLS")
    if symbols_env:
        cfg.app.symbols = [x.strip() for x in symbols_env.split(",") if x.strip()]

    cfg.webhook.secret = _env_override(cfg.webhook.secret, "WEBHOOK_SECRET")
    cfg.webhook.url = _env_override(cfg.webhook.url, "WEBHOOK_URL")
    if cfg.webhook.headers is None:
        cfg.webhook.headers = {}

    validate_worker_config(cfg.workers)
    return cfg
