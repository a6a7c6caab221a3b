from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Candle:
    time: int  # seconds, strictly increasing within a stream
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class StochasticValue:
    time: int
    k: float  # NaN during warm-up
    d: float


class Band(str, Enum):
    FAST = "FAST"
    STANDARD = "STANDARD"
    MEDIUM = "MEDIUM"
    SLOW = "SLOW"

    @property
    def params(self) -> Tuple[int, int, int]:
        return BAND_PARAMS[self]

    @property
    def key(self) -> str:
        return self.value.lower()


# (k_period, d_period, smoothing)
BAND_PARAMS: Dict[Band, Tuple[int, int, int]] = {
    Band.FAST: (9, 3, 3),
    Band.STANDARD: (14, 3, 3),
    Band.MEDIUM: (44, 3, 3),
    Band.SLOW: (60, 10, 10),
}


@dataclass(frozen=True)
class QuadStochasticData:
    fast: List[StochasticValue]
    standard: List[StochasticValue]
    medium: List[StochasticValue]
    slow: List[StochasticValue]

    def band(self, band: Band) -> List[StochasticValue]:
        return getattr(self, band.key)

    def items(self) -> List[Tuple[Band, List[StochasticValue]]]:
        return [(b, self.band(b)) for b in Band]


@dataclass(frozen=True)
class BandState:
    band: Band
    k: float
    d: float
    k_slope: float
    d_slope: float
    is_oversold: bool
    is_overbought: bool
    is_bullish: bool
    is_bearish: bool


@dataclass(frozen=True)
class QuadAnalysis:
    time: int  # timestamp every band was evaluated at
    index: int
    bands: Dict[Band, BandState]
    oversold_count: int
    overbought_count: int
    bullish_count: int
    bearish_count: int
    is_quad_aligned: bool
    alignment_direction: int  # 1 bullish, -1 bearish, 0 none
    is_quad_rotating: bool
    rotation_direction: int


class DivergenceType(str, Enum):
    BULLISH = "BULLISH"
    HIDDEN_BULLISH = "HIDDEN_BULLISH"
    BEARISH = "BEARISH"
    HIDDEN_BEARISH = "HIDDEN_BEARISH"

    @property
    def is_bullish(self) -> bool:
        return self in (DivergenceType.BULLISH, DivergenceType.HIDDEN_BULLISH)


@dataclass(frozen=True)
class PivotPoint:
    index: int
    price: float
    stoch_k: float
    time: int


@dataclass(frozen=True)
class DivergenceDetails:
    type: DivergenceType
    angle: float
    price_points: Tuple[PivotPoint, PivotPoint]  # (earlier, recent)
    stoch_points: Tuple[float, float]
    candle_span: int
    band: Band


@dataclass(frozen=True)
class ConfluenceFlags:
    quad_rotation: bool = False
    channel_extreme: bool = False
    twenty_twenty_flag: bool = False
    vwap_confluence: bool = False
    ma_confluence: bool = False
    volume_spike: bool = False
    htf_alignment: bool = False


class SignalType(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class SignalStrength(str, Enum):
    WEAK = "WEAK"
    MODERATE = "MODERATE"
    STRONG = "STRONG"
    SUPER = "SUPER"

    @property
    def rank(self) -> int:
        return _STRENGTH_RANK[self]


_STRENGTH_RANK = {
    SignalStrength.WEAK: 0,
    SignalStrength.MODERATE: 1,
    SignalStrength.STRONG: 2,
    SignalStrength.SUPER: 3,
}


class SignalStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PARTIAL = "PARTIAL"
    TARGET1_HIT = "TARGET1_HIT"
    TARGET2_HIT = "TARGET2_HIT"
    TARGET3_HIT = "TARGET3_HIT"
    STOPPED = "STOPPED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_open(self) -> bool:
        return self in (SignalStatus.PENDING, SignalStatus.ACTIVE, SignalStatus.PARTIAL)


TERMINAL_STATUSES = frozenset(
    {
        SignalStatus.TARGET1_HIT,
        SignalStatus.TARGET2_HIT,
        SignalStatus.TARGET3_HIT,
        SignalStatus.STOPPED,
        SignalStatus.EXPIRED,
    }
)


@dataclass(frozen=True)
class EntryZone:
    min: float
    max: float
    ideal: float

    def contains(self, price: float) -> bool:
        return self.min <= price <= self.max


@dataclass(frozen=True)
class TargetLevel:
    price: float
    percentage: float  # share of the position exited at this level
    reason: str
    rr: float = 0.0


@dataclass(frozen=True)
class TrailingStop:
    enabled: bool = False
    method: str = "MA20"  # MA20 | ATR | PERCENT
    value: float = 0.0


@dataclass(frozen=True)
class StopLoss:
    initial: float
    breakeven: float
    trailing: TrailingStop = field(default_factory=TrailingStop)


@dataclass(frozen=True)
class Confirmation:
    name: str
    weight: int
    passed: bool
    description: str = ""


@dataclass(frozen=True)
class Confirmations:
    required: Tuple[str, ...]
    optional: Tuple[str, ...]
    achieved: Tuple[str, ...]

    @property
    def armed(self) -> bool:
        got = set(self.achieved)
        return all(name in got for name in self.required)


@dataclass(frozen=True)
class TradeSignal:
    id: str
    symbol: str
    type: SignalType
    strength: SignalStrength
    entry_zone: EntryZone
    targets: Tuple[TargetLevel, ...]
    stop_loss: StopLoss
    confirmations: Confirmations
    status: SignalStatus
    timestamp: float  # creation time, seconds
    valid_until: float
    confluence_score: int
    divergence: Optional[DivergenceDetails] = None
    confluence: ConfluenceFlags = field(default_factory=ConfluenceFlags)
    confirmation_pct: float = 0.0
    risk_reward_ratio: float = 0.0
    position_size: float = 0.0
    remaining_pct: float = 100.0
    targets_hit: int = 0
    entry_price: Optional[float] = None
    entry_time: Optional[float] = None
    exit_price: Optional[float] = None
    exit_time: Optional[float] = None
    pnl_percent: Optional[float] = None
    low_confidence: bool = False
    candle_time: int = 0
    timeframe: str = ""
    stoch_states: Dict[str, Dict[str, float]] = field(default_factory=dict)
    notes: str = ""

    @property
    def is_long(self) -> bool:
        return self.type == SignalType.LONG
