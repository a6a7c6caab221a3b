from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from .models import SignalStatus, SignalType, TradeSignal

log = logging.getLogger("lifecycle")

# Given a signal and the 1-based target tier just reached, return the percentage
# of the original position to close at that tier.
PartialExitPolicy = Callable[[TradeSignal, int], float]
Listener = Callable[[str, TradeSignal], None]

_TARGET_STATUS = {
    1: SignalStatus.TARGET1_HIT,
    2: SignalStatus.TARGET2_HIT,
    3: SignalStatus.TARGET3_HIT,
}


def ladder_policy(signal: TradeSignal, tier: int) -> float:
    """Close the tier's configured percentage; the final tier closes whatever is left."""
    if tier >= len(signal.targets):
        return signal.remaining_pct
    return signal.targets[tier - 1].percentage


def exit_all_policy(signal: TradeSignal, tier: int) -> float:
    return signal.remaining_pct


POLICIES: Dict[str, PartialExitPolicy] = {
    "ladder": ladder_policy,
    "terminal": exit_all_policy,
}


def _move_pct(signal: TradeSignal, price: float) -> float:
    entry = signal.entry_price if signal.entry_price is not None else signal.entry_zone.ideal
    if entry == 0:
        return 0.0
    move = (price - entry) / entry * 100.0
    return move if signal.type == SignalType.LONG else -move


def _stop_hit(signal: TradeSignal, price: float) -> bool:
    if signal.type == SignalType.LONG:
        return price <= signal.stop_loss.initial
    return price >= signal.stop_loss.initial


def _target_reached(signal: TradeSignal, tier: int, price: float) -> bool:
    level = signal.targets[tier - 1].price
    if signal.type == SignalType.LONG:
        return price >= level
    return price <= level


def _highest_tier(signal: TradeSignal, price: float) -> int:
    # furthest tier first; tiers already taken are never re-fired
    for tier in range(len(signal.targets), signal.targets_hit, -1):
        if _target_reached(signal, tier, price):
            return tier
    return signal.targets_hit


def advance(
    signal: TradeSignal,
    price: float,
    now: float,
    policy: PartialExitPolicy = ladder_policy,
) -> TradeSignal:
    """Next state of `signal` at `price`/`now`; returns the same object when nothing changes."""
    status = signal.status
    if status.is_terminal:
        return signal

    if status == SignalStatus.PENDING:
        if now > signal.valid_until:
            return replace(signal, status=SignalStatus.EXPIRED, exit_time=now)
        if signal.entry_zone.contains(price) and signal.confirmations.armed:
            return replace(signal, status=SignalStatus.ACTIVE, entry_price=price, entry_time=now)
        return signal

    realized = signal.pnl_percent or 0.0
    if _stop_hit(signal, price):
        pnl = realized + signal.remaining_pct / 100.0 * _move_pct(signal, price)
        return replace(
            signal,
            status=SignalStatus.STOPPED,
            exit_price=price,
            exit_time=now,
            pnl_percent=pnl,
            remaining_pct=0.0,
        )

    tier = _highest_tier(signal, price)
    if tier <= signal.targets_hit:
        return signal

    remaining = signal.remaining_pct
    for t in range(signal.targets_hit + 1, tier + 1):
        staged = replace(signal, remaining_pct=remaining, targets_hit=t - 1)
        closed = max(0.0, min(remaining, policy(staged, t)))
        realized += closed / 100.0 * _move_pct(signal, signal.targets[t - 1].price)
        remaining -= closed

    if remaining <= 1e-9 or tier >= len(signal.targets):
        return replace(
            signal,
            status=_TARGET_STATUS.get(tier, SignalStatus.TARGET3_HIT),
            targets_hit=tier,
            remaining_pct=0.0,
            exit_price=price,
            exit_time=now,
            pnl_percent=realized + max(remaining, 0.0) / 100.0 * _move_pct(signal, price),
        )
    return replace(
        signal,
        status=SignalStatus.PARTIAL,
        targets_hit=tier,
        remaining_pct=remaining,
        pnl_percent=realized,
    )


class SignalLifecycleManager:
    """Sole owner of signal state: one PENDING per symbol, bounded history, change listeners.

    The history is an immutable tuple replaced on every change, so readers holding
    a snapshot never observe a half-applied eviction.
    """

    def __init__(self, *, history_limit: int = 100, policy: PartialExitPolicy = ladder_policy):
        self.history_limit = history_limit
        self.policy = policy
        self._signals: Tuple[TradeSignal, ...] = ()
        self._pending: Dict[str, str] = {}
        self._listeners: List[Listener] = []

    # ----- queries -----
    @property
    def signals(self) -> Tuple[TradeSignal, ...]:
        return self._signals

    def get(self, signal_id: str) -> Optional[TradeSignal]:
        for s in self._signals:
            if s.id == signal_id:
                return s
        return None

    def pending(self, symbol: str) -> Optional[TradeSignal]:
        sid = self._pending.get(symbol)
        return self.get(sid) if sid else None

    def open_signals(self, symbol: Optional[str] = None) -> List[TradeSignal]:
        return [s for s in self._signals if s.status.is_open and (symbol is None or s.symbol == symbol)]

    # ----- listeners -----
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: str, signal: TradeSignal) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, signal)
            except Exception as e:
                log.warning("listener_failed event=%s id=%s err=%s", event, signal.id[:12], e)

    # ----- mutation -----
    def _replace(self, updated: TradeSignal) -> None:
        self._signals = tuple(updated if s.id == updated.id else s for s in self._signals)
        if updated.status != SignalStatus.PENDING and self._pending.get(updated.symbol) == updated.id:
            del self._pending[updated.symbol]

    def submit(self, signal: TradeSignal, now: Optional[float] = None) -> TradeSignal:
        """Register a freshly built PENDING signal, superseding the symbol's previous one."""
        if signal.status != SignalStatus.PENDING:
            raise ValueError(f"only PENDING signals can be submitted, got {signal.status.value}")

        known = self.get(signal.id)
        if known is not None:
            # same candle, same config: already tracked (possibly past PENDING)
            return known

        existing = self.pending(signal.symbol)
        if existing is not None:
            superseded = replace(
                existing,
                status=SignalStatus.EXPIRED,
                exit_time=signal.timestamp if now is None else now,
                notes=(existing.notes + "\nsuperseded").strip(),
            )
            self._replace(superseded)
            self._emit("updated", superseded)

        self._signals = self._signals + (signal,)
        self._pending[signal.symbol] = signal.id
        self._evict()
        log.info(
            "signal_created symbol=%s type=%s strength=%s score=%d id=%s",
            signal.symbol,
            signal.type.value,
            signal.strength.value,
            signal.confluence_score,
            signal.id[:12],
        )
        self._emit("created", signal)
        return signal

    def on_price(self, symbol: str, price: float, now: float) -> List[TradeSignal]:
        """Advance every open signal for `symbol`; returns those whose state changed."""
        changed: List[TradeSignal] = []
        for s in self.open_signals(symbol):
            nxt = advance(s, price, now, self.policy)
            if nxt is s:
                continue
            self._replace(nxt)
            changed.append(nxt)
            log.info(
                "signal_transition symbol=%s id=%s from=%s to=%s price=%s",
                symbol,
                s.id[:12],
                s.status.value,
                nxt.status.value,
                price,
            )
            self._emit("updated", nxt)
        if changed:
            self._evict()
        return changed

    def expire_stale(self, now: float) -> List[TradeSignal]:
        expired: List[TradeSignal] = []
        for s in self._signals:
            if s.status == SignalStatus.PENDING and now > s.valid_until:
                nxt = replace(s, status=SignalStatus.EXPIRED, exit_time=now)
                self._replace(nxt)
                expired.append(nxt)
                self._emit("updated", nxt)
        return expired

    def _evict(self) -> None:
        signals = list(self._signals)
        while len(signals) > self.history_limit:
            victim = next((s for s in signals if not s.status.is_open), None)
            if victim is None:
                break
            signals.remove(victim)
        if len(signals) != len(self._signals):
            self._signals = tuple(signals)
