from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

log = logging.getLogger("throttle")


@dataclass
class _Deferred:
    fn: Callable[..., Awaitable[Any]]
    args: Tuple[Any, ...]
    kwargs: Dict[str, Any]
    future: asyncio.Future
    task: Optional[asyncio.Task] = None
    merged: int = 0


class SymbolThrottle:
    """Per-symbol minimum interval between calculations.

    A call inside the interval is deferred until the interval elapses; further
    calls in the meantime replace its arguments, so the deferred run always uses
    the freshest input and every coalesced caller receives that run's result.
    """

    def __init__(self, interval_s: float = 0.5):
        self.interval_s = interval_s
        self._last_start: Dict[str, float] = {}
        self._deferred: Dict[str, _Deferred] = {}
        self.coalesced = 0

    async def call(self, symbol: str, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        now = loop.time()

        slot = self._deferred.get(symbol)
        if slot is not None:
            slot.fn, slot.args, slot.kwargs = fn, args, kwargs
            slot.merged += 1
            self.coalesced += 1
            return await asyncio.shield(slot.future)

        last = self._last_start.get(symbol)
        if last is None or now - last >= self.interval_s:
            self._last_start[symbol] = now
            return await fn(*args, **kwargs)

        slot = _Deferred(fn, args, kwargs, loop.create_future())
        self._deferred[symbol] = slot
        delay = self.interval_s - (now - last)
        slot.task = loop.create_task(self._fire(symbol, delay))
        return await asyncio.shield(slot.future)

    async def _fire(self, symbol: str, delay: float) -> None:
        await asyncio.sleep(delay)
        slot = self._deferred.pop(symbol)
        self._last_start[symbol] = asyncio.get_running_loop().time()
        if slot.merged:
            log.debug("throttle_coalesced symbol=%s merged=%d", symbol, slot.merged)
        try:
            result = await slot.fn(*slot.args, **slot.kwargs)
        except Exception as e:
            if not slot.future.done():
                slot.future.set_exception(e)
            return
        if not slot.future.done():
            slot.future.set_result(result)

    def cancel(self) -> None:
        for slot in self._deferred.values():
            if slot.task is not None:
                slot.task.cancel()
            if not slot.future.done():
                slot.future.cancel()
        self._deferred.clear()
