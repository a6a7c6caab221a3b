from __future__ import annotations

import asyncio
import itertools
import logging
import os
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Set, Tuple

from .errors import CalculationError, PoolClosed, WorkerCrash, WorkerTimeout
from .protocol import ERROR, READY, encode_request, validate_request
from .workers import Worker, make_worker

log = logging.getLogger("pool")

HARD_MAX_WORKERS = 8


@dataclass
class _Pending:
    future: asyncio.Future
    request_type: str
    worker_id: Optional[int] = None


def pool_size(requested: int = 0, max_size: int = HARD_MAX_WORKERS) -> int:
    cap = max(1, min(max_size, HARD_MAX_WORKERS))
    if requested and requested > 0:
        return min(requested, cap)
    return min(os.cpu_count() or 1, cap)


class ComputeWorkerPool:
    """Fixed set of stateless workers with FIFO queueing and requestId correlation.

    All bookkeeping (pending table, queue, idle set) is touched only on the
    event loop thread; workers report back through `call_soon_threadsafe`.
    """

    def __init__(
        self,
        *,
        size: int = 0,
        max_size: int = HARD_MAX_WORKERS,
        timeout_s: float = 10.0,
        mode: str = "process",
        worker_factory: Optional[Callable[[int], Worker]] = None,
    ):
        self.size = pool_size(size, max_size)
        self.timeout_s = timeout_s
        self._factory = worker_factory or make_worker(mode)
        self._ids = itertools.count(1)
        self._request_ids = itertools.count(1)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._workers: Dict[int, Worker] = {}
        self._idle: Deque[int] = deque()
        self._busy: Dict[int, Optional[str]] = {}
        self._queue: Deque[Tuple[str, Dict[str, Any]]] = deque()
        self._pending: Dict[str, _Pending] = {}
        self._ready_seen: Set[int] = set()
        self._closed = False
        self._metrics = {
            "requests": 0,
            "completed": 0,
            "errors": 0,
            "timeouts": 0,
            "crashes": 0,
            "respawns": 0,
            "late_responses": 0,
        }

    # ----- lifecycle -----
    async def start(self) -> None:
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        for _ in range(self.size):
            self._spawn()
        log.info("pool_started size=%d", self.size)

    def _spawn(self) -> Worker:
        worker = self._factory(next(self._ids))
        self._workers[worker.worker_id] = worker
        worker.start(self._loop, self._on_message, self._on_exit)
        return worker

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for rid, pending in list(self._pending.items()):
            if not pending.future.done():
                pending.future.set_exception(PoolClosed(f"pool closed before {rid} completed"))
        self._pending.clear()
        self._queue.clear()
        for worker in list(self._workers.values()):
            worker.terminate()
        self._workers.clear()
        self._idle.clear()
        self._busy.clear()
        log.info("pool_closed metrics=%s", self._metrics)

    async def __aenter__(self) -> "ComputeWorkerPool":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ----- introspection -----
    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def ready_count(self) -> int:
        return len(self._idle)

    def metrics(self) -> Dict[str, int]:
        return dict(self._metrics)

    async def wait_ready(self, timeout_s: float = 5.0) -> None:
        """Block until every worker has announced READY at least once."""
        deadline = self._loop.time() + timeout_s
        while not set(self._workers) <= self._ready_seen:
            if self._loop.time() >= deadline:
                raise asyncio.TimeoutError("workers did not become ready in time")
            await asyncio.sleep(0.01)

    # ----- requests -----
    async def request(self, request_type: str, payload: Any, *, timeout_s: Optional[float] = None) -> Any:
        if self._closed:
            raise PoolClosed("pool is closed")
        validate_request(request_type, payload)
        if self._loop is None:
            await self.start()

        request_id = f"req-{next(self._request_ids)}"
        future = self._loop.create_future()
        self._pending[request_id] = _Pending(future, request_type)
        self._queue.append((request_id, encode_request(request_type, payload, request_id)))
        self._metrics["requests"] += 1
        self._dispatch()

        timeout = self.timeout_s if timeout_s is None else timeout_s
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            pending = self._pending.pop(request_id, None)
            self._metrics["timeouts"] += 1
            log.warning(
                "request_timeout id=%s type=%s worker=%s timeout_s=%s",
                request_id,
                request_type,
                pending.worker_id if pending else None,
                timeout,
            )
            raise WorkerTimeout(request_id, timeout) from None
        except asyncio.CancelledError:
            self._pending.pop(request_id, None)
            raise

    def _dispatch(self) -> None:
        while self._queue and self._idle:
            request_id, message = self._queue.popleft()
            pending = self._pending.get(request_id)
            if pending is None:
                # timed out while queued
                continue
            worker_id = self._idle.popleft()
            worker = self._workers.get(worker_id)
            if worker is None:
                self._queue.appendleft((request_id, message))
                continue
            pending.worker_id = worker_id
            self._busy[worker_id] = request_id
            try:
                worker.send(message)
            except (BrokenPipeError, EOFError, OSError) as e:
                self._on_exit(worker, f"send failed err={e!r}")

    def _on_message(self, worker: Worker, message: Dict[str, Any]) -> None:
        if self._closed or worker.worker_id not in self._workers:
            return
        msg_type = message.get("type")
        if msg_type == READY:
            self._ready_seen.add(worker.worker_id)
            if worker.worker_id not in self._idle and not self._busy.get(worker.worker_id):
                self._idle.append(worker.worker_id)
            log.debug("worker_ready id=%s", worker.worker_id)
            self._dispatch()
            return

        self._busy[worker.worker_id] = None
        self._idle.append(worker.worker_id)

        request_id = message.get("requestId")
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            self._metrics["late_responses"] += 1
            log.debug("late_response_dropped id=%s type=%s", request_id, msg_type)
        elif msg_type == ERROR:
            body = message.get("payload") or {}
            self._metrics["errors"] += 1
            pending.future.set_exception(CalculationError(body.get("message", "worker error"), body.get("stack", "")))
        else:
            self._metrics["completed"] += 1
            pending.future.set_result(message.get("payload"))
        self._dispatch()

    def _on_exit(self, worker: Worker, reason: str) -> None:
        if self._closed or worker.worker_id not in self._workers:
            return
        self._metrics["crashes"] += 1
        del self._workers[worker.worker_id]
        if worker.worker_id in self._idle:
            self._idle.remove(worker.worker_id)
        request_id = self._busy.pop(worker.worker_id, None)
        log.warning("worker_crashed id=%s in_flight=%s reason=%s", worker.worker_id, request_id, reason)

        if request_id is not None:
            pending = self._pending.pop(request_id, None)
            if pending is not None and not pending.future.done():
                pending.future.set_exception(WorkerCrash(worker.worker_id, reason))
        worker.terminate()

        replacement = self._spawn()
        self._metrics["respawns"] += 1
        log.info("worker_respawned old=%s new=%s", worker.worker_id, replacement.worker_id)
        self._dispatch()
