from __future__ import annotations

import asyncio
import logging
import multiprocessing
import queue
import threading
from typing import Any, Callable, Dict, Optional

from .protocol import READY, handle_message

log = logging.getLogger("workers")

OnMessage = Callable[["Worker", Dict[str, Any]], None]
OnExit = Callable[["Worker", str], None]


class Worker:
    """Transport for one compute worker.

    Callbacks are always invoked on the event loop thread passed to `start`.
    """

    def __init__(self, worker_id: int):
        self.worker_id = worker_id
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_message: Optional[OnMessage] = None
        self._on_exit: Optional[OnExit] = None

    def start(self, loop: asyncio.AbstractEventLoop, on_message: OnMessage, on_exit: OnExit) -> None:
        self._loop = loop
        self._on_message = on_message
        self._on_exit = on_exit

    def send(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    def terminate(self) -> None:
        raise NotImplementedError

    def _post(self, message: Dict[str, Any]) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._on_message, self, message)

    def _exited(self, reason: str) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._on_exit, self, reason)


def _process_main(conn) -> None:
    conn.send({"type": READY})
    while True:
        try:
            message = conn.recv()
        except (EOFError, OSError):
            break
        if message is None:
            break
        conn.send(handle_message(message))
    conn.close()


class ProcessWorker(Worker):
    """Runs requests in a child process; a reader thread forwards replies to the loop."""

    def __init__(self, worker_id: int, *, start_method: str = "spawn"):
        super().__init__(worker_id)
        self._ctx = multiprocessing.get_context(start_method)
        self._conn = None
        self._proc = None
        self._reader: Optional[threading.Thread] = None
        self._stopping = False

    def start(self, loop, on_message, on_exit) -> None:
        super().start(loop, on_message, on_exit)
        parent, child = self._ctx.Pipe()
        self._conn = parent
        self._proc = self._ctx.Process(target=_process_main, args=(child,), daemon=True, name=f"qss-worker-{self.worker_id}")
        self._proc.start()
        child.close()
        self._reader = threading.Thread(target=self._read_loop, daemon=True, name=f"qss-reader-{self.worker_id}")
        self._reader.start()

    def _read_loop(self) -> None:
        while True:
            try:
                message = self._conn.recv()
            except (EOFError, OSError) as e:
                if not self._stopping:
                    code = self._proc.exitcode if self._proc is not None else None
                    self._exited(f"pipe closed exitcode={code} err={e!r}")
                return
            self._post(message)

    def send(self, message: Dict[str, Any]) -> None:
        self._conn.send(message)

    def terminate(self) -> None:
        self._stopping = True
        threading.Thread(target=self._reap, daemon=True, name=f"qss-reaper-{self.worker_id}").start()

    def _reap(self) -> None:
        # joins off the event loop thread; a hung child is killed after the grace period
        if self._conn is not None:
            try:
                self._conn.send(None)
            except OSError as e:
                log.debug("worker_stop_send_failed id=%s err=%s", self.worker_id, e)
        if self._proc is not None:
            self._proc.join(timeout=1.0)
            if self._proc.is_alive():
                self._proc.terminate()
                self._proc.join(timeout=1.0)
        if self._conn is not None:
            self._conn.close()


class ThreadWorker(Worker):
    """Same contract as ProcessWorker, run on a daemon thread."""

    def __init__(self, worker_id: int):
        super().__init__(worker_id)
        self._inbox: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self, loop, on_message, on_exit) -> None:
        super().start(loop, on_message, on_exit)
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"qss-thread-{self.worker_id}")
        self._thread.start()

    def _run(self) -> None:
        self._post({"type": READY})
        while True:
            message = self._inbox.get()
            if message is None:
                return
            try:
                reply = handle_message(message)
            except BaseException as e:
                self._exited(f"thread died err={e!r}")
                raise
            self._post(reply)

    def send(self, message: Dict[str, Any]) -> None:
        self._inbox.put(message)

    def terminate(self) -> None:
        self._inbox.put(None)


def make_worker(mode: str) -> Callable[[int], Worker]:
    if mode == "process":
        return ProcessWorker
    if mode == "thread":
        return ThreadWorker
    raise ValueError(f"unknown worker mode: {mode!r}")
