from __future__ import annotations


class InvalidConfig(ValueError):
    """Raised when a config snapshot violates an invariant; the previous config stays in force."""


class WorkerTimeout(TimeoutError):
    def __init__(self, request_id: str, timeout_s: float):
        super().__init__(f"worker request {request_id} timed out after {timeout_s:g}s")
        self.request_id = request_id
        self.timeout_s = timeout_s


class WorkerCrash(RuntimeError):
    def __init__(self, worker_id: int, reason: str):
        super().__init__(f"worker {worker_id} crashed: {reason}")
        self.worker_id = worker_id
        self.reason = reason


class CalculationError(RuntimeError):
    """A handler inside a worker raised; carries the remote traceback text."""

    def __init__(self, message: str, stack: str = ""):
        super().__init__(message)
        self.stack = stack


class InvalidRequest(ValueError):
    pass


class PoolClosed(RuntimeError):
    pass
