from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import logging
import threading
from typing import Callable

from patchfix.observability import log_event, log_warning_event


LOGGER = logging.getLogger("patchfix.scheduler")


class _TaskQueue:
    """Bounded-concurrency pool with an unbounded backlog.

    Tasks never raise into the pool: failures are logged with the task name and the
    task ends.
    """

    def __init__(self, name: str, concurrency: int) -> None:
        if concurrency < 1:
            raise ValueError(f"{name} concurrency must be >= 1")
        self.name = name
        self.concurrency = concurrency
        self._pool = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=name)
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending = 0
        self._active = 0
        self._peak_active = 0

    @property
    def peak_active(self) -> int:
        with self._lock:
            return self._peak_active

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def submit(self, task_name: str, fn: Callable[[], None]) -> Future[None]:
        with self._lock:
            self._pending += 1
        log_event(LOGGER, "task_enqueued", queue=self.name, task=task_name)
        try:
            future = self._pool.submit(self._run, task_name, fn)
        except RuntimeError:
            self._finish()
            raise
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: Future[None]) -> None:
        # Cancelled tasks never reach _run.
        if future.cancelled():
            self._finish()

    def _run(self, task_name: str, fn: Callable[[], None]) -> None:
        with self._lock:
            self._active += 1
            self._peak_active = max(self._peak_active, self._active)
        try:
            fn()
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "task_failed",
                queue=self.name,
                task=task_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        finally:
            with self._lock:
                self._active -= 1
            self._finish()

    def _finish(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self, *, wait: bool) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=not wait)


class DualStageScheduler:
    """Two independent task pools: mergeability discovery and conflict repair.

    Repair work holds a clone on disk, so it gets its own, smaller, concurrency
    budget; a backlog of slow merges never delays mergeability polling.
    """

    def __init__(self, *, discovery_concurrency: int = 4, repair_concurrency: int = 3) -> None:
        self.discovery = _TaskQueue("discovery", discovery_concurrency)
        self.repair = _TaskQueue("repair", repair_concurrency)

    def submit_discovery(self, task_name: str, fn: Callable[[], None]) -> Future[None]:
        return self.discovery.submit(task_name, fn)

    def submit_repair(self, task_name: str, fn: Callable[[], None]) -> Future[None]:
        return self.repair.submit(task_name, fn)

    def wait_idle(self) -> None:
        # Discovery tasks enqueue repair tasks, so discovery must drain first.
        while True:
            self.discovery.wait_idle()
            self.repair.wait_idle()
            if self.discovery.pending == 0 and self.repair.pending == 0:
                return

    def shutdown(self, *, wait: bool = True) -> None:
        self.discovery.shutdown(wait=wait)
        self.repair.shutdown(wait=wait)
