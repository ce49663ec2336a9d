"""
Fixed-size process pool with FIFO dispatch, failure isolation, critical-error
restart and cancellation.

Each worker is a spawned OS process running one task at a time. The pool
talks to it over a private Pipe: the pool sends ``(task_id, payload)`` and
the worker answers with tagged messages (see messages.py). One monitor
thread waits on every worker connection and process sentinel and applies
each event under the pool lock, so worker bookkeeping has a single owner.

Worker life cycle:  Idle -> Busy -> Idle
                    Busy -> Restarting -> Idle   (critical failure, cancellation)
Task life cycle:    Queued -> Dispatched -> Completed | Failed | Cancelled

Usage:
    from internal_linker.worker_pool import WorkerPool, WorkerSpec

    with WorkerPool(WorkerSpec(score_task), size=4) as pool:
        future = pool.submit(Task("source-1", request))
        result = future.result()
"""

from __future__ import annotations

import logging
import multiprocessing as mp
import os
import pickle
import threading
import time
import traceback
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import Future, as_completed
from dataclasses import dataclass, field
from enum import Enum
from multiprocessing.connection import wait
from typing import Any

from internal_linker.errors import (
    DataError,
    PoolShuttingDownError,
    TaskCancelledError,
    TaskFailedError,
    WorkerCriticalError,
)
from internal_linker.messages import (
    ErrorMessage,
    LogMessage,
    Message,
    ProgressMessage,
    ResultMessage,
    parse_message,
)

log = logging.getLogger("internal_linker.worker_pool")


# =============================================================================
# Configuration
# =============================================================================

MAX_POOL_SIZE = 16
MONITOR_POLL_SECONDS = 0.5
JOIN_TIMEOUT_SECONDS = 5.0


def default_pool_size() -> int:
    """A small multiple of the available cores, bounded above."""
    return min(2 * (os.cpu_count() or 1), MAX_POOL_SIZE)


# =============================================================================
# Public types
# =============================================================================


@dataclass(frozen=True)
class WorkerSpec:
    """
    Everything needed to (re)create a worker.

    ``entry_point`` must be a module-level callable ``fn(payload, context)``
    so spawned processes can import it. ``options`` is handed to every task
    through ``context.options``.
    """
    entry_point: Callable[[Any, WorkerContext], Any]
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Task:
    id: str
    payload: Any = None


@dataclass
class TaskResult:
    task_id: str
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, TaskCancelledError)


class WorkerState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class TaskState(str, Enum):
    QUEUED = "queued"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# Worker process side
# =============================================================================


class WorkerContext:
    """Handle given to an entry point for reporting progress and logs."""

    def __init__(self, worker_id: int, options: dict[str, Any], conn: Any):
        self.worker_id = worker_id
        self.options = options
        self.task_id: str | None = None
        self._conn = conn

    def send(self, message: dict[str, Any]) -> None:
        self._conn.send(message)

    def progress(self, fraction: float, message: str = "") -> None:
        self.send(ProgressMessage(self.task_id, fraction, message).to_wire())

    def log(self, message: str, level: str = "info") -> None:
        self.send(LogMessage(self.task_id, level, message).to_wire())


def _worker_main(spec: WorkerSpec, conn: Any, worker_id: int) -> None:
    """Worker loop: receive a task, run it, report exactly one outcome."""
    context = WorkerContext(worker_id, spec.options, conn)
    while True:
        try:
            job = conn.recv()
        except (EOFError, OSError):
            return
        if job is None:
            return

        task_id, payload = job
        context.task_id = task_id
        try:
            value = spec.entry_point(payload, context)
        except (WorkerCriticalError, MemoryError) as e:
            conn.send(
                ErrorMessage(
                    task_id, str(e) or type(e).__name__, type(e).__name__,
                    traceback.format_exc(), critical=True,
                ).to_wire()
            )
            # The pool restarts this worker
            return
        except Exception as e:
            conn.send(
                ErrorMessage(task_id, str(e), type(e).__name__, traceback.format_exc()).to_wire()
            )
        else:
            try:
                conn.send(ResultMessage(task_id, value).to_wire())
            except (pickle.PicklingError, TypeError, AttributeError) as e:
                conn.send(
                    ErrorMessage(
                        task_id, f"Result is not picklable: {e}", type(e).__name__,
                        traceback.format_exc(),
                    ).to_wire()
                )
        finally:
            context.task_id = None


# =============================================================================
# Pool side bookkeeping
# =============================================================================


@dataclass(eq=False)
class _PendingTask:
    task: Task
    future: Future
    state: TaskState = TaskState.QUEUED
    worker_id: int | None = None


@dataclass(eq=False)
class _Worker:
    worker_id: int
    process: Any
    conn: Any
    state: WorkerState = WorkerState.IDLE
    current: _PendingTask | None = None


# =============================================================================
# Worker Pool
# =============================================================================


class WorkerPool:
    """
    Fixed set of worker processes fed from one FIFO queue.

    Every submitted task resolves its Future exactly once: with the entry
    point's return value, TaskFailedError (ordinary exception, worker kept),
    WorkerCriticalError (worker restarted), DataError (malformed message)
    or TaskCancelledError.
    """

    def __init__(
        self,
        spec: WorkerSpec,
        size: int | None = None,
        on_message: Callable[[Message], None] | None = None,
        start_method: str = "spawn",
    ):
        self.spec = spec
        self.size = size or default_pool_size()
        if self.size < 1:
            raise DataError(f"Pool size must be positive, got {self.size}")
        self.on_message = on_message
        self._ctx = mp.get_context(start_method)

        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._queue: deque[_PendingTask] = deque()
        self._tasks: dict[str, _PendingTask] = {}
        self._workers: list[_Worker] = []
        self._restart_threads: list[threading.Thread] = []
        self._closing = False
        self._stopped = False

        self.completed = 0
        self.failed = 0
        self.cancelled = 0
        self.restarts = 0

        self._wakeup_r, self._wakeup_w = self._ctx.Pipe(duplex=False)
        for worker_id in range(self.size):
            self._workers.append(self._spawn(worker_id))

        self._monitor = threading.Thread(
            target=self._monitor_loop, name="worker-pool-monitor", daemon=True
        )
        self._monitor.start()
        log.info("worker pool started with %d workers", self.size)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def num_workers(self) -> int:
        """Worker slots owned by the pool (restarting slots included)."""
        with self._lock:
            return sum(1 for w in self._workers if w.state != WorkerState.STOPPED)

    @property
    def busy_workers(self) -> int:
        with self._lock:
            return sum(1 for w in self._workers if w.state == WorkerState.BUSY)

    @property
    def queued(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def is_shutting_down(self) -> bool:
        return self._closing

    def worker_states(self) -> list[WorkerState]:
        with self._lock:
            return [w.state for w in self._workers]

    def task_state(self, task_id: str) -> TaskState | None:
        """State of a task that has not resolved yet, else None."""
        with self._lock:
            pending = self._tasks.get(task_id)
            return None if pending is None else pending.state

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self, task: Task) -> Future:
        """Queue a task; the Future resolves with its outcome."""
        future: Future = Future()
        with self._lock:
            if self._closing:
                raise PoolShuttingDownError("Worker pool is shutting down")
            if task.id in self._tasks:
                raise DataError(f"Task id {task.id!r} is already queued or running")
            pending = _PendingTask(task, future)
            self._tasks[task.id] = pending
            self._queue.append(pending)
            self._dispatch_locked()
        return future

    def run_all(self, tasks: Iterable[Task]) -> dict[str, TaskResult]:
        """Submit every task and collect the outcomes keyed by task id."""
        futures = {self.submit(task): task.id for task in tasks}
        results: dict[str, TaskResult] = {}
        for future in as_completed(futures):
            task_id = futures[future]
            try:
                results[task_id] = TaskResult(task_id, value=future.result())
            except Exception as e:
                results[task_id] = TaskResult(task_id, error=e)
        return results

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no task is pending and every worker is idle."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while self._tasks or any(w.state != WorkerState.IDLE for w in self._workers):
                if self._stopped:
                    return False
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._changed.wait(remaining if remaining is not None else MONITOR_POLL_SECONDS)
            return True

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _dispatch_locked(self) -> None:
        """Assign the oldest queued task to the first idle worker, repeatedly."""
        while self._queue:
            worker = next((w for w in self._workers if w.state == WorkerState.IDLE), None)
            if worker is None:
                return
            pending = self._queue.popleft()
            if not pending.future.set_running_or_notify_cancel():
                # Future.cancel() was called by the submitter while queued
                self._tasks.pop(pending.task.id, None)
                self.cancelled += 1
                continue
            try:
                worker.conn.send((pending.task.id, pending.task.payload))
            except (pickle.PicklingError, TypeError, AttributeError) as e:
                self._tasks.pop(pending.task.id, None)
                pending.state = TaskState.FAILED
                self.failed += 1
                pending.future.set_exception(DataError(f"Task payload is not picklable: {e}"))
                continue
            except OSError:
                log.warning("worker %d pipe is broken, failing its task and restarting", worker.worker_id)
                self._tasks.pop(pending.task.id, None)
                pending.state = TaskState.FAILED
                self.failed += 1
                pending.future.set_exception(WorkerCriticalError(f"worker {worker.worker_id} is unreachable"))
                self._restart_async_locked(worker)
                continue
            worker.state = WorkerState.BUSY
            worker.current = pending
            pending.state = TaskState.DISPATCHED
            pending.worker_id = worker.worker_id
        self._changed.notify_all()

    def _finish_locked(self, worker: _Worker) -> None:
        """Free a worker after its task's terminal outcome, then dispatch."""
        worker.current = None
        worker.state = WorkerState.IDLE
        self._dispatch_locked()
        self._changed.notify_all()

    # -------------------------------------------------------------------------
    # Monitor thread
    # -------------------------------------------------------------------------

    def _monitor_loop(self) -> None:
        while True:
            with self._lock:
                if self._stopped:
                    return
                watched = [
                    w for w in self._workers
                    if w.state in (WorkerState.IDLE, WorkerState.BUSY)
                ]
                by_conn = {w.conn: w for w in watched}
                by_sentinel = {w.process.sentinel: w for w in watched}

            try:
                ready = wait([self._wakeup_r, *by_conn, *by_sentinel], timeout=MONITOR_POLL_SECONDS)
            except (OSError, ValueError):
                # A connection was closed by a restart between snapshot and wait
                continue

            for obj in ready:
                if obj is self._wakeup_r:
                    self._drain_wakeups()
                elif obj in by_conn:
                    self._read_worker(by_conn[obj])
            for obj in ready:
                if obj in by_sentinel:
                    worker = by_sentinel[obj]
                    # Messages sent right before exiting are still in the pipe
                    self._read_worker(worker)
                    self._on_worker_exit(worker)

    def _wake_monitor(self) -> None:
        try:
            self._wakeup_w.send(None)
        except OSError:
            pass

    def _drain_wakeups(self) -> None:
        try:
            while self._wakeup_r.poll():
                self._wakeup_r.recv()
        except (EOFError, OSError):
            pass

    def _read_worker(self, worker: _Worker) -> None:
        try:
            while worker.conn.poll():
                raw = worker.conn.recv()
                self._handle_message(worker, raw)
        except (EOFError, OSError):
            self._on_worker_exit(worker)

    def _handle_message(self, worker: _Worker, raw: Any) -> None:
        with self._lock:
            if worker not in self._workers:
                return
            pending = worker.current
            try:
                message = parse_message(raw)
            except DataError as e:
                log.error("worker %d sent a malformed message: %s", worker.worker_id, e)
                # The task fails; the worker stays busy until it reports a terminal outcome
                if pending is not None and not pending.future.done():
                    self._tasks.pop(pending.task.id, None)
                    pending.state = TaskState.FAILED
                    self.failed += 1
                    pending.future.set_exception(e)
                return

            if pending is None or message.task_id != pending.task.id:
                log.warning(
                    "worker %d: dropping %s for task %s (current: %s)",
                    worker.worker_id,
                    type(message).__name__,
                    message.task_id,
                    None if pending is None else pending.task.id,
                )
                return

            if isinstance(message, ResultMessage):
                if not pending.future.done():
                    self._tasks.pop(pending.task.id, None)
                    pending.state = TaskState.COMPLETED
                    self.completed += 1
                    pending.future.set_result(message.value)
                self._finish_locked(worker)
            elif isinstance(message, ErrorMessage):
                if message.critical:
                    error: Exception = WorkerCriticalError(message.message)
                else:
                    error = TaskFailedError(message.message, message.error_type, message.traceback)
                if not pending.future.done():
                    self._tasks.pop(pending.task.id, None)
                    pending.state = TaskState.FAILED
                    self.failed += 1
                    pending.future.set_exception(error)
                if message.critical:
                    log.warning(
                        "worker %d hit a critical error on task %s: %s",
                        worker.worker_id, pending.task.id, message.message,
                    )
                    worker.current = None
                    self._restart_async_locked(worker)
                else:
                    log.info("task %s failed: %s: %s", pending.task.id, message.error_type, message.message)
                    self._finish_locked(worker)

        if isinstance(message, LogMessage):
            log.log(message.levelno, "[worker %d] %s", worker.worker_id, message.message)
        if isinstance(message, (ProgressMessage, LogMessage)) and self.on_message is not None:
            try:
                self.on_message(message)
            except Exception:
                log.exception("on_message callback failed")

    def _on_worker_exit(self, worker: _Worker) -> None:
        """The worker process died (or closed its pipe) outside of a restart."""
        with self._lock:
            if worker not in self._workers or worker.state not in (WorkerState.IDLE, WorkerState.BUSY):
                return
            exitcode = worker.process.exitcode
            pending = worker.current
            worker.current = None
            if pending is not None and not pending.future.done():
                self._tasks.pop(pending.task.id, None)
                pending.state = TaskState.FAILED
                self.failed += 1
                pending.future.set_exception(
                    WorkerCriticalError(f"worker {worker.worker_id} exited with code {exitcode}")
                )
            if self._closing:
                worker.state = WorkerState.STOPPED
                self._changed.notify_all()
                return
            log.warning("worker %d exited unexpectedly (code %s), restarting", worker.worker_id, exitcode)
            self._restart_async_locked(worker)

    # -------------------------------------------------------------------------
    # Worker (re)creation
    # -------------------------------------------------------------------------

    def _spawn(self, worker_id: int) -> _Worker:
        parent_conn, child_conn = self._ctx.Pipe()
        process = self._ctx.Process(
            target=_worker_main,
            args=(self.spec, child_conn, worker_id),
            name=f"linker-worker-{worker_id}",
            daemon=True,
        )
        process.start()
        child_conn.close()
        return _Worker(worker_id, process, parent_conn)

    @staticmethod
    def _stop_process(worker: _Worker, graceful: bool = False) -> None:
        process = worker.process
        if graceful and process.is_alive():
            try:
                worker.conn.send(None)
            except OSError:
                pass
            process.join(JOIN_TIMEOUT_SECONDS)
        if process.is_alive():
            process.terminate()
            process.join(JOIN_TIMEOUT_SECONDS)
        if process.is_alive():
            process.kill()
            process.join()
        worker.conn.close()

    def _replace(self, worker: _Worker) -> None:
        """Tear down ``worker`` and install a fresh process in its slot."""
        self._stop_process(worker)
        replacement = None if self._closing else self._spawn(worker.worker_id)
        with self._lock:
            slot = self._workers.index(worker) if worker in self._workers else None
            if self._closing or slot is None:
                if slot is not None:
                    worker.state = WorkerState.STOPPED
                self._changed.notify_all()
            else:
                self._workers[slot] = replacement
                replacement = None
                self.restarts += 1
                log.info("worker %d restarted", worker.worker_id)
                self._dispatch_locked()
                self._changed.notify_all()
        if replacement is not None:
            self._stop_process(replacement)
        self._wake_monitor()

    def _restart_async_locked(self, worker: _Worker) -> None:
        worker.state = WorkerState.RESTARTING
        thread = threading.Thread(
            target=self._replace, args=(worker,), name=f"worker-restart-{worker.worker_id}", daemon=True
        )
        self._restart_threads = [t for t in self._restart_threads if t.is_alive()]
        self._restart_threads.append(thread)
        thread.start()
        self._changed.notify_all()

    # -------------------------------------------------------------------------
    # Cancellation and shutdown
    # -------------------------------------------------------------------------

    def _cancel_locked(self) -> tuple[list[_PendingTask], list[_Worker]]:
        cancelled = list(self._queue)
        self._queue.clear()
        busy = [w for w in self._workers if w.state == WorkerState.BUSY]
        for worker in busy:
            cancelled.append(worker.current)
            worker.current = None
            worker.state = WorkerState.RESTARTING
        for pending in cancelled:
            self._tasks.pop(pending.task.id, None)
            pending.state = TaskState.CANCELLED
        return cancelled, busy

    def _resolve_cancelled(self, cancelled: list[_PendingTask]) -> int:
        count = 0
        for pending in cancelled:
            if pending.future.done():
                continue
            pending.future.set_exception(TaskCancelledError(f"Task {pending.task.id} was cancelled"))
            count += 1
        with self._lock:
            self.cancelled += count
        return count

    def cancel_all(self) -> int:
        """
        Cancel every queued and running task.

        Queued futures and in-flight futures fail with TaskCancelledError,
        busy workers are torn down and restarted before this returns.

        Returns:
            Number of futures cancelled
        """
        with self._lock:
            cancelled, busy = self._cancel_locked()
        count = self._resolve_cancelled(cancelled)
        for worker in busy:
            self._replace(worker)
        if count:
            log.info("cancelled %d task(s), restarted %d worker(s)", count, len(busy))
        return count

    def shutdown(self) -> None:
        """Cancel everything, stop every worker; later submissions fail fast."""
        with self._lock:
            if self._closing:
                return
            self._closing = True
            cancelled, busy = self._cancel_locked()
        self._resolve_cancelled(cancelled)

        for thread in list(self._restart_threads):
            thread.join()

        with self._lock:
            workers = list(self._workers)
        for worker in workers:
            if worker.state != WorkerState.STOPPED:
                self._stop_process(worker, graceful=worker not in busy)
                with self._lock:
                    worker.state = WorkerState.STOPPED

        with self._lock:
            self._stopped = True
            self._workers.clear()
            self._changed.notify_all()
        self._wake_monitor()
        self._monitor.join(JOIN_TIMEOUT_SECONDS)
        self._wakeup_r.close()
        self._wakeup_w.close()
        log.info(
            "worker pool shut down (completed=%d failed=%d cancelled=%d restarts=%d)",
            self.completed, self.failed, self.cancelled, self.restarts,
        )

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()


# =============================================================================
# Module exports
# =============================================================================

__all__ = [
    "Task",
    "TaskResult",
    "TaskState",
    "WorkerContext",
    "WorkerPool",
    "WorkerSpec",
    "WorkerState",
    "default_pool_size",
]
