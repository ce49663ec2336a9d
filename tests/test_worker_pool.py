import time

import pytest

from internal_linker.errors import (
    DataError,
    PoolShuttingDownError,
    TaskCancelledError,
    TaskFailedError,
    WorkerCriticalError,
)
from internal_linker.messages import LogMessage, ProgressMessage
from internal_linker.worker_pool import (
    Task,
    TaskState,
    WorkerPool,
    WorkerSpec,
    WorkerState,
    default_pool_size,
)

import pool_tasks


def _wait_until(predicate, timeout=30.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def pool():
    p = WorkerPool(WorkerSpec(pool_tasks.run_job), size=2)
    yield p
    p.shutdown()


def test_submit_resolves_with_entry_point_value(pool):
    futures = [pool.submit(Task(f"t{i}", {"value": i})) for i in range(6)]
    assert [f.result(timeout=60) for f in futures] == [0, 2, 4, 6, 8, 10]
    assert pool.completed == 6


def test_fifo_dispatch_with_single_worker():
    with WorkerPool(WorkerSpec(pool_tasks.run_job), size=1) as pool:
        order = []
        futures = []
        for i in range(5):
            future = pool.submit(Task(f"t{i}", {"value": i}))
            future.add_done_callback(lambda f, i=i: order.append(i))
            futures.append(future)
        for f in futures:
            f.result(timeout=60)
        assert order == [0, 1, 2, 3, 4]


def test_task_state_tracks_unresolved_tasks():
    with WorkerPool(WorkerSpec(pool_tasks.run_job), size=1) as pool:
        running = pool.submit(Task("slow", {"value": 1, "mode": "sleep", "seconds": 1}))
        waiting = pool.submit(Task("next", {"value": 2}))
        assert pool.task_state("slow") == TaskState.DISPATCHED
        assert pool.task_state("next") == TaskState.QUEUED
        assert pool.task_state("unknown") is None

        assert running.result(timeout=60) == 1
        assert waiting.result(timeout=60) == 4
        assert pool.task_state("slow") is None
        assert pool.task_state("next") is None


def test_critical_error_fails_one_task_and_restarts_worker():
    tasks = [
        Task(str(i), {"value": i, "mode": "critical" if i == 3 else "ok"})
        for i in range(20)
    ]
    with WorkerPool(WorkerSpec(pool_tasks.run_job), size=4) as pool:
        results = pool.run_all(tasks)

        assert len(results) == 20
        ok = [r for r in results.values() if r.ok]
        failed = [r for r in results.values() if not r.ok]
        assert len(ok) == 19
        assert len(failed) == 1
        assert failed[0].task_id == "3"
        assert isinstance(failed[0].error, WorkerCriticalError)
        assert results["7"].value == 14

        assert pool.wait_idle(timeout=60)
        assert pool.num_workers == 4
        assert pool.restarts == 1
        assert pool.worker_states() == [WorkerState.IDLE] * 4


def test_ordinary_failure_keeps_worker(pool):
    future = pool.submit(Task("bad", {"value": 1, "mode": "fail"}))
    with pytest.raises(TaskFailedError) as excinfo:
        future.result(timeout=60)
    assert excinfo.value.error_type == "ValueError"
    assert "bad value 1" in str(excinfo.value)

    assert pool.submit(Task("good", {"value": 5})).result(timeout=60) == 10
    assert pool.restarts == 0


def test_process_exit_is_critical(pool):
    future = pool.submit(Task("crash", {"mode": "exit"}))
    with pytest.raises(WorkerCriticalError):
        future.result(timeout=60)
    assert pool.wait_idle(timeout=60)
    assert pool.num_workers == 2
    assert pool.submit(Task("after", {"value": 2})).result(timeout=60) == 4


def test_malformed_message_fails_only_that_task(pool):
    future = pool.submit(Task("bogus", {"value": 1, "mode": "bogus"}))
    with pytest.raises(DataError):
        future.result(timeout=60)
    assert pool.wait_idle(timeout=60)
    assert pool.restarts == 0
    assert pool.submit(Task("next", {"value": 3})).result(timeout=60) == 6


def test_progress_and_log_messages_are_forwarded():
    seen = []
    with WorkerPool(WorkerSpec(pool_tasks.run_job), size=1, on_message=seen.append) as pool:
        assert pool.submit(Task("p", {"value": "x", "mode": "progress"})).result(timeout=60) == "x"

    progress = [m for m in seen if isinstance(m, ProgressMessage)]
    logs = [m for m in seen if isinstance(m, LogMessage)]
    assert [m.progress for m in progress] == [0.5, 1.0]
    assert logs[0].message == "almost done"
    assert all(m.task_id == "p" for m in seen)


def test_worker_spec_options_reach_entry_point():
    spec = WorkerSpec(pool_tasks.echo_options, options={"backend": "numpy"})
    with WorkerPool(spec, size=1) as pool:
        assert pool.submit(Task("o", None)).result(timeout=60) == {"backend": "numpy"}


def test_cancel_all_clears_queue_and_restarts_busy_workers():
    with WorkerPool(WorkerSpec(pool_tasks.run_job), size=1) as pool:
        running = pool.submit(Task("long", {"value": 0, "mode": "sleep", "seconds": 60}))
        assert _wait_until(lambda: pool.busy_workers == 1)
        queued = [pool.submit(Task(f"q{i}", {"value": i})) for i in range(3)]
        assert pool.queued == 3

        assert pool.cancel_all() == 4

        for future in [running, *queued]:
            with pytest.raises(TaskCancelledError):
                future.result(timeout=10)
        assert pool.queued == 0
        assert pool.busy_workers == 0
        assert pool.worker_states() == [WorkerState.IDLE]
        assert pool.restarts == 1

        # Cancelled tasks are not retried; the pool stays usable
        assert pool.submit(Task("fresh", {"value": 4})).result(timeout=60) == 8


def test_duplicate_task_id_is_rejected(pool):
    pool.submit(Task("same", {"value": 0, "mode": "sleep", "seconds": 60}))
    with pytest.raises(DataError):
        pool.submit(Task("same", {"value": 1}))
    pool.cancel_all()


def test_shutdown_cancels_and_rejects_new_work():
    pool = WorkerPool(WorkerSpec(pool_tasks.run_job), size=1)
    running = pool.submit(Task("long", {"value": 0, "mode": "sleep", "seconds": 60}))
    queued = pool.submit(Task("queued", {"value": 1}))
    pool.shutdown()

    for future in (running, queued):
        with pytest.raises(TaskCancelledError):
            future.result(timeout=10)
    assert pool.num_workers == 0
    with pytest.raises(PoolShuttingDownError):
        pool.submit(Task("late", {"value": 2}))
    # Idempotent
    pool.shutdown()


def test_unpicklable_payload_fails_task(pool):
    future = pool.submit(Task("lambda", {"value": lambda: None}))
    with pytest.raises(DataError):
        future.result(timeout=10)
    assert pool.submit(Task("ok", {"value": 1})).result(timeout=60) == 2


@pytest.mark.parametrize("cpus, expected", [(1, 2), (2, 4), (8, 16), (32, 16), (None, 2)])
def test_default_pool_size(monkeypatch, cpus, expected):
    monkeypatch.setattr("internal_linker.worker_pool.os.cpu_count", lambda: cpus)
    assert default_pool_size() == expected
