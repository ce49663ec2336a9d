"""Module-level worker entry points for the worker pool tests (importable under spawn)."""

from __future__ import annotations

import os
import time

from internal_linker.errors import WorkerCriticalError
from internal_linker.scoring import score_source


def run_job(job, context):
    """
    job = {"value": ..., "mode": ...}

    ok        return value * 2
    fail      raise ValueError
    critical  raise WorkerCriticalError
    sleep     sleep job["seconds"], then return value
    exit      kill the process without reporting
    bogus     send an untagged message, then return value
    progress  report progress twice, then return value
    """
    mode = job.get("mode", "ok")
    value = job.get("value")

    if mode == "fail":
        raise ValueError(f"bad value {value}")
    if mode == "critical":
        raise WorkerCriticalError(f"worker state corrupted by {value}")
    if mode == "sleep":
        time.sleep(job.get("seconds", 30))
        return value
    if mode == "exit":
        os._exit(3)
    if mode == "bogus":
        context.send({"type": "bogus", "task_id": context.task_id})
        return value
    if mode == "progress":
        context.progress(0.5, "half way")
        context.log("almost done", level="info")
        context.progress(1.0, "done")
        return value
    return value * 2


def echo_options(job, context):
    return dict(context.options)


SLOW_SCORE_SECONDS = 0.5


def slow_score(request, context):
    time.sleep(SLOW_SCORE_SECONDS)
    return score_source(request)


def fragile_score(request, context):
    """Scores normally, except sources whose URL contains "boom" break the worker."""
    if "boom" in request.source.url:
        raise WorkerCriticalError(f"index corrupted while scoring {request.source.url}")
    return score_source(request)
