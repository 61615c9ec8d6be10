# scheduler.py
from __future__ import annotations

import os
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, Mapping, Optional

from .cache import CacheStore
from .model import FailureKind, Job, JobResult, JobStatus, PipelineConfig, RunResult
from .runner import CancelSignal, JobRunner
from .ui.console import Console, get_console


def _infrastructure_failure(job: Job, message: str) -> JobResult:
    return JobResult(
        job=job.name,
        status=JobStatus.INFRASTRUCTURE_FAILURE,
        failure=FailureKind.INFRASTRUCTURE,
        message=message,
    )


class RunHandle:
    """A pipeline run executing in the background."""

    def __init__(self, run_id: str, config: PipelineConfig):
        self.run_id = run_id
        self.config = config
        self.cancel_event = CancelSignal()
        self._done = threading.Event()
        self._result: Optional[RunResult] = None
        self._error: Optional[BaseException] = None

    def cancel(self) -> None:
        """Ask every in-flight job to stop; queued jobs will not start."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> Optional[RunResult]:
        """Block until the run ends (or `timeout` passes). Returns the result if done."""
        if not self._done.wait(timeout):
            return None
        if self._error is not None:
            raise self._error
        return self._result

    @property
    def result(self) -> Optional[RunResult]:
        return self._result

    def _set(self, result: Optional[RunResult], error: Optional[BaseException] = None) -> None:
        self._result = result
        self._error = error
        self._done.set()


class PipelineScheduler:
    """
    Fans out every job of a pipeline onto a thread pool and aggregates.

    Jobs are independent: they all start together (pool size defaults to the
    number of jobs), a failing job never cancels its siblings, and results
    are reported in declared order regardless of completion order.
    """

    def __init__(
        self,
        cache: Optional[CacheStore] = None,
        *,
        workdir: str | Path = ".",
        max_workers: int | None = None,
        base_env: Optional[Mapping[str, str]] = None,
        console: Optional[Console] = None,
    ):
        self.cache = cache
        self.workdir = Path(workdir).resolve()
        self.max_workers = max_workers
        self.base_env = base_env
        self.console = console or get_console()

    def run(self, config: PipelineConfig, *, cancel: Optional[CancelSignal] = None,
            run_id: str | None = None) -> RunResult:
        run_id = run_id or uuid.uuid4().hex[:12]
        cancel = cancel if cancel is not None else CancelSignal()
        started = time.monotonic()

        # snapshot once per run; jobs only ever see merged copies
        base_env: Dict[str, str] = dict(os.environ if self.base_env is None else self.base_env)
        base_env.update(config.env)
        base_env["CIFLOW_RUN_ID"] = run_id

        jobs = list(config.jobs)
        results: Dict[str, JobResult] = {}
        runner = JobRunner(self.cache, workdir=self.workdir, cancel=cancel, console=self.console)

        workers = self.max_workers or max(1, len(jobs))
        in_flight: Dict[Future, Job] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ciflow-job") as pool:
            for job in jobs:
                try:
                    fut = pool.submit(runner.run, job, base_env)
                except RuntimeError as e:
                    # e.g. "can't start new thread"
                    results[job.name] = _infrastructure_failure(job, f"could not start job: {e}")
                    self.console.print_warning(f"[{job.name}] could not start job: {e}")
                    continue
                in_flight[fut] = job

            for fut in as_completed(in_flight):
                job = in_flight[fut]
                try:
                    results[job.name] = fut.result()
                except Exception as e:
                    results[job.name] = _infrastructure_failure(job, f"job runner crashed: {e}")
                    self.console.print_exception(e)

        return RunResult(
            run_id=run_id,
            pipeline=config.name,
            jobs=tuple(results[j.name] for j in jobs),
            cancelled=cancel.is_set(),
            duration=time.monotonic() - started,
        )

    def submit(self, config: PipelineConfig, *, run_id: str | None = None) -> RunHandle:
        """Start a run in a background thread and return its handle."""
        handle = RunHandle(run_id or uuid.uuid4().hex[:12], config)

        def _target() -> None:
            try:
                result = self.run(config, cancel=handle.cancel_event, run_id=handle.run_id)
            except BaseException as e:
                handle._set(None, e)
                return
            handle._set(result)

        threading.Thread(target=_target, name=f"ciflow-run-{handle.run_id}", daemon=True).start()
        return handle
