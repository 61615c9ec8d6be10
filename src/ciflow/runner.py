# runner.py
from __future__ import annotations

import shutil
import tarfile
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Mapping, Optional

from .cache import CacheStore, key_for_step, pack_paths, unpack_blob
from .conditions import compile_condition
from .errors import CacheError, InfrastructureFailure
from .executor import execute
from .model import (
    ExecutionContext,
    FailureKind,
    Job,
    JobResult,
    JobStatus,
    Step,
    StepResult,
    StepStatus,
)
from .ui.console import Console, get_console

# default home of the file cache; never copied into a job workspace
_NOT_COPIED = shutil.ignore_patterns(".ciflow")


class CancelSignal(threading.Event):
    """
    Run-wide cancellation flag.

    `set()` waits for a cache write that already passed its cancellation
    check, so every write is either committed before the cancel or not made.
    """

    def __init__(self) -> None:
        super().__init__()
        self._commit = threading.Lock()

    def set(self) -> None:
        with self._commit:
            super().set()

    @contextmanager
    def commit(self) -> Iterator[bool]:
        """Hold cancellation off for the block; yields False if already cancelled."""
        with self._commit:
            yield not self.is_set()


def _prepare_workspace(job: Job, source: Path) -> Path:
    """
    Create the job's scratch directory:

      workspace/  private copy of `source`, the job's working directory
      tmp/        exported as CIFLOW_TEMP

    The caller removes the whole directory when the job ends.
    """
    try:
        scratch = Path(tempfile.mkdtemp(prefix=f"ciflow-{job.name}-"))
    except OSError as e:
        raise InfrastructureFailure(message=f"could not create job workspace: {e}", job=job.name) from e
    try:
        (scratch / "tmp").mkdir()
        shutil.copytree(source, scratch / "workspace", symlinks=True, ignore=_NOT_COPIED)
    except OSError as e:
        shutil.rmtree(scratch, ignore_errors=True)
        raise InfrastructureFailure(
            message=f"could not copy {source} into job workspace: {e}", job=job.name
        ) from e
    return scratch


class JobRunner:
    """
    Runs one job's steps in declared order.

      - runs each job in its own copy of `workdir`, discarded afterwards
      - merges base env <- job env <- step env (later wins)
      - skips steps whose predicate is false
      - restores/stores cache artifacts around cache-eligible steps
      - stops at the first failing step (fail-fast)
    """

    def __init__(
        self,
        cache: Optional[CacheStore] = None,
        *,
        workdir: str | Path = ".",
        cancel: Optional[CancelSignal] = None,
        console: Optional[Console] = None,
    ):
        self.cache = cache
        self.workdir = Path(workdir).resolve()
        self.cancel = cancel if cancel is not None else CancelSignal()
        self.console = console or get_console()

    def run(self, job: Job, base_env: Mapping[str, str]) -> JobResult:
        started = time.monotonic()
        if self.cancel.is_set():
            return JobResult(job=job.name, status=JobStatus.CANCELLED, failure=FailureKind.CANCELLED,
                             message="run cancelled before job started")

        self.console.print_job_start(job.name, job.platform)

        try:
            scratch = _prepare_workspace(job, self.workdir)
        except InfrastructureFailure as e:
            return self._finish(job, started, [], JobStatus.INFRASTRUCTURE_FAILURE,
                                FailureKind.INFRASTRUCTURE, None, e.message)

        try:
            ctx = ExecutionContext.create(job, base_env, scratch / "workspace", scratch=scratch / "tmp")
            return self._run_steps(job, ctx, started)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    # ------------------------------------------------------------------

    def _run_steps(self, job: Job, ctx: ExecutionContext, started: float) -> JobResult:
        results: List[StepResult] = []

        for step in job.steps:
            if self.cancel.is_set():
                return self._finish(job, started, results, JobStatus.CANCELLED,
                                    FailureKind.CANCELLED, None, "run cancelled")

            try:
                active = step.run_if is None or compile_condition(step.run_if)(ctx)
            except Exception as e:
                results.append(StepResult(name=step.name, status=StepStatus.ERROR, reason=f"condition failed: {e}"))
                return self._finish(job, started, results, JobStatus.INFRASTRUCTURE_FAILURE,
                                    FailureKind.INFRASTRUCTURE, step.name, f"could not evaluate condition: {e}")

            if not active:
                results.append(StepResult(name=step.name, status=StepStatus.SKIPPED, reason="condition false"))
                self.console.print_step_skipped(job.name, step.name)
                continue

            self.console.print_step(job.name, step.name)
            result = self._run_step(step, ctx.for_step(step))
            results.append(result)
            self.console.print_step_result(job.name, result)

            if result.ok:
                continue

            # ---- fail-fast ----
            if result.status is StepStatus.CANCELLED:
                return self._finish(job, started, results, JobStatus.CANCELLED,
                                    FailureKind.CANCELLED, step.name, "run cancelled")
            if result.status is StepStatus.ERROR or step.setup:
                return self._finish(job, started, results, JobStatus.INFRASTRUCTURE_FAILURE,
                                    FailureKind.INFRASTRUCTURE, step.name, result.reason)
            kind = FailureKind.TIMEOUT if result.status is StepStatus.TIMEOUT else FailureKind.VERIFICATION
            return self._finish(job, started, results, JobStatus.FAILED, kind, step.name, result.reason)

        return self._finish(job, started, results, JobStatus.SUCCESS, None, None, None)

    def _run_step(self, step: Step, ctx: ExecutionContext) -> StepResult:
        directive = step.cache
        if directive is None or self.cache is None:
            return execute(step.run, ctx, name=step.name, cancel=self.cancel)

        # ---- restore ----
        key: Optional[str] = None
        hit = False
        note = "miss"
        try:
            key = key_for_step(directive, ctx)
            blob = self.cache.get(key)
            if blob is not None:
                unpack_blob(blob, ctx.workdir)
                hit = True
                note = "hit"
        except (CacheError, OSError, ValueError, tarfile.TarError) as e:
            note = "error"
            self.console.print_warning(f"[{ctx.job}] cache restore failed for '{step.name}': {e}")
        self.console.print_cache(ctx.job, note, key)

        if hit and directive.restore_only:
            return StepResult(name=step.name, status=StepStatus.CACHED, exit_code=None,
                              cache="hit", reason="satisfied from cache")

        result = execute(step.run, ctx, name=step.name, cancel=self.cancel)

        # ---- save ----
        if result.status is StepStatus.SUCCESS and key is not None and not hit:
            note = self._save(step, ctx, key)

        return StepResult(
            name=result.name,
            status=result.status,
            exit_code=result.exit_code,
            output=result.output,
            duration=result.duration,
            cache=note,
            reason=result.reason,
        )

    def _save(self, step: Step, ctx: ExecutionContext, key: str) -> str:
        try:
            blob = pack_paths(step.cache.paths, ctx.workdir)
            with self.cancel.commit() as open_:
                # in-flight writes are discarded on cancellation
                if not open_:
                    return "discarded"
                stored = self.cache.put(key, blob)
        except (CacheError, OSError, ValueError, tarfile.TarError) as e:
            self.console.print_warning(f"[{ctx.job}] cache save failed for '{step.name}': {e}")
            return "save-failed"
        if stored:
            self.console.print_cache(ctx.job, "saved", key)
            return "saved"
        return "exists"

    def _finish(
        self,
        job: Job,
        started: float,
        results: List[StepResult],
        status: JobStatus,
        failure: Optional[FailureKind],
        failed_step: Optional[str],
        message: Optional[str],
    ) -> JobResult:
        result = JobResult(
            job=job.name,
            status=status,
            steps=tuple(results),
            failure=failure,
            failed_step=failed_step,
            message=message,
            duration=time.monotonic() - started,
        )
        self.console.print_job_finished(result)
        return result
