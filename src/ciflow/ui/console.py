"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ciflow.model import JobResult, RunResult, StepResult

OUTPUT_TAIL_LINES = 40


def _tail(text: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    parts = text.rstrip().splitlines()
    return "\n".join(parts[-lines:])


class Console:
    """Centralized console output formatting.

    Jobs report from worker threads, so every print goes through one lock
    and whole blocks are emitted together.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)
            stream.flush()

    def print_run_started(
        self,
        run_id: str,
        pipeline: str,
        job_count: int,
        trigger: str | None = None,
    ) -> None:
        lines = ["", "RUN STARTED", f"Run: {run_id}", f"Pipeline: {pipeline}", f"Jobs: {job_count}"]
        if trigger:
            lines.append(f"Trigger: {trigger}")
        self._emit(*lines, "")

    def print_job_start(self, name: str, platform: str) -> None:
        if not self.quiet:
            self._emit(f"[{name}] JOB STARTED ({platform})")

    def print_step(self, job: str, name: str) -> None:
        if not self.quiet:
            self._emit(f"[{job}] ▶ {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        if not self.quiet:
            self._emit(f"[{job}] ⏭ {name} (condition false)")

    def print_step_result(self, job: str, result: "StepResult") -> None:
        if self.quiet:
            return
        if result.ok:
            self._emit(f"[{job}] ✓ {result.name} ({result.duration:.1f}s)")
            return
        lines = [f"[{job}] ✗ {result.name}: {result.status.value}"]
        if result.reason:
            lines.append(f"[{job}]   {result.reason}")
        self._emit(*lines)

    def print_cache(self, job: str, note: str, key: str | None) -> None:
        if self.quiet:
            return
        short_key = key[:24] + "..." if key and len(key) > 24 else (key or "-")
        self._emit(f"[{job}] CACHE: {note} ({short_key})")

    def print_job_finished(self, result: "JobResult") -> None:
        if self.quiet:
            return
        status = "SUCCESS" if result.ok else result.status.value.upper()
        self._emit(f"[{result.job}] JOB {status} ({result.duration:.1f}s)")

    def print_results(self, run: "RunResult") -> None:
        """Per-job verdicts, failure details grouped by kind, then the run status."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job in run.jobs:
            status_display = "SUCCESS" if job.ok else job.status.value.upper()
            line = f"  {job.job}: {status_display}"
            if job.failed_step:
                line += f" (step: {job.failed_step})"
            lines.append(line)

        if run.verification_failures:
            lines.append("")
            lines.append("Verification failures (your code):")
            for job in run.verification_failures:
                lines.extend(self._failure_block(job))
        if run.infrastructure_failures:
            lines.append("")
            lines.append("Infrastructure failures (the pipeline):")
            for job in run.infrastructure_failures:
                lines.extend(self._failure_block(job))

        lines.append("")
        lines.append(f"RUN {run.status.upper()} ({run.duration:.1f}s)")
        self._emit(*lines)

    def _failure_block(self, job: "JobResult") -> list[str]:
        lines = [f"  JOB FAILED: {job.job}"]
        if job.failed_step:
            lines.append(f"  STEP FAILED: {job.failed_step}")
        if job.message:
            lines.append(f"  Reason: {job.message}")
        output = job.output
        if output.strip():
            text = output.rstrip() if self.debug else _tail(output)
            lines.append("  Output:")
            lines.extend(f"    {line}" for line in text.splitlines())
        return lines

    def print_trigger(self, kind: str, branch: str, admitted: bool) -> None:
        verdict = "admitted" if admitted else "ignored"
        self._emit(f"TRIGGER: {kind} on {branch} -> {verdict}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Error block on stderr: title, message, indented details, then a suggestion."""
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_warning(self, message: str) -> None:
        self._emit(f"WARNING: {message}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Traceback with --debug, one line otherwise."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# set by the CLI from --debug/--quiet
_console: Optional[Console] = None


def get_console() -> Console:
    """Process-wide console; a default one is created on first use."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
